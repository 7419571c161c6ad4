"""
LiveAuth - Shared Types
=======================
Enums, dataclasses and the exception hierarchy shared by the geometry,
engine, descriptor, matcher and enrollment modules.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional


class Challenge(str, Enum):
    """One physical action the user must perform to prove liveness."""
    BLINK = "BLINK"
    TURN_LEFT = "TURN_LEFT"
    TURN_RIGHT = "TURN_RIGHT"


# Fixed order; never randomized, never revisited.
CHALLENGE_SEQUENCE: tuple[Challenge, ...] = (
    Challenge.BLINK,
    Challenge.TURN_LEFT,
    Challenge.TURN_RIGHT,
)

# Emitted through on_challenge_changed once every challenge has passed.
PROCESSING = "PROCESSING"


class FailureCode(str, Enum):
    CAMERA_ACCESS_DENIED = "CAMERA_ACCESS_DENIED"
    MODEL_LOAD_FAILED = "MODEL_LOAD_FAILED"
    FACE_NOT_FOUND = "FACE_NOT_FOUND"
    CHALLENGE_TIMEOUT = "CHALLENGE_TIMEOUT"
    RECOGNITION_FAILED = "RECOGNITION_FAILED"
    INCOMPATIBLE_DESCRIPTORS = "INCOMPATIBLE_DESCRIPTORS"


class EngineState(str, Enum):
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({EngineState.SUCCEEDED, EngineState.FAILED})


@dataclass(frozen=True)
class EngineConfig:
    """Per-session tuning. Immutable once the engine is built.

    Attributes:
        blink_ear_threshold: Blink passes when min(left, right) EAR drops
            below this value.
        head_turn_threshold: Absolute head-turn ratio needed to pass a
            turn challenge. Empirical constant, not a calibrated angle.
        challenge_timeout_ms: Wall-clock budget per challenge.
    """
    blink_ear_threshold: float = 0.20
    head_turn_threshold: float = 0.40
    challenge_timeout_ms: int = 10000

    def __post_init__(self) -> None:
        if not self.blink_ear_threshold > 0:
            raise ValueError(
                f"blink_ear_threshold must be > 0, got {self.blink_ear_threshold!r}")
        if not self.head_turn_threshold > 0:
            raise ValueError(
                f"head_turn_threshold must be > 0, got {self.head_turn_threshold!r}")
        if isinstance(self.challenge_timeout_ms, bool) or not isinstance(self.challenge_timeout_ms, int):
            raise ValueError(
                f"challenge_timeout_ms must be an integer, got {self.challenge_timeout_ms!r}")
        if self.challenge_timeout_ms <= 0:
            raise ValueError(
                f"challenge_timeout_ms must be > 0, got {self.challenge_timeout_ms!r}")

    @property
    def challenge_timeout_s(self) -> float:
        return self.challenge_timeout_ms / 1000.0


@dataclass
class SessionState:
    """Mutable per-session bookkeeping owned by a single LivenessEngine."""
    current_challenge_index: int = 0
    session_started_at: float = 0.0
    challenge_started_at: float = 0.0
    processing_lock: bool = False
    stopped: bool = False
    advance_due_at: Optional[float] = None


@dataclass
class LivenessFailure:
    """Structured failure reported through on_failure."""
    code: FailureCode
    message: str
    challenge: Optional[Challenge] = None

    def to_dict(self) -> dict:
        data = {"code": self.code.value, "message": self.message}
        if self.challenge is not None:
            data["challenge"] = self.challenge.value
        return data


@dataclass(frozen=True)
class MatchResult:
    is_match: bool
    distance: float
    threshold: float

    def to_dict(self) -> dict:
        return {
            "isMatch": self.is_match,
            "distance": round(self.distance, 4),
            "threshold": self.threshold,
        }


@dataclass
class EnrollmentRecord:
    """One stored baseline per user account."""
    user_id: str
    liveness_complete: bool = False
    face_descriptor: Optional[list] = None
    updated_at: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ===================================================================
# Exceptions
# ===================================================================

class LivenessError(Exception):
    """Base class for every LiveAuth failure that carries a code."""
    code: Optional[FailureCode] = None

    def __init__(self, message: str = "", code: Optional[FailureCode] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_failure(self, challenge: Optional[Challenge] = None) -> LivenessFailure:
        return LivenessFailure(self.code, self.message, challenge)


class CameraAccessDenied(LivenessError):
    code = FailureCode.CAMERA_ACCESS_DENIED


class ModelLoadFailed(LivenessError):
    code = FailureCode.MODEL_LOAD_FAILED


class RecognitionFailed(LivenessError):
    code = FailureCode.RECOGNITION_FAILED


class IncompatibleDescriptors(LivenessError, ValueError):
    """Caller error: descriptors cannot be compared. Not a session failure."""
    code = FailureCode.INCOMPATIBLE_DESCRIPTORS
    status = 400


class GeometryError(ValueError):
    """A landmark frame lacks the points needed for a geometric signal."""
