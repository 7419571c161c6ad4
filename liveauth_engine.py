"""
LiveAuth - Challenge State Machine
==================================
Frame-driven liveness engine. Issues the fixed challenge sequence
BLINK -> TURN_LEFT -> TURN_RIGHT, scores each frame's landmarks against
the active challenge, and extracts a face descriptor once all three
have passed.

States:
  IDLE -> ACTIVE(challenge) -> ... -> PROCESSING -> SUCCEEDED
                    |                       |
                    +------> FAILED <-------+

Timing model:
  - Every deadline is evaluated when a frame arrives (poll-based). There
    is no timer thread, so timeout precision is bounded by frame rate.
  - After a pass the engine holds `processing_lock` for a 300 ms settle
    window so noisy frames straddling the threshold cannot double-fire.
    The first frame at or after the window performs the advance.

The engine is not thread-safe by itself: exactly one caller (the frame
pump) drives it. `stop()` may be called from elsewhere; it only flips a
flag that every entry point checks.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np

from liveauth_geometry import eye_aspect_ratio, head_turn_ratio
from liveauth_types import (
    CHALLENGE_SEQUENCE,
    PROCESSING,
    TERMINAL_STATES,
    Challenge,
    EngineConfig,
    EngineState,
    FailureCode,
    GeometryError,
    LivenessFailure,
    SessionState,
)

_log = logging.getLogger("LivenessEngine")

SETTLE_DELAY_S = 0.3


@dataclass
class EngineCallbacks:
    """Caller hooks.

    on_challenge_changed receives a Challenge or the string "PROCESSING".
    on_progress receives (clamped progress in [0, 1], raw signal).
    """
    on_challenge_changed: Callable[[Any], None]
    on_success: Callable[[list], None]
    on_failure: Callable[[LivenessFailure], None]
    on_progress: Optional[Callable[[float, Optional[float]], None]] = None
    on_ready: Optional[Callable[[], None]] = None

    def __post_init__(self) -> None:
        for name in ("on_challenge_changed", "on_success", "on_failure"):
            if not callable(getattr(self, name)):
                raise ValueError(
                    f"LivenessEngine requires a callable {name} callback.")
        for name in ("on_progress", "on_ready"):
            hook = getattr(self, name)
            if hook is not None and not callable(hook):
                raise ValueError(f"{name} must be callable or None.")


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(value, hi))


class LivenessEngine:
    """Liveness challenge state machine for a single session."""

    def __init__(
        self,
        callbacks: EngineCallbacks,
        extractor,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            callbacks: Caller hooks (see EngineCallbacks).
            extractor: Object with extract(frame) -> list[float], usually a
                DescriptorExtractor.
            config: Thresholds and timeout; defaults to EngineConfig().
            clock: Seconds-valued monotonic clock, injectable for tests.
        """
        if not isinstance(callbacks, EngineCallbacks):
            raise ValueError("callbacks must be an EngineCallbacks instance.")
        self.callbacks = callbacks
        self.extractor = extractor
        self.config = config or EngineConfig()
        self._clock = clock

        self._state = EngineState.IDLE
        self.session = SessionState()
        self._last_frame: Optional[np.ndarray] = None

    # ── Introspection ─────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def current_challenge(self) -> Optional[Challenge]:
        if self._state != EngineState.ACTIVE:
            return None
        return CHALLENGE_SEQUENCE[self.session.current_challenge_index]

    @property
    def is_finished(self) -> bool:
        return self.session.stopped or self._state in TERMINAL_STATES

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        """IDLE -> ACTIVE(BLINK). A retry needs a fresh engine."""
        if self._state != EngineState.IDLE:
            raise RuntimeError(f"Engine cannot start from state {self._state.value}")

        now = self._clock()
        self.session = SessionState(
            current_challenge_index=0,
            session_started_at=now,
            challenge_started_at=now,
        )
        self._state = EngineState.ACTIVE
        _log.info("Liveness session started - timeout=%dms", self.config.challenge_timeout_ms)
        self._emit_challenge_changed(CHALLENGE_SEQUENCE[0])

    def stop(self) -> None:
        """Halt processing without firing success/failure. Idempotent."""
        if self.session.stopped:
            return
        self.session.stopped = True
        self.session.advance_due_at = None
        _log.info("Liveness session stopped - state=%s", self._state.value)

    # ── Frame entry point ─────────────────────────────────────

    def on_frame(self, landmarks, frame: Optional[np.ndarray] = None) -> None:
        """Consume one video frame's landmarks (None when no face)."""
        if self.session.stopped or self._state != EngineState.ACTIVE:
            return
        if frame is not None:
            self._last_frame = frame

        s = self.session
        now = self._clock()

        if s.processing_lock:
            if s.advance_due_at is None or now < s.advance_due_at:
                return
            self.advance()
            if self.session.stopped or self._state != EngineState.ACTIVE:
                return

        if landmarks is None:
            self._check_face_timeout(now)
            return

        challenge = self.current_challenge
        try:
            passed, progress, raw = self._evaluate(challenge, landmarks)
        except GeometryError as e:
            _log.debug("Unusable landmarks for %s: %s", challenge.value, e)
            self._check_face_timeout(now)
            return

        self._emit_progress(progress, raw)
        if s.stopped:
            return

        if passed:
            _log.info("Challenge passed - %s (signal=%.3f)", challenge.value, raw)
            s.processing_lock = True
            s.advance_due_at = now + SETTLE_DELAY_S
        elif now - s.challenge_started_at > self.config.challenge_timeout_s:
            self._fail(
                FailureCode.CHALLENGE_TIMEOUT,
                f"Challenge timed out: {challenge.value}",
                challenge,
            )

    def advance(self) -> None:
        """Move to the next challenge, or to PROCESSING after the last."""
        if self.session.stopped or self._state != EngineState.ACTIVE:
            return

        s = self.session
        s.current_challenge_index += 1
        s.advance_due_at = None

        if s.current_challenge_index >= len(CHALLENGE_SEQUENCE):
            s.current_challenge_index = len(CHALLENGE_SEQUENCE) - 1
            self._complete()
            return

        s.challenge_started_at = self._clock()
        s.processing_lock = False
        self._emit_challenge_changed(CHALLENGE_SEQUENCE[s.current_challenge_index])

    # ── Internals ─────────────────────────────────────────────

    def _evaluate(self, challenge: Challenge, landmarks) -> tuple[bool, float, float]:
        """Return (passed, clamped progress, raw signal) for one frame."""
        if challenge == Challenge.BLINK:
            raw = min(eye_aspect_ratio(landmarks, "left"),
                      eye_aspect_ratio(landmarks, "right"))
            passed = raw < self.config.blink_ear_threshold
            return passed, 1.0 if passed else 0.0, raw

        threshold = self.config.head_turn_threshold
        raw = head_turn_ratio(landmarks)
        if challenge == Challenge.TURN_LEFT:
            passed = raw > threshold
            progress = _clamp(raw / threshold)
        else:
            passed = raw < -threshold
            progress = _clamp(raw / -threshold)
        return passed, progress, raw

    def _check_face_timeout(self, now: float) -> None:
        if now - self.session.challenge_started_at > self.config.challenge_timeout_s:
            self._fail(FailureCode.FACE_NOT_FOUND, "Could not detect a face.")

    def _complete(self) -> None:
        self._state = EngineState.PROCESSING
        self.session.processing_lock = True
        self._emit_challenge_changed(PROCESSING)

        frame = self._last_frame
        if frame is None:
            self._fail(FailureCode.RECOGNITION_FAILED, "No video frame available for recognition.")
            return

        try:
            descriptor = self.extractor.extract(frame)
        except Exception as e:
            if self.session.stopped:
                return
            _log.error("Descriptor extraction failed: %s", e, exc_info=True)
            self._fail(FailureCode.RECOGNITION_FAILED, str(e) or type(e).__name__)
            return

        if self.session.stopped:
            _log.info("Descriptor discarded - session stopped during extraction")
            return

        self._state = EngineState.SUCCEEDED
        self.session.stopped = True
        _log.info("Liveness session succeeded - descriptor dim=%d", len(descriptor))
        self.callbacks.on_success(list(descriptor))

    def _fail(
        self,
        code: FailureCode,
        message: str,
        challenge: Optional[Challenge] = None,
    ) -> None:
        self._state = EngineState.FAILED
        self.session.stopped = True
        self.session.advance_due_at = None
        failure = LivenessFailure(code, message, challenge)
        _log.warning("Liveness session failed - %s: %s", code.value, message)
        self.callbacks.on_failure(failure)

    def _emit_challenge_changed(self, challenge) -> None:
        self.callbacks.on_challenge_changed(challenge)

    def _emit_progress(self, progress: float, raw: Optional[float]) -> None:
        if self.callbacks.on_progress is not None:
            self.callbacks.on_progress(progress, raw)
