"""
LiveAuth - Camera Input
=======================
Owns ALL camera interaction. No other file should touch
cv2.VideoCapture directly.

Features:
  - Fails fast with CameraAccessDenied when the device cannot be opened
  - Frame validation (shape, dtype, channel count, brightness)
  - Health monitoring (FPS, drop rate)
  - Idempotent resource cleanup
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Optional, Union

import cv2
import numpy as np

from liveauth_types import CameraAccessDenied

_log = logging.getLogger("LivenessCamera")


class LivenessCamera:
    """Validated webcam (or video file) capture.

    A single-frame buffer keeps frames fresh: stale buffered frames are
    exactly what a replay attack would hide behind.
    """

    MIN_HEIGHT: int = 120
    MIN_WIDTH: int = 160
    EXPECTED_CHANNELS: int = 3
    MIN_MEAN_BRIGHTNESS: float = 5.0    # lens cap / hw failure
    MAX_MEAN_BRIGHTNESS: float = 250.0  # sensor saturation
    FPS_WINDOW: int = 30

    def __init__(
        self,
        source: Union[int, str] = 0,
        width: Optional[int] = 640,
        height: Optional[int] = 480,
        backend: int = cv2.CAP_ANY,
    ) -> None:
        """Open the capture device.

        Args:
            source: Camera index or video file path.
            width, height: Requested resolution (None keeps the default).
            backend: OpenCV capture backend.

        Raises:
            CameraAccessDenied: device missing, busy or permission denied.
        """
        self._source = source
        self._cap = cv2.VideoCapture(source, backend)
        if not self._cap.isOpened():
            self._cap.release()
            raise CameraAccessDenied(
                f"Could not access camera {source!r}. Please check permissions.")

        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        if width:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        if height:
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

        self._resolution: tuple[int, int] = (
            int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

        self._frames_total: int = 0
        self._frames_dropped: int = 0
        self._frame_times: deque[float] = deque(maxlen=self.FPS_WINDOW)
        self._released = False

        _log.info("LivenessCamera opened - source=%r resolution=%s", source, self._resolution)

    def read_validated_frame(self) -> tuple[bool, Optional[np.ndarray], float]:
        """Read one frame and validate it.

        Returns:
            (success, frame_or_None, monotonic_timestamp)
        """
        if self._released:
            return False, None, 0.0

        self._frames_total += 1
        timestamp = time.monotonic()
        ret, frame = self._cap.read()

        if not self._validate_frame(ret, frame):
            self._frames_dropped += 1
            return False, None, 0.0

        self._frame_times.append(timestamp)
        return True, frame, timestamp

    def get_health_status(self) -> dict:
        return {
            "connected": (not self._released) and self._cap.isOpened(),
            "fps_actual": round(self._calculate_fps(), 2),
            "frames_total": self._frames_total,
            "frames_dropped": self._frames_dropped,
            "drop_rate_pct": (
                self._frames_dropped / self._frames_total * 100.0
                if self._frames_total > 0 else 0.0
            ),
            "resolution": self._resolution,
        }

    def release(self) -> None:
        """Release the device. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        health = self.get_health_status()
        _log.info(
            "LivenessCamera releasing - total=%d dropped=%d (%.1f%%)",
            health["frames_total"], health["frames_dropped"], health["drop_rate_pct"],
        )
        self._cap.release()

    def __enter__(self) -> "LivenessCamera":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    # ── Private helpers ───────────────────────────────────────

    def _validate_frame(self, ret: bool, frame: Optional[np.ndarray]) -> bool:
        if not ret or frame is None:
            _log.debug("Validation FAIL: no frame returned")
            return False

        if frame.ndim != 3 or frame.shape[2] != self.EXPECTED_CHANNELS:
            _log.debug("Validation FAIL: shape=%s (expected HxWx3)", frame.shape)
            return False

        if frame.dtype != np.uint8:
            _log.debug("Validation FAIL: dtype=%s (expected uint8)", frame.dtype)
            return False

        h, w = frame.shape[:2]
        if h < self.MIN_HEIGHT or w < self.MIN_WIDTH:
            _log.debug("Validation FAIL: resolution %dx%d below minimum", w, h)
            return False

        mean_brightness = float(frame.mean())
        if mean_brightness <= self.MIN_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: all-black frame (mean=%.2f)", mean_brightness)
            return False
        if mean_brightness >= self.MAX_MEAN_BRIGHTNESS:
            _log.debug("Validation FAIL: all-white frame (mean=%.2f)", mean_brightness)
            return False

        return True

    def _calculate_fps(self) -> float:
        if len(self._frame_times) < 2:
            return 0.0
        elapsed = self._frame_times[-1] - self._frame_times[0]
        if elapsed <= 0:
            return 0.0
        return (len(self._frame_times) - 1) / elapsed
