"""
LiveAuth - Landmark Detection
=============================
Owns face landmark detection. No other module runs MediaPipe directly.

The liveness engine consumes at most one face per frame as a (478, 3)
float32 array of normalized (x, y, z) MediaPipe face-mesh landmarks,
or None when no face is present.

MediaPipe FaceLandmarker provides:
  1. 478-point dense mesh with refined iris/eyelid points (needed for EAR)
  2. Normalized coordinates, so geometry is resolution independent
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import cv2
import numpy as np

from liveauth_types import ModelLoadFailed

_log = logging.getLogger("LandmarkDetector")

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))


class LandmarkDetector(ABC):
    """Capability: return zero-or-one face landmark set for a frame."""

    @abstractmethod
    def detect(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Return (N, 3) normalized landmarks for one face, or None."""

    def release(self) -> None:
        """Optional cleanup."""


class MediaPipeLandmarkDetector(LandmarkDetector):
    """Single-face MediaPipe FaceLandmarker in VIDEO running mode."""

    def __init__(
        self,
        model_path: str = "models/face_landmarker.task",
        min_detection_confidence: float = 0.5,
        min_tracking_confidence: float = 0.5,
    ) -> None:
        """Load the FaceLandmarker task.

        Raises:
            ModelLoadFailed: model file missing or MediaPipe init error.
        """
        full_path = model_path if os.path.isabs(model_path) else os.path.join(_SCRIPT_DIR, model_path)
        if not os.path.exists(full_path):
            raise ModelLoadFailed(f"MediaPipe model not found: {full_path}")

        try:
            from mediapipe.tasks import python
            from mediapipe.tasks.python import vision

            base_options = python.BaseOptions(
                model_asset_path=full_path,
                delegate=python.BaseOptions.Delegate.CPU,
            )
            # VIDEO mode: synchronous, tracking across frames
            options = vision.FaceLandmarkerOptions(
                base_options=base_options,
                running_mode=vision.RunningMode.VIDEO,
                num_faces=1,
                min_face_detection_confidence=min_detection_confidence,
                min_face_presence_confidence=min_detection_confidence,
                min_tracking_confidence=min_tracking_confidence,
            )
            self._landmarker = vision.FaceLandmarker.create_from_options(options)
        except Exception as e:
            raise ModelLoadFailed(f"Failed to load face landmarker: {e}") from e

        self._frame_timestamp_ms: int = 0
        _log.info(
            "MediaPipe FaceLandmarker loaded - %.1f MB from %s",
            os.path.getsize(full_path) / 1024 / 1024, full_path,
        )

    def detect(self, frame: np.ndarray) -> Optional[np.ndarray]:
        if self._landmarker is None:
            _log.error("MediaPipe landmarker not initialized")
            return None

        import mediapipe as mp

        # MediaPipe expects RGB input
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

        # VIDEO mode requires strictly increasing timestamps
        self._frame_timestamp_ms += 33
        try:
            result = self._landmarker.detect_for_video(mp_image, self._frame_timestamp_ms)
        except Exception as e:
            _log.debug("MediaPipe detection failed: %s", e)
            return None

        if not result or not result.face_landmarks:
            return None

        face_lms = result.face_landmarks[0]
        return np.array([[lm.x, lm.y, lm.z] for lm in face_lms], dtype=np.float32)

    def release(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
        _log.info("MediaPipe FaceLandmarker released")

    def __enter__(self) -> "MediaPipeLandmarkDetector":
        return self

    def __exit__(self, *args) -> None:
        self.release()
