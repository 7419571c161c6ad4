"""
LiveAuth - Liveness Session (Frame Pump)
========================================
Drives one LivenessEngine from a camera, one frame at a time.

Architecture:
  Pump thread: camera read -> landmark detection -> engine.on_frame
  Caller thread: start() / stop(), receives callbacks from the pump

Concurrency rules:
  - Single-flight: a non-blocking lock is the busy flag. A frame that
    arrives while the previous one is still in detection/evaluation is
    dropped and counted, never queued.
  - At most one inference call is in flight per session (landmarks per
    frame, then the embedding exactly once at the end).
  - stop() is idempotent, releases camera and models, and suppresses any
    result still in flight; no success/failure callback fires after it.
  - A dead camera feeds "no face" frames, so the engine times out with
    FACE_NOT_FOUND instead of hanging.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import numpy as np

from liveauth_camera import LivenessCamera
from liveauth_config import DEFAULT_CONFIG, engine_config_from, resolve_path
from liveauth_descriptor import DescriptorExtractor, OnnxEmbeddingModel
from liveauth_engine import EngineCallbacks, LivenessEngine
from liveauth_face_pipeline import MediaPipeLandmarkDetector
from liveauth_types import (
    FailureCode,
    LivenessFailure,
)

_log = logging.getLogger("LivenessSession")


class LivenessSession:
    """One liveness attempt: load models, open camera, pump frames."""

    IDLE_SLEEP_S: float = 0.01

    def __init__(
        self,
        callbacks: EngineCallbacks,
        config: Optional[dict] = None,
        camera_factory: Optional[Callable] = None,
        detector_factory: Optional[Callable] = None,
        embedding_factory: Optional[Callable] = None,
        audit_logger=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            callbacks: Caller hooks; success/failure stop the session.
            config: Merged configuration dict (see liveauth_config).
            camera_factory: () -> object with read_validated_frame()/release().
            detector_factory: () -> LandmarkDetector.
            embedding_factory: () -> EmbeddingModel.
            audit_logger: Optional AuditLogger for the JSONL trail.
            clock: Monotonic clock handed to the engine.
        """
        self.config = config or DEFAULT_CONFIG
        self.callbacks = callbacks
        self.audit = audit_logger
        self._clock = clock

        cam_cfg = self.config.get("camera", {})
        model_cfg = self.config.get("models", {})
        self._camera_factory = camera_factory or (lambda: LivenessCamera(
            source=cam_cfg.get("source", 0),
            width=cam_cfg.get("width", 640),
            height=cam_cfg.get("height", 480),
        ))
        self._detector_factory = detector_factory or (lambda: MediaPipeLandmarkDetector(
            resolve_path(model_cfg["face_landmarker"])))
        self._embedding_factory = embedding_factory or (lambda: OnnxEmbeddingModel(
            resolve_path(model_cfg["embedding"]), providers=model_cfg.get("providers")))

        self.engine: Optional[LivenessEngine] = None
        self.camera = None
        self.detector = None
        self.embedding_model = None

        self._ready = False
        self._started = False
        self._running = False
        self._stopped = False
        self._busy = threading.Lock()
        self._stop_lock = threading.Lock()
        self._resource_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self.frames_processed = 0
        self.frames_dropped = 0

    # ── Lifecycle ─────────────────────────────────────────────

    def load(self) -> bool:
        """Load landmark and embedding models. False on MODEL_LOAD_FAILED."""
        try:
            self.detector = self._detector_factory()
            self.embedding_model = self._embedding_factory()
        except Exception as e:
            _log.error("Fatal error during model loading: %s", e)
            self._audit_error("Model loading failed", e)
            self._release_resources()
            self._report_failure(LivenessFailure(
                FailureCode.MODEL_LOAD_FAILED,
                f"Failed to load models. Error: {getattr(e, 'message', None) or e}",
            ))
            return False

        self.engine = LivenessEngine(
            EngineCallbacks(
                on_challenge_changed=self._on_challenge_changed,
                on_success=self._on_success,
                on_failure=self._on_failure,
                on_progress=self.callbacks.on_progress,
            ),
            DescriptorExtractor(self.embedding_model),
            engine_config_from(self.config),
            clock=self._clock,
        )
        self._ready = True
        self._audit("models_loaded")
        if self.callbacks.on_ready is not None:
            self.callbacks.on_ready()
        return True

    def start(self, threaded: bool = True) -> bool:
        """Open the camera and begin the challenge sequence.

        Args:
            threaded: Spawn the pump thread. With False the caller drives
                the session by calling step().

        Returns:
            False if the camera could not be opened (CAMERA_ACCESS_DENIED).
        """
        if not self._ready:
            raise RuntimeError("Session not loaded. Call load() first.")
        if self._started:
            raise RuntimeError("Session already started; create a new session to retry.")
        self._started = True

        try:
            self.camera = self._camera_factory()
        except Exception as e:
            _log.error("Camera access failed: %s", e)
            self._audit_error("Camera access failed", e)
            self._stopped = True
            self._release_resources()
            self._report_failure(LivenessFailure(
                FailureCode.CAMERA_ACCESS_DENIED,
                f"Could not access camera. {getattr(e, 'message', None) or e}",
            ))
            return False

        self._running = True
        self._audit("session_started",
                    timeout_ms=self.engine.config.challenge_timeout_ms)
        self.engine.start()

        if threaded and self._running:
            self._thread = threading.Thread(
                target=self._pump_loop, name="LivenessFramePump", daemon=True)
            self._thread.start()
        return True

    def stop(self) -> None:
        """Halt the pump and release every resource. Idempotent."""
        with self._stop_lock:
            if self._stopped and not self._running:
                self._release_resources()
                return
            self._stopped = True
            self._running = False

        if self.engine is not None:
            self.engine.stop()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

        self._release_resources()
        self._audit("session_stopped", **self.stats)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        return {
            "frames_processed": self.frames_processed,
            "frames_dropped": self.frames_dropped,
        }

    # ── Frame pump ────────────────────────────────────────────

    def step(self) -> bool:
        """Read one camera frame and feed it through. True if processed."""
        camera = self.camera
        if not self._running or camera is None:
            return False
        ok, frame, _ = camera.read_validated_frame()
        if not ok:
            return self._process(None)
        return self.submit_frame(frame)

    def submit_frame(self, frame: np.ndarray) -> bool:
        """Offer a frame to the engine. Dropped (False) while busy."""
        return self._process(frame)

    def _process(self, frame: Optional[np.ndarray]) -> bool:
        if not self._busy.acquire(blocking=False):
            self.frames_dropped += 1
            return False
        try:
            if self._stopped or self.engine is None or self.engine.is_finished:
                return False

            landmarks = None
            if frame is not None:
                try:
                    landmarks = self.detector.detect(frame)
                except Exception as e:
                    _log.debug("Landmark detection failed: %s", e)
                    landmarks = None

            # Result of an inference that outlived stop() is discarded
            if self._stopped:
                return False

            self.engine.on_frame(landmarks, frame)
            self.frames_processed += 1
            return True
        finally:
            self._busy.release()

    def _pump_loop(self) -> None:
        try:
            while self._running and not self.engine.is_finished:
                try:
                    processed = self.step()
                except Exception as e:
                    _log.error("Frame pump error: %s", e, exc_info=True)
                    self._audit_error("Frame pump error", e)
                    processed = False
                if not processed:
                    time.sleep(self.IDLE_SLEEP_S)
        finally:
            self._running = False
            self._release_resources()

    # ── Engine callback wrappers ──────────────────────────────

    def _on_challenge_changed(self, challenge) -> None:
        self._audit("challenge_changed", challenge=str(getattr(challenge, "value", challenge)))
        self.callbacks.on_challenge_changed(challenge)

    def _on_success(self, descriptor: list) -> None:
        self._audit("liveness_succeeded", descriptor_dim=len(descriptor), **self.stats)
        try:
            self.callbacks.on_success(descriptor)
        finally:
            self.stop()

    def _on_failure(self, failure: LivenessFailure) -> None:
        self._report_failure(failure)
        self.stop()

    def _report_failure(self, failure: LivenessFailure) -> None:
        if self.audit is not None:
            self.audit.log({"event": "liveness_failed", **failure.to_dict()}, level="WARN")
        self.callbacks.on_failure(failure)

    # ── Internals ─────────────────────────────────────────────

    def _release_resources(self) -> None:
        with self._resource_lock:
            camera, self.camera = self.camera, None
            detector, self.detector = self.detector, None
            model, self.embedding_model = self.embedding_model, None
        for resource in (camera, detector, model):
            if resource is None:
                continue
            try:
                resource.release()
            except Exception as e:
                _log.warning("Resource cleanup failed: %s", e)
                if self.audit is not None:
                    self.audit.warn("Resource cleanup failed", {"error": str(e)})

    def _audit(self, event: str, **data) -> None:
        if self.audit is not None:
            self.audit.log({"event": event, **data})

    def _audit_error(self, message: str, exc: Exception) -> None:
        if self.audit is not None:
            self.audit.error(message, exc)
