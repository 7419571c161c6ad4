"""
LiveAuth - Liveness Session Tests
=================================
Frame pump behaviour with fake camera, detector and embedding model:
- Model / camera failures reported through on_failure
- Full BLINK -> TURN_LEFT -> TURN_RIGHT run to a descriptor
- Dead camera times out as FACE_NOT_FOUND
- Single-flight frame dropping and in-flight discard on stop()
- Threaded pump with a short timeout
"""

import copy
import sys
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np

_tests_dir = Path(__file__).resolve().parent
for _p in (str(_tests_dir.parent), str(_tests_dir)):
    if _p not in sys.path:
        sys.path.insert(0, _p)

from liveauth_config import DEFAULT_CONFIG
from liveauth_descriptor import EmbeddingModel
from liveauth_engine import EngineCallbacks
from liveauth_session import LivenessSession
from liveauth_types import (
    PROCESSING,
    CameraAccessDenied,
    Challenge,
    FailureCode,
    ModelLoadFailed,
)
from face_fixtures import FakeClock, make_frame, make_landmarks


class _FakeCamera:
    def __init__(self, alive=True, delay=0.0):
        self.alive = alive
        self.delay = delay
        self.release_count = 0

    def read_validated_frame(self):
        if self.delay:
            time.sleep(self.delay)
        if not self.alive:
            return False, None, time.monotonic()
        return True, make_frame(), time.monotonic()

    def release(self):
        self.release_count += 1


class _ScriptedDetector:
    """Performs whatever the engine currently asks for."""

    ACTIONS = {
        Challenge.BLINK: dict(ear=0.10),
        Challenge.TURN_LEFT: dict(turn=0.6),
        Challenge.TURN_RIGHT: dict(turn=-0.6),
    }

    def __init__(self):
        self.session = None
        self.release_count = 0
        self.hook = None

    def detect(self, frame):
        if self.hook is not None:
            self.hook(frame)
        challenge = self.session.engine.current_challenge
        return make_landmarks(**self.ACTIONS.get(challenge, {}))

    def release(self):
        self.release_count += 1


class _FakeEmbedding(EmbeddingModel):
    def __init__(self):
        self.release_count = 0

    @property
    def input_size(self):
        return (32, 32)

    def embed(self, batch):
        return np.array([[1.0, 2.0, 2.0]], dtype=np.float32)

    def release(self):
        self.release_count += 1


class TestLivenessSession(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.changes = []
        self.successes = []
        self.failures = []
        self.ready = MagicMock()
        self.callbacks = EngineCallbacks(
            on_challenge_changed=self.changes.append,
            on_success=self.successes.append,
            on_failure=self.failures.append,
            on_ready=self.ready,
        )
        self.camera = _FakeCamera()
        self.detector = _ScriptedDetector()
        self.embedding = _FakeEmbedding()
        self.audit = MagicMock()

    def _session(self, config=None, **overrides):
        kwargs = dict(
            camera_factory=lambda: self.camera,
            detector_factory=lambda: self.detector,
            embedding_factory=lambda: self.embedding,
            audit_logger=self.audit,
            clock=self.clock,
        )
        kwargs.update(overrides)
        session = LivenessSession(self.callbacks, config=config, **kwargs)
        self.detector.session = session
        return session

    def _drive(self, session, steps=50, dt=0.05):
        for _ in range(steps):
            self.clock.advance(dt)
            if not session.step():
                break

    def _audited_events(self):
        return [c.args[0]["event"] for c in self.audit.log.call_args_list]

    # ── Setup failures ────────────────────────────────────────

    def test_model_load_failure_reports_model_load_failed(self):
        def _boom():
            raise ModelLoadFailed("face_landmarker.task missing")

        session = self._session(detector_factory=_boom)
        self.assertFalse(session.load())
        self.assertEqual(len(self.failures), 1)
        self.assertEqual(self.failures[0].code, FailureCode.MODEL_LOAD_FAILED)
        self.assertIn("face_landmarker.task missing", self.failures[0].message)
        self.ready.assert_not_called()
        self.audit.error.assert_called_once()
        message, exc = self.audit.error.call_args.args
        self.assertEqual(message, "Model loading failed")
        self.assertIsInstance(exc, ModelLoadFailed)
        with self.assertRaises(RuntimeError):
            session.start(threaded=False)

    def test_partial_model_load_releases_loaded_detector(self):
        def _boom():
            raise ModelLoadFailed("embedding missing")

        session = self._session(embedding_factory=_boom)
        self.assertFalse(session.load())
        self.assertEqual(self.detector.release_count, 1)

    def test_camera_failure_reports_camera_access_denied(self):
        def _no_camera():
            raise CameraAccessDenied("Device 0 could not be opened")

        session = self._session(camera_factory=_no_camera)
        self.assertTrue(session.load())
        self.ready.assert_called_once()
        self.assertFalse(session.start(threaded=False))

        self.assertEqual(len(self.failures), 1)
        self.assertEqual(self.failures[0].code, FailureCode.CAMERA_ACCESS_DENIED)
        self.assertEqual(self.changes, [])
        self.assertEqual(self.detector.release_count, 1)
        self.assertEqual(self.embedding.release_count, 1)
        self.assertEqual(self.audit.error.call_args.args[0], "Camera access failed")
        self.assertFalse(session.is_running)

    # ── Full run ──────────────────────────────────────────────

    def test_full_run_produces_descriptor_and_stops(self):
        session = self._session()
        self.assertTrue(session.load())
        self.assertTrue(session.start(threaded=False))
        self._drive(session)

        self.assertEqual(
            self.changes,
            [Challenge.BLINK, Challenge.TURN_LEFT, Challenge.TURN_RIGHT, PROCESSING],
        )
        self.assertEqual(len(self.successes), 1)
        np.testing.assert_allclose(self.successes[0], [1 / 3, 2 / 3, 2 / 3], atol=1e-6)
        self.assertEqual(self.failures, [])

        self.assertFalse(session.is_running)
        self.assertEqual(self.camera.release_count, 1)
        self.assertEqual(self.detector.release_count, 1)
        self.assertEqual(self.embedding.release_count, 1)
        self.assertGreater(session.stats["frames_processed"], 3)

        events = self._audited_events()
        self.assertIn("session_started", events)
        self.assertIn("liveness_succeeded", events)
        self.assertEqual(events[-1], "session_stopped")

    def test_second_start_raises(self):
        session = self._session()
        session.load()
        session.start(threaded=False)
        with self.assertRaises(RuntimeError):
            session.start(threaded=False)

    def test_config_thresholds_reach_the_engine(self):
        config = copy.deepcopy(DEFAULT_CONFIG)
        config["engine"]["challenge_timeout_ms"] = 1500
        session = self._session(config=config)
        session.load()
        self.assertEqual(session.engine.config.challenge_timeout_ms, 1500)

    # ── Timeouts ──────────────────────────────────────────────

    def test_dead_camera_times_out_with_face_not_found(self):
        self.camera.alive = False
        session = self._session()
        session.load()
        session.start(threaded=False)
        self._drive(session, steps=20, dt=1.0)

        self.assertEqual(len(self.failures), 1)
        self.assertEqual(self.failures[0].code, FailureCode.FACE_NOT_FOUND)
        self.assertEqual(self.successes, [])
        self.assertEqual(self.camera.release_count, 1)
        self.assertIn("liveness_failed", self._audited_events())

    def test_detector_errors_count_as_no_face(self):
        def _explode(frame):
            raise RuntimeError("mediapipe graph error")

        self.detector.hook = _explode
        session = self._session()
        session.load()
        session.start(threaded=False)
        self._drive(session, steps=20, dt=1.0)
        self.assertEqual(self.failures[0].code, FailureCode.FACE_NOT_FOUND)

    # ── Concurrency ───────────────────────────────────────────

    def test_frame_arriving_while_busy_is_dropped(self):
        session = self._session()
        session.load()
        session.start(threaded=False)
        reentrant = []

        def _submit_while_busy(frame):
            reentrant.append(session.submit_frame(frame))

        self.detector.hook = _submit_while_busy
        self.clock.advance(0.05)
        self.assertTrue(session.step())

        self.assertEqual(reentrant, [False])
        self.assertEqual(session.stats, {"frames_processed": 1, "frames_dropped": 1})

    def test_stop_during_detection_discards_frame(self):
        session = self._session()
        session.load()
        session.start(threaded=False)
        self.detector.hook = lambda frame: session.stop()

        self.clock.advance(0.05)
        self.assertFalse(session.step())
        self.assertEqual(session.stats["frames_processed"], 0)
        self.assertEqual(self.successes, [])
        self.assertEqual(self.failures, [])
        self.assertTrue(session.engine.session.stopped)

    def test_stop_is_idempotent_and_releases_once(self):
        session = self._session()
        session.load()
        session.start(threaded=False)
        session.stop()
        session.stop()

        self.assertEqual(self.camera.release_count, 1)
        self.assertEqual(self.detector.release_count, 1)
        self.assertEqual(self.embedding.release_count, 1)
        self.assertEqual(self._audited_events().count("session_stopped"), 1)
        self.assertFalse(session.step())
        self.assertEqual(self.successes, [])
        self.assertEqual(self.failures, [])

    def test_failing_release_is_audited_and_others_still_released(self):
        self.detector.release = MagicMock(side_effect=RuntimeError("close failed"))
        session = self._session()
        session.load()
        session.start(threaded=False)
        session.stop()

        self.assertEqual(self.camera.release_count, 1)
        self.assertEqual(self.embedding.release_count, 1)
        self.audit.warn.assert_called_once_with(
            "Resource cleanup failed", {"error": "close failed"})

    def test_threaded_pump_times_out(self):
        config = copy.deepcopy(DEFAULT_CONFIG)
        config["engine"]["challenge_timeout_ms"] = 200
        camera = _FakeCamera(alive=False, delay=0.005)
        done = threading.Event()
        failures = []

        def _on_failure(failure):
            failures.append(failure)
            done.set()

        callbacks = EngineCallbacks(
            on_challenge_changed=lambda c: None,
            on_success=lambda d: done.set(),
            on_failure=_on_failure,
        )
        session = LivenessSession(
            callbacks,
            config=config,
            camera_factory=lambda: camera,
            detector_factory=lambda: self.detector,
            embedding_factory=lambda: self.embedding,
        )
        self.detector.session = session
        self.assertTrue(session.load())
        self.assertTrue(session.start())

        self.assertTrue(done.wait(timeout=5.0))
        session.stop()
        self.assertEqual(len(failures), 1)
        self.assertEqual(failures[0].code, FailureCode.FACE_NOT_FOUND)
        self.assertEqual(camera.release_count, 1)
        self.assertFalse(session.is_running)


if __name__ == "__main__":
    unittest.main()
