"""
LiveAuth - Geometry Extractor Tests
===================================
EAR and head-turn ratio on synthetic face-mesh landmarks.
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

_tests_dir = Path(__file__).resolve().parent
for _p in (str(_tests_dir.parent), str(_tests_dir)):
    if _p not in sys.path:
        sys.path.insert(0, _p)

from liveauth_geometry import eye_aspect_ratio, head_turn_ratio, NOSE_TIP
from liveauth_types import GeometryError
from face_fixtures import make_landmarks


class _MockLandmark:
    """Simulate a MediaPipe landmark with .x, .y attributes."""
    def __init__(self, x: float, y: float):
        self.x = x
        self.y = y


# ─── EAR ──────────────────────────────────────────────────────

@pytest.mark.parametrize("target", [0.15, 0.20, 0.30, 0.35])
def test_ear_matches_constructed_value(target):
    lm = make_landmarks(ear=target)
    assert eye_aspect_ratio(lm, "left") == pytest.approx(target)
    assert eye_aspect_ratio(lm, "right") == pytest.approx(target)


def test_ear_eyes_are_independent():
    lm = make_landmarks(left_ear=0.12, right_ear=0.31)
    assert eye_aspect_ratio(lm, "left") == pytest.approx(0.12)
    assert eye_aspect_ratio(lm, "right") == pytest.approx(0.31)


def test_ear_accepts_landmark_objects():
    arr = make_landmarks(ear=0.27)
    objs = [_MockLandmark(x, y) for x, y, _ in arr]
    assert eye_aspect_ratio(objs, "right") == pytest.approx(0.27)


def test_ear_is_scale_invariant():
    lm = make_landmarks(ear=0.22)
    pixels = lm.copy()
    pixels[:, 0] *= 640
    pixels[:, 1] *= 640
    assert eye_aspect_ratio(pixels, "left") == pytest.approx(eye_aspect_ratio(lm, "left"))


def test_ear_missing_landmarks_raises_geometry_error():
    truncated = make_landmarks()[:100]  # eye indices go up to 387
    with pytest.raises(GeometryError):
        eye_aspect_ratio(truncated, "left")


def test_ear_degenerate_eye_raises():
    lm = make_landmarks()
    lm[:, :2] = 0.5  # every point collapsed
    with pytest.raises(GeometryError):
        eye_aspect_ratio(lm, "right")


def test_ear_non_finite_raises():
    lm = make_landmarks()
    lm[33, 0] = np.nan
    with pytest.raises(GeometryError):
        eye_aspect_ratio(lm, "right")


def test_ear_rejects_unknown_side():
    with pytest.raises(ValueError):
        eye_aspect_ratio(make_landmarks(), "middle")


# ─── Head turn ────────────────────────────────────────────────

@pytest.mark.parametrize("turn", [-0.8, -0.45, -0.1, 0.0, 0.1, 0.2, 0.45, 0.9])
def test_head_turn_matches_constructed_ratio(turn):
    assert head_turn_ratio(make_landmarks(turn=turn)) == pytest.approx(turn)


def test_head_turn_is_zero_when_facing_forward():
    assert abs(head_turn_ratio(make_landmarks(turn=0.0))) < 1e-9


def test_head_turn_sign_follows_nose_position():
    lm = make_landmarks()
    lm[NOSE_TIP, 0] = 0.65   # nose pushed toward the subject's left face edge
    assert head_turn_ratio(lm) > 0
    lm[NOSE_TIP, 0] = 0.35
    assert head_turn_ratio(lm) < 0


def test_head_turn_is_bounded():
    lm = make_landmarks()
    lm[NOSE_TIP, 0] = 2.0  # nose outside the face outline
    assert -1.0 <= head_turn_ratio(lm) <= 1.0


def test_head_turn_is_scale_invariant():
    lm = make_landmarks(turn=0.3)
    scaled = lm * 1000.0
    assert head_turn_ratio(scaled) == pytest.approx(head_turn_ratio(lm))


def test_head_turn_missing_landmarks_raises():
    with pytest.raises(GeometryError):
        head_turn_ratio(make_landmarks()[:300])  # face edge 454 absent


def test_head_turn_degenerate_face_raises():
    lm = make_landmarks()
    lm[:, 0] = 0.5
    with pytest.raises(GeometryError):
        head_turn_ratio(lm)


# ─── Purity ───────────────────────────────────────────────────

def test_extractors_are_deterministic_and_do_not_mutate_input():
    lm = make_landmarks(ear=0.24, turn=-0.3)
    snapshot = lm.copy()
    first = (eye_aspect_ratio(lm, "left"), eye_aspect_ratio(lm, "right"), head_turn_ratio(lm))
    second = (eye_aspect_ratio(lm, "left"), eye_aspect_ratio(lm, "right"), head_turn_ratio(lm))
    assert first == second
    assert np.array_equal(lm, snapshot)
