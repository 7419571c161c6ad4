"""
LiveAuth - Geometry Extractors
==============================
Pure functions turning one frame's facial landmarks into scalar
liveness signals.

  A) Eye Aspect Ratio (EAR) per eye, for blink detection
  B) Head-turn ratio from horizontal face asymmetry, for turn challenges

Landmarks follow the MediaPipe 478-point face mesh and are expected in
normalized [0, 1] image coordinates. Both signals are ratios, so they
are independent of image scale; pixel coordinates work too.

Supported landmark formats:
  - NumPy array of shape (N, 2) or (N, 3)
  - Sequence of objects exposing .x and .y (raw MediaPipe landmarks)
"""

from __future__ import annotations

import math

from liveauth_types import GeometryError


# ===================================================================
# MediaPipe 478-mesh indices
# ===================================================================

# [outer, upper1, upper2, inner, lower2, lower1]
RIGHT_EYE = [33, 160, 158, 133, 153, 144]
LEFT_EYE = [362, 385, 387, 263, 373, 380]

EYE_INDICES = {
    "left": LEFT_EYE,
    "right": RIGHT_EYE,
}

NOSE_TIP = 1
RIGHT_FACE_EDGE = 234   # subject's right cheek (image left, unmirrored)
LEFT_FACE_EDGE = 454    # subject's left cheek (image right, unmirrored)

_EPS = 1e-6


def _point(landmarks, idx: int) -> tuple[float, float]:
    """Fetch landmark `idx` as an (x, y) float pair."""
    try:
        lm = landmarks[idx]
        if hasattr(lm, "x") and hasattr(lm, "y"):
            x, y = float(lm.x), float(lm.y)
        else:
            x, y = float(lm[0]), float(lm[1])
    except (IndexError, KeyError, TypeError, ValueError) as e:
        raise GeometryError(f"landmark {idx} unavailable: {e}") from e

    if not (math.isfinite(x) and math.isfinite(y)):
        raise GeometryError(f"landmark {idx} is not finite: ({x}, {y})")
    return x, y


def _dist(a: tuple[float, float], b: tuple[float, float]) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def eye_aspect_ratio(landmarks, side: str) -> float:
    """Compute the Eye Aspect Ratio for one eye.

    EAR = (|p2 - p6| + |p3 - p5|) / (2 * |p1 - p4|)

    Open eyes sit around 0.25-0.35; a closed eye falls below ~0.2.

    Args:
        landmarks: Face mesh landmarks for a single face.
        side: "left" or "right" (the subject's side).

    Returns:
        EAR value (dimensionless).

    Raises:
        GeometryError: eye landmarks missing or eye width degenerate.
    """
    try:
        indices = EYE_INDICES[str(side).lower()]
    except KeyError:
        raise ValueError(f"side must be 'left' or 'right', got {side!r}") from None

    p1, p2, p3, p4, p5, p6 = (_point(landmarks, i) for i in indices)

    # Vertical distances (eyelid opening)
    v1 = _dist(p2, p6)
    v2 = _dist(p3, p5)

    # Horizontal distance (eye width)
    h_dist = _dist(p1, p4)
    if h_dist < _EPS:
        raise GeometryError(f"{side} eye width is degenerate ({h_dist:.2e})")

    return (v1 + v2) / (2.0 * h_dist)


def head_turn_ratio(landmarks) -> float:
    """Signed head-turn ratio from nose-to-face-edge asymmetry.

    Measures the horizontal distance from the nose tip to each face
    edge. Facing the camera both are equal and the ratio is ~0. As the
    subject turns to their left, the nose moves toward the left face
    edge in the image and the ratio grows positive; turning right makes
    it negative. Bounded to [-1, 1].

    Raises:
        GeometryError: required landmarks missing or face width degenerate.
    """
    nose_x = _point(landmarks, NOSE_TIP)[0]
    right_x = _point(landmarks, RIGHT_FACE_EDGE)[0]
    left_x = _point(landmarks, LEFT_FACE_EDGE)[0]

    d_right = abs(nose_x - right_x)
    d_left = abs(left_x - nose_x)
    total = d_right + d_left
    if total < _EPS:
        raise GeometryError(f"face width is degenerate ({total:.2e})")

    return (d_right - d_left) / total
