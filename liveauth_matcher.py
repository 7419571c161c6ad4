"""
LiveAuth - Descriptor Matcher
=============================
Euclidean-distance comparison of two face descriptors against a fixed,
deployment-wide threshold.

The threshold is a module constant, not a per-call or per-session
parameter. Changing it is a policy change for every enrolled user.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from liveauth_types import IncompatibleDescriptors, MatchResult

FACE_MATCH_THRESHOLD = 0.6


def _as_vector(descriptor: Sequence[float], label: str) -> np.ndarray:
    if descriptor is None:
        raise IncompatibleDescriptors(f"{label} descriptor is missing")
    try:
        vec = np.asarray(descriptor, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise IncompatibleDescriptors(f"{label} descriptor is not numeric: {e}") from e
    if vec.ndim != 1 or vec.size == 0:
        raise IncompatibleDescriptors(
            f"{label} descriptor must be a non-empty 1-D vector, got shape {vec.shape}")
    return vec


def descriptor_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance between two equal-length descriptors.

    Raises:
        IncompatibleDescriptors: lengths differ (never compares a prefix).
    """
    va = _as_vector(a, "first")
    vb = _as_vector(b, "second")
    if va.shape != vb.shape:
        raise IncompatibleDescriptors(
            f"Stored and current face descriptors are incompatible "
            f"({va.size} vs {vb.size} values).")
    return float(np.linalg.norm(va - vb))


def is_match(distance: float) -> bool:
    """Strictly below the threshold; a distance of exactly 0.6 is a reject."""
    return distance < FACE_MATCH_THRESHOLD


def match_descriptors(stored: Sequence[float], live: Sequence[float]) -> MatchResult:
    distance = descriptor_distance(stored, live)
    return MatchResult(
        is_match=is_match(distance),
        distance=distance,
        threshold=FACE_MATCH_THRESHOLD,
    )
