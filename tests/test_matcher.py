"""
LiveAuth - Matcher Tests
========================
Euclidean distance against the fixed 0.6 acceptance threshold.
"""

import math
import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from liveauth_matcher import (
    FACE_MATCH_THRESHOLD,
    descriptor_distance,
    is_match,
    match_descriptors,
)
from liveauth_types import FailureCode, IncompatibleDescriptors


def test_threshold_is_fixed_at_point_six():
    assert FACE_MATCH_THRESHOLD == 0.6


def test_orthogonal_unit_vectors_do_not_match():
    result = match_descriptors([1.0, 0.0, 0.0], [0.0, 1.0, 0.0])
    assert result.distance == pytest.approx(math.sqrt(2), abs=1e-4)
    assert result.is_match is False
    assert result.threshold == 0.6


def test_identical_descriptors_match_at_zero_distance():
    vec = [0.1, -0.3, 0.5, 0.2]
    result = match_descriptors(vec, list(vec))
    assert result.distance == 0.0
    assert result.is_match is True


def test_close_descriptors_match():
    a = np.array([0.6, 0.8, 0.0])
    b = np.array([0.62, 0.78, 0.05])
    result = match_descriptors(a, b)
    assert result.distance < 0.1
    assert result.is_match


def test_distance_exactly_at_threshold_is_rejected():
    assert is_match(0.6) is False
    assert is_match(0.5999999) is True
    # Constructed pair whose distance is exactly 0.6
    result = match_descriptors([0.0, 0.0], [0.6, 0.0])
    assert result.distance == pytest.approx(0.6)
    assert result.is_match is False


def test_distance_is_symmetric():
    a, b = [0.3, 0.4, 0.5], [0.1, 0.9, -0.2]
    assert descriptor_distance(a, b) == pytest.approx(descriptor_distance(b, a))


def test_length_mismatch_raises_instead_of_comparing_prefix():
    with pytest.raises(IncompatibleDescriptors) as exc:
        match_descriptors([1.0, 0.0, 0.0], [1.0, 0.0])
    assert exc.value.code == FailureCode.INCOMPATIBLE_DESCRIPTORS
    assert "3 vs 2" in exc.value.message


@pytest.mark.parametrize("bad", [None, [], [[0.1, 0.2]], ["a", "b"]])
def test_malformed_descriptor_raises(bad):
    with pytest.raises(IncompatibleDescriptors):
        descriptor_distance(bad, [0.1, 0.2])


def test_incompatible_descriptors_is_a_value_error():
    with pytest.raises(ValueError):
        descriptor_distance([1.0], [1.0, 2.0])


def test_match_result_serializes_like_the_api_response():
    result = match_descriptors([1.0, 0.0, 0.0], [0.0, 1.0, 0.0])
    assert result.to_dict() == {"isMatch": False, "distance": 1.4142, "threshold": 0.6}
