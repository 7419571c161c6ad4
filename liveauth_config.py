"""
LiveAuth - Configuration
========================
Loads config.yaml and merges it over DEFAULT_CONFIG. Missing keys fall
back to the defaults; unknown keys are kept so callers can extend the
file without touching this module.
"""

from __future__ import annotations

import copy
import logging
import os
from typing import Optional

import yaml

from liveauth_types import EngineConfig

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")

_log = logging.getLogger("LiveAuthConfig")

DEFAULT_CONFIG = {
    "engine": {
        "blink_ear_threshold": 0.20,
        "head_turn_threshold": 0.40,
        "challenge_timeout_ms": 10000,
    },
    "camera": {
        "source": 0,
        "width": 640,
        "height": 480,
    },
    "models": {
        "face_landmarker": "models/face_landmarker.task",
        "embedding": "models/mobilenet_v2_140_224_feature_vector.onnx",
        "providers": ["CPUExecutionProvider"],
    },
    "storage": {
        "enrollment_db": "secure_data/enrollments.enc",
        "key_path": "secure_data/enrollment.key",
    },
    "logging": {
        "level": "INFO",
        "log_dir": "logs",
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from YAML, merged over DEFAULT_CONFIG.

    A missing default config.yaml is not an error (defaults apply); a
    missing explicitly requested file is.
    """
    target = path or _config_path
    if not os.path.exists(target):
        if path is not None:
            raise FileNotFoundError(f"Config file not found: {target}")
        _log.debug("No config.yaml at %s, using defaults", target)
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(target, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config root must be a mapping: {target}")
    return _deep_merge(DEFAULT_CONFIG, loaded)


def engine_config_from(config: dict) -> EngineConfig:
    """Build the immutable EngineConfig from the `engine` section."""
    section = config.get("engine", {}) or {}
    return EngineConfig(
        blink_ear_threshold=float(section.get("blink_ear_threshold", 0.20)),
        head_turn_threshold=float(section.get("head_turn_threshold", 0.40)),
        challenge_timeout_ms=int(section.get("challenge_timeout_ms", 10000)),
    )


def resolve_path(path: str) -> str:
    """Resolve config-relative paths against the project root."""
    return path if os.path.isabs(path) else os.path.join(_SCRIPT_DIR, path)
