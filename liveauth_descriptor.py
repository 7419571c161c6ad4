"""
LiveAuth - Descriptor Extractor
===============================
Turns the final video frame of a passed liveness session into a
fixed-length, L2-normalized face descriptor.

Pipeline:
  1. BGR -> RGB, bilinear resize to the embedding model's input size
  2. Scale pixels [0, 255] -> [-1.0, +1.0]  (pixel / 127.5 - 1.0)
  3. Run the embedding model (ONNX Runtime by default)
  4. Flatten and L2-normalize (raw vector kept if norm < 1e-6)
  5. Return a plain list of floats

The embedding model is an injected capability (`EmbeddingModel`) so
tests can run with deterministic fakes and no model file.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import cv2
import numpy as np

from liveauth_types import ModelLoadFailed, RecognitionFailed

_log = logging.getLogger("DescriptorExtractor")

# Norms below this are left unnormalized to avoid dividing by ~0.
_MIN_NORM = 1e-6


class EmbeddingModel(ABC):
    """Capability: map a preprocessed image batch to a feature vector."""

    @property
    @abstractmethod
    def input_size(self) -> tuple[int, int]:
        """(height, width) expected by the model."""

    @property
    def channels_first(self) -> bool:
        """True if the model expects NCHW input instead of NHWC."""
        return False

    @abstractmethod
    def embed(self, batch: np.ndarray) -> np.ndarray:
        """Run inference on a (1, H, W, 3) or (1, 3, H, W) float32 batch."""

    def release(self) -> None:
        """Optional cleanup."""


class OnnxEmbeddingModel(EmbeddingModel):
    """Embedding model backed by an ONNX Runtime InferenceSession.

    Defaults to a MobileNet-V2 (140, 224) feature-vector export, which
    yields a 1792-d descriptor; any single-input image model works.
    Input layout and size are read from the model's first input.
    """

    def __init__(
        self,
        model_path: str,
        providers: Optional[Sequence[str]] = None,
        default_size: tuple[int, int] = (224, 224),
    ) -> None:
        if not os.path.exists(model_path):
            raise ModelLoadFailed(f"Embedding model not found: {model_path}")

        import onnxruntime as ort

        providers = list(providers or ["CPUExecutionProvider"])
        try:
            self.session = ort.InferenceSession(model_path, providers=providers)
        except Exception as e:
            raise ModelLoadFailed(f"Failed to load embedding model {model_path}: {e}") from e

        model_input = self.session.get_inputs()[0]
        self.input_name = model_input.name
        self._channels_first, self._input_size = _resolve_layout(model_input.shape, default_size)

        _log.info(
            "Embedding model loaded - path=%s input=%s layout=%s providers=%s",
            model_path, self._input_size,
            "NCHW" if self._channels_first else "NHWC",
            self.session.get_providers(),
        )

    @property
    def input_size(self) -> tuple[int, int]:
        return self._input_size

    @property
    def channels_first(self) -> bool:
        return self._channels_first

    def embed(self, batch: np.ndarray) -> np.ndarray:
        return self.session.run(None, {self.input_name: batch})[0]

    def release(self) -> None:
        self.session = None


def _resolve_layout(shape, default_size: tuple[int, int]) -> tuple[bool, tuple[int, int]]:
    """Infer (channels_first, (h, w)) from an ONNX input shape.

    Dynamic dimensions come through as strings or None and fall back
    to `default_size`.
    """
    dims = list(shape) if shape is not None else []
    if len(dims) != 4:
        return False, default_size

    def _static(d) -> Optional[int]:
        return d if isinstance(d, int) and d > 0 else None

    if _static(dims[1]) == 3:
        h, w = _static(dims[2]), _static(dims[3])
        channels_first = True
    else:
        h, w = _static(dims[1]), _static(dims[2])
        channels_first = False

    if h is None or w is None:
        return channels_first, default_size
    return channels_first, (h, w)


def preprocess_frame(
    frame: np.ndarray,
    input_size: tuple[int, int],
    channels_first: bool = False,
) -> np.ndarray:
    """Resize and normalize a BGR frame into a single-image float32 batch.

    NORMALIZATION: MobileNet standard, pixel / 127.5 - 1.0
    This maps [0, 255] -> [-1.0, +1.0]
    """
    if frame is None or frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError("expected a BGR frame of shape (H, W, 3)")

    height, width = input_size
    rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
    resized = cv2.resize(rgb, (width, height), interpolation=cv2.INTER_LINEAR)
    normalized = resized.astype(np.float32) / 127.5 - 1.0
    if channels_first:
        normalized = np.transpose(normalized, (2, 0, 1))
    return np.expand_dims(normalized, axis=0).astype(np.float32)


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Scale to unit norm, unless the norm is too small to divide by."""
    norm = float(np.linalg.norm(vector))
    if norm > _MIN_NORM:
        return vector / norm
    return vector


class DescriptorExtractor:
    """Produces the biometric descriptor once all challenges have passed."""

    def __init__(self, model: EmbeddingModel) -> None:
        self.model = model

    def extract(self, frame: np.ndarray) -> list[float]:
        """Compute a normalized descriptor for `frame`.

        Raises:
            RecognitionFailed: on any preprocessing or inference error.
        """
        try:
            batch = preprocess_frame(frame, self.model.input_size, self.model.channels_first)
            raw = np.asarray(self.model.embed(batch), dtype=np.float64).reshape(-1)
        except RecognitionFailed:
            raise
        except Exception as e:
            _log.error("Face recognition failed: %s", e)
            raise RecognitionFailed(f"Face recognition failed: {e}") from e

        if raw.size == 0 or not np.all(np.isfinite(raw)):
            raise RecognitionFailed("Embedding model returned an empty or non-finite vector")

        descriptor = l2_normalize(raw)
        _log.debug("Descriptor extracted - dim=%d", descriptor.size)
        return descriptor.astype(float).tolist()
