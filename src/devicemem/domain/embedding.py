from __future__ import annotations

from typing import Any

import numpy as np

from devicemem.domain.errors import EmbeddingShapeError

FLOAT32 = np.dtype("<f4")


def as_vector(values: Any, dim: int) -> np.ndarray:
    if values is None:
        raise EmbeddingShapeError("embedding is missing")
    vector = np.asarray(values, dtype=FLOAT32).reshape(-1)
    if vector.shape[0] != dim:
        raise EmbeddingShapeError(
            f"embedding has {vector.shape[0]} components, expected {dim}"
        )
    if not np.all(np.isfinite(vector)):
        raise EmbeddingShapeError("embedding contains non-finite components")
    return vector


def encode_embedding(values: Any, dim: int) -> bytes:
    return as_vector(values, dim).tobytes()


def decode_embedding(blob: bytes | None, dim: int) -> np.ndarray:
    if blob is None:
        raise EmbeddingShapeError("embedding is missing")
    expected = dim * FLOAT32.itemsize
    if len(blob) != expected:
        raise EmbeddingShapeError(
            f"embedding blob is {len(blob)} bytes, expected {expected}"
        )
    return np.frombuffer(blob, dtype=FLOAT32).copy()


def is_valid_blob(blob: bytes | None, dim: int) -> bool:
    return blob is not None and len(blob) == dim * FLOAT32.itemsize


def dot(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b))
