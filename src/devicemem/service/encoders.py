from __future__ import annotations

import hashlib
from typing import Any, Protocol

import numpy as np

HASH_MODEL_ID = "hash"


class Encoder(Protocol):
    def encode(self, texts: list[str]) -> np.ndarray:
        ...


class ModelLoader(Protocol):
    def load(self, model_id: str, device: str) -> Encoder:
        ...


class SentenceTransformerEncoder:
    def __init__(self, model: Any) -> None:
        self.model = model

    def encode(self, texts: list[str]) -> np.ndarray:
        vectors = self.model.encode(
            list(texts),
            batch_size=max(1, len(texts)),
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vectors, dtype=np.float32)


class SentenceTransformerLoader:
    def load(self, model_id: str, device: str) -> SentenceTransformerEncoder:
        from sentence_transformers import SentenceTransformer

        return SentenceTransformerEncoder(SentenceTransformer(model_id, device=device))


class HashEncoder:
    """Deterministic token-hash embeddings for offline hosts and tests."""

    def __init__(self, dim: int = 768) -> None:
        self.dim = max(8, int(dim))

    def embed(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dim, dtype=np.float32)
        normalized = text.strip().lower()
        if not normalized:
            return vector
        for token in normalized.split():
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            idx = int.from_bytes(digest[:4], "big") % self.dim
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vector[idx] += sign
        norm = float(np.linalg.norm(vector))
        if norm == 0:
            return vector
        return vector / norm

    def encode(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dim), dtype=np.float32)
        return np.vstack([self.embed(t) for t in texts]).astype(np.float32)


class HashEncoderLoader:
    def __init__(self, dim: int = 768) -> None:
        self.dim = dim

    def load(self, model_id: str, device: str) -> HashEncoder:
        return HashEncoder(self.dim)


def build_loader(model_id: str, dim: int) -> ModelLoader:
    if str(model_id).strip().lower() == HASH_MODEL_ID:
        return HashEncoderLoader(dim)
    return SentenceTransformerLoader()
