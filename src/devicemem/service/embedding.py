from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable

import anyio
import numpy as np

from devicemem.domain.embedding import as_vector
from devicemem.domain.errors import EmbeddingShapeError, EngineLoadError
from devicemem.infra.single_flight import SingleFlight
from devicemem.service.backend_probe import BackendDecision
from devicemem.service.encoders import Encoder, ModelLoader
from devicemem.service.telemetry import estimate_model_bytes

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], "Awaitable[None] | None"]
BatchCallback = Callable[[int, list["np.ndarray | None"]], "Awaitable[None] | None"]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


def initial_batch_size(accelerated: bool, total: int, max_size: int = 16) -> int:
    if not accelerated:
        return 1
    if total >= 32:
        size = 16
    elif total >= 16:
        size = 8
    elif total >= 8:
        size = 4
    else:
        size = 2
    return max(1, min(size, max_size))


class BatchTuner:
    """Hill-climbing batch size driven by per-item latency."""

    GROW_THRESHOLD = 0.9
    SHRINK_THRESHOLD = 1.25

    def __init__(self, *, accelerated: bool, total: int, max_size: int = 16) -> None:
        self.accelerated = bool(accelerated)
        self.max_size = max(1, int(max_size))
        self.size = initial_batch_size(self.accelerated, total, self.max_size)
        self._prev_ms_per_item: float | None = None

    def record(self, batch_len: int, elapsed_ms: float, remaining: int) -> int:
        if not self.accelerated or batch_len <= 0:
            return self.size
        per_item = float(elapsed_ms) / float(batch_len)
        prev = self._prev_ms_per_item
        if prev is not None:
            if (
                per_item < prev * self.GROW_THRESHOLD
                and self.size < self.max_size
                and remaining >= self.size * 2
            ):
                self.size = min(self.max_size, self.size * 2)
            elif per_item > prev * self.SHRINK_THRESHOLD:
                self.size = max(1, self.size // 2)
        self._prev_ms_per_item = per_item
        return self.size


class EmbeddingService:
    def __init__(
        self,
        *,
        model_id: str,
        dim: int,
        loader: ModelLoader,
        probe: Callable[[], BackendDecision],
        concurrency: int = 2,
        batch_size_max: int = 16,
    ) -> None:
        self.model_id = model_id
        self.dim = int(dim)
        self.concurrency = max(1, int(concurrency))
        self.batch_size_max = max(1, int(batch_size_max))
        self.model_bytes: int | None = None
        self._loader = loader
        self._probe = probe
        self._decision: BackendDecision | None = None
        self._load_flight: SingleFlight[Encoder] = SingleFlight(self._load)

    @property
    def loaded(self) -> bool:
        return self._load_flight.ready

    def backend(self) -> BackendDecision:
        if self._decision is None:
            self._decision = self._probe()
            logger.info(
                "embedding backend: %s on %s (%s)",
                self._decision.backend,
                self._decision.device,
                self._decision.reason,
            )
        return self._decision

    async def preload(self) -> BackendDecision:
        await self._load_flight.get()
        return self.backend()

    async def embed(self, text: str) -> np.ndarray:
        encoder = await self._load_flight.get()
        vectors = await anyio.to_thread.run_sync(encoder.encode, [text])
        return as_vector(vectors[0], self.dim)

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        encoder = await self._load_flight.get()
        vectors = await anyio.to_thread.run_sync(encoder.encode, list(texts))
        if len(vectors) != len(texts):
            raise EmbeddingShapeError(
                f"encoder returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return [as_vector(v, self.dim) for v in vectors]

    async def embed_many(
        self, texts: list[str], on_progress: ProgressCallback | None = None
    ) -> list[np.ndarray | None]:
        """Embed one text at a time; positions of unusable vectors hold ``None``."""
        total = len(texts)
        results: list[np.ndarray | None] = [None] * total
        cursor = 0
        completed = 0

        async def worker() -> None:
            nonlocal cursor, completed
            while cursor < total:
                idx = cursor
                cursor += 1
                try:
                    results[idx] = await self.embed(texts[idx])
                except EmbeddingShapeError as exc:
                    logger.warning(
                        "embedding %s of %s rejected (%s chars): %s",
                        idx,
                        total,
                        len(texts[idx]),
                        exc,
                    )
                completed += 1
                if on_progress is not None:
                    await _maybe_await(on_progress(completed, total))
                await asyncio.sleep(0)

        await asyncio.gather(*(worker() for _ in range(min(self.concurrency, total))))
        return results

    async def embed_adaptive(
        self, texts: list[str], on_batch: BatchCallback | None = None
    ) -> list[np.ndarray | None]:
        """Embed in tuned batches. Items with an unusable vector come back as ``None``."""
        decision = self.backend()
        encoder = await self._load_flight.get()
        tuner = BatchTuner(
            accelerated=decision.accelerated,
            total=len(texts),
            max_size=self.batch_size_max,
        )
        out: list[np.ndarray | None] = []
        start = 0
        while start < len(texts):
            batch = texts[start : start + tuner.size]
            began = time.perf_counter()
            vectors = await anyio.to_thread.run_sync(encoder.encode, batch)
            elapsed_ms = (time.perf_counter() - began) * 1000.0
            checked = [self._checked(vectors, i) for i in range(len(batch))]
            out.extend(checked)
            if on_batch is not None:
                await _maybe_await(on_batch(start, checked))
            start += len(batch)
            tuner.record(len(batch), elapsed_ms, len(texts) - start)
            await asyncio.sleep(0)
        return out

    def _checked(self, vectors: Any, idx: int) -> np.ndarray | None:
        try:
            return as_vector(vectors[idx], self.dim)
        except (EmbeddingShapeError, IndexError, TypeError, ValueError) as exc:
            logger.warning("embedding %s rejected: %s", idx, exc)
            return None

    async def _load(self) -> Encoder:
        decision = self.backend()
        began = time.perf_counter()
        try:
            encoder = await anyio.to_thread.run_sync(
                self._loader.load, self.model_id, decision.device
            )
        except Exception as exc:
            logger.exception("failed to load embedding model %s", self.model_id)
            raise EngineLoadError() from exc
        self.model_bytes = estimate_model_bytes(getattr(encoder, "model", encoder))
        logger.info(
            "embedding model %s loaded in %.0f ms (~%.1f MB)",
            self.model_id,
            (time.perf_counter() - began) * 1000.0,
            (self.model_bytes or 0) / (1024 * 1024),
        )
        return encoder
