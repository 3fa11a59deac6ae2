from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path

import numpy as np

from devicemem.domain.errors import (
    EmbeddingShapeError,
    MemoryEngineError,
    UserInputError,
    WorkerTimeoutError,
    error_from_kind,
    error_kind,
)
from devicemem.domain.models import ChunkStatus, SearchSource
from devicemem.infra.vector.chunk_store import LocalVectorStore
from devicemem.service.backend_probe import BackendDecision
from devicemem.service.embedding import EmbeddingService
from devicemem.service.encoders import HashEncoder, HashEncoderLoader
from devicemem.worker.client import WorkerClient
from devicemem.worker.host import MemoryWorker
from devicemem.worker.protocol import EventKind, Operation

_DIM = 16


class _GlitchEncoder(HashEncoder):
    def encode(self, texts: list[str]) -> np.ndarray:
        if texts == ["glitch"]:
            return np.zeros((1, 3), dtype=np.float32)
        return super().encode(texts)


class _GlitchLoader(HashEncoderLoader):
    def load(self, model_id: str, device: str) -> HashEncoder:
        return _GlitchEncoder(self.dim)


class _SlowStatsWorker(MemoryWorker):
    async def _handle_local_stats(self, request):
        await asyncio.sleep(5)
        return {"chunk_count": 0, "total_bytes": 0}


def _client(
    root: Path,
    worker_cls: type[MemoryWorker] = MemoryWorker,
    loader: HashEncoderLoader | None = None,
) -> WorkerClient:
    store = LocalVectorStore(
        vector_dim=_DIM,
        chunks_db_path=root / "chunks.db",
        lancedb_dir=root / "lancedb",
        mirror_dir=root / "mirror",
        durability="memory",
        index_enabled=False,
    )
    embeddings = EmbeddingService(
        model_id="hash",
        dim=_DIM,
        loader=loader or HashEncoderLoader(_DIM),
        probe=lambda: BackendDecision(backend="fallback", device="cpu", reason="test"),
    )
    client = WorkerClient(worker_cls(store=store, embeddings=embeddings), timeout_sec=5)
    client.start()
    return client


class WorkerClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.client = _client(Path(self._tmp.name))

    async def asyncTearDown(self) -> None:
        self.client.stop()
        self._tmp.cleanup()

    async def test_init_reports_store_state(self) -> None:
        result = await self.client.init()
        self.assertEqual("ready", result["state"])
        self.assertEqual("memory", result["durability"])
        self.assertFalse(result["index_available"])
        kinds = [event.kind for event in self.client.recent_events]
        self.assertIn(EventKind.REHYDRATED.value, kinds)

    async def test_subscribers_receive_store_events(self) -> None:
        seen: list[str] = []
        self.client.subscribe(lambda event: seen.append(event.kind))
        await self.client.init()
        await asyncio.sleep(0.05)
        self.assertIn(EventKind.REHYDRATED.value, seen)
        self.assertIn(EventKind.INDEX_UNAVAILABLE.value, seen)

    async def test_concurrent_calls_of_same_kind_get_their_own_results(self) -> None:
        texts = ["alpha beta", "gamma delta", "epsilon", "zeta eta theta"]
        vectors = await asyncio.gather(*(self.client.embed_query(t) for t in texts))
        encoder = HashEncoder(_DIM)
        for text, vector in zip(texts, vectors):
            self.assertTrue(np.allclose(encoder.embed(text), vector), text)

    async def test_prepare_embeds_and_reports_progress(self) -> None:
        progress: list[dict] = []
        result = await self.client.prepare(
            "u1", "notes.txt", ["first chunk", "second chunk"], on_progress=progress.append
        )
        self.assertEqual(2, result["chunk_count"])
        self.assertEqual(2, result["embedded_count"])
        self.assertEqual(0, result["skipped_count"])
        self.assertEqual("fallback", result["backend"])
        self.assertEqual({"stage": "embedding", "completed": 2, "total": 2}, progress[-1])

        query = await self.client.embed_query("second chunk")
        hits = await self.client.search("u1", query, 1, "second chunk")
        self.assertEqual("second chunk", hits[0].text)
        self.assertEqual(SearchSource.SCAN, hits[0].source)

    async def test_store_chunks_replaces_source(self) -> None:
        await self.client.store_chunks("u1", "conversation:a", ["one", "two", "three"])
        result = await self.client.store_chunks("u1", "conversation:a", ["only"])
        self.assertEqual({"stored": 1, "chunk_count": 1}, result)
        rows = await self.client.list_chunks("u1", ChunkStatus.COMPLETED)
        self.assertEqual(["only"], [row["text"] for row in rows])

    async def test_completed_chunks_carry_embeddings(self) -> None:
        await self.client.store_chunks("u1", "s", ["keep me"])
        rows = await self.client.completed_chunks("u1")
        self.assertEqual(1, len(rows))
        self.assertEqual(_DIM, len(rows[0]["embedding"]))

    async def test_stats_and_clear_owner(self) -> None:
        await self.client.store_chunks("u1", "s", ["abc"])
        stats = await self.client.local_stats("u1")
        self.assertEqual(1, stats.chunk_count)
        self.assertEqual(3 + _DIM * 4, stats.total_bytes)
        self.assertEqual(1, await self.client.clear_owner("u1"))
        self.assertEqual(0, (await self.client.local_stats("u1")).chunk_count)

    async def test_debug_state_includes_embedding_details(self) -> None:
        await self.client.embed_query("warm up")
        state = await self.client.debug_state("u1")
        self.assertTrue(state["embedding"]["loaded"])
        self.assertEqual("hash", state["embedding"]["model_id"])

    async def test_worker_errors_are_rebuilt_with_their_type(self) -> None:
        with self.assertRaises(EmbeddingShapeError):
            await self.client.search("u1", np.zeros(3, dtype=np.float32), 5)

    async def test_bad_status_filter_surfaces_as_user_input_error(self) -> None:
        with self.assertRaises(UserInputError):
            await self.client.call(Operation.LIST_CHUNKS, {"owner_id": "u1", "status": "lost"})


class StoreChunksBadVectorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.client = _client(Path(self._tmp.name), loader=_GlitchLoader(_DIM))

    async def asyncTearDown(self) -> None:
        self.client.stop()
        self._tmp.cleanup()

    async def test_bad_vector_skips_only_its_chunk(self) -> None:
        result = await self.client.store_chunks(
            "u1", "conversation:a", ["first note", "glitch", "last note"]
        )
        self.assertEqual({"stored": 2, "chunk_count": 3}, result)
        rows = await self.client.list_chunks("u1", ChunkStatus.COMPLETED)
        self.assertEqual(["first note", "glitch", "last note"], [r["text"] for r in rows])
        searchable = await self.client.completed_chunks("u1")
        self.assertEqual(["first note", "last note"], [r["text"] for r in searchable])


class WorkerTimeoutTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.client = _client(Path(self._tmp.name), _SlowStatsWorker)

    async def asyncTearDown(self) -> None:
        self.client.stop()
        self._tmp.cleanup()

    async def test_unanswered_call_times_out(self) -> None:
        with self.assertRaises(WorkerTimeoutError):
            await self.client.call(Operation.LOCAL_STATS, {"owner_id": "u1"}, timeout=0.2)
        self.assertEqual({}, self.client._pending)

    async def test_other_calls_keep_working_while_one_hangs(self) -> None:
        slow = asyncio.ensure_future(self.client.local_stats("u1"))
        await asyncio.sleep(0.05)
        result = await self.client.init()
        self.assertEqual("ready", result["state"])
        slow.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await slow


class ErrorKindTests(unittest.TestCase):
    def test_kinds_round_trip(self) -> None:
        err = error_from_kind(error_kind(WorkerTimeoutError("late")), "late")
        self.assertIsInstance(err, WorkerTimeoutError)
        self.assertTrue(err.retryable)

    def test_plain_value_error_maps_to_user_input(self) -> None:
        self.assertEqual("user_input", error_kind(ValueError("nope")))

    def test_unknown_kind_falls_back_to_base_error(self) -> None:
        err = error_from_kind("mystery", "boom")
        self.assertIs(type(err), MemoryEngineError)
        self.assertEqual("boom", str(err))
