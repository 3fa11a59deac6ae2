from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path

from devicemem.domain.embedding import encode_embedding
from devicemem.domain.errors import EmbeddingShapeError
from devicemem.domain.models import Chunk, ChunkStatus, SearchSource
from devicemem.infra.kv.chunk_mirror import ChunkMirror, mirror_key
from devicemem.infra.vector.chunk_store import Durability, LocalVectorStore, StoreState
from devicemem.infra.vector.lancedb_index import LanceSimilarityIndex

_VECTORS = {
    "alpha beta": [1.0, 0.0, 0.0, 0.0],
    "gamma": [0.6, 0.8, 0.0, 0.0],
    "delta": [0.0, 1.0, 0.0, 0.0],
}


class _FailingIndex(LanceSimilarityIndex):
    """Accepts writes, raises on every query."""

    def __init__(self) -> None:
        super().__init__(None, 4)
        self.available = True
        self.search_calls = 0

    def upsert(self, chunk_id, owner_id, vector) -> bool:
        return True

    def delete_ids(self, chunk_ids) -> None:
        return None

    def search(self, owner_id, vector, k):
        self.search_calls += 1
        raise RuntimeError("corrupt fragment")


class LocalVectorStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.events: list[tuple[str, dict]] = []
        self.store = self._store("durable")

    async def asyncTearDown(self) -> None:
        await self.store.close()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _store(self, durability: str, db_path: Path | None = None) -> LocalVectorStore:
        return LocalVectorStore(
            vector_dim=4,
            chunks_db_path=db_path or self.root / "chunks.db",
            lancedb_dir=self.root / "lancedb",
            mirror_dir=self.root / "mirror",
            durability=durability,
            index_enabled=False,
            on_event=lambda kind, data: self.events.append((kind, data)),
        )

    def _mirror_keys(self) -> set[str]:
        return {
            mirror_key(c.owner_id, c.source_name, c.chunk_index)
            for c in ChunkMirror(self.root / "mirror").scan()
        }

    async def _ingest(self, store: LocalVectorStore, owner: str = "u1") -> list[Chunk]:
        rows = await store.prepare_source(owner, "doc", list(_VECTORS))
        for row in rows:
            self.assertTrue(await store.complete_chunk(row, _VECTORS[row.text]))
        return rows

    async def test_lifecycle_states(self) -> None:
        self.assertEqual(StoreState.UNINITIALIZED, self.store.state)
        first, second = await asyncio.gather(self.store.ensure_ready(), self.store.ensure_ready())
        self.assertIs(first, second)
        self.assertEqual(StoreState.READY, self.store.state)
        self.assertEqual(Durability.DURABLE, self.store.durability)
        self.assertFalse(self.store.index_available)
        self.assertIn("rehydrated", [kind for kind, _ in self.events])

    async def test_scan_search_orders_by_similarity(self) -> None:
        await self._ingest(self.store)
        hits = await self.store.search("u1", [1.0, 0.0, 0.0, 0.0], 3)
        self.assertEqual(["alpha beta", "gamma", "delta"], [h.text for h in hits])
        self.assertAlmostEqual(1.0, hits[0].score, places=5)
        self.assertAlmostEqual(0.6, hits[1].score, places=5)
        self.assertTrue(all(h.source == SearchSource.SCAN for h in hits))

    async def test_scan_search_adds_keyword_bonus(self) -> None:
        await self._ingest(self.store)
        hits = await self.store.search("u1", [1.0, 0.0, 0.0, 0.0], 3, query_text="delta")
        by_text = {h.text: h.score for h in hits}
        self.assertAlmostEqual(0.15, by_text["delta"], places=5)

    async def test_search_respects_k_and_owner(self) -> None:
        await self._ingest(self.store)
        self.assertEqual(1, len(await self.store.search("u1", [1, 0, 0, 0], 1)))
        self.assertEqual([], await self.store.search("nobody", [1, 0, 0, 0], 5))

    async def test_search_rejects_wrong_query_shape(self) -> None:
        with self.assertRaises(EmbeddingShapeError):
            await self.store.search("u1", [1.0, 0.0], 3)

    async def test_reingest_is_idempotent(self) -> None:
        await self._ingest(self.store)
        await self._ingest(self.store)
        chunks = await self.store.list_chunks("u1")
        self.assertEqual(3, len(chunks))
        self.assertEqual([0, 1, 2], [c.chunk_index for c in chunks])

    async def test_shorter_reingest_drops_tail_rows(self) -> None:
        await self._ingest(self.store)
        rows = await self.store.prepare_source("u1", "doc", ["alpha beta"])
        await self.store.complete_chunk(rows[0], _VECTORS["alpha beta"])
        self.assertEqual(1, len(await self.store.list_chunks("u1")))
        self.assertNotIn(mirror_key("u1", "doc", 2), self._mirror_keys())

    async def test_corrupt_row_is_skipped_by_search(self) -> None:
        rows = await self._ingest(self.store)
        self.store._repo.mark_completed(rows[1].id, b"\x00" * 5)
        hits = await self.store.search("u1", [1.0, 0.0, 0.0, 0.0], 5)
        self.assertEqual(["alpha beta", "delta"], [h.text for h in hits])
        self.assertEqual(3, len(await self.store.list_chunks("u1")))

    async def test_bad_vector_completes_row_without_embedding(self) -> None:
        rows = await self.store.prepare_source("u1", "doc", ["only"])
        ok = await self.store.complete_chunk(rows[0], [1.0, float("nan"), 0.0, 0.0])
        self.assertFalse(ok)
        completed = await self.store.list_chunks("u1", ChunkStatus.COMPLETED)
        self.assertEqual(1, len(completed))
        self.assertIsNone(completed[0].embedding)
        self.assertEqual([], await self.store.search("u1", [1, 0, 0, 0], 5))

    async def test_pending_rows_are_not_searchable(self) -> None:
        await self.store.prepare_source("u1", "doc", ["waiting"])
        self.assertEqual([], await self.store.search("u1", [1, 0, 0, 0], 5))
        pending = await self.store.list_chunks("u1", ChunkStatus.PENDING)
        self.assertEqual(["waiting"], [c.text for c in pending])

    async def test_upsert_chunk_with_invalid_blob_keeps_row(self) -> None:
        row = await self.store.upsert_chunk(
            Chunk(
                owner_id="u1",
                source_name="manual",
                chunk_index=0,
                text="hand made",
                embedding=b"\x01\x02",
                status=ChunkStatus.COMPLETED,
            )
        )
        self.assertIsNone(row.embedding)
        good = await self.store.upsert_chunk(
            Chunk(
                owner_id="u1",
                source_name="manual",
                chunk_index=1,
                text="hand made too",
                embedding=encode_embedding([0, 0, 1, 0], 4),
                status=ChunkStatus.COMPLETED,
            )
        )
        hits = await self.store.search("u1", [0, 0, 1, 0], 5)
        self.assertEqual([good.id], [h.chunk_id for h in hits])

    async def test_stats_count_rows_and_bytes(self) -> None:
        await self._ingest(self.store)
        stats = await self.store.stats("u1")
        text_bytes = sum(len(t.encode("utf-8")) for t in _VECTORS)
        self.assertEqual(3, stats.chunk_count)
        self.assertEqual(text_bytes + 3 * 16, stats.total_bytes)

    async def test_mirror_uses_owner_source_index_keys(self) -> None:
        await self._ingest(self.store)
        self.assertIn("u1::doc::1", self._mirror_keys())
        mirror = ChunkMirror(self.root / "mirror")
        restored = [c for c in mirror.get_all_by_owner("u1") if c.chunk_index == 1][0]
        self.assertEqual("gamma", restored.text)
        self.assertEqual(16, len(restored.embedding))

    async def test_memory_store_rehydrates_from_mirror(self) -> None:
        await self._ingest(self.store)
        await self.store.close()

        fresh = self._store("memory")
        try:
            report = await fresh.ensure_ready()
            self.assertEqual(Durability.MEMORY, fresh.durability)
            self.assertEqual(3, report.scanned)
            self.assertEqual(3, report.restored)
            hits = await fresh.search("u1", [0.0, 1.0, 0.0, 0.0], 1)
            self.assertEqual("delta", hits[0].text)
        finally:
            await fresh.close()

    async def test_durable_reopen_finds_rows_unchanged(self) -> None:
        await self._ingest(self.store)
        await self.store.close()

        reopened = self._store("durable")
        try:
            report = await reopened.ensure_ready()
            self.assertEqual(3, report.unchanged)
            self.assertEqual(0, report.restored)
        finally:
            await reopened.close()

    async def test_delete_owner_clears_rows_and_mirror(self) -> None:
        await self._ingest(self.store, owner="u1")
        await self._ingest(self.store, owner="u2")
        self.assertEqual(3, await self.store.delete_owner("u1"))
        self.assertEqual([], await self.store.search("u1", [1, 0, 0, 0], 5))
        self.assertEqual(3, len(await self.store.search("u2", [1, 0, 0, 0], 5)))
        mirror = ChunkMirror(self.root / "mirror")
        self.assertEqual([], mirror.get_all_by_owner("u1"))
        self.assertEqual(3, len(mirror.get_all_by_owner("u2")))

    async def test_auto_durability_falls_back_to_memory(self) -> None:
        blocker = self.root / "not-a-dir"
        blocker.write_text("x", encoding="utf-8")
        store = self._store("auto", db_path=blocker / "chunks.db")
        try:
            await store.ensure_ready()
            self.assertEqual(Durability.MEMORY, store.durability)
            self.assertTrue(store.durability_reason)
            self.assertIn("durability_fallback", [kind for kind, _ in self.events])
            rows = await store.prepare_source("u1", "doc", ["kept in memory"])
            self.assertTrue(await store.complete_chunk(rows[0], [1, 0, 0, 0]))
        finally:
            await store.close()

    async def test_debug_state_reports_store_shape(self) -> None:
        await self._ingest(self.store)
        state = await self.store.debug_state("u1")
        self.assertEqual("ready", state["state"])
        self.assertEqual("durable", state["durability"])
        self.assertEqual({"completed": 3}, state["status_counts"])
        self.assertEqual(3, state["mirror"]["records"])

    async def test_rejected_reingest_does_not_resurrect_old_text(self) -> None:
        rows = await self.store.prepare_source("u1", "doc", ["old text"])
        self.assertTrue(await self.store.complete_chunk(rows[0], [1.0, 0.0, 0.0, 0.0]))
        rows = await self.store.prepare_source("u1", "doc", ["new text"])
        self.assertFalse(await self.store.complete_chunk(rows[0], [1.0, 2.0, 3.0]))
        self.assertEqual(set(), self._mirror_keys())
        await self.store.close()

        reopened = self._store("durable")
        try:
            report = await reopened.ensure_ready()
            self.assertEqual(0, report.scanned)
            chunks = await reopened.list_chunks("u1")
            self.assertEqual(["new text"], [c.text for c in chunks])
            self.assertIsNone(chunks[0].embedding)
        finally:
            await reopened.close()

    async def test_reset_to_pending_drops_mirror_record(self) -> None:
        await self._ingest(self.store)
        await self.store.prepare_source("u1", "doc", list(_VECTORS))
        self.assertEqual(set(), self._mirror_keys())
        pending = await self.store.list_chunks("u1", ChunkStatus.PENDING)
        self.assertEqual(3, len(pending))

    async def test_query_failure_disables_index_and_falls_back_to_scan(self) -> None:
        await self.store.ensure_ready()
        failing = _FailingIndex()
        self.store._index = failing
        await self._ingest(self.store)
        self.assertTrue(self.store.index_available)

        hits = await self.store.search("u1", [1.0, 0.0, 0.0, 0.0], 3)
        self.assertEqual(["alpha beta", "gamma", "delta"], [h.text for h in hits])
        self.assertTrue(all(h.source == SearchSource.SCAN for h in hits))
        scores = [h.score for h in hits]
        self.assertEqual(sorted(scores, reverse=True), scores)
        self.assertFalse(self.store.index_available)
        reasons = [d["reason"] for kind, d in self.events if kind == "index_unavailable"]
        self.assertIn("corrupt fragment", reasons[-1])

        await self.store.search("u1", [0.0, 1.0, 0.0, 0.0], 3)
        self.assertEqual(1, failing.search_calls)
