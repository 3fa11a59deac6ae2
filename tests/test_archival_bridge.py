from __future__ import annotations

import unittest
from typing import Any

import numpy as np

from devicemem.domain.errors import AuthRequiredError, ConfigurationError, TransientIOError
from devicemem.domain.models import ConversationTurn, SearchHit, SearchSource
from devicemem.service.archival_bridge import ArchivalBridge, archive_text
from devicemem.service.auth import StaticAuthProvider


class _FakeClient:
    def __init__(self, hits: list[SearchHit] | None = None) -> None:
        self.hits = hits or []
        self.stored: list[tuple[str, str, list[str]]] = []
        self.rows: list[dict[str, Any]] = []

    async def embed_query(self, text: str) -> np.ndarray:
        return np.asarray([1.0, 0.0, 0.0, 0.0], dtype=np.float32)

    async def search(self, owner_id, vector, k, query_text=""):
        return list(self.hits[:k])

    async def store_chunks(self, owner_id, source_name, texts):
        self.stored.append((owner_id, source_name, list(texts)))
        return {"stored": len(texts), "chunk_count": len(texts)}

    async def completed_chunks(self, owner_id):
        return list(self.rows)


class _FakeRemote:
    def __init__(self, records: list[dict[str, Any]] | None = None, fail: bool = False) -> None:
        self.records = records or []
        self.fail = fail
        self.batches: list[list[dict[str, Any]]] = []

    def upsert_batch(self, owner_id: str, records: list[dict[str, Any]]) -> int:
        self.batches.append(records)
        return len(records)

    def recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        if self.fail:
            raise TransientIOError("remote store unreachable")
        return self.records[:limit]


def _turn(turn_id: str, role: str, content: str) -> ConversationTurn:
    return ConversationTurn(
        id=turn_id, role=role, content=content, created_at=1, token_count=10
    )


def _hit(text: str, score: float) -> SearchHit:
    return SearchHit(text=text, score=score, source=SearchSource.INDEX)


class ArchiveTests(unittest.IsolatedAsyncioTestCase):
    async def test_nothing_to_archive_writes_nothing(self) -> None:
        client = _FakeClient()
        bridge = ArchivalBridge(client, StaticAuthProvider("u1"))
        self.assertEqual(0, await bridge.archive([]))
        self.assertEqual([], client.stored)

    async def test_turns_are_stored_under_conversation_source(self) -> None:
        client = _FakeClient()
        bridge = ArchivalBridge(client, StaticAuthProvider("u1"))
        turns = [_turn("t1", "user", "hello"), _turn("t2", "assistant", "hi there")]
        self.assertEqual(1, await bridge.archive(turns))
        owner, source, texts = client.stored[0]
        self.assertEqual("u1", owner)
        self.assertEqual("conversation:t1", source)
        self.assertEqual(["[user] hello\n\n[assistant] hi there"], texts)

    async def test_long_archives_are_split(self) -> None:
        client = _FakeClient()
        bridge = ArchivalBridge(
            client, StaticAuthProvider("u1"), archive_chunk_chars=100, archive_overlap_chars=10
        )
        await bridge.archive([_turn("t1", "user", "word " * 100)])
        texts = client.stored[0][2]
        self.assertGreater(len(texts), 1)
        self.assertTrue(all(len(t) <= 100 for t in texts))

    async def test_archive_requires_sign_in(self) -> None:
        bridge = ArchivalBridge(_FakeClient(), StaticAuthProvider(None))
        with self.assertRaises(AuthRequiredError):
            await bridge.archive([_turn("t1", "user", "hello")])

    def test_archive_text_labels_roles(self) -> None:
        self.assertEqual(
            "[user] a\n\n[assistant] b",
            archive_text([_turn("1", "user", "a"), _turn("2", "assistant", "b")]),
        )


class RelevantContextTests(unittest.IsolatedAsyncioTestCase):
    def _bridge(self, hits: list[SearchHit], **kwargs) -> ArchivalBridge:
        return ArchivalBridge(_FakeClient(hits), StaticAuthProvider("u1"), **kwargs)

    async def test_context_keeps_hits_above_threshold(self) -> None:
        bridge = self._bridge([_hit("Alpha fact", 0.9), _hit("Beta fact", 0.5), _hit("Gamma fact", 0.2)])
        context = await bridge.get_relevant_context("zzz")
        self.assertEqual("Alpha fact\n\n---\n\nBeta fact", context)

    async def test_context_respects_token_budget(self) -> None:
        bridge = self._bridge([_hit("Alpha fact", 0.9), _hit("Beta fact", 0.5)])
        self.assertEqual("Alpha fact", await bridge.get_relevant_context("zzz", max_tokens=4))

    async def test_no_relevant_hits_gives_none(self) -> None:
        bridge = self._bridge([_hit("Gamma fact", 0.3), _hit("Delta fact", 0.1)])
        self.assertIsNone(await bridge.get_relevant_context("zzz"))

    async def test_keyword_matches_are_boosted(self) -> None:
        bridge = self._bridge([_hit("plain", 0.5), _hit("garden notes", 0.4)])
        hits = await bridge.search_context("garden")
        self.assertEqual(["garden notes", "plain"], [h.text for h in hits])
        self.assertAlmostEqual(0.55, hits[0].score, places=5)

    async def test_search_requires_sign_in(self) -> None:
        bridge = ArchivalBridge(_FakeClient(), StaticAuthProvider(""))
        with self.assertRaises(AuthRequiredError):
            await bridge.search_context("anything")


class RemoteFallbackTests(unittest.IsolatedAsyncioTestCase):
    _RECORDS = [
        {"text": "apple pie", "embedding": [1.0, 0.0, 0.0, 0.0], "source_name": "a"},
        {"text": "banana", "embedding": [0.8, 0.6, 0.0, 0.0], "source_name": "b"},
        {"text": "carrot soup", "embedding": [0.0, 1.0, 0.0, 0.0], "source_name": "c"},
        {"text": "zucchini recipe", "embedding": [0.0, 0.0, 1.0, 0.0], "source_name": "d"},
        {"text": "broken", "embedding": [1.0, 0.0], "source_name": "e"},
    ]

    async def test_empty_local_results_fall_back_to_remote(self) -> None:
        bridge = ArchivalBridge(
            _FakeClient([]), StaticAuthProvider("u1"), remote=_FakeRemote(self._RECORDS)
        )
        hits = await bridge.search_context("recipe ideas", top_k=2)
        self.assertEqual(["apple pie", "banana", "zucchini recipe"], [h.text for h in hits])
        self.assertTrue(all(h.source == SearchSource.REMOTE for h in hits))

    async def test_remote_failure_yields_no_hits(self) -> None:
        bridge = ArchivalBridge(
            _FakeClient([]), StaticAuthProvider("u1"), remote=_FakeRemote(fail=True)
        )
        self.assertEqual([], await bridge.search_context("anything"))

    async def test_local_hits_skip_remote(self) -> None:
        remote = _FakeRemote(self._RECORDS)
        bridge = ArchivalBridge(_FakeClient([_hit("local", 0.9)]), StaticAuthProvider("u1"), remote=remote)
        hits = await bridge.search_context("anything")
        self.assertEqual(["local"], [h.text for h in hits])


class UploadTests(unittest.IsolatedAsyncioTestCase):
    def _rows(self, count: int) -> list[dict[str, Any]]:
        return [
            {
                "source_name": "doc",
                "chunk_index": i,
                "text": f"chunk {i}",
                "embedding": [0.0, 0.0, 0.0, 1.0],
                "created_at": 1,
            }
            for i in range(count)
        ]

    async def test_upload_in_batches_with_progress(self) -> None:
        client = _FakeClient()
        client.rows = self._rows(5)
        remote = _FakeRemote()
        bridge = ArchivalBridge(
            client, StaticAuthProvider("u1"), remote=remote, remote_batch_size=2
        )
        progress: list[tuple[int, int]] = []
        result = await bridge.upload_completed(lambda done, total: progress.append((done, total)))
        self.assertEqual({"uploaded": 5, "batches": 3, "total": 5}, result)
        self.assertEqual([2, 2, 1], [len(b) for b in remote.batches])
        self.assertEqual([(2, 5), (4, 5), (5, 5)], progress)
        self.assertEqual("u1::doc::0", remote.batches[0][0]["key"])

    async def test_upload_without_remote_is_a_configuration_error(self) -> None:
        bridge = ArchivalBridge(_FakeClient(), StaticAuthProvider("u1"))
        with self.assertRaises(ConfigurationError):
            await bridge.upload_completed()
