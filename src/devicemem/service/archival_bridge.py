from __future__ import annotations

import inspect
import logging
from typing import Any, Callable

import anyio
import numpy as np

from devicemem.domain.embedding import as_vector, dot
from devicemem.domain.errors import ConfigurationError, EmbeddingShapeError, TransientIOError
from devicemem.domain.models import (
    ChunkStatus,
    ConversationTurn,
    SearchHit,
    SearchSource,
    VectorIndexMeta,
)
from devicemem.domain.retrieval.ranking import (
    assemble_context,
    keyword_hits,
    query_terms,
    rerank_lexical,
)
from devicemem.domain.text.segmenter import chunk_fixed
from devicemem.domain.text.tokens import tokens_to_chars
from devicemem.infra.remote.document_store import RemoteDocumentStore
from devicemem.service.auth import AuthProvider, require_owner
from devicemem.worker.client import WorkerClient

logger = logging.getLogger(__name__)

REMOTE_MUST_INCLUDE = 2


def archive_text(turns: list[ConversationTurn]) -> str:
    return "\n\n".join(f"[{t.role}] {t.content}" for t in turns)


class ArchivalBridge:
    def __init__(
        self,
        client: WorkerClient,
        auth: AuthProvider,
        *,
        remote: RemoteDocumentStore | None = None,
        archive_chunk_chars: int = 1750,
        archive_overlap_chars: int = 175,
        top_k: int = 10,
        min_score: float = 0.3,
        max_context_tokens: int = 4000,
        chars_per_token: float = 3.5,
        lexical_bonus: float = 0.15,
        remote_read_limit: int = 100,
        remote_batch_size: int = 400,
    ) -> None:
        self.client = client
        self.auth = auth
        self.remote = remote
        self.archive_chunk_chars = int(archive_chunk_chars)
        self.archive_overlap_chars = int(archive_overlap_chars)
        self.top_k = int(top_k)
        self.min_score = float(min_score)
        self.max_context_tokens = int(max_context_tokens)
        self.chars_per_token = float(chars_per_token)
        self.lexical_bonus = float(lexical_bonus)
        self.remote_read_limit = int(remote_read_limit)
        self.remote_batch_size = int(remote_batch_size)

    async def archive(self, turns: list[ConversationTurn]) -> int:
        if not turns:
            return 0
        owner_id = require_owner(self.auth)
        chunks = chunk_fixed(
            archive_text(turns), self.archive_chunk_chars, self.archive_overlap_chars
        )
        if not chunks:
            return 0
        source_name = f"conversation:{turns[0].id}"
        result = await self.client.store_chunks(owner_id, source_name, chunks)
        stored = int(result.get("stored", 0))
        logger.info(
            "archived %s turns as %s chunks (%s stored) under %s",
            len(turns),
            len(chunks),
            stored,
            source_name,
        )
        return stored

    async def search_context(self, query: str, top_k: int | None = None) -> list[SearchHit]:
        owner_id = require_owner(self.auth)
        k = max(1, int(top_k or self.top_k))
        vector = await self.client.embed_query(query)
        hits = await self.client.search(owner_id, vector, k, query)
        if not hits and self.remote is not None:
            hits = await self._search_remote(owner_id, vector, query, k)
        return rerank_lexical(hits, query, self.lexical_bonus)

    async def get_relevant_context(
        self, query: str, max_tokens: int | None = None
    ) -> str | None:
        budget = int(max_tokens or self.max_context_tokens)
        hits = await self.search_context(query, self.top_k)
        return assemble_context(
            hits,
            min_score=self.min_score,
            max_chars=tokens_to_chars(budget, self.chars_per_token),
        )

    async def list_chunks(self, status: ChunkStatus | None = None) -> list[dict[str, Any]]:
        return await self.client.list_chunks(require_owner(self.auth), status)

    async def stats(self) -> VectorIndexMeta:
        return await self.client.local_stats(require_owner(self.auth))

    async def clear_owner(self) -> int:
        return await self.client.clear_owner(require_owner(self.auth))

    async def upload_completed(
        self, on_progress: Callable[[int, int], Any] | None = None
    ) -> dict[str, int]:
        owner_id = require_owner(self.auth)
        if self.remote is None:
            raise ConfigurationError("Set DEVICEMEM_REMOTE_STORE_URL to enable uploads.")
        rows = await self.client.completed_chunks(owner_id)
        total = len(rows)
        uploaded = 0
        batches = 0
        for start in range(0, total, self.remote_batch_size):
            batch = [
                {
                    "key": f"{owner_id}::{row['source_name']}::{row['chunk_index']}",
                    "source_name": row["source_name"],
                    "chunk_index": row["chunk_index"],
                    "text": row["text"],
                    "embedding": row["embedding"],
                    "created_at": row["created_at"],
                    "status": ChunkStatus.COMPLETED.value,
                }
                for row in rows[start : start + self.remote_batch_size]
            ]
            uploaded += await anyio.to_thread.run_sync(
                self.remote.upsert_batch, owner_id, batch
            )
            batches += 1
            if on_progress is not None:
                result = on_progress(min(total, start + len(batch)), total)
                if inspect.isawaitable(result):
                    await result
        logger.info("uploaded %s chunks in %s batches for owner=%s", uploaded, batches, owner_id)
        return {"uploaded": uploaded, "batches": batches, "total": total}

    async def _search_remote(
        self, owner_id: str, vector: np.ndarray, query: str, k: int
    ) -> list[SearchHit]:
        try:
            records = await anyio.to_thread.run_sync(
                self.remote.recent, owner_id, self.remote_read_limit
            )
        except TransientIOError as exc:
            logger.warning("remote fallback search failed for owner=%s: %s", owner_id, exc)
            return []
        dim = int(vector.shape[0])
        scored: list[SearchHit] = []
        for record in records:
            try:
                embedding = as_vector(record.get("embedding"), dim)
            except (EmbeddingShapeError, TypeError, ValueError):
                continue
            scored.append(
                SearchHit(
                    text=str(record.get("text", "")),
                    score=dot(vector, embedding),
                    source=SearchSource.REMOTE,
                    source_name=str(record.get("source_name", "")),
                    chunk_index=int(record.get("chunk_index") or 0),
                )
            )
        scored.sort(key=lambda h: h.score, reverse=True)
        terms = query_terms(query)
        top = scored[:k]
        extras = [h for h in scored[k:] if keyword_hits(h.text, terms) > 0]
        return top + extras[:REMOTE_MUST_INCLUDE]
