from __future__ import annotations

import logging
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import numpy as np

from devicemem.domain.embedding import (
    as_vector,
    decode_embedding,
    dot,
    encode_embedding,
    is_valid_blob,
)
from devicemem.domain.errors import EmbeddingShapeError
from devicemem.domain.models import (
    Chunk,
    ChunkStatus,
    RehydrateReport,
    SearchHit,
    SearchSource,
    VectorIndexMeta,
)
from devicemem.domain.retrieval.ranking import lexical_boost, query_terms
from devicemem.infra.kv.chunk_mirror import ChunkMirror, mirror_key
from devicemem.infra.single_flight import SingleFlight
from devicemem.infra.sqlite.chunk_repository import ChunkRepository
from devicemem.infra.sqlite.db import SQLiteEngine, probe_durable
from devicemem.infra.sqlite.init_schema import init_chunk_schema
from devicemem.infra.vector.lancedb_index import LanceSimilarityIndex

logger = logging.getLogger(__name__)

EventSink = Callable[[str, dict[str, Any]], None]


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class Durability(str, Enum):
    DURABLE = "durable"
    MEMORY = "memory"


class LocalVectorStore:
    """Chunk rows, their similarity index and the key-value mirror.

    All methods are coroutines and assume a single event loop; every public
    operation first awaits :meth:`ensure_ready`.
    """

    def __init__(
        self,
        *,
        vector_dim: int,
        chunks_db_path: Path,
        lancedb_dir: Path,
        mirror_dir: Path,
        durability: str = "auto",
        index_enabled: bool = True,
        index_metric: str = "cosine",
        index_rebuild_every: int = 256,
        lexical_bonus: float = 0.15,
        on_event: EventSink | None = None,
    ) -> None:
        self.vector_dim = int(vector_dim)
        self.chunks_db_path = Path(chunks_db_path)
        self.lancedb_dir = Path(lancedb_dir)
        self.mirror_dir = Path(mirror_dir)
        self.requested_durability = str(durability or "auto").lower()
        self.lexical_bonus = float(lexical_bonus)
        self.durability: Durability | None = None
        self.durability_reason: str | None = None
        self._index_enabled = bool(index_enabled)
        self._index_metric = index_metric
        self._index_rebuild_every = int(index_rebuild_every)
        self.on_event = on_event
        self._engine: SQLiteEngine | None = None
        self._repo: ChunkRepository | None = None
        self._index: LanceSimilarityIndex | None = None
        self._mirror: ChunkMirror | None = None
        self._init_flight: SingleFlight[None] = SingleFlight(self._initialize)
        self._rehydrate_flight: SingleFlight[RehydrateReport] = SingleFlight(
            self._rehydrate
        )

    @property
    def state(self) -> StoreState:
        if self._init_flight.ready:
            return StoreState.READY
        if self._init_flight.pending:
            return StoreState.INITIALIZING
        return StoreState.UNINITIALIZED

    @property
    def index_available(self) -> bool:
        return self._index is not None and self._index.available

    async def ensure_ready(self) -> RehydrateReport:
        await self._init_flight.get()
        return await self._rehydrate_flight.get()

    async def close(self) -> None:
        if self._index is not None:
            self._index.close()
        if self._engine is not None:
            self._engine.close()

    def disable_index(self, reason: str) -> None:
        if self._index is not None:
            self._index.disable(reason)
            self._emit("index_unavailable", {"reason": reason})

    async def upsert_chunk(self, chunk: Chunk) -> Chunk:
        await self.ensure_ready()
        if chunk.status == ChunkStatus.COMPLETED and not is_valid_blob(
            chunk.embedding, self.vector_dim
        ):
            self._log_shape("upsert_chunk", chunk, chunk.embedding)
            chunk.embedding = None
        row = self._repo.upsert(chunk)
        if row.status == ChunkStatus.COMPLETED and row.embedding is not None:
            self._index_row(row)
            self._mirror_row(row)
        else:
            self._forget_rows([row])
        return row

    async def prepare_source(
        self,
        owner_id: str,
        source_name: str,
        texts: list[str],
        *,
        clear_existing: bool = False,
    ) -> list[Chunk]:
        await self.ensure_ready()
        keep = 0 if clear_existing else len(texts)
        removed = self._repo.delete_source_tail(owner_id, source_name, keep)
        if removed:
            self._index.delete_ids([chunk_id for chunk_id, _ in removed])
            self._mirror.delete_keys(
                [mirror_key(owner_id, source_name, idx) for _, idx in removed]
            )
        rows = self._repo.insert_pending(owner_id, source_name, texts)
        # reset rows must not be served from an earlier vector
        self._forget_rows(rows)
        return rows

    async def complete_chunk(self, chunk: Chunk, vector: Any) -> bool:
        """Store the embedding and flip the row to completed.

        Returns whether the row became searchable by vector. A vector of the
        wrong shape is dropped but the row is still marked completed.
        """
        await self.ensure_ready()
        if chunk.id is None:
            raise ValueError("complete_chunk requires a persisted chunk")
        try:
            blob = encode_embedding(vector, self.vector_dim)
        except EmbeddingShapeError as exc:
            logger.warning(
                "complete_chunk: dropping embedding for chunk_id=%s owner=%s source=%s: %s",
                chunk.id,
                chunk.owner_id,
                chunk.source_name,
                exc,
            )
            self._repo.mark_completed(chunk.id, None)
            chunk.embedding = None
            chunk.status = ChunkStatus.COMPLETED
            self._forget_rows([chunk])
            return False
        self._repo.mark_completed(chunk.id, blob)
        chunk.embedding = blob
        chunk.status = ChunkStatus.COMPLETED
        self._index_row(chunk)
        self._mirror_row(chunk)
        return True

    async def delete_owner(self, owner_id: str) -> int:
        await self.ensure_ready()
        removed = self._repo.delete_owner(owner_id)
        self._index.delete_owner(owner_id)
        self._mirror.delete_by_owner(owner_id)
        logger.info("deleted %s chunk rows for owner=%s", removed, owner_id)
        return removed

    async def search(
        self, owner_id: str, vector: Any, k: int, query_text: str = ""
    ) -> list[SearchHit]:
        await self.ensure_ready()
        query = as_vector(vector, self.vector_dim)
        k = max(1, int(k))
        if self.index_available:
            try:
                hits = self._search_index(owner_id, query, k)
            except Exception as exc:
                self.disable_index(f"query failed: {type(exc).__name__}: {exc}")
                hits = []
            if hits:
                return hits
        return self._search_scan(owner_id, query, k, query_text)

    async def list_chunks(
        self, owner_id: str, status: ChunkStatus | None = None
    ) -> list[Chunk]:
        await self.ensure_ready()
        return self._repo.list_chunks(owner_id, status)

    async def completed_chunks(self, owner_id: str) -> list[Chunk]:
        await self.ensure_ready()
        return self._repo.completed_chunks(owner_id)

    async def stats(self, owner_id: str) -> VectorIndexMeta:
        await self.ensure_ready()
        row = self._repo.stats(owner_id)
        return VectorIndexMeta(
            chunk_count=row["chunk_count"], total_bytes=row["total_bytes"]
        )

    async def debug_state(self, owner_id: str) -> dict[str, Any]:
        report = await self.ensure_ready()
        return {
            "state": self.state.value,
            "durability": self.durability.value if self.durability else None,
            "durability_reason": self.durability_reason,
            "index_available": self.index_available,
            "index_reason": self._index.reason if self._index else None,
            "index_rows": self._index.count() if self._index else 0,
            "status_counts": self._repo.status_counts(owner_id),
            "mirror": self._mirror.summary(),
            "rehydrate": report.to_dict(),
        }

    async def _initialize(self) -> None:
        durability, reason = self._select_durability()
        self.durability = durability
        self.durability_reason = reason
        if durability == Durability.DURABLE:
            self._engine = SQLiteEngine(self.chunks_db_path)
            index_dir: Path | None = self.lancedb_dir
        else:
            self._engine = SQLiteEngine(None)
            index_dir = None
        init_chunk_schema(self._engine)
        self._repo = ChunkRepository(self._engine)
        self._mirror = self._open_mirror()
        self._index = LanceSimilarityIndex(
            index_dir,
            self.vector_dim,
            enabled=self._index_enabled,
            metric=self._index_metric,
            rebuild_every=self._index_rebuild_every,
        )
        if not self._index.open():
            self._emit("index_unavailable", {"reason": self._index.reason})
        logger.info(
            "chunk store ready: durability=%s index=%s",
            durability.value,
            "on" if self._index.available else "off",
        )

    def _select_durability(self) -> tuple[Durability, str | None]:
        if self.requested_durability == Durability.MEMORY.value:
            return Durability.MEMORY, "requested"
        if self.requested_durability == Durability.DURABLE.value:
            return Durability.DURABLE, None
        reason = probe_durable(self.chunks_db_path)
        if reason is None:
            return Durability.DURABLE, None
        logger.warning(
            "durable storage unavailable at %s, using in-memory store: %s",
            self.chunks_db_path,
            reason,
        )
        self._emit("durability_fallback", {"reason": reason})
        return Durability.MEMORY, reason

    def _open_mirror(self) -> ChunkMirror:
        try:
            return ChunkMirror(self.mirror_dir)
        except OSError as exc:
            fallback = Path(tempfile.mkdtemp(prefix="devicemem-mirror-"))
            logger.warning(
                "mirror directory %s unusable (%s), mirroring to %s",
                self.mirror_dir,
                exc,
                fallback,
            )
            return ChunkMirror(fallback)

    async def _rehydrate(self) -> RehydrateReport:
        report = RehydrateReport()
        for chunk in self._mirror.scan():
            report.scanned += 1
            if not is_valid_blob(chunk.embedding, self.vector_dim):
                report.skipped += 1
                self._log_shape("rehydrate", chunk, chunk.embedding)
                continue
            try:
                row, changed = self._repo.restore(chunk)
            except Exception as exc:
                report.skipped += 1
                logger.warning(
                    "rehydrate: could not restore %s: %s",
                    mirror_key(chunk.owner_id, chunk.source_name, chunk.chunk_index),
                    exc,
                )
                continue
            if not changed:
                report.unchanged += 1
                continue
            report.restored += 1
            self._index_row(row)
        self._reindex_if_empty()
        if report.scanned:
            logger.info(
                "rehydrated chunk store: scanned=%s restored=%s unchanged=%s skipped=%s",
                report.scanned,
                report.restored,
                report.unchanged,
                report.skipped,
            )
        self._emit("rehydrated", report.to_dict())
        return report

    def _reindex_if_empty(self) -> None:
        if not self.index_available or self._index.count() > 0:
            return
        for row in self._repo.all_completed():
            if is_valid_blob(row.embedding, self.vector_dim):
                self._index_row(row)

    def _index_row(self, row: Chunk) -> bool:
        if not self.index_available or row.id is None:
            return False
        vector = decode_embedding(row.embedding, self.vector_dim)
        return self._index.upsert(row.id, row.owner_id, vector)

    def _mirror_row(self, row: Chunk) -> None:
        try:
            self._mirror.put(row)
        except OSError as exc:
            logger.warning(
                "mirror write failed for %s: %s",
                mirror_key(row.owner_id, row.source_name, row.chunk_index),
                exc,
            )

    def _forget_rows(self, rows: list[Chunk]) -> None:
        ids = [row.id for row in rows if row.id is not None]
        self._index.delete_ids(ids)
        try:
            self._mirror.delete_keys(
                [mirror_key(r.owner_id, r.source_name, r.chunk_index) for r in rows]
            )
        except OSError as exc:
            logger.warning("mirror delete failed for %s rows: %s", len(rows), exc)

    def _search_index(
        self, owner_id: str, query: np.ndarray, k: int
    ) -> list[SearchHit]:
        pairs = self._index.search(owner_id, query, k)
        if not pairs:
            return []
        rows = self._repo.fetch_by_ids(owner_id, [chunk_id for chunk_id, _ in pairs])
        hits: list[SearchHit] = []
        for chunk_id, distance in pairs:
            row = rows.get(chunk_id)
            if row is None or row.status != ChunkStatus.COMPLETED:
                continue
            if not is_valid_blob(row.embedding, self.vector_dim):
                continue
            hits.append(
                SearchHit(
                    text=row.text,
                    score=float(1.0 - distance),
                    source=SearchSource.INDEX,
                    source_name=row.source_name,
                    chunk_index=row.chunk_index,
                    chunk_id=row.id,
                )
            )
        return hits[:k]

    def _search_scan(
        self, owner_id: str, query: np.ndarray, k: int, query_text: str
    ) -> list[SearchHit]:
        terms = query_terms(query_text)
        scored: list[SearchHit] = []
        skipped = 0
        for row in self._repo.completed_chunks(owner_id):
            if not is_valid_blob(row.embedding, self.vector_dim):
                skipped += 1
                continue
            vector = decode_embedding(row.embedding, self.vector_dim)
            score = dot(query, vector) + lexical_boost(row.text, terms, self.lexical_bonus)
            scored.append(
                SearchHit(
                    text=row.text,
                    score=score,
                    source=SearchSource.SCAN,
                    source_name=row.source_name,
                    chunk_index=row.chunk_index,
                    chunk_id=row.id,
                )
            )
        if skipped:
            logger.debug("scan skipped %s rows with unusable embeddings", skipped)
        scored.sort(key=lambda h: h.score, reverse=True)
        return scored[:k]

    def _log_shape(self, op: str, chunk: Chunk, blob: bytes | None) -> None:
        logger.warning(
            "%s: rejecting embedding of %s bytes (expected %s) for %s",
            op,
            len(blob or b""),
            self.vector_dim * 4,
            mirror_key(chunk.owner_id, chunk.source_name, chunk.chunk_index),
        )

    def _emit(self, kind: str, data: dict[str, Any]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(kind, data)
        except Exception:
            logger.exception("event sink failed for %s", kind)
