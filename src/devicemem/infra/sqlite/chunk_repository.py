from __future__ import annotations

import time
from typing import Any

from devicemem.domain.models import Chunk, ChunkStatus
from devicemem.infra.sqlite.db import SQLiteEngine

_COLUMNS = "id,owner_id,source_name,chunk_index,text,embedding,status,created_at"


class ChunkRepository:
    def __init__(self, engine: SQLiteEngine) -> None:
        self.engine = engine

    def upsert(self, chunk: Chunk) -> Chunk:
        self.engine.execute(
            """
            INSERT INTO chunk(owner_id,source_name,chunk_index,text,embedding,status,created_at)
            VALUES(?,?,?,?,?,?,?)
            ON CONFLICT(owner_id,source_name,chunk_index) DO UPDATE SET
              text=excluded.text,
              embedding=excluded.embedding,
              status=excluded.status,
              created_at=excluded.created_at
            """,
            (
                chunk.owner_id,
                chunk.source_name,
                int(chunk.chunk_index),
                chunk.text,
                chunk.embedding,
                chunk.status.value,
                int(chunk.created_at),
            ),
        )
        row = self.get_by_key(chunk.owner_id, chunk.source_name, chunk.chunk_index)
        if row is None:
            raise RuntimeError(
                f"chunk upsert did not persist {chunk.owner_id}::{chunk.source_name}::{chunk.chunk_index}"
            )
        return row

    def insert_pending(
        self, owner_id: str, source_name: str, texts: list[str]
    ) -> list[Chunk]:
        now = int(time.time() * 1000)
        out: list[Chunk] = []
        for idx, text in enumerate(texts):
            out.append(
                self.upsert(
                    Chunk(
                        owner_id=owner_id,
                        source_name=source_name,
                        chunk_index=idx,
                        text=text,
                        embedding=None,
                        status=ChunkStatus.PENDING,
                        created_at=now,
                    )
                )
            )
        return out

    def delete_source_tail(
        self, owner_id: str, source_name: str, keep: int
    ) -> list[tuple[int, int]]:
        rows = self.engine.query_all(
            "SELECT id,chunk_index FROM chunk WHERE owner_id=? AND source_name=? AND chunk_index>=?",
            (owner_id, source_name, int(keep)),
        )
        if rows:
            self.engine.execute(
                "DELETE FROM chunk WHERE owner_id=? AND source_name=? AND chunk_index>=?",
                (owner_id, source_name, int(keep)),
            )
        return [(int(r["id"]), int(r["chunk_index"])) for r in rows]

    def mark_completed(self, chunk_id: int, embedding: bytes | None) -> int:
        return self.engine.execute(
            "UPDATE chunk SET embedding=?, status=? WHERE id=?",
            (embedding, ChunkStatus.COMPLETED.value, int(chunk_id)),
        )

    def delete_owner(self, owner_id: str) -> int:
        return self.engine.execute("DELETE FROM chunk WHERE owner_id=?", (owner_id,))

    def get_by_key(
        self, owner_id: str, source_name: str, chunk_index: int
    ) -> Chunk | None:
        row = self.engine.query_one(
            f"""
            SELECT {_COLUMNS} FROM chunk
            WHERE owner_id=? AND source_name=? AND chunk_index=?
            """,
            (owner_id, source_name, int(chunk_index)),
        )
        return Chunk.from_row(row) if row else None

    def fetch_by_ids(self, owner_id: str, ids: list[int]) -> dict[int, Chunk]:
        if not ids:
            return {}
        marks = ",".join("?" for _ in ids)
        rows = self.engine.query_all(
            f"SELECT {_COLUMNS} FROM chunk WHERE owner_id=? AND id IN ({marks})",
            (owner_id, *[int(x) for x in ids]),
        )
        return {int(r["id"]): Chunk.from_row(r) for r in rows}

    def list_chunks(
        self, owner_id: str, status: ChunkStatus | None = None
    ) -> list[Chunk]:
        if status is None:
            rows = self.engine.query_all(
                f"""
                SELECT {_COLUMNS} FROM chunk WHERE owner_id=?
                ORDER BY source_name ASC, chunk_index ASC
                """,
                (owner_id,),
            )
        else:
            rows = self.engine.query_all(
                f"""
                SELECT {_COLUMNS} FROM chunk WHERE owner_id=? AND status=?
                ORDER BY source_name ASC, chunk_index ASC
                """,
                (owner_id, status.value),
            )
        return [Chunk.from_row(r) for r in rows]

    def completed_chunks(self, owner_id: str) -> list[Chunk]:
        return self.list_chunks(owner_id, ChunkStatus.COMPLETED)

    def stats(self, owner_id: str) -> dict[str, Any]:
        row = self.engine.query_one(
            """
            SELECT COUNT(*) AS chunk_count,
                   COALESCE(SUM(LENGTH(CAST(text AS BLOB)) + COALESCE(LENGTH(embedding), 0)), 0)
                     AS total_bytes
            FROM chunk WHERE owner_id=?
            """,
            (owner_id,),
        )
        row = row or {}
        return {
            "chunk_count": int(row.get("chunk_count") or 0),
            "total_bytes": int(row.get("total_bytes") or 0),
        }

    def status_counts(self, owner_id: str) -> dict[str, int]:
        rows = self.engine.query_all(
            "SELECT status, COUNT(*) AS n FROM chunk WHERE owner_id=? GROUP BY status",
            (owner_id,),
        )
        return {str(r["status"]): int(r["n"]) for r in rows}

    def restore(self, chunk: Chunk) -> tuple[Chunk, bool]:
        """Merge a mirrored row back in. Returns ``(row, changed)``."""
        existing = self.get_by_key(chunk.owner_id, chunk.source_name, chunk.chunk_index)
        if (
            existing is not None
            and existing.status == ChunkStatus.COMPLETED
            and existing.text == chunk.text
            and existing.embedding == chunk.embedding
        ):
            return existing, False
        restored = Chunk(
            owner_id=chunk.owner_id,
            source_name=chunk.source_name,
            chunk_index=chunk.chunk_index,
            text=chunk.text,
            embedding=chunk.embedding,
            status=ChunkStatus.COMPLETED,
            created_at=chunk.created_at,
        )
        return self.upsert(restored), True

    def all_completed(self) -> list[Chunk]:
        rows = self.engine.query_all(
            f"SELECT {_COLUMNS} FROM chunk WHERE status=? ORDER BY id ASC",
            (ChunkStatus.COMPLETED.value,),
        )
        return [Chunk.from_row(r) for r in rows]
