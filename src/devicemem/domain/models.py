from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ChunkStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SearchSource(str, Enum):
    INDEX = "index"
    SCAN = "scan"
    REMOTE = "remote"


@dataclass
class Chunk:
    owner_id: str
    source_name: str
    chunk_index: int
    text: str
    embedding: bytes | None = None
    status: ChunkStatus = ChunkStatus.PENDING
    id: int | None = None
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self, *, include_embedding: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "owner_id": self.owner_id,
            "source_name": self.source_name,
            "chunk_index": self.chunk_index,
            "text": self.text,
            "status": self.status.value,
            "created_at": self.created_at,
            "embedding_bytes": len(self.embedding or b""),
        }
        if include_embedding:
            out["embedding"] = self.embedding
        return out

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Chunk":
        raw_status = str(row.get("status") or ChunkStatus.PENDING.value)
        try:
            status = ChunkStatus(raw_status)
        except ValueError:
            status = ChunkStatus.PENDING
        embedding = row.get("embedding")
        return cls(
            id=int(row["id"]) if row.get("id") is not None else None,
            owner_id=str(row.get("owner_id", "")),
            source_name=str(row.get("source_name", "")),
            chunk_index=int(row.get("chunk_index", 0)),
            text=str(row.get("text", "")),
            embedding=bytes(embedding) if embedding is not None else None,
            status=status,
            created_at=int(row.get("created_at") or 0),
        )


@dataclass(frozen=True)
class ConversationTurn:
    id: str
    role: str
    content: str
    created_at: int
    token_count: int
    session_id: str = "default"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConversationTurn":
        return cls(
            id=str(row["id"]),
            role=str(row["role"]),
            content=str(row["content"]),
            created_at=int(row["created_at"]),
            token_count=int(row["token_count"]),
            session_id=str(row.get("session_id") or "default"),
        )


@dataclass(frozen=True)
class WindowStats:
    token_total: int
    turn_count: int
    oldest_turn_id: str | None
    newest_turn_id: str | None
    percent_used: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AddTurnResult:
    turn: ConversationTurn
    evicted: list[ConversationTurn]


@dataclass(frozen=True)
class VectorIndexMeta:
    chunk_count: int
    total_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SearchHit:
    text: str
    score: float
    source: SearchSource
    source_name: str = ""
    chunk_index: int = 0
    chunk_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "score": self.score,
            "source": self.source.value,
            "source_name": self.source_name,
            "chunk_index": self.chunk_index,
            "chunk_id": self.chunk_id,
        }

    @classmethod
    def from_dict(cls, value: dict[str, Any]) -> "SearchHit":
        return cls(
            text=str(value.get("text", "")),
            score=float(value.get("score", 0.0)),
            source=SearchSource(str(value.get("source", SearchSource.SCAN.value))),
            source_name=str(value.get("source_name", "")),
            chunk_index=int(value.get("chunk_index", 0)),
            chunk_id=(
                int(value["chunk_id"]) if value.get("chunk_id") is not None else None
            ),
        )


@dataclass
class RehydrateReport:
    scanned: int = 0
    restored: int = 0
    unchanged: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class IngestReport:
    source_name: str
    profile: str
    chunk_count: int
    embedded_count: int
    skipped_count: int
    backend: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
