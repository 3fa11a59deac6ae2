from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Operation(str, Enum):
    INIT = "init"
    PRELOAD = "preload"
    EMBED_QUERY = "embed_query"
    PREPARE = "prepare"
    STORE_CHUNKS = "store_chunks"
    SEARCH = "search"
    LIST_CHUNKS = "list_chunks"
    COMPLETED_CHUNKS = "completed_chunks"
    LOCAL_STATS = "local_stats"
    CLEAR_OWNER = "clear_owner"
    DEBUG_STATE = "debug_state"


class EventKind(str, Enum):
    PROGRESS = "progress"
    DURABILITY_FALLBACK = "durability_fallback"
    INDEX_UNAVAILABLE = "index_unavailable"
    REHYDRATED = "rehydrated"


@dataclass(frozen=True)
class WorkerRequest:
    request_id: str
    op: Operation
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkerResponse:
    request_id: str
    op: Operation
    ok: bool
    result: Any = None
    error: str | None = None
    error_kind: str | None = None


@dataclass(frozen=True)
class WorkerEvent:
    kind: str
    data: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None


def new_request_id() -> str:
    return uuid.uuid4().hex
