from __future__ import annotations

import asyncio
import inspect
import logging
import math
from collections import deque
from threading import Lock
from typing import Any, Callable

import numpy as np

from devicemem.domain.errors import WorkerTimeoutError, error_from_kind
from devicemem.domain.models import ChunkStatus, SearchHit, VectorIndexMeta
from devicemem.worker.host import MemoryWorker
from devicemem.worker.protocol import (
    Operation,
    WorkerEvent,
    WorkerRequest,
    WorkerResponse,
    new_request_id,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], Any]
EventCallback = Callable[[WorkerEvent], Any]


class _Pending:
    __slots__ = ("future", "loop", "on_progress")

    def __init__(
        self,
        future: asyncio.Future[Any],
        loop: asyncio.AbstractEventLoop,
        on_progress: ProgressCallback | None,
    ) -> None:
        self.future = future
        self.loop = loop
        self.on_progress = on_progress


class WorkerClient:
    """Main-context proxy for :class:`MemoryWorker`.

    Every call carries its own request id; responses are matched on that id
    and a call that gets no answer within ``timeout_sec`` fails with
    :class:`WorkerTimeoutError`.
    """

    BATCH_TIMEOUT_STEP = 16

    def __init__(self, worker: MemoryWorker, *, timeout_sec: float = 60.0) -> None:
        self.worker = worker
        self.timeout_sec = float(timeout_sec)
        self._pending: dict[str, _Pending] = {}
        self._subscribers: list[tuple[asyncio.AbstractEventLoop, EventCallback]] = []
        self._lock = Lock()
        self.recent_events: deque[WorkerEvent] = deque(maxlen=50)
        worker.set_sink(self._deliver)

    def start(self) -> None:
        self.worker.start()

    def stop(self) -> None:
        self.worker.stop()

    def subscribe(self, callback: EventCallback) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers.append((loop, callback))

    async def call(
        self,
        op: Operation,
        payload: dict[str, Any] | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> Any:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        request = WorkerRequest(
            request_id=new_request_id(), op=op, payload=dict(payload or {})
        )
        with self._lock:
            self._pending[request.request_id] = _Pending(future, loop, on_progress)
        limit = self.timeout_sec if timeout is None else float(timeout)
        try:
            self.worker.submit(request)
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.TimeoutError as exc:
            raise WorkerTimeoutError(
                f"{op.value} got no response within {limit:.0f}s"
            ) from exc
        finally:
            with self._lock:
                self._pending.pop(request.request_id, None)

    def _batch_timeout(self, count: int) -> float:
        return self.timeout_sec * max(1, math.ceil(count / self.BATCH_TIMEOUT_STEP))

    def _deliver(self, message: Any) -> None:
        if isinstance(message, WorkerResponse):
            with self._lock:
                entry = self._pending.get(message.request_id)
            if entry is None:
                logger.debug(
                    "dropping late %s response %s", message.op.value, message.request_id
                )
                return
            entry.loop.call_soon_threadsafe(self._resolve, entry.future, message)
            return
        if not isinstance(message, WorkerEvent):
            return
        if message.request_id is not None:
            with self._lock:
                entry = self._pending.get(message.request_id)
            if entry is not None and entry.on_progress is not None:
                entry.loop.call_soon_threadsafe(
                    self._invoke, entry.on_progress, dict(message.data)
                )
            return
        with self._lock:
            self.recent_events.append(message)
            subscribers = list(self._subscribers)
        for loop, callback in subscribers:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(self._invoke, callback, message)

    @staticmethod
    def _resolve(future: asyncio.Future[Any], message: WorkerResponse) -> None:
        if future.done():
            return
        if message.ok:
            future.set_result(message.result)
        else:
            future.set_exception(
                error_from_kind(message.error_kind, message.error or "worker error")
            )

    @staticmethod
    def _invoke(callback: Callable[[Any], Any], arg: Any) -> None:
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("worker callback failed")

    async def init(self) -> dict[str, Any]:
        return await self.call(Operation.INIT)

    async def preload(self) -> dict[str, Any]:
        return await self.call(Operation.PRELOAD)

    async def embed_query(self, text: str) -> np.ndarray:
        result = await self.call(Operation.EMBED_QUERY, {"text": text})
        return np.asarray(result, dtype=np.float32)

    async def prepare(
        self,
        owner_id: str,
        source_name: str,
        texts: list[str],
        *,
        clear_existing: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        return await self.call(
            Operation.PREPARE,
            {
                "owner_id": owner_id,
                "source_name": source_name,
                "texts": list(texts),
                "clear_existing": clear_existing,
            },
            on_progress=on_progress,
            timeout=self._batch_timeout(len(texts)),
        )

    async def store_chunks(
        self, owner_id: str, source_name: str, texts: list[str]
    ) -> dict[str, Any]:
        return await self.call(
            Operation.STORE_CHUNKS,
            {"owner_id": owner_id, "source_name": source_name, "texts": list(texts)},
            timeout=self._batch_timeout(len(texts)),
        )

    async def search(
        self, owner_id: str, vector: np.ndarray, k: int, query_text: str = ""
    ) -> list[SearchHit]:
        rows = await self.call(
            Operation.SEARCH,
            {
                "owner_id": owner_id,
                "vector": np.asarray(vector, dtype=np.float32).tolist(),
                "k": int(k),
                "query_text": query_text,
            },
        )
        return [SearchHit.from_dict(row) for row in rows]

    async def list_chunks(
        self, owner_id: str, status: ChunkStatus | None = None
    ) -> list[dict[str, Any]]:
        return await self.call(
            Operation.LIST_CHUNKS,
            {"owner_id": owner_id, "status": status.value if status else None},
        )

    async def completed_chunks(self, owner_id: str) -> list[dict[str, Any]]:
        return await self.call(Operation.COMPLETED_CHUNKS, {"owner_id": owner_id})

    async def local_stats(self, owner_id: str) -> VectorIndexMeta:
        row = await self.call(Operation.LOCAL_STATS, {"owner_id": owner_id})
        return VectorIndexMeta(**row)

    async def clear_owner(self, owner_id: str) -> int:
        row = await self.call(Operation.CLEAR_OWNER, {"owner_id": owner_id})
        return int(row.get("deleted", 0))

    async def debug_state(self, owner_id: str) -> dict[str, Any]:
        return await self.call(Operation.DEBUG_STATE, {"owner_id": owner_id})
