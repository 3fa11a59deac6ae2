from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable

from devicemem.domain.embedding import decode_embedding, is_valid_blob
from devicemem.domain.errors import MemoryEngineError, error_kind
from devicemem.domain.models import ChunkStatus
from devicemem.infra.vector.chunk_store import LocalVectorStore
from devicemem.service.embedding import EmbeddingService
from devicemem.worker.protocol import (
    EventKind,
    Operation,
    WorkerEvent,
    WorkerRequest,
    WorkerResponse,
)

logger = logging.getLogger(__name__)

Sink = Callable[[Any], None]
Handler = Callable[[WorkerRequest], Awaitable[Any]]


class MemoryWorker:
    """Background context that owns the chunk store and the embedding model.

    It runs a private event loop on its own thread. Each request becomes a
    task on that loop, so requests interleave at await points. Results and
    events leave through ``sink``, which is called on the worker thread.
    """

    def __init__(
        self,
        *,
        store: LocalVectorStore,
        embeddings: EmbeddingService,
        sink: Sink | None = None,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self._sink = sink
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()
        self._tasks: set[asyncio.Task[Any]] = set()
        self.store.on_event = self._on_store_event
        self._handlers: dict[Operation, Handler] = {
            Operation.INIT: self._handle_init,
            Operation.PRELOAD: self._handle_preload,
            Operation.EMBED_QUERY: self._handle_embed_query,
            Operation.PREPARE: self._handle_prepare,
            Operation.STORE_CHUNKS: self._handle_store_chunks,
            Operation.SEARCH: self._handle_search,
            Operation.LIST_CHUNKS: self._handle_list_chunks,
            Operation.COMPLETED_CHUNKS: self._handle_completed_chunks,
            Operation.LOCAL_STATS: self._handle_local_stats,
            Operation.CLEAR_OWNER: self._handle_clear_owner,
            Operation.DEBUG_STATE: self._handle_debug_state,
        }

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def set_sink(self, sink: Sink) -> None:
        self._sink = sink

    def start(self) -> None:
        if self.running:
            return
        self._started.clear()
        self._thread = threading.Thread(
            target=self._run, name="devicemem-worker", daemon=True
        )
        self._thread.start()
        self._started.wait()

    def stop(self, timeout: float = 10.0) -> None:
        loop = self._loop
        if loop is None or not self.running:
            return
        loop.call_soon_threadsafe(loop.stop)
        if self._thread is not None:
            self._thread.join(timeout)

    def submit(self, request: WorkerRequest) -> None:
        loop = self._loop
        if loop is None or not self.running:
            raise RuntimeError("memory worker is not running")
        loop.call_soon_threadsafe(self._spawn, request)

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._started.set()
        try:
            loop.run_forever()
        finally:
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                loop.run_until_complete(
                    asyncio.gather(*self._tasks, return_exceptions=True)
                )
            loop.run_until_complete(self.store.close())
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self._loop = None

    def _spawn(self, request: WorkerRequest) -> None:
        task = asyncio.get_running_loop().create_task(self._dispatch(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, request: WorkerRequest) -> None:
        handler = self._handlers.get(request.op)
        try:
            if handler is None:
                raise ValueError(f"unknown operation: {request.op}")
            result = await handler(request)
        except Exception as exc:
            if isinstance(exc, MemoryEngineError):
                logger.warning(
                    "worker %s [%s] failed: %s", request.op.value, request.request_id, exc
                )
            else:
                logger.exception(
                    "worker %s [%s] failed", request.op.value, request.request_id
                )
            self._post(
                WorkerResponse(
                    request_id=request.request_id,
                    op=request.op,
                    ok=False,
                    error=str(exc),
                    error_kind=error_kind(exc),
                )
            )
            return
        self._post(
            WorkerResponse(
                request_id=request.request_id, op=request.op, ok=True, result=result
            )
        )

    def _post(self, message: Any) -> None:
        if self._sink is None:
            return
        try:
            self._sink(message)
        except Exception:
            logger.exception("worker sink rejected %s", type(message).__name__)

    def _on_store_event(self, kind: str, data: dict[str, Any]) -> None:
        self._post(WorkerEvent(kind=kind, data=dict(data)))

    def _progress(self, request: WorkerRequest, stage: str, completed: int, total: int) -> None:
        self._post(
            WorkerEvent(
                kind=EventKind.PROGRESS.value,
                request_id=request.request_id,
                data={"stage": stage, "completed": completed, "total": total},
            )
        )

    async def _handle_init(self, request: WorkerRequest) -> dict[str, Any]:
        report = await self.store.ensure_ready()
        return {
            "state": self.store.state.value,
            "durability": self.store.durability.value if self.store.durability else None,
            "index_available": self.store.index_available,
            "rehydrate": report.to_dict(),
        }

    async def _handle_preload(self, request: WorkerRequest) -> dict[str, Any]:
        decision = await self.embeddings.preload()
        return decision.to_dict()

    async def _handle_embed_query(self, request: WorkerRequest) -> list[float]:
        vector = await self.embeddings.embed(str(request.payload["text"]))
        return vector.tolist()

    async def _handle_prepare(self, request: WorkerRequest) -> dict[str, Any]:
        payload = request.payload
        owner_id = str(payload["owner_id"])
        source_name = str(payload["source_name"])
        texts = [str(t) for t in payload.get("texts", [])]
        rows = await self.store.prepare_source(
            owner_id,
            source_name,
            texts,
            clear_existing=bool(payload.get("clear_existing", False)),
        )
        total = len(rows)
        counts = {"embedded": 0, "skipped": 0}
        self._progress(request, "embedding", 0, total)

        async def on_batch(start: int, vectors: list[Any]) -> None:
            for offset, vector in enumerate(vectors):
                row = rows[start + offset]
                if await self.store.complete_chunk(row, vector):
                    counts["embedded"] += 1
                else:
                    counts["skipped"] += 1
            self._progress(request, "embedding", start + len(vectors), total)

        await self.embeddings.embed_adaptive(texts, on_batch=on_batch)
        return {
            "chunk_count": total,
            "embedded_count": counts["embedded"],
            "skipped_count": counts["skipped"],
            "backend": self.embeddings.backend().backend,
        }

    async def _handle_store_chunks(self, request: WorkerRequest) -> dict[str, Any]:
        payload = request.payload
        owner_id = str(payload["owner_id"])
        source_name = str(payload["source_name"])
        texts = [str(t) for t in payload.get("texts", [])]
        if not texts:
            return {"stored": 0}
        vectors = await self.embeddings.embed_many(
            texts,
            on_progress=lambda done, total: self._progress(request, "archive", done, total),
        )
        rows = await self.store.prepare_source(
            owner_id, source_name, texts, clear_existing=True
        )
        stored = 0
        for row, vector in zip(rows, vectors):
            if await self.store.complete_chunk(row, vector):
                stored += 1
        return {"stored": stored, "chunk_count": len(rows)}

    async def _handle_search(self, request: WorkerRequest) -> list[dict[str, Any]]:
        payload = request.payload
        hits = await self.store.search(
            str(payload["owner_id"]),
            payload["vector"],
            int(payload.get("k", 10)),
            str(payload.get("query_text", "")),
        )
        return [hit.to_dict() for hit in hits]

    async def _handle_list_chunks(self, request: WorkerRequest) -> list[dict[str, Any]]:
        raw_status = request.payload.get("status")
        status = ChunkStatus(str(raw_status)) if raw_status else None
        chunks = await self.store.list_chunks(str(request.payload["owner_id"]), status)
        return [chunk.to_dict() for chunk in chunks]

    async def _handle_completed_chunks(
        self, request: WorkerRequest
    ) -> list[dict[str, Any]]:
        dim = self.store.vector_dim
        out: list[dict[str, Any]] = []
        for chunk in await self.store.completed_chunks(str(request.payload["owner_id"])):
            if not is_valid_blob(chunk.embedding, dim):
                continue
            row = chunk.to_dict()
            row["embedding"] = decode_embedding(chunk.embedding, dim).tolist()
            out.append(row)
        return out

    async def _handle_local_stats(self, request: WorkerRequest) -> dict[str, Any]:
        meta = await self.store.stats(str(request.payload["owner_id"]))
        return meta.to_dict()

    async def _handle_clear_owner(self, request: WorkerRequest) -> dict[str, Any]:
        deleted = await self.store.delete_owner(str(request.payload["owner_id"]))
        return {"deleted": deleted}

    async def _handle_debug_state(self, request: WorkerRequest) -> dict[str, Any]:
        state = await self.store.debug_state(str(request.payload["owner_id"]))
        state["embedding"] = {
            "model_id": self.embeddings.model_id,
            "loaded": self.embeddings.loaded,
            "model_bytes": self.embeddings.model_bytes,
            "backend": self.embeddings.backend().to_dict(),
        }
        return state
