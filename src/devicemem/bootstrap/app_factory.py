from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

from fastapi import FastAPI

from devicemem.api.routes.chat import router as chat_router
from devicemem.api.routes.memory import router as memory_router
from devicemem.api.routes.status import router as status_router
from devicemem.config.profiles import profiles_from_settings
from devicemem.config.settings import MemorySettings
from devicemem.infra.remote.document_store import HttpDocumentStore, RemoteDocumentStore
from devicemem.infra.sqlite.db import SQLiteEngine
from devicemem.infra.sqlite.init_schema import init_turn_schema
from devicemem.infra.sqlite.turn_repository import TurnRepository
from devicemem.infra.vector.chunk_store import LocalVectorStore
from devicemem.service.archival_bridge import ArchivalBridge
from devicemem.service.auth import AuthProvider, StaticAuthProvider
from devicemem.service.backend_probe import BackendDecision, probe_backend
from devicemem.service.chat_session import ChatSession
from devicemem.service.embedding import EmbeddingService
from devicemem.service.encoders import ModelLoader, build_loader
from devicemem.service.generation import ChatGenerator
from devicemem.service.ingestion import IngestionService
from devicemem.service.memory_window import ActiveMemoryWindow
from devicemem.worker.client import WorkerClient
from devicemem.worker.host import MemoryWorker
from devicemem.worker.protocol import EventKind, WorkerEvent

logger = logging.getLogger(__name__)

_DEGRADATIONS = {EventKind.DURABILITY_FALLBACK.value, EventKind.INDEX_UNAVAILABLE.value}


@dataclass
class MemoryRuntime:
    """Everything one process needs, built once at startup."""

    settings: MemorySettings
    auth: AuthProvider
    turns_engine: SQLiteEngine
    window: ActiveMemoryWindow
    store: LocalVectorStore
    embeddings: EmbeddingService
    worker: MemoryWorker
    client: WorkerClient
    ingestion: IngestionService
    bridge: ArchivalBridge
    generator: ChatGenerator
    session: ChatSession
    degradations: dict[str, dict[str, Any]] = field(default_factory=dict)

    async def start(self) -> None:
        self.client.subscribe(self._on_worker_event)
        self.client.start()
        try:
            report = await self.client.init()
            logger.info("memory engine initialized: %s", report)
        except Exception as exc:
            logger.warning("memory engine init deferred: %s", exc)

    def stop(self) -> None:
        self.client.stop()
        self.turns_engine.close()

    def _on_worker_event(self, event: WorkerEvent) -> None:
        if event.kind in _DEGRADATIONS:
            self.degradations[event.kind] = dict(event.data)


def _turns_engine(settings: MemorySettings) -> SQLiteEngine:
    if settings.durability == "memory":
        return SQLiteEngine(None)
    try:
        engine = SQLiteEngine(settings.turns_db_path)
        engine.connect()
        return engine
    except Exception as exc:
        if settings.durability == "durable":
            raise
        logger.warning("turn log not durable, keeping it in memory: %s", exc)
        return SQLiteEngine(None)


def build_runtime(
    settings: MemorySettings,
    *,
    auth: AuthProvider | None = None,
    loader: ModelLoader | None = None,
    probe: Callable[[], BackendDecision] | None = None,
    remote: RemoteDocumentStore | None = None,
    generator: ChatGenerator | None = None,
) -> MemoryRuntime:
    auth = auth or StaticAuthProvider(settings.user_id)
    turns_engine = _turns_engine(settings)
    init_turn_schema(turns_engine)
    window = ActiveMemoryWindow(
        TurnRepository(turns_engine),
        max_tokens=settings.window_max_tokens,
        evict_ratio=settings.window_evict_ratio,
        chars_per_token=settings.chars_per_token,
        overhead_tokens=settings.turn_overhead_tokens,
    )
    store = LocalVectorStore(
        vector_dim=settings.embedding_dim,
        chunks_db_path=settings.chunks_db_path,
        lancedb_dir=settings.lancedb_dir,
        mirror_dir=settings.mirror_dir,
        durability=settings.durability,
        index_enabled=settings.vector_index_enabled,
        index_metric=settings.vector_index_metric,
        index_rebuild_every=settings.vector_index_rebuild_every,
        lexical_bonus=settings.lexical_bonus,
    )
    embeddings = EmbeddingService(
        model_id=settings.embedding_model,
        dim=settings.embedding_dim,
        loader=loader or build_loader(settings.embedding_model, settings.embedding_dim),
        probe=probe
        or partial(
            probe_backend,
            preference=settings.embedding_backend,
            min_memory_gb=settings.accel_min_memory_gb,
            min_cpu_cores=settings.accel_min_cpu_cores,
            denylist=settings.adapter_denylist,
        ),
        concurrency=settings.embed_concurrency,
        batch_size_max=settings.embed_batch_size_max,
    )
    worker = MemoryWorker(store=store, embeddings=embeddings)
    client = WorkerClient(worker, timeout_sec=settings.worker_timeout_sec)
    if remote is None and settings.remote_store_url:
        remote = HttpDocumentStore(settings.remote_store_url, settings.remote_store_token)
    bridge = ArchivalBridge(
        client,
        auth,
        remote=remote,
        archive_chunk_chars=settings.archive_chunk_chars,
        archive_overlap_chars=settings.archive_overlap_chars,
        top_k=settings.retrieval_top_k,
        min_score=settings.retrieval_min_score,
        max_context_tokens=settings.max_context_tokens,
        chars_per_token=settings.chars_per_token,
        lexical_bonus=settings.lexical_bonus,
        remote_read_limit=settings.remote_read_limit,
        remote_batch_size=settings.remote_batch_size,
    )
    ingestion = IngestionService(
        client,
        auth,
        profiles=profiles_from_settings(settings),
        short_text_threshold=settings.short_text_threshold,
    )
    generator = generator or ChatGenerator(
        base_url=settings.chat_base_url,
        api_key=settings.chat_api_key,
        model=settings.chat_model,
        temperature=settings.chat_temperature,
        top_p=settings.chat_top_p,
        max_tokens=settings.chat_max_tokens,
    )
    session = ChatSession(
        window=window,
        bridge=bridge,
        generator=generator,
        auth=auth,
        system_prompt=settings.system_prompt,
        context_preamble=settings.context_preamble,
        welcome_message=settings.welcome_message,
        session_id=settings.session_id,
        recent_turns_tokens=settings.recent_turns_tokens,
        max_context_tokens=settings.max_context_tokens,
    )
    return MemoryRuntime(
        settings=settings,
        auth=auth,
        turns_engine=turns_engine,
        window=window,
        store=store,
        embeddings=embeddings,
        worker=worker,
        client=client,
        ingestion=ingestion,
        bridge=bridge,
        generator=generator,
        session=session,
    )


def create_app(settings: MemorySettings, runtime: MemoryRuntime | None = None) -> FastAPI:
    runtime = runtime or build_runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start()
        try:
            yield
        finally:
            runtime.stop()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime
    app.include_router(chat_router)
    app.include_router(memory_router)
    app.include_router(status_router)
    return app
