from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from devicemem.api.errors import to_http_error
from devicemem.domain.errors import MemoryEngineError
from devicemem.domain.models import ChunkStatus

router = APIRouter(prefix="/api/v1/memories", tags=["memories"])


class IngestRequest(BaseModel):
    text: str = Field(min_length=1)
    source_name: str = Field(min_length=1, max_length=512)
    clear_existing: bool = False


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=8000)
    top_k: int = Field(default=10, ge=1, le=50)


@router.post("/ingest")
async def ingest(payload: IngestRequest, request: Request) -> dict:
    ingestion = request.app.state.runtime.ingestion
    try:
        report = await ingestion.ingest_text(
            payload.text, payload.source_name, clear_existing=payload.clear_existing
        )
    except (MemoryEngineError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "result": report.to_dict()}


@router.post("/search")
async def search(payload: SearchRequest, request: Request) -> dict:
    bridge = request.app.state.runtime.bridge
    try:
        hits = await bridge.search_context(payload.query, payload.top_k)
    except (MemoryEngineError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "result": [hit.to_dict() for hit in hits]}


@router.get("")
async def list_chunks(request: Request, status: ChunkStatus | None = None) -> dict:
    bridge = request.app.state.runtime.bridge
    try:
        rows = await bridge.list_chunks(status)
    except (MemoryEngineError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "result": rows}


@router.post("/upload")
async def upload(request: Request) -> dict:
    bridge = request.app.state.runtime.bridge
    try:
        result = await bridge.upload_completed()
    except (MemoryEngineError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "result": result}


@router.delete("")
async def clear_owner(request: Request) -> dict:
    bridge = request.app.state.runtime.bridge
    try:
        deleted = await bridge.clear_owner()
    except (MemoryEngineError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "result": {"deleted": deleted}}
