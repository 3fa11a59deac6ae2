from __future__ import annotations

from fastapi import APIRouter, Request

from devicemem.api.errors import to_http_error
from devicemem.domain.errors import MemoryEngineError
from devicemem.service.auth import require_owner

router = APIRouter(prefix="/api/v1/status", tags=["status"])


@router.get("")
async def get_status(request: Request) -> dict:
    runtime = request.app.state.runtime
    window = await runtime.session.stats()
    try:
        local = await runtime.bridge.stats()
    except MemoryEngineError as exc:
        raise to_http_error(exc) from exc
    return {
        "status": "ok",
        "result": {
            "window": window.to_dict(),
            "local_store": local.to_dict(),
            "events": [
                {"kind": e.kind, "data": e.data} for e in runtime.client.recent_events
            ],
            "degraded": dict(runtime.degradations),
        },
    }


@router.get("/debug")
async def get_debug_state(request: Request) -> dict:
    runtime = request.app.state.runtime
    try:
        state = await runtime.client.debug_state(require_owner(runtime.auth))
    except MemoryEngineError as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "result": state}
