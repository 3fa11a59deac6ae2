from __future__ import annotations

import asyncio
from typing import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from devicemem.api.errors import to_http_error
from devicemem.domain.errors import MemoryEngineError

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])

_STREAM_DONE = object()


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=200_000)
    stream: bool = False


@router.get("/welcome")
async def welcome(request: Request) -> dict:
    session = request.app.state.runtime.session
    return {"status": "ok", "result": {"message": session.welcome_message()}}


@router.post("")
async def send_message(payload: ChatRequest, request: Request):
    session = request.app.state.runtime.session
    if payload.stream:
        return StreamingResponse(
            _stream_reply(session, payload.message), media_type="text/plain; charset=utf-8"
        )
    try:
        reply = await session.send_message(payload.message)
    except (MemoryEngineError, ValueError) as exc:
        raise to_http_error(exc) from exc
    return {"status": "ok", "result": {"reply": reply}}


async def _stream_reply(session, message: str) -> AsyncIterator[str]:
    queue: asyncio.Queue = asyncio.Queue()

    async def run() -> None:
        try:
            await session.send_message(message, on_stream=queue.put)
        except (MemoryEngineError, ValueError) as exc:
            await queue.put(f"\n[error] {exc}")
        finally:
            await queue.put(_STREAM_DONE)

    task = asyncio.create_task(run())
    try:
        while True:
            item = await queue.get()
            if item is _STREAM_DONE:
                break
            yield item
    finally:
        await task


@router.get("/history")
async def history(request: Request) -> dict:
    session = request.app.state.runtime.session
    turns = await session.history()
    stats = await session.stats()
    return {
        "status": "ok",
        "result": {"turns": [t.to_dict() for t in turns], "window": stats.to_dict()},
    }


@router.delete("/history")
async def clear_history(request: Request) -> dict:
    session = request.app.state.runtime.session
    removed = await session.clear()
    return {"status": "ok", "result": {"removed": removed}}
