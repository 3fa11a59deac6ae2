from __future__ import annotations

from fastapi import HTTPException

from devicemem.domain.errors import (
    AuthRequiredError,
    ConfigurationError,
    GenerationError,
    MemoryEngineError,
    TransientIOError,
    UserInputError,
    WorkerTimeoutError,
)


def to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, AuthRequiredError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, (UserInputError, ConfigurationError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, WorkerTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, (GenerationError, TransientIOError)):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, MemoryEngineError):
        return HTTPException(status_code=500, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail="internal error")
