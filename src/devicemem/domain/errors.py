from __future__ import annotations


class MemoryEngineError(RuntimeError):
    """Base class for every error raised by the memory engine.

    ``kind`` is a stable tag that survives the worker boundary: the worker
    serializes ``(kind, message)`` and the client rebuilds the typed error
    through :func:`error_from_kind`.
    """

    kind = "internal"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.kind)
        self.message = str(message)


class ConfigurationError(MemoryEngineError, ValueError):
    """A required credential or setting is missing."""

    kind = "configuration"


class AuthRequiredError(MemoryEngineError):
    """Sign in to use memory features."""

    kind = "auth_required"

    def __init__(self, message: str = "Sign in to use memory features.") -> None:
        super().__init__(message)


class ResourceUnavailableError(MemoryEngineError):
    """A capability is missing on this device."""

    kind = "resource_unavailable"


class TransientIOError(MemoryEngineError):
    """A dependency failed in a way that may succeed on retry."""

    kind = "transient_io"
    retryable = True


class WorkerTimeoutError(TransientIOError):
    kind = "worker_timeout"


class EngineLoadError(TransientIOError):
    kind = "engine_load"

    def __init__(
        self, message: str = "Failed to load the inference engine. Please retry."
    ) -> None:
        super().__init__(message)


class DataShapeError(MemoryEngineError):
    """Stored or produced data does not have the expected shape."""

    kind = "data_shape"


class EmbeddingShapeError(DataShapeError):
    kind = "embedding_shape"


class UserInputError(MemoryEngineError, ValueError):
    """The caller supplied input that cannot be processed."""

    kind = "user_input"


class GenerationError(MemoryEngineError):
    kind = "generation"
    retryable = True

    def __init__(
        self, message: str = "Could not get a response. Please try again."
    ) -> None:
        super().__init__(message)


_KINDS: dict[str, type[MemoryEngineError]] = {
    cls.kind: cls
    for cls in (
        MemoryEngineError,
        ConfigurationError,
        AuthRequiredError,
        ResourceUnavailableError,
        TransientIOError,
        WorkerTimeoutError,
        EngineLoadError,
        DataShapeError,
        EmbeddingShapeError,
        UserInputError,
        GenerationError,
    )
}


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, MemoryEngineError):
        return exc.kind
    if isinstance(exc, ValueError):
        return UserInputError.kind
    return MemoryEngineError.kind


def error_from_kind(kind: str | None, message: str) -> MemoryEngineError:
    cls = _KINDS.get(str(kind or ""), MemoryEngineError)
    return cls(message)
