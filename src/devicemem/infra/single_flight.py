from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Share one in-flight coroutine between concurrent callers.

    A successful result is memoized for the lifetime of the object. A failed
    attempt is forgotten, so the next caller starts over.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]]) -> None:
        self._factory = factory
        self._task: asyncio.Future[T] | None = None
        self._done = False
        self._value: Any = None

    @property
    def ready(self) -> bool:
        return self._done

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._done

    async def get(self) -> T:
        if self._done:
            return self._value
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return await asyncio.shield(self._task)

    async def _run(self) -> T:
        try:
            value = await self._factory()
        except BaseException:
            self._task = None
            raise
        self._value = value
        self._done = True
        return value

    def reset(self) -> None:
        self._task = None
        self._done = False
        self._value = None
