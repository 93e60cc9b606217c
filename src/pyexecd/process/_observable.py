"""Streamed execution results.

An ``OutputStream`` is an async iterator fed by a producer task (a process
reader, a daemon connection, a pool forwarder). It ends when the producer
completes and raises the producer's error otherwise. Once closed, further
pushes are dropped, so nothing is delivered after cancellation or dispose.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from pyexecd.types import Output

_COMPLETE = object()


class OutputStream[T: (str, bytes)]:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, output: Output[T]) -> None:
        if not self._closed:
            self._queue.put_nowait(output)

    def error(self, exc: BaseException) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(exc)

    def complete(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_COMPLETE)

    def __aiter__(self) -> AsyncIterator[Output[T]]:
        return self

    async def __anext__(self) -> Output[T]:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _COMPLETE:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._finished = True
            raise item
        return item

    async def collect(self) -> list[Output[T]]:
        return [output async for output in self]


class ObservableExecutionResult[T: (str, bytes)]:
    """A running process and its lazily consumed output.

    ``dispose`` must be called on every exit path; ``async with`` does it.
    """

    def __init__(
        self,
        out: OutputStream[T] | None = None,
        on_dispose: Callable[[], None] | None = None,
    ) -> None:
        self.proc: asyncio.subprocess.Process | None = None
        self.exit_code: int | None = None  # set before ``out`` completes normally
        self.out: OutputStream[T] = out if out is not None else OutputStream()
        self._on_dispose = on_dispose
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._on_dispose is not None:
            self._on_dispose()
        self.out.complete()

    async def __aenter__(self) -> ObservableExecutionResult[T]:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.dispose()
