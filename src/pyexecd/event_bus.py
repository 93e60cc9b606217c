"""Lightweight event bus for intra-process pub/sub.

Plain callables run synchronously in ``emit`` order; coroutine functions are
scheduled fire-and-forget on the running loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pyexecd.logger import logger

if TYPE_CHECKING:
    from pyexecd.types import ShellOptions, SpawnOptions

# --- Event types ---


@dataclass
class ExecEvent:
    """A process is about to be spawned."""

    file: str
    args: list[str]
    options: SpawnOptions | ShellOptions | None


@dataclass
class DaemonExitedEvent:
    """A daemon process exited (expectedly or not)."""

    pid: int | None
    exit_code: int | None


type Event = ExecEvent | DaemonExitedEvent
type Listener = Callable[[Any], Any]


class EventBus:
    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Deliver *event* to every subscriber. Listener errors are logged, not raised."""
        for listener in list(self._listeners[type(event)]):
            try:
                result = listener(event)
            except Exception as exc:
                logger.warning("EventBus listener error", err=str(exc))
                continue
            if inspect.isawaitable(result):
                asyncio.ensure_future(_safe_await(result))

    def clear(self) -> None:
        self._listeners.clear()


async def _safe_await(awaitable: Any) -> None:
    try:
        await awaitable
    except Exception as exc:
        logger.warning("EventBus listener error", err=str(exc))
