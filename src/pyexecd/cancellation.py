"""Cancellation tokens passed through SpawnOptions.

A token is cancelled once by its source; listeners registered before or after
cancellation are called exactly once.
"""

from __future__ import annotations

import contextlib
from collections.abc import Callable

from pyexecd.errors import CancellationError
from pyexecd.logger import logger


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False
        self._listeners: list[Callable[[], None]] = []

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def on_cancellation_requested(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register *listener*. Returns an unsubscribe function.

        If the token is already cancelled the listener runs immediately.
        """
        if self._cancelled:
            _safe_call(listener)
            return lambda: None

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancellationError()

    def _cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            _safe_call(listener)


class CancellationTokenSource:
    def __init__(self) -> None:
        self.token = CancellationToken()

    def cancel(self) -> None:
        self.token._cancel()

    def dispose(self) -> None:
        self.token._listeners.clear()


def _safe_call(listener: Callable[[], None]) -> None:
    try:
        listener()
    except Exception as exc:
        logger.warning("Cancellation listener error", err=str(exc))
