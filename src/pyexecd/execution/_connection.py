"""JSON-RPC client for a daemon's stdio (see pyexecd.daemon._server for the wire format).

The background stdout reader runs for the lifetime of the daemon,
resolving pending requests and dispatching ``output`` notifications to the
listener registered for the originating request. Daemon stderr is relayed
to the log.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from collections.abc import Callable
from typing import Any

from pyexecd.errors import DaemonError, DaemonMethodNotSupportedError
from pyexecd.logger import bind_process

METHOD_NOT_FOUND = -32601

type NotificationListener = Callable[[dict[str, Any]], None]


class DaemonConnection:
    def __init__(self, proc: asyncio.subprocess.Process, name: str) -> None:
        assert proc.stdin is not None
        assert proc.stdout is not None
        assert proc.stderr is not None
        self._proc = proc
        self._name = name
        self._log = bind_process(proc.pid, daemon=name)
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._listeners: dict[int, NotificationListener] = {}
        self._closed = False
        self._stderr_tail: list[str] = []
        self._stdout_task = asyncio.ensure_future(self._read_stdout(proc.stdout))
        self._stderr_task = asyncio.ensure_future(self._read_stderr(proc.stderr))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stderr_tail(self) -> str:
        return "".join(self._stderr_tail)

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        on_notification: NotificationListener | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its result.

        Raises DaemonMethodNotSupportedError for unknown methods and
        DaemonError for every other failure (including daemon exit).
        """
        if self._closed:
            raise DaemonError(f"Daemon {self._name} is not running", std_err=self.stderr_tail)

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        if on_notification is not None:
            self._listeners[request_id] = on_notification

        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}
        stdin = self._proc.stdin
        assert stdin is not None
        try:
            stdin.write((json.dumps(message) + "\n").encode())
            await stdin.drain()
            return await asyncio.wait_for(future, timeout)
        except (ConnectionError, BrokenPipeError) as exc:
            raise DaemonError(
                f"Failed to send {method} to daemon {self._name}: {exc}",
                std_err=self.stderr_tail,
            ) from exc
        except TimeoutError:
            raise DaemonError(
                f"Daemon {self._name} did not answer {method} within {timeout}s",
                std_err=self.stderr_tail,
            ) from None
        finally:
            self._pending.pop(request_id, None)
            self._listeners.pop(request_id, None)

    def close(self) -> None:
        """Stop the readers and fail pending requests."""
        self._fail_pending("Daemon connection closed")
        for task in (self._stdout_task, self._stderr_task):
            if not task.done():
                task.cancel()

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                line = await _read_message(stream)
                if not line:
                    break
                try:
                    message = json.loads(line)
                except ValueError:
                    self._log.warning(
                        "Daemon wrote a non-protocol line",
                        line=line[:200].decode(errors="replace"),
                    )
                    continue
                self._dispatch(message)
        finally:
            self._fail_pending(f"Daemon {self._name} exited")

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await _read_message(stream)
            if not line:
                return
            text = line.decode(errors="replace")
            self._log.debug(text.rstrip())
            self._stderr_tail.append(text)
            del self._stderr_tail[:-50]

    def _dispatch(self, message: dict[str, Any]) -> None:
        if "id" not in message and message.get("method") == "output":
            params = message.get("params") or {}
            listener = self._listeners.get(params.get("id"))
            if listener is not None:
                listener(params)
            return

        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            return
        if "error" in message:
            future.set_exception(self._to_error(message["error"]))
        else:
            future.set_result(message.get("result"))

    def _to_error(self, error: dict[str, Any]) -> DaemonError:
        if error.get("code") == METHOD_NOT_FOUND:
            method = error.get("message", "").rpartition(": ")[2]
            return DaemonMethodNotSupportedError(method)
        data = error.get("data") or {}
        return DaemonError(
            error.get("message", "Daemon request failed"), std_err=data.get("traceback")
        )

    def _fail_pending(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(DaemonError(reason, std_err=self.stderr_tail))
        with contextlib.suppress(Exception):
            self._listeners.clear()


async def _read_message(stream: asyncio.StreamReader) -> bytes:
    """Read one newline-terminated message of any length.

    The reader's limit only bounds each buffered chunk; a reply carrying more
    output than that is read in pieces. Returns b"" at EOF.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.readexactly(exc.consumed))
            continue
        except asyncio.IncompleteReadError as exc:
            chunks.append(exc.partial)
        return b"".join(chunks)
