"""Client side of a long-lived Python daemon.

A daemon is an interpreter running ``python -m pyexecd.daemon`` that accepts
successive requests over stdio, so short operations skip interpreter
startup. Anything the daemon can't do (unsupported options, ``exec`` of
something other than a script or ``-c`` code, unknown methods) runs through
the wrapped PythonExecutionService instead, with the same result shape.

Early termination of a daemon run (cancellation, timeout, dispose, a
``throw_on_std_err`` hit while streaming) kills the daemon: the code it was
running cannot be interrupted any other way. Pools replace dead daemons.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pyexecd.config import get_settings
from pyexecd.errors import (
    BaseError,
    CancellationError,
    DaemonError,
    DaemonMethodNotSupportedError,
    ModuleNotInstalledError,
    StdErrError,
    WrappedError,
)
from pyexecd.event_bus import DaemonExitedEvent, EventBus
from pyexecd.execution._connection import DaemonConnection
from pyexecd.execution._interpreter_info import parse_interpreter_info
from pyexecd.execution._service import (
    PythonExecutionService,
    is_valid_module_name,
    output_has_module_not_installed_error,
)
from pyexecd.logger import bind_process, logger
from pyexecd.process import ObservableExecutionResult, OutputStream, terminate_process
from pyexecd.types import (
    ExecutionResult,
    InterpreterInformation,
    Output,
    PythonEnvironment,
    PythonExecInfo,
    SpawnOptions,
)

# src/ directory holding the pyexecd package; put on the daemon's PYTHONPATH
_PACKAGE_ROOT = str(Path(__file__).resolve().parents[2])

SUPPORTED_OPTIONS = frozenset(
    {"cwd", "env", "encoding", "token", "merge_std_out_err", "throw_on_std_err"}
)


class PythonDaemonExecutionService:
    """Execution service backed by one daemon process. Lives until disposed."""

    def __init__(
        self,
        python_execution: PythonExecutionService,
        proc: asyncio.subprocess.Process,
        connection: DaemonConnection,
        daemon_module: str,
        events: EventBus | None = None,
    ) -> None:
        self._python_execution = python_execution
        self._proc = proc
        self._connection = connection
        self.daemon_module = daemon_module
        self._events = events
        self._log = bind_process(proc.pid, module=daemon_module)
        self._disposed = False
        self._killed = False
        self._exit_watcher = asyncio.ensure_future(self._watch_exit())

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def interpreter(self) -> PythonEnvironment:
        return self._python_execution.interpreter

    @property
    def python_execution(self) -> PythonExecutionService:
        return self._python_execution

    @property
    def is_alive(self) -> bool:
        return self._proc.returncode is None and not self._connection.closed

    def get_execution_info(self, python_args: list[str] | None = None) -> PythonExecInfo:
        return self._python_execution.get_execution_info(python_args)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def ping(self, data: Any = None, timeout: float | None = None) -> Any:
        result = await self._connection.request("ping", {"data": data}, timeout=timeout)
        return result["pong"]

    async def get_interpreter_information(self) -> InterpreterInformation | None:
        try:
            reply = await self._connection.request("get_interpreter_information")
            return parse_interpreter_info(reply, self._python_execution.python_path)
        except (DaemonError, ValueError, KeyError, TypeError) as exc:
            self._log.debug("Daemon interpreter query failed, falling back", err=str(exc))
            return await self._python_execution.get_interpreter_information()

    async def get_executable_path(self) -> str:
        try:
            reply = await self._connection.request("get_executable")
            return reply["path"]
        except DaemonError as exc:
            self._log.debug("Daemon executable query failed, falling back", err=str(exc))
            return await self._python_execution.get_executable_path()

    async def is_module_installed(self, module_name: str) -> bool:
        if not is_valid_module_name(module_name):
            return False
        try:
            reply = await self._connection.request(
                "is_module_installed", {"module_name": module_name}
            )
            return bool(reply["exists"])
        except DaemonError as exc:
            self._log.debug("Daemon module check failed, falling back", err=str(exc))
            return await self._python_execution.is_module_installed(module_name)

    # ------------------------------------------------------------------
    # One-shot execution
    # ------------------------------------------------------------------

    async def exec(
        self, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]:
        options = options or SpawnOptions()
        route = _exec_route(args)
        if route is None or not self._can_use_daemon(options):
            return await self._python_execution.exec(args, options)
        method, params = route
        try:
            reply = await self._request_run(method, {**params, **_run_params(options)}, options)
        except DaemonMethodNotSupportedError:
            return await self._python_execution.exec(args, options)
        return _to_result(reply, options)

    async def exec_module(
        self, module_name: str, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]:
        options = options or SpawnOptions()
        if not self._can_use_daemon(options):
            return await self._python_execution.exec_module(module_name, args, options)
        params = {"module_name": module_name, "args": list(args), **_run_params(options)}
        try:
            reply = await self._request_run("exec_module", params, options)
        except DaemonMethodNotSupportedError:
            return await self._python_execution.exec_module(module_name, args, options)

        stderr = reply.get("stderr") or ""
        if output_has_module_not_installed_error(module_name, stderr):
            if not await self.is_module_installed(module_name):
                raise ModuleNotInstalledError(module_name)
        return _to_result(reply, options)

    # ------------------------------------------------------------------
    # Streamed execution
    # ------------------------------------------------------------------

    def exec_observable(
        self, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]:
        options = options or SpawnOptions()
        route = _exec_route(args, observable=True)
        if route is None or not self._can_use_daemon(options):
            return self._python_execution.exec_observable(args, options)
        method, params = route
        return self._observe(
            method,
            {**params, **_run_params(options)},
            options,
            fallback=lambda: self._python_execution.exec_observable(args, options),
        )

    def exec_module_observable(
        self, module_name: str, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]:
        options = options or SpawnOptions()
        if not self._can_use_daemon(options):
            return self._python_execution.exec_module_observable(module_name, args, options)
        params = {"module_name": module_name, "args": list(args), **_run_params(options)}
        return self._observe(
            "exec_module_observable",
            params,
            options,
            fallback=lambda: self._python_execution.exec_module_observable(
                module_name, args, options
            ),
        )

    def _observe(
        self,
        method: str,
        params: dict[str, Any],
        options: SpawnOptions,
        fallback: Callable[[], ObservableExecutionResult[str]],
    ) -> ObservableExecutionResult[str]:
        tasks: list[asyncio.Future[None]] = []

        def _on_dispose() -> None:
            for task in tasks:
                if not task.done():
                    # Kill now so the daemon is seen as dead the moment we return
                    self._kill("observable disposed")
                    task.cancel()

        result: ObservableExecutionResult[str] = ObservableExecutionResult(
            OutputStream(), on_dispose=_on_dispose
        )
        try:
            task = asyncio.ensure_future(
                self._run_observable(method, params, options, result, fallback)
            )
        except RuntimeError as exc:  # no running event loop
            result.out.error(WrappedError(f"Failed to start {method}", exc))
            return result
        tasks.append(task)
        return result

    async def _run_observable(
        self,
        method: str,
        params: dict[str, Any],
        options: SpawnOptions,
        result: ObservableExecutionResult[str],
        fallback: Callable[[], ObservableExecutionResult[str]],
    ) -> None:
        stream = result.out
        result.proc = self._proc
        stderr_hit: list[str] = []

        def _on_output(notification: dict[str, Any]) -> None:
            source = notification.get("source", "stdout")
            text = notification.get("out", "")
            if source == "stderr" and options.throw_on_std_err:
                stderr_hit.append(text)
                self._kill("stderr output with throw_on_std_err")
                return
            stream.push(Output("stderr" if source == "stderr" else "stdout", text))

        try:
            reply = await self._request_run(method, params, options, on_notification=_on_output)
        except DaemonMethodNotSupportedError:
            await _forward(fallback(), result)
        except BaseError as exc:
            stream.error(StdErrError("".join(stderr_hit)) if stderr_hit else exc)
        except asyncio.CancelledError:
            # dispose() while the daemon is still running our code
            self._kill("observable disposed")
            stream.complete()
        else:
            result.exit_code = reply.get("exit_code")
            stream.complete()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Ask the daemon to exit, terminating it if it doesn't."""
        if self._disposed:
            return
        self._disposed = True
        if self.is_alive:
            with contextlib.suppress(DaemonError):
                await self._connection.request("exit", timeout=get_settings().process.kill_timeout)
        await terminate_process(self._proc)
        self._connection.close()

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._kill("disposed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _can_use_daemon(self, options: SpawnOptions) -> bool:
        return self.is_alive and not options.explicit_options() - SUPPORTED_OPTIONS

    async def _request_run(
        self,
        method: str,
        params: dict[str, Any],
        options: SpawnOptions,
        on_notification: Callable[[dict[str, Any]], None] | None = None,
    ) -> dict[str, Any]:
        """Send a run request, killing the daemon if the token fires first."""
        token = options.token
        if token:
            token.raise_if_cancelled()
        request = asyncio.ensure_future(
            self._connection.request(method, params, on_notification=on_notification)
        )
        cancelled = False

        def _on_cancel() -> None:
            nonlocal cancelled
            cancelled = True
            request.cancel()

        unsubscribe = token.on_cancellation_requested(_on_cancel) if token else None
        try:
            return await request
        except asyncio.CancelledError:
            if cancelled:
                self._kill("cancelled")
                raise CancellationError() from None
            request.cancel()
            self._kill("request cancelled")
            raise
        finally:
            if unsubscribe:
                unsubscribe()

    def _kill(self, reason: str) -> None:
        self._killed = True
        if self._proc.returncode is None:
            self._log.debug("Killing daemon", reason=reason)
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
        self._connection.close()

    async def _watch_exit(self) -> None:
        exit_code = await self._proc.wait()
        self._connection.close()
        if not (self._disposed or self._killed):
            self._log.warning("Daemon exited unexpectedly", exit_code=exit_code)
        if self._events is not None:
            self._events.emit(DaemonExitedEvent(pid=self._proc.pid, exit_code=exit_code))


def _exec_route(args: list[str], observable: bool = False) -> tuple[str, dict[str, Any]] | None:
    """Map interpreter args to a daemon method, or None if the daemon can't run them."""
    if not args:
        return None
    if args[0].endswith(".py"):
        method = "exec_file_observable" if observable else "exec_file"
        return method, {"file_name": args[0], "args": list(args[1:])}
    if args[0] == "-c" and len(args) >= 2 and not observable:
        return "exec_code", {"code": args[1], "args": list(args[2:])}
    return None


def _run_params(options: SpawnOptions) -> dict[str, Any]:
    return {
        "cwd": str(options.cwd) if options.cwd is not None else None,
        "env": dict(options.env) if options.env is not None else None,
        "merge": options.merge_std_out_err,
    }


def _to_result(reply: dict[str, Any], options: SpawnOptions) -> ExecutionResult[str]:
    stderr = reply.get("stderr") or ""
    if options.throw_on_std_err and stderr:
        raise StdErrError(stderr)
    return ExecutionResult(
        stdout=reply.get("stdout") or "",
        stderr=None if options.merge_std_out_err or not stderr else stderr,
    )


async def _forward(
    source: ObservableExecutionResult[str], target: ObservableExecutionResult[str]
) -> None:
    try:
        async for output in source.out:
            target.out.push(output)
    except BaseError as exc:
        target.out.error(exc)
    else:
        target.exit_code = source.exit_code
        target.out.complete()
    finally:
        source.dispose()


async def launch_daemon(
    python_execution: PythonExecutionService,
    daemon_module: str | None = None,
    daemon_class: type[PythonDaemonExecutionService] | None = None,
    events: EventBus | None = None,
) -> PythonDaemonExecutionService:
    """Start a daemon for *python_execution*'s interpreter and wait for its handshake.

    Raises DaemonError if the daemon can't be spawned or doesn't answer ``ping``
    within ``daemon.startup_timeout``.
    """
    s = get_settings()
    module = daemon_module or s.daemon.module
    cls = daemon_class or PythonDaemonExecutionService
    if not issubclass(cls, PythonDaemonExecutionService):
        raise TypeError(f"{cls.__name__} must extend PythonDaemonExecutionService")

    env = dict(python_execution.process_service.env or os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (_PACKAGE_ROOT, env.get("PYTHONPATH")) if p)
    env.setdefault("PYTHONUNBUFFERED", "1")
    env.setdefault("PYTHONIOENCODING", "utf-8")
    info = python_execution.get_execution_info(
        ["-m", "pyexecd.daemon", "--daemon-module", module, "--log-level", s.logging.level]
    )

    try:
        proc = await asyncio.create_subprocess_exec(
            info.command,
            *info.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            limit=s.process.max_output_size,
        )
    except OSError as exc:
        raise DaemonError(f"Failed to spawn daemon for {info.command}: {exc}") from exc

    connection = DaemonConnection(proc, f"daemon-{proc.pid}")
    try:
        await connection.request("ping", {"data": "hello"}, timeout=s.daemon.startup_timeout)
    except DaemonError as exc:
        connection.close()
        await terminate_process(proc)
        logger.warning(
            "Daemon failed handshake",
            interpreter=info.command,
            module=module,
            err=exc.message,
        )
        raise DaemonError(
            f"Daemon for {info.command} failed to start: {exc.message}",
            std_err=connection.stderr_tail or exc.std_err,
        ) from exc
    except BaseException:
        # Cancelled mid-handshake: the daemon must not outlive its launch
        connection.close()
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        raise

    logger.info("Daemon started", pid=proc.pid, interpreter=info.command, module=module)
    return cls(python_execution, proc, connection, module, events)
