"""Spawn external processes — one-shot results, streamed output, shell commands.

Provides:
  - ProcessService.exec() — run to completion, return decoded stdout/stderr
  - ProcessService.exec_observable() — stream Output entries while the process runs
  - ProcessService.shell_exec() — run a command line through the shell
  - terminate_process() — terminate with a grace period, fall back to kill
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Callable, Mapping
from typing import Literal

from pyexecd.cancellation import CancellationToken
from pyexecd.config import get_settings
from pyexecd.errors import (
    BaseError,
    CancellationError,
    ProcessExitError,
    ProcessTimeoutError,
    StdErrError,
    WrappedError,
)
from pyexecd.event_bus import EventBus, ExecEvent
from pyexecd.logger import logger
from pyexecd.process._decoder import BufferDecoder
from pyexecd.process._observable import ObservableExecutionResult, OutputStream
from pyexecd.types import ExecutionResult, Output, OutputSource, ShellOptions, SpawnOptions

READ_CHUNK = 8192

type ExecListener = Callable[[str, list[str], SpawnOptions | ShellOptions | None], None]


async def terminate_process(proc: asyncio.subprocess.Process, timeout: float | None = None) -> None:
    """Terminate *proc*, escalating to kill if it is still alive after *timeout*."""
    if proc.returncode is not None:
        return
    if timeout is None:
        timeout = get_settings().process.kill_timeout
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except TimeoutError:
        logger.warning("Process ignored terminate, killing", pid=proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(Exception):
            await proc.wait()


class ProcessService:
    """Runs external processes within one environment.

    ``env`` is the base environment for every spawn (``None`` inherits
    ``os.environ``). An ``env`` in SpawnOptions replaces it for that spawn.
    """

    def __init__(
        self,
        decoder: BufferDecoder | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._decoder = decoder or BufferDecoder()
        self._env = dict(env) if env is not None else None
        self._events = EventBus()
        self._processes: set[asyncio.subprocess.Process] = set()
        self._observables: set[ObservableExecutionResult[str]] = set()

    @property
    def env(self) -> dict[str, str] | None:
        return self._env

    def on(self, event: Literal["exec"], listener: ExecListener) -> Callable[[], None]:
        """Subscribe to ``exec`` events, emitted before each spawn."""
        if event != "exec":
            raise ValueError(f"Unsupported event: {event!r}")
        return self._events.subscribe(ExecEvent, lambda e: listener(e.file, e.args, e.options))

    def dispose(self) -> None:
        """Kill every process this service still tracks."""
        for observable in list(self._observables):
            observable.dispose()
        for proc in list(self._processes):
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
        self._processes.clear()
        self._events.clear()

    # ------------------------------------------------------------------
    # One-shot execution
    # ------------------------------------------------------------------

    async def exec(
        self, file: str, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]:
        options = options or SpawnOptions()
        encoding = options.encoding or get_settings().process.encoding
        self._events.emit(ExecEvent(file, list(args), options))
        if options.token:
            options.token.raise_if_cancelled()

        proc = await self._spawn(file, args, options)
        stdout, stderr = await self._communicate(
            proc,
            token=options.token,
            timeout=options.timeout,
            merge=options.merge_std_out_err,
            description=file,
        )

        stderr_text = self._decoder.decode(stderr, encoding)
        if options.throw_on_std_err and stderr_text:
            raise StdErrError(stderr_text)
        return ExecutionResult(
            stdout=self._decoder.decode(stdout, encoding),
            stderr=None if options.merge_std_out_err or not stderr_text else stderr_text,
        )

    async def shell_exec(
        self, command: str, options: ShellOptions | None = None
    ) -> ExecutionResult[str]:
        options = options or ShellOptions()
        encoding = options.encoding or get_settings().process.encoding
        self._events.emit(ExecEvent(command, [], options))
        if options.token:
            options.token.raise_if_cancelled()

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.cwd,
                env=self._spawn_env(options.env),
            )
        except OSError as exc:
            raise WrappedError(f"Failed to run shell command: {command}", exc) from exc
        self._processes.add(proc)

        stdout, stderr = await self._communicate(
            proc,
            token=options.token,
            timeout=options.timeout,
            merge=False,
            description=command,
        )

        stderr_text = self._decoder.decode(stderr, encoding)
        if proc.returncode:
            raise ProcessExitError(command, proc.returncode, std_err=stderr_text or None)
        if options.throw_on_std_err and stderr_text:
            raise StdErrError(stderr_text)
        return ExecutionResult(
            stdout=self._decoder.decode(stdout, encoding),
            stderr=stderr_text or None,
        )

    # ------------------------------------------------------------------
    # Streamed execution
    # ------------------------------------------------------------------

    def exec_observable(
        self, file: str, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]:
        """Start *file* and stream its output. Never raises; errors surface on ``out``."""
        options = options or SpawnOptions()
        tasks: list[asyncio.Task[None]] = []

        def _on_dispose() -> None:
            for task in tasks:
                task.cancel()

        result: ObservableExecutionResult[str] = ObservableExecutionResult(
            OutputStream(), on_dispose=_on_dispose
        )
        self._events.emit(ExecEvent(file, list(args), options))

        try:
            task = asyncio.ensure_future(self._run_observable(file, args, options, result))
        except RuntimeError as exc:  # no running event loop
            result.out.error(WrappedError(f"Failed to spawn {file}", exc))
            return result

        tasks.append(task)
        self._observables.add(result)
        task.add_done_callback(lambda _: self._observables.discard(result))
        return result

    async def _run_observable(
        self,
        file: str,
        args: list[str],
        options: SpawnOptions,
        result: ObservableExecutionResult[str],
    ) -> None:
        stream = result.out
        token = options.token
        if token and token.is_cancellation_requested:
            stream.error(CancellationError())
            return

        try:
            proc = await self._spawn(file, args, options)
        except BaseError as exc:
            stream.error(exc)
            return
        result.proc = proc

        cancelled = False
        current = asyncio.current_task()

        def _on_cancel() -> None:
            nonlocal cancelled
            cancelled = True
            if current is not None:
                current.cancel()

        unsubscribe = token.on_cancellation_requested(_on_cancel) if token else None
        encoding = options.encoding or get_settings().process.encoding
        try:
            async with asyncio.timeout(options.timeout):
                assert proc.stdout is not None
                assert proc.stderr is not None
                await asyncio.gather(
                    self._stream_output(proc.stdout, "stdout", options, stream, encoding),
                    self._stream_output(proc.stderr, "stderr", options, stream, encoding),
                )
                await proc.wait()
        except StdErrError as exc:
            await terminate_process(proc)
            stream.error(exc)
        except TimeoutError:
            await terminate_process(proc)
            stream.error(
                ProcessTimeoutError(
                    f"{file} timed out after {options.timeout}s", timeout=options.timeout or 0
                )
            )
        except asyncio.CancelledError:
            # Cancelled by the token or by dispose()
            await terminate_process(proc)
            if cancelled:
                stream.error(CancellationError())
            else:
                stream.complete()
        except Exception as exc:
            await terminate_process(proc)
            stream.error(WrappedError.from_error(f"Failed while reading output of {file}", exc))
        else:
            result.exit_code = proc.returncode
            stream.complete()
        finally:
            if unsubscribe:
                unsubscribe()
            self._processes.discard(proc)

    async def _stream_output(
        self,
        reader: asyncio.StreamReader,
        source: OutputSource,
        options: SpawnOptions,
        stream: OutputStream[str],
        encoding: str,
    ) -> None:
        decoder = self._decoder.incremental(encoding)
        target: OutputSource = "stdout" if options.merge_std_out_err else source
        while True:
            chunk = await reader.read(READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                if source == "stderr" and options.throw_on_std_err:
                    raise StdErrError(text)
                stream.push(Output(target, text))
            if not chunk:
                return

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spawn_env(self, env: Mapping[str, str] | None) -> dict[str, str]:
        if env is not None:
            merged = dict(env)
        elif self._env is not None:
            merged = dict(self._env)
        else:
            merged = dict(os.environ)
        # Child Python processes flush promptly and emit text we can decode
        merged.setdefault("PYTHONUNBUFFERED", "1")
        merged.setdefault("PYTHONIOENCODING", "utf-8")
        return merged

    async def _spawn(
        self, file: str, args: list[str], options: SpawnOptions
    ) -> asyncio.subprocess.Process:
        try:
            proc = await asyncio.create_subprocess_exec(
                file,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=options.cwd,
                env=self._spawn_env(options.env),
                **options.spawn_kwargs,
            )
        except OSError as exc:
            raise WrappedError(f"Failed to spawn {file}", exc) from exc
        self._processes.add(proc)
        return proc

    async def _communicate(
        self,
        proc: asyncio.subprocess.Process,
        *,
        token: CancellationToken | None,
        timeout: float | None,
        merge: bool,
        description: str,
    ) -> tuple[list[bytes], list[bytes]]:
        """Collect output until exit, honouring cancellation and timeout.

        Returns (stdout_chunks, stderr_chunks). With *merge*, stderr chunks
        also land in stdout in arrival order.
        """
        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []

        async def _pump(stream: asyncio.StreamReader | None, sinks: list[list[bytes]]) -> None:
            assert stream is not None
            while chunk := await stream.read(READ_CHUNK):
                for sink in sinks:
                    sink.append(chunk)

        async def _collect() -> None:
            stderr_sinks = [stderr_chunks, stdout_chunks] if merge else [stderr_chunks]
            await asyncio.gather(
                _pump(proc.stdout, [stdout_chunks]),
                _pump(proc.stderr, stderr_sinks),
            )
            await proc.wait()

        collector = asyncio.ensure_future(_collect())
        cancelled = False

        def _on_cancel() -> None:
            nonlocal cancelled
            cancelled = True
            collector.cancel()

        unsubscribe = token.on_cancellation_requested(_on_cancel) if token else None
        try:
            await asyncio.wait_for(collector, timeout)
        except TimeoutError:
            await terminate_process(proc)
            raise ProcessTimeoutError(
                f"{description} timed out after {timeout}s", timeout=timeout or 0
            ) from None
        except asyncio.CancelledError:
            await terminate_process(proc)
            if cancelled:
                raise CancellationError() from None
            raise
        finally:
            if unsubscribe:
                unsubscribe()
            self._processes.discard(proc)

        return stdout_chunks, stderr_chunks
