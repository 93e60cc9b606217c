"""Pool of daemons shared by every caller of one interpreter.

Two independent lanes: ``standard`` daemons serve short operations and
``observable`` daemons serve streaming ones, so a long-running stream never
holds up an ``is_module_installed`` call.

asyncio.ensure_future doesn't run the coroutine synchronously up to the first
await, so checkout and hand-off mutate the idle/busy/waiter state in the
synchronous caller. No two callers can receive the same daemon.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

from pyexecd.errors import BaseError, DaemonError, WrappedError
from pyexecd.event_bus import DaemonExitedEvent, EventBus
from pyexecd.execution._daemon import PythonDaemonExecutionService, launch_daemon
from pyexecd.execution._service import PythonExecutionService
from pyexecd.logger import logger
from pyexecd.process import ObservableExecutionResult, OutputStream
from pyexecd.types import (
    ExecutionResult,
    InterpreterInformation,
    PythonEnvironment,
    PythonExecInfo,
    SpawnOptions,
)

type Lane = Literal["standard", "observable"]
type Launcher = Callable[..., Awaitable[PythonDaemonExecutionService]]
type Service = PythonExecutionService | PythonDaemonExecutionService

LANES: tuple[Lane, Lane] = ("standard", "observable")


@dataclass
class LaneState:
    size: int
    idle: deque[PythonDaemonExecutionService] = field(default_factory=deque)
    busy: set[PythonDaemonExecutionService] = field(default_factory=set)
    waiters: deque[asyncio.Future[PythonDaemonExecutionService]] = field(default_factory=deque)
    starting: int = 0

    @property
    def workers(self) -> int:
        return len(self.idle) + len(self.busy) + self.starting


class DaemonPool:
    """Checks daemons out for one operation at a time and takes them back after.

    Requests beyond the lane's size wait FIFO. When no daemon can be had at
    all (every launch failed), operations run on the plain
    PythonExecutionService instead.
    """

    def __init__(
        self,
        python_execution: PythonExecutionService,
        *,
        daemon_module: str | None = None,
        daemon_class: type[PythonDaemonExecutionService] | None = None,
        daemon_count: int = 2,
        observable_daemon_count: int = 1,
        launcher: Launcher = launch_daemon,
    ) -> None:
        self._python_execution = python_execution
        self._daemon_module = daemon_module
        self._daemon_class = daemon_class
        self._launcher = launcher
        self._lanes: dict[Lane, LaneState] = {
            "standard": LaneState(size=max(1, daemon_count)),
            "observable": LaneState(size=max(1, observable_daemon_count)),
        }
        self._events = EventBus()
        self._unsubscribe = self._events.subscribe(DaemonExitedEvent, self._on_daemon_exited)
        self._tasks: set[asyncio.Future[None]] = set()
        self._disposed = False

    @property
    def interpreter(self) -> PythonEnvironment:
        return self._python_execution.interpreter

    @property
    def python_execution(self) -> PythonExecutionService:
        return self._python_execution

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def initialize(self) -> None:
        """Start every daemon. Raises DaemonError if any fails to start."""
        lanes: list[Lane] = [lane for lane in LANES for _ in range(self._lanes[lane].size)]
        for lane in lanes:
            self._lanes[lane].starting += 1
        launches = [asyncio.ensure_future(self._launch()) for _ in lanes]
        try:
            results = await asyncio.gather(*launches, return_exceptions=True)
        except asyncio.CancelledError:
            for launch in launches:
                if launch.done() and not launch.cancelled() and launch.exception() is None:
                    launch.result().dispose()
            raise
        finally:
            for lane in lanes:
                self._lanes[lane].starting -= 1

        failures = [r for r in results if isinstance(r, BaseException)]
        daemons = [r for r in results if not isinstance(r, BaseException)]
        if failures:
            for daemon in daemons:
                daemon.dispose()
            first = failures[0]
            if isinstance(first, DaemonError):
                raise first
            raise DaemonError(f"Failed to start daemon pool: {first}") from first

        for lane, daemon in zip(lanes, daemons, strict=True):
            self._lanes[lane].idle.append(daemon)
        logger.info(
            "Daemon pool ready",
            interpreter=self._python_execution.python_path,
            standard=self._lanes["standard"].size,
            observable=self._lanes["observable"].size,
        )

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {
            lane: {
                "size": state.size,
                "idle": len(state.idle),
                "busy": len(state.busy),
                "starting": state.starting,
                "waiting": sum(1 for w in state.waiters if not w.done()),
            }
            for lane, state in self._lanes.items()
        }

    # ------------------------------------------------------------------
    # Checkout / check-in
    # ------------------------------------------------------------------

    async def checkout(self, lane: Lane = "standard") -> PythonDaemonExecutionService:
        """Take an idle daemon, waiting FIFO if all are busy.

        Raises DaemonError when the pool is disposed or has no daemons left.
        """
        if self._disposed:
            raise DaemonError("Daemon pool has been disposed")
        state = self._lanes[lane]
        while state.idle:
            daemon = state.idle.popleft()
            if daemon.is_alive:
                state.busy.add(daemon)
                return daemon
            daemon.dispose()
            self._replace(lane)

        if not state.workers:
            raise DaemonError("No daemons available")

        waiter: asyncio.Future[PythonDaemonExecutionService] = (
            asyncio.get_running_loop().create_future()
        )
        state.waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            # Handed a daemon just as we were cancelled: give it back
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                self.checkin(waiter.result(), lane)
            with contextlib.suppress(ValueError):
                state.waiters.remove(waiter)
            raise

    def checkin(self, daemon: PythonDaemonExecutionService, lane: Lane = "standard") -> None:
        """Return *daemon* to the pool, replacing it if it died."""
        state = self._lanes[lane]
        state.busy.discard(daemon)
        if self._disposed:
            daemon.dispose()
            return
        if not daemon.is_alive:
            logger.info("Replacing dead daemon", pid=daemon.pid, lane=lane)
            daemon.dispose()
            self._replace(lane)
            return
        self._release(lane, daemon)

    def _release(self, lane: Lane, daemon: PythonDaemonExecutionService) -> None:
        state = self._lanes[lane]
        while state.waiters:
            waiter = state.waiters.popleft()
            if not waiter.done():
                state.busy.add(daemon)
                waiter.set_result(daemon)
                return
        state.idle.append(daemon)

    def _replace(self, lane: Lane) -> None:
        if self._disposed:
            return
        self._lanes[lane].starting += 1
        task = asyncio.ensure_future(self._launch_replacement(lane))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _launch_replacement(self, lane: Lane) -> None:
        state = self._lanes[lane]
        try:
            daemon = await self._launch()
        except DaemonError as exc:
            state.starting -= 1
            logger.warning("Failed to replace daemon", lane=lane, err=exc.message)
            if not state.workers:
                self._fail_waiters(lane, DaemonError("No daemons available", std_err=exc.std_err))
            return
        state.starting -= 1
        if self._disposed:
            daemon.dispose()
            return
        self._release(lane, daemon)

    def _fail_waiters(self, lane: Lane, exc: BaseException) -> None:
        waiters = self._lanes[lane].waiters
        while waiters:
            waiter = waiters.popleft()
            if not waiter.done():
                waiter.set_exception(exc)

    def _on_daemon_exited(self, event: DaemonExitedEvent) -> None:
        if self._disposed:
            return
        for lane, state in self._lanes.items():
            for daemon in list(state.idle):
                if daemon.pid == event.pid:
                    logger.info("Idle daemon exited", pid=event.pid, exit_code=event.exit_code)
                    state.idle.remove(daemon)
                    self._replace(lane)
                    return

    async def _launch(self) -> PythonDaemonExecutionService:
        return await self._launcher(
            self._python_execution,
            daemon_module=self._daemon_module,
            daemon_class=self._daemon_class,
            events=self._events,
        )

    # ------------------------------------------------------------------
    # Execution surface
    # ------------------------------------------------------------------

    def get_execution_info(self, python_args: list[str] | None = None) -> PythonExecInfo:
        return self._python_execution.get_execution_info(python_args)

    async def get_interpreter_information(self) -> InterpreterInformation | None:
        return await self._run(lambda s: s.get_interpreter_information())

    async def get_executable_path(self) -> str:
        return await self._run(lambda s: s.get_executable_path())

    async def is_module_installed(self, module_name: str) -> bool:
        return await self._run(lambda s: s.is_module_installed(module_name))

    async def exec(
        self, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]:
        return await self._run(lambda s: s.exec(args, options))

    async def exec_module(
        self, module_name: str, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]:
        return await self._run(lambda s: s.exec_module(module_name, args, options))

    def exec_observable(
        self, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]:
        return self._observe(lambda s: s.exec_observable(args, options))

    def exec_module_observable(
        self, module_name: str, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]:
        return self._observe(lambda s: s.exec_module_observable(module_name, args, options))

    async def _run[T](self, operation: Callable[[Service], Awaitable[T]]) -> T:
        try:
            daemon = await self.checkout("standard")
        except DaemonError as exc:
            logger.warning("No daemon available, running directly", err=exc.message)
            return await operation(self._python_execution)
        try:
            return await operation(daemon)
        finally:
            self.checkin(daemon, "standard")

    def _observe(
        self, start: Callable[[Service], ObservableExecutionResult[str]]
    ) -> ObservableExecutionResult[str]:
        tasks: list[asyncio.Future[None]] = []

        def _on_dispose() -> None:
            for task in tasks:
                task.cancel()

        result: ObservableExecutionResult[str] = ObservableExecutionResult(
            OutputStream(), on_dispose=_on_dispose
        )
        try:
            task = asyncio.ensure_future(self._run_observable(start, result))
        except RuntimeError as exc:  # no running event loop
            result.out.error(WrappedError("Failed to start streamed execution", exc))
            return result
        tasks.append(task)
        return result

    async def _run_observable(
        self,
        start: Callable[[Service], ObservableExecutionResult[str]],
        result: ObservableExecutionResult[str],
    ) -> None:
        stream = result.out
        daemon: PythonDaemonExecutionService | None = None
        inner: ObservableExecutionResult[str] | None = None
        try:
            try:
                daemon = await self.checkout("observable")
            except DaemonError as exc:
                logger.warning("No daemon available, streaming directly", err=exc.message)
                inner = start(self._python_execution)
            else:
                inner = start(daemon)
            async for output in inner.out:
                result.proc = inner.proc
                stream.push(output)
            result.exit_code = inner.exit_code
        except BaseError as exc:
            stream.error(exc)
        except asyncio.CancelledError:
            stream.complete()
        else:
            stream.complete()
        finally:
            if inner is not None:
                inner.dispose()
            if daemon is not None:
                self.checkin(daemon, "observable")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._unsubscribe()
        for task in list(self._tasks):
            task.cancel()
        for lane, state in self._lanes.items():
            self._fail_waiters(lane, DaemonError("Daemon pool has been disposed"))
            for daemon in [*state.idle, *state.busy]:
                daemon.dispose()
            state.idle.clear()
            state.busy.clear()
        logger.info("Daemon pool disposed", interpreter=self._python_execution.python_path)
