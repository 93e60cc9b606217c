"""Top-level entry point: resolve an interpreter and hand out execution services."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import assert_never

from pyexecd.config import get_settings
from pyexecd.environment import (
    CustomEnvironmentVariablesProvider,
    EnvironmentActivationService,
    InterpreterService,
)
from pyexecd.errors import DaemonError, InterpreterNotFoundError
from pyexecd.execution._daemon import launch_daemon
from pyexecd.execution._pool import DaemonPool, Launcher
from pyexecd.execution._service import PythonExecutionService
from pyexecd.logger import logger
from pyexecd.process import ProcessServiceFactory
from pyexecd.types import (
    DaemonExecutionFactoryCreationOptions,
    DedicatedDaemonOptions,
    ExecutionFactoryCreateWithEnvironmentOptions,
    ExecutionFactoryCreationOptions,
    PooledDaemonOptions,
    PythonDaemonExecutionServiceProtocol,
    PythonEnvironment,
    PythonExecutionServiceProtocol,
)

type PoolKey = tuple[Path | None, str, str]


class PythonExecutionFactory:
    def __init__(
        self,
        process_service_factory: ProcessServiceFactory | None = None,
        interpreter_service: InterpreterService | None = None,
        activation_service: EnvironmentActivationService | None = None,
        launcher: Launcher = launch_daemon,
    ) -> None:
        self._process_service_factory = process_service_factory or ProcessServiceFactory(
            CustomEnvironmentVariablesProvider()
        )
        self._interpreter_service = interpreter_service or InterpreterService()
        self._activation_service = activation_service or EnvironmentActivationService()
        self._launcher = launcher
        self._pools: dict[PoolKey, asyncio.Future[DaemonPool]] = {}

    async def create(
        self, options: ExecutionFactoryCreationOptions | None = None
    ) -> PythonExecutionService:
        """Execution service for the options' interpreter (else the selected one)."""
        options = options or ExecutionFactoryCreationOptions()
        interpreter = await self._resolve_interpreter(options)
        process_service = await self._process_service_factory.create(options.resource)
        return PythonExecutionService(interpreter, process_service)

    async def create_activated_environment(
        self, options: ExecutionFactoryCreateWithEnvironmentOptions | None = None
    ) -> PythonExecutionService:
        """Execution service whose processes run in the activated environment.

        Activation failures are logged and ignored (the service runs
        unactivated) unless ``allow_environment_fetch_exceptions`` is set.
        """
        options = options or ExecutionFactoryCreateWithEnvironmentOptions()
        interpreter = await self._resolve_interpreter(options)
        try:
            env = await self._activation_service.get_activated_environment_variables(
                options.resource, interpreter
            )
        except Exception as exc:
            if options.allow_environment_fetch_exceptions:
                raise
            logger.warning(
                "Failed to get activated environment, running unactivated",
                interpreter=interpreter.path,
                err=str(exc),
            )
            env = None

        if env is None:
            return await self.create(
                ExecutionFactoryCreationOptions(resource=options.resource, interpreter=interpreter)
            )
        process_service = self._process_service_factory.create_with_env(env)
        return PythonExecutionService(interpreter, process_service)

    async def create_daemon(
        self, options: DaemonExecutionFactoryCreationOptions
    ) -> PythonExecutionServiceProtocol:
        """Pooled daemons (or a plain service when none can be had), or a dedicated daemon.

        Callers only rely on the shared execution surface; a dedicated daemon
        additionally satisfies PythonDaemonExecutionServiceProtocol and must be
        disposed by its owner.
        """
        match options:
            case DedicatedDaemonOptions():
                return await self._create_dedicated(options)
            case PooledDaemonOptions():
                return await self._create_pooled(options)
            case _:
                assert_never(options)

    async def _create_pooled(
        self, options: PooledDaemonOptions
    ) -> DaemonPool | PythonExecutionService:
        s = get_settings()
        interpreter = await self._resolve_interpreter(options)
        activated = ExecutionFactoryCreateWithEnvironmentOptions(
            resource=options.resource, interpreter=interpreter
        )
        if not s.daemon.enabled:
            return await self.create_activated_environment(activated)
        if interpreter.major_version == 2:
            logger.info("Daemons not supported for Python 2", interpreter=interpreter.path)
            return await self.create_activated_environment(activated)

        module = options.daemon_module or s.daemon.module
        key: PoolKey = (options.resource, interpreter.path, module)
        python_execution: PythonExecutionService | None = None
        future = self._pools.get(key)
        if future is None:
            python_execution = await self.create_activated_environment(activated)
            # Another caller may have started the pool while we were activating
            future = self._pools.get(key)
        if future is None:
            future = asyncio.ensure_future(self._start_pool(python_execution, options, module))
            self._pools[key] = future

        try:
            pool = await asyncio.shield(future)
        except DaemonError as exc:
            if self._pools.get(key) is future:
                del self._pools[key]
            logger.warning(
                "Daemon pool creation failed, running without daemons",
                interpreter=interpreter.path,
                module=module,
                err=exc.message,
            )
            return python_execution or await self.create_activated_environment(activated)
        if pool.disposed:
            if self._pools.get(key) is future:
                del self._pools[key]
            return await self._create_pooled(options)
        return pool

    async def _start_pool(
        self,
        python_execution: PythonExecutionService,
        options: PooledDaemonOptions,
        module: str,
    ) -> DaemonPool:
        pool = DaemonPool(
            python_execution,
            daemon_module=module,
            daemon_class=options.daemon_class,
            daemon_count=options.daemon_count,
            observable_daemon_count=options.observable_daemon_count,
            launcher=self._launcher,
        )
        await pool.initialize()
        return pool

    async def _create_dedicated(
        self, options: DedicatedDaemonOptions
    ) -> PythonDaemonExecutionServiceProtocol:
        python_execution = await self.create_activated_environment(
            ExecutionFactoryCreateWithEnvironmentOptions(
                resource=options.resource, interpreter=options.interpreter
            )
        )
        return await self._launcher(
            python_execution,
            daemon_module=options.daemon_module,
            daemon_class=options.daemon_class,
        )

    async def _resolve_interpreter(
        self, options: ExecutionFactoryCreationOptions
    ) -> PythonEnvironment:
        if options.interpreter is not None:
            return options.interpreter
        interpreter = await self._interpreter_service.get_selected_interpreter(options.resource)
        if interpreter is None:
            raise InterpreterNotFoundError()
        return interpreter

    def dispose(self) -> None:
        for future in self._pools.values():
            if not future.done():
                future.cancel()
            elif not future.cancelled() and future.exception() is None:
                future.result().dispose()
        self._pools.clear()
