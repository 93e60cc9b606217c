"""Build ProcessService instances bound to a resource's environment."""

from __future__ import annotations

import weakref
from pathlib import Path

from pyexecd.process._decoder import BufferDecoder
from pyexecd.process._logger import ProcessLogger
from pyexecd.process._service import ProcessService
from pyexecd.types import EnvironmentVariablesService


class ProcessServiceFactory:
    def __init__(
        self,
        env_vars_service: EnvironmentVariablesService,
        process_logger: ProcessLogger | None = None,
        decoder: BufferDecoder | None = None,
    ) -> None:
        self._env_vars_service = env_vars_service
        self._process_logger = process_logger or ProcessLogger()
        self._decoder = decoder or BufferDecoder()
        # Services die with their callers; dispose() reaches the ones still alive
        self._services: weakref.WeakSet[ProcessService] = weakref.WeakSet()

    async def create(self, resource: Path | None = None) -> ProcessService:
        env = await self._env_vars_service.get_environment_variables(resource)
        return self.create_with_env(env)

    def create_with_env(self, env: dict[str, str] | None) -> ProcessService:
        """Build a service for an already-resolved environment."""
        service = ProcessService(self._decoder, env)
        service.on("exec", self._process_logger.log_process)
        self._services.add(service)
        return service

    def dispose(self) -> None:
        for service in list(self._services):
            service.dispose()
        self._services.clear()
