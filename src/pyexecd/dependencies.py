"""nbconvert checks, and picking an interpreter able to export notebooks."""

from __future__ import annotations

import re

from pyexecd.environment import InterpreterService
from pyexecd.errors import BaseError, JupyterInstallError
from pyexecd.execution import PythonExecutionFactory
from pyexecd.logger import logger
from pyexecd.types import PooledDaemonOptions, PythonEnvironment, SpawnOptions

_VERSION = re.compile(r"\d+\.\d+(?:\.\d+)?")


class NbConvertDependencyChecker:
    def __init__(self, factory: PythonExecutionFactory) -> None:
        self._factory = factory

    async def is_nbconvert_installed(self, interpreter: PythonEnvironment) -> bool:
        service = await self._factory.create_daemon(PooledDaemonOptions(interpreter=interpreter))
        return await service.is_module_installed("nbconvert")

    async def get_nbconvert_version(self, interpreter: PythonEnvironment) -> str | None:
        """Installed nbconvert version, or None if missing or unreadable."""
        service = await self._factory.create_daemon(PooledDaemonOptions(interpreter=interpreter))
        try:
            result = await service.exec_module(
                "nbconvert", ["--version"], SpawnOptions(throw_on_std_err=True)
            )
        except BaseError as exc:
            logger.info("nbconvert version unavailable", interpreter=interpreter.path, err=str(exc))
            return None
        match = _VERSION.search(result.stdout)
        return match.group(0) if match else None


class ExportInterpreterFinder:
    def __init__(
        self,
        checker: NbConvertDependencyChecker,
        interpreter_service: InterpreterService,
    ) -> None:
        self._checker = checker
        self._interpreter_service = interpreter_service

    async def get_export_interpreter(
        self, candidate: PythonEnvironment | None = None
    ) -> PythonEnvironment:
        """An interpreter that can run nbconvert: *candidate* if it can, else the selected one.

        Raises JupyterInstallError if neither has nbconvert.
        """
        if candidate is not None and await self._checker.is_nbconvert_installed(candidate):
            return candidate

        selected = await self._interpreter_service.get_selected_interpreter()
        if selected is not None and await self._checker.is_nbconvert_installed(selected):
            return selected

        raise JupyterInstallError(
            "Exporting requires nbconvert. Install it into the selected interpreter "
            "(python -m pip install nbconvert) and try again."
        )
