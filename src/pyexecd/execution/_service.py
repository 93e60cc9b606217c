"""Run Python through a ProcessService bound to one interpreter."""

from __future__ import annotations

import json
import os
import re

from pyexecd.errors import BaseError, ModuleNotInstalledError, StdErrError
from pyexecd.execution._interpreter_info import INTERPRETER_INFO_SCRIPT, parse_interpreter_info
from pyexecd.logger import logger
from pyexecd.process import ObservableExecutionResult, ProcessService
from pyexecd.types import (
    ExecutionResult,
    InterpreterInformation,
    PythonEnvironment,
    PythonExecInfo,
    SpawnOptions,
)

_MODULE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


def is_valid_module_name(module_name: str) -> bool:
    return bool(_MODULE_NAME.match(module_name))


def output_has_module_not_installed_error(module_name: str, output: str | None) -> bool:
    """Check for the interpreter's "No module named X" message in *output*."""
    if not output:
        return False
    pattern = rf"No module named '?{re.escape(module_name)}'?(?![\w.])"
    return re.search(pattern, output) is not None


def build_python_exec_info(
    python_path: str, python_args: list[str] | None = None
) -> PythonExecInfo:
    return PythonExecInfo(
        command=python_path,
        args=list(python_args or []),
        python_executable=python_path,
    )


class PythonExecutionService:
    def __init__(self, interpreter: PythonEnvironment, process_service: ProcessService) -> None:
        self.interpreter = interpreter
        self._process_service = process_service

    @property
    def process_service(self) -> ProcessService:
        return self._process_service

    @property
    def python_path(self) -> str:
        return self.interpreter.path

    def get_execution_info(self, python_args: list[str] | None = None) -> PythonExecInfo:
        return build_python_exec_info(self.python_path, python_args)

    async def get_interpreter_information(self) -> InterpreterInformation | None:
        """Version and architecture of the interpreter, or None if it can't be determined."""
        info = self.get_execution_info(["-c", INTERPRETER_INFO_SCRIPT])
        try:
            result = await self._process_service.exec(info.command, info.args)
            return parse_interpreter_info(result.stdout, self.python_path)
        except (BaseError, ValueError, KeyError) as exc:
            logger.warning(
                "Failed to get interpreter information",
                interpreter=self.python_path,
                err=str(exc),
            )
            return None

    async def get_executable_path(self) -> str:
        if os.path.isfile(self.python_path):
            return self.python_path
        info = self.get_execution_info(["-c", "import sys; print(sys.executable)"])
        result = await self._process_service.exec(
            info.command, info.args, SpawnOptions(throw_on_std_err=True)
        )
        return result.stdout.strip()

    async def is_module_installed(self, module_name: str) -> bool:
        """True if *module_name* can be imported. Never raises."""
        if not is_valid_module_name(module_name):
            return False
        info = self.get_execution_info(
            [
                "-c",
                "import importlib.util, json, sys; "
                f"print(json.dumps(importlib.util.find_spec({module_name!r}) is not None))",
            ]
        )
        try:
            result = await self._process_service.exec(
                info.command, info.args, SpawnOptions(throw_on_std_err=True)
            )
            return json.loads(result.stdout.strip() or "false") is True
        except (BaseError, ValueError) as exc:
            logger.debug("Module check failed", module=module_name, err=str(exc))
            return False

    def exec_observable(
        self, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]:
        info = self.get_execution_info(args)
        return self._process_service.exec_observable(info.command, info.args, options)

    def exec_module_observable(
        self, module_name: str, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]:
        return self.exec_observable(["-m", module_name, *args], options)

    async def exec(
        self, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]:
        info = self.get_execution_info(args)
        return await self._process_service.exec(info.command, info.args, options)

    async def exec_module(
        self, module_name: str, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]:
        """Run ``python -m module_name *args``.

        Raises ModuleNotInstalledError when the module is missing rather than
        returning the interpreter's error text.
        """
        info = self.get_execution_info(["-m", module_name, *args])
        try:
            result = await self._process_service.exec(info.command, info.args, options)
        except StdErrError as exc:
            await self._raise_if_not_installed(module_name, exc.std_err, cause=exc)
            raise
        await self._raise_if_not_installed(module_name, result.stderr or result.stdout)
        return result

    async def _raise_if_not_installed(
        self, module_name: str, output: str | None, cause: BaseException | None = None
    ) -> None:
        if not output_has_module_not_installed_error(module_name, output):
            return
        if not await self.is_module_installed(module_name):
            raise ModuleNotInstalledError(module_name) from cause
