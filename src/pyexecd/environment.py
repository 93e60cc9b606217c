"""Environment collaborators: variables, activation, and interpreter selection.

Provides:
  - CustomEnvironmentVariablesProvider — os.environ plus a resource's .env file
  - EnvironmentActivationService — the variables an activated venv/conda env sets
  - InterpreterService — the configured (or running) interpreter
"""

from __future__ import annotations

import os
import platform
import sys
from pathlib import Path

from dotenv import dotenv_values

from pyexecd.config import get_settings
from pyexecd.errors import BaseError
from pyexecd.logger import logger
from pyexecd.process import ProcessService
from pyexecd.types import EnvironmentVariables, EnvironmentVariablesService, PythonEnvironment

_VERSION_SCRIPT = "import platform; print(platform.python_version())"


def _dotenv_path(resource: Path | None) -> Path:
    if resource is None:
        return Path.cwd() / ".env"
    resource = Path(resource)
    folder = resource if resource.is_dir() else resource.parent
    return folder / ".env"


class CustomEnvironmentVariablesProvider:
    """``os.environ`` overlaid with the ``.env`` file beside the resource.

    Returns None when there is no .env file, meaning "inherit as-is".
    """

    async def get_environment_variables(
        self, resource: Path | None = None
    ) -> EnvironmentVariables | None:
        path = _dotenv_path(resource)
        if not path.is_file():
            return None
        values = {k: v for k, v in dotenv_values(path).items() if v is not None}
        logger.debug("Loaded .env file", path=str(path), count=len(values))
        return {**os.environ, **values}


class EnvironmentActivationService:
    def __init__(self, env_vars_service: EnvironmentVariablesService | None = None) -> None:
        self._env_vars_service = env_vars_service or CustomEnvironmentVariablesProvider()

    async def get_activated_environment_variables(
        self, resource: Path | None, interpreter: PythonEnvironment
    ) -> EnvironmentVariables | None:
        """Variables as if the interpreter's environment were activated.

        None for global or unrecognised interpreters (nothing to activate).
        """
        if interpreter.env_type not in ("venv", "conda"):
            return None

        base = await self._env_vars_service.get_environment_variables(resource)
        env = dict(base if base is not None else os.environ)
        scripts_dir = str(Path(interpreter.path).parent)
        prefix = interpreter.sys_prefix or str(Path(scripts_dir).parent)

        env["PATH"] = os.pathsep.join(p for p in (scripts_dir, env.get("PATH")) if p)
        env.pop("PYTHONHOME", None)
        if interpreter.env_type == "venv":
            env["VIRTUAL_ENV"] = prefix
        else:
            env["CONDA_PREFIX"] = prefix
            env["CONDA_DEFAULT_ENV"] = Path(prefix).name
        return env


class InterpreterService:
    """Selects ``interpreter.path`` from settings, else the running interpreter."""

    def __init__(self) -> None:
        self._cache: dict[str, PythonEnvironment] = {}

    async def get_selected_interpreter(
        self, resource: Path | None = None
    ) -> PythonEnvironment | None:
        path = get_settings().interpreter.path or sys.executable
        if not path or not os.path.isfile(path):
            logger.warning("Configured interpreter not found", path=path)
            return None
        if path not in self._cache:
            self._cache[path] = await self._describe(path)
        return self._cache[path]

    async def _describe(self, path: str) -> PythonEnvironment:
        scripts_dir = Path(path).parent
        prefix = scripts_dir.parent if scripts_dir.name in ("bin", "Scripts") else scripts_dir
        if (prefix / "pyvenv.cfg").is_file():
            env_type = "venv"
        elif (prefix / "conda-meta").is_dir():
            env_type = "conda"
        else:
            env_type = "global"

        version = await _query_version(path)
        return PythonEnvironment(
            path=path,
            sys_prefix=str(prefix),
            version=version,
            env_type=env_type,
            display_name=f"Python {version} ({env_type})" if version else None,
        )


async def _query_version(path: str) -> str | None:
    if os.path.realpath(path) == os.path.realpath(sys.executable):
        return platform.python_version()
    service = ProcessService()
    try:
        result = await service.exec(path, ["-c", _VERSION_SCRIPT])
    except BaseError as exc:
        logger.warning("Failed to query interpreter version", path=path, err=str(exc))
        return None
    finally:
        service.dispose()
    return result.stdout.strip() or None
