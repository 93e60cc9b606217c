"""Data models and service contracts for pyexecd."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol, TypeGuard, runtime_checkable

if TYPE_CHECKING:
    from pyexecd.cancellation import CancellationToken
    from pyexecd.process._observable import ObservableExecutionResult

type OutputSource = Literal["stdout", "stderr"]
type EnvironmentVariables = dict[str, str]


@dataclass(frozen=True)
class ExecutionResult[T: (str, bytes)]:
    stdout: T
    stderr: T | None = None


@dataclass(frozen=True)
class Output[T: (str, bytes)]:
    source: OutputSource
    out: T


@dataclass(kw_only=True)
class SpawnOptions:
    cwd: str | Path | None = None
    env: Mapping[str, str] | None = None
    encoding: str | None = None  # None → settings.process.encoding
    token: CancellationToken | None = None
    merge_std_out_err: bool = False
    throw_on_std_err: bool = False
    timeout: float | None = None  # seconds
    spawn_kwargs: dict[str, Any] = field(default_factory=dict)  # passed to the OS spawn

    def explicit_options(self) -> set[str]:
        """Names of options that differ from their defaults."""
        explicit: set[str] = set()
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if f.default_factory is not dataclasses.MISSING:
                default = f.default_factory()
            else:
                default = f.default
            if value != default:
                explicit.add(f.name)
        return explicit


@dataclass(kw_only=True)
class ShellOptions:
    cwd: str | Path | None = None
    env: Mapping[str, str] | None = None
    encoding: str | None = None
    token: CancellationToken | None = None
    throw_on_std_err: bool = False
    timeout: float | None = None


@dataclass(frozen=True)
class PythonExecInfo:
    """How to invoke an interpreter: ``[command, *args]``."""

    command: str
    args: list[str]
    python_executable: str

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(frozen=True)
class PythonEnvironment:
    path: str  # interpreter executable
    sys_prefix: str | None = None
    version: str | None = None  # "3.12.1"; None until queried
    env_type: Literal["venv", "conda", "global", "unknown"] = "unknown"
    display_name: str | None = None

    @property
    def major_version(self) -> int | None:
        if not self.version:
            return None
        head = self.version.split(".", 1)[0]
        return int(head) if head.isdigit() else None


@dataclass(frozen=True)
class InterpreterInformation:
    path: str
    version: str
    version_info: tuple[int | str, ...]
    sys_version: str
    sys_prefix: str
    architecture: Literal["x64", "x86", "unknown"] = "unknown"


@dataclass(frozen=True)
class KernelConnectionMetadata:
    id: str
    kind: Literal["startUsingPythonInterpreter", "startUsingKernelSpec", "connectToLiveKernel"]
    interpreter: PythonEnvironment | None = None


# ---------------------------------------------------------------------------
# Factory creation options
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class ExecutionFactoryCreationOptions:
    resource: Path | None = None
    interpreter: PythonEnvironment | None = None  # None → the selected interpreter


@dataclass(kw_only=True)
class ExecutionFactoryCreateWithEnvironmentOptions(ExecutionFactoryCreationOptions):
    allow_environment_fetch_exceptions: bool = False


@dataclass(kw_only=True)
class PooledDaemonOptions(ExecutionFactoryCreationOptions):
    """The daemon belongs to a pool and goes back into it for re-use."""

    daemon_module: str | None = None  # module exposing PythonDaemon; None → settings
    daemon_class: type | None = None  # client class, must extend PythonDaemonExecutionService
    daemon_count: int = 2  # workers for short operations (is_module_installed, exec, ...)
    observable_daemon_count: int = 1  # workers for long-running streaming operations
    dedicated: Literal[False] = False


@dataclass(kw_only=True)
class DedicatedDaemonOptions(ExecutionFactoryCreationOptions):
    """A daemon owned by the caller; never pooled or re-used."""

    daemon_module: str | None = None
    daemon_class: type | None = None
    dedicated: Literal[True] = True


type DaemonExecutionFactoryCreationOptions = PooledDaemonOptions | DedicatedDaemonOptions


def is_daemon_pool_creation_option(
    options: DaemonExecutionFactoryCreationOptions,
) -> TypeGuard[PooledDaemonOptions]:
    return getattr(options, "dedicated", False) is not True


# ---------------------------------------------------------------------------
# Service contracts
# ---------------------------------------------------------------------------


@runtime_checkable
class Disposable(Protocol):
    def dispose(self) -> None: ...


@runtime_checkable
class PythonExecutionServiceProtocol(Protocol):
    """Surface shared by plain, daemon, and pooled execution services."""

    async def get_interpreter_information(self) -> InterpreterInformation | None: ...
    async def get_executable_path(self) -> str: ...
    async def is_module_installed(self, module_name: str) -> bool: ...
    def get_execution_info(self, python_args: list[str] | None = None) -> PythonExecInfo: ...

    def exec_observable(
        self, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]: ...
    def exec_module_observable(
        self, module_name: str, args: list[str], options: SpawnOptions | None = None
    ) -> ObservableExecutionResult[str]: ...

    async def exec(
        self, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]: ...
    async def exec_module(
        self, module_name: str, args: list[str], options: SpawnOptions | None = None
    ) -> ExecutionResult[str]: ...


@runtime_checkable
class PythonDaemonExecutionServiceProtocol(PythonExecutionServiceProtocol, Disposable, Protocol):
    """A long-lived execution service; lives until disposed."""


class EnvironmentVariablesService(Protocol):
    async def get_environment_variables(
        self, resource: Path | None = None
    ) -> EnvironmentVariables | None: ...


class EnvironmentActivationService(Protocol):
    async def get_activated_environment_variables(
        self, resource: Path | None, interpreter: PythonEnvironment
    ) -> EnvironmentVariables | None: ...


class InterpreterService(Protocol):
    async def get_selected_interpreter(
        self, resource: Path | None = None
    ) -> PythonEnvironment | None: ...
