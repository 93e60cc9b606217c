"""Categorized errors surfaced across the process boundary.

Every error carries a ``category`` from a closed set. Kernel management and
the UI layer dispatch on the category (e.g. ``notinstalled`` offers to install
the module), so categories must never be renamed or collapsed.
"""

from __future__ import annotations

import traceback
from typing import TYPE_CHECKING, Any, Literal, get_args

if TYPE_CHECKING:
    from pyexecd.types import KernelConnectionMetadata

type ErrorCategory = Literal[
    "cancelled",
    "timeout",
    "daemon",
    "zmq",
    "debugger",
    "kerneldied",
    "kernelpromisetimeout",
    "jupytersession",
    "jupyterconnection",
    "jupyterinstall",
    "jupyterselfcert",
    "invalidkernel",
    "noipykernel",
    "fetcherror",
    "notinstalled",
    "kernelspecnotfound",  # historical, no longer raised
    "unsupportedKernelSpec",  # historical, no longer raised
    "sessionDisposed",
    "unknown",
]

ERROR_CATEGORIES: frozenset[str] = frozenset(get_args(ErrorCategory.__value__))


class BaseError(Exception):
    """Root of all categorized errors."""

    def __init__(self, category: ErrorCategory, message: str, *, std_err: str | None = None):
        if category not in ERROR_CATEGORIES:
            raise ValueError(f"Unknown error category: {category!r}")
        super().__init__(message)
        self.category: ErrorCategory = category
        self.message = message
        self.std_err = std_err


class BaseKernelError(BaseError):
    """An error tied to a specific kernel connection."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        kernel_connection_metadata: KernelConnectionMetadata,
        *,
        std_err: str | None = None,
    ):
        super().__init__(category, message, std_err=std_err)
        self.kernel_connection_metadata = kernel_connection_metadata


def get_error_category(error: BaseException | None) -> ErrorCategory:
    if isinstance(error, BaseError):
        return error.category
    return "unknown"


class WrappedError(BaseError):
    """Wraps an error with a custom message, retaining both call stacks.

    The category is inherited from the original error when it has one.
    ``stack`` holds the stack that trapped the error followed by the
    original traceback.
    """

    def __init__(self, message: str, original_exception: BaseException | None = None):
        super().__init__(get_error_category(original_exception), message)
        self.original_exception = original_exception
        self.__cause__ = original_exception
        self.stack = "".join(traceback.format_stack()[:-1])
        if original_exception is not None:
            original = "".join(traceback.format_exception(original_exception))
            self.stack = f"{self.stack}\n\n{original}"

    @classmethod
    def from_error(cls, message: str, err: Any) -> BaseError:
        """Wrap *err* unless it is already categorized (idempotent)."""
        if isinstance(err, BaseError):
            return err
        return cls(message, err)

    @staticmethod
    def unwrap(err: Any) -> Any:
        if not err:
            return err
        if isinstance(err, WrappedError) and isinstance(err.original_exception, BaseError):
            return err.original_exception
        return err


class WrappedKernelError(WrappedError):
    def __init__(
        self,
        message: str,
        original_exception: BaseException | None,
        kernel_connection_metadata: KernelConnectionMetadata,
    ):
        super().__init__(message, original_exception)
        self.kernel_connection_metadata = kernel_connection_metadata


class StdErrError(BaseError):
    """Raised when a process writes to stderr and ``throw_on_std_err`` is set."""

    def __init__(self, message: str):
        super().__init__("unknown", message, std_err=message)


class CancellationError(BaseError):
    def __init__(self, message: str = "Operation cancelled"):
        super().__init__("cancelled", message)


class ProcessTimeoutError(BaseError):
    def __init__(self, message: str, *, timeout: float):
        super().__init__("timeout", message)
        self.timeout = timeout


class ProcessExitError(BaseError):
    """A shell command exited with a non-zero code."""

    def __init__(self, command: str, exit_code: int, *, std_err: str | None = None):
        super().__init__(
            "unknown",
            f"Command failed with exit code {exit_code}: {command}",
            std_err=std_err,
        )
        self.command = command
        self.exit_code = exit_code


class DaemonError(BaseError):
    def __init__(self, message: str, *, std_err: str | None = None):
        super().__init__("daemon", message, std_err=std_err)


class DaemonMethodNotSupportedError(DaemonError):
    """The daemon does not implement the requested method."""

    def __init__(self, method: str):
        super().__init__(f"Daemon does not support method {method!r}")
        self.method = method


class ModuleNotInstalledError(BaseError):
    def __init__(self, module_name: str):
        super().__init__("notinstalled", f"Module '{module_name}' not installed.")
        self.module_name = module_name


class JupyterInstallError(BaseError):
    def __init__(self, message: str):
        super().__init__("jupyterinstall", message)


class SessionDisposedError(BaseError):
    def __init__(self, message: str = "Session has been disposed"):
        super().__init__("sessionDisposed", message)


class InterpreterNotFoundError(BaseError):
    def __init__(self, message: str = "No Python interpreter selected"):
        super().__init__("unknown", message)
