"""Python execution: plain processes, daemons, and daemon pools.

This package is split into focused submodules:
  _interpreter_info — interpreter version and architecture query
  _service          — PythonExecutionService (one process per call)
  _connection       — JSON-RPC client for a daemon's stdio
  _daemon           — PythonDaemonExecutionService and launch_daemon
  _pool             — DaemonPool (standard and observable lanes)
  _factory          — PythonExecutionFactory (top-level entry point)
"""

from pyexecd.execution._connection import DaemonConnection
from pyexecd.execution._daemon import PythonDaemonExecutionService, launch_daemon
from pyexecd.execution._factory import PythonExecutionFactory
from pyexecd.execution._interpreter_info import INTERPRETER_INFO_SCRIPT, parse_interpreter_info
from pyexecd.execution._pool import DaemonPool
from pyexecd.execution._service import (
    PythonExecutionService,
    build_python_exec_info,
    is_valid_module_name,
    output_has_module_not_installed_error,
)

__all__ = [
    "INTERPRETER_INFO_SCRIPT",
    "DaemonConnection",
    "DaemonPool",
    "PythonDaemonExecutionService",
    "PythonExecutionFactory",
    "PythonExecutionService",
    "build_python_exec_info",
    "is_valid_module_name",
    "launch_daemon",
    "output_has_module_not_installed_error",
    "parse_interpreter_info",
]
