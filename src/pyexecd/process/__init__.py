"""External process execution.

This package is split into focused submodules:
  _decoder     — bytes to text, one-shot and incremental
  _logger      — logs each spawned command line
  _observable  — OutputStream and ObservableExecutionResult
  _service     — ProcessService (exec, exec_observable, shell_exec)
  _factory     — ProcessServiceFactory (environment per resource)
"""

# Re-export public API so that `from pyexecd.process import X` keeps working.
from pyexecd.process._decoder import DEFAULT_ENCODING, BufferDecoder
from pyexecd.process._factory import ProcessServiceFactory
from pyexecd.process._logger import ProcessLogger
from pyexecd.process._observable import ObservableExecutionResult, OutputStream
from pyexecd.process._service import ProcessService, terminate_process

__all__ = [
    "DEFAULT_ENCODING",
    "BufferDecoder",
    "ObservableExecutionResult",
    "OutputStream",
    "ProcessLogger",
    "ProcessService",
    "ProcessServiceFactory",
    "terminate_process",
]
