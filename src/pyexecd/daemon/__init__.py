"""Python side of the daemon protocol.

Standard library only: this package is imported by whatever interpreter the
daemon is launched with.
"""

from pyexecd.daemon._server import PythonDaemon

__all__ = ["PythonDaemon"]
