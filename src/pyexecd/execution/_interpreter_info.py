"""Query an interpreter for its version and architecture."""

from __future__ import annotations

import json
from typing import Any

from pyexecd.types import InterpreterInformation

# Runs under any Python 3 interpreter; prints one JSON object.
INTERPRETER_INFO_SCRIPT = (
    "import json, struct, sys; "
    "print(json.dumps({"
    "'versionInfo': list(sys.version_info[:4]), "
    "'sysPrefix': sys.prefix, "
    "'version': sys.version, "
    "'is64Bit': struct.calcsize('P') == 8, "
    "'executable': sys.executable}))"
)


def parse_interpreter_info(raw: str | dict[str, Any], python_path: str) -> InterpreterInformation:
    """Build InterpreterInformation from the script output (or the daemon's reply).

    Raises ValueError/KeyError on malformed input.
    """
    if isinstance(raw, str):
        lines = raw.strip().splitlines()
        if not lines:
            raise ValueError("Interpreter produced no output")
        data = json.loads(lines[-1])
    else:
        data = raw
    version_info = tuple(data["versionInfo"])
    version = ".".join(str(part) for part in version_info[:3])
    return InterpreterInformation(
        path=python_path,
        version=version,
        version_info=version_info,
        sys_version=data["version"],
        sys_prefix=data["sysPrefix"],
        architecture="x64" if data.get("is64Bit") else "x86",
    )
