"""Log every spawned process so users can reproduce the invocation."""

from __future__ import annotations

import os
import shlex
from pathlib import Path

from pyexecd.logger import logger
from pyexecd.types import ShellOptions, SpawnOptions


def _tildify(text: str) -> str:
    home = str(Path.home())
    if home and home != os.sep and text.startswith(home):
        return "~" + text[len(home) :]
    return text


class ProcessLogger:
    def format_command(self, file: str, args: list[str]) -> str:
        parts = [_tildify(file), *(_tildify(a) for a in args)]
        return " ".join(shlex.quote(p) if " " in p else p for p in parts)

    def log_process(
        self, file: str, args: list[str], options: SpawnOptions | ShellOptions | None = None
    ) -> None:
        cwd = options.cwd if options and options.cwd else os.getcwd()
        # A shell command line is already in the form the user would type
        command = (
            _tildify(file)
            if isinstance(options, ShellOptions)
            else self.format_command(file, args)
        )
        logger.info(
            "Spawning process",
            command=f"> {command}",
            cwd=_tildify(str(cwd)),
        )
