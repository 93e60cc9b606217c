"""Entry point for ``python -m pyexecd.daemon``.

The protocol owns the original stdout. File descriptor 1 is pointed at
stderr so output written below the Python layer (C extensions, child
processes) cannot corrupt the JSON stream.
"""

import argparse
import importlib
import io
import logging
import os
import sys


def _protocol_streams():
    rx = io.TextIOWrapper(os.fdopen(os.dup(0), "rb"), encoding="utf-8", newline="\n")
    tx = io.TextIOWrapper(os.fdopen(os.dup(1), "wb"), encoding="utf-8", newline="\n")
    os.dup2(2, 1)
    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)
    sys.stdin = open(os.devnull)  # noqa: SIM115
    sys.stdout = sys.stderr
    return rx, tx


def main():
    parser = argparse.ArgumentParser(prog="pyexecd.daemon")
    parser.add_argument(
        "--daemon-module",
        default="pyexecd.daemon",
        help="Module exposing a PythonDaemon class (default: pyexecd.daemon)",
    )
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    daemon_class = importlib.import_module(args.daemon_module).PythonDaemon
    rx, tx = _protocol_streams()
    daemon_class(rx, tx).serve_forever()


if __name__ == "__main__":
    main()
