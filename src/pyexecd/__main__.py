"""Entry point for `python -m pyexecd`.

Subcommands:
    pyexecd info                           Describe the selected interpreter
    pyexecd check MODULE                   Exit 0 if MODULE is importable, else 1
    pyexecd run [--daemon] MODULE [ARGS]   Run `python -m MODULE ARGS`, streaming output
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from pyexecd.config import get_settings
from pyexecd.errors import BaseError
from pyexecd.execution import PythonExecutionFactory
from pyexecd.types import ExecutionFactoryCreateWithEnvironmentOptions, PooledDaemonOptions


async def _info(factory: PythonExecutionFactory) -> int:
    service = await factory.create()
    info = await service.get_interpreter_information()
    if info is None:
        print(f"Could not query {service.python_path}", file=sys.stderr)
        return 1
    print(f"path:         {info.path}")
    print(f"version:      {info.version}")
    print(f"architecture: {info.architecture}")
    print(f"sys.prefix:   {info.sys_prefix}")
    print(f"environment:  {service.interpreter.env_type}")
    return 0


async def _check(factory: PythonExecutionFactory, module: str) -> int:
    service = await factory.create()
    installed = await service.is_module_installed(module)
    print(f"{module}: {'installed' if installed else 'not installed'}")
    return 0 if installed else 1


async def _run_module(
    factory: PythonExecutionFactory, module: str, args: list[str], use_daemon: bool
) -> int:
    if use_daemon:
        s = get_settings()
        service = await factory.create_daemon(
            PooledDaemonOptions(
                daemon_count=s.daemon.count,
                observable_daemon_count=s.daemon.observable_count,
            )
        )
    else:
        service = await factory.create_activated_environment(
            ExecutionFactoryCreateWithEnvironmentOptions()
        )

    async with service.exec_module_observable(module, args) as result:
        async for output in result.out:
            stream = sys.stderr if output.source == "stderr" else sys.stdout
            stream.write(output.out)
            stream.flush()
    return result.exit_code or 0


async def _main(args: argparse.Namespace) -> int:
    factory = PythonExecutionFactory()
    try:
        match args.command:
            case "info":
                return await _info(factory)
            case "check":
                return await _check(factory, args.module)
            case "run":
                return await _run_module(factory, args.module, args.args, args.daemon)
            case _:
                raise AssertionError(f"Unhandled command: {args.command}")
    except BaseError as exc:
        print(f"Error ({exc.category}): {exc.message}", file=sys.stderr)
        if exc.std_err:
            print(exc.std_err, file=sys.stderr)
        return 1
    finally:
        factory.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="pyexecd",
        description="Run Python modules in managed interpreters and daemons",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("info", help="Describe the selected interpreter")

    check = sub.add_parser("check", help="Check whether a module is importable")
    check.add_argument("module")

    run = sub.add_parser("run", help="Run a module, streaming its output")
    run.add_argument("--daemon", action="store_true", help="Run through the daemon pool")
    run.add_argument("module")
    run.add_argument("args", nargs=argparse.REMAINDER)

    args = parser.parse_args()
    sys.exit(asyncio.run(_main(args)))


if __name__ == "__main__":
    main()
