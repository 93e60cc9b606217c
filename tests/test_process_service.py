"""Tests for ProcessService against real child processes."""

from __future__ import annotations

import asyncio
import sys

import pytest

from pyexecd.cancellation import CancellationTokenSource
from pyexecd.errors import (
    CancellationError,
    ProcessExitError,
    ProcessTimeoutError,
    StdErrError,
    WrappedError,
)
from pyexecd.process import ProcessService
from pyexecd.types import Output, ShellOptions, SpawnOptions

PY = sys.executable

SLEEPER = "import sys, time; print('started', flush=True); time.sleep(30)"
BOTH_STREAMS = "import sys; print('out'); sys.stdout.flush(); print('err', file=sys.stderr)"


@pytest.fixture
def service():
    svc = ProcessService()
    yield svc
    svc.dispose()


async def _wait_for_exit(proc, timeout: float = 10.0) -> None:
    async with asyncio.timeout(timeout):
        while proc.returncode is None:
            await asyncio.sleep(0.05)


class TestExec:
    async def test_returns_stdout(self, service: ProcessService):
        result = await service.exec(PY, ["-c", "print('hello')"])
        assert result.stdout.strip() == "hello"
        assert result.stderr is None

    async def test_stderr_reported_separately(self, service: ProcessService):
        result = await service.exec(PY, ["-c", BOTH_STREAMS])
        assert result.stdout.strip() == "out"
        assert result.stderr is not None
        assert result.stderr.strip() == "err"

    async def test_throw_on_std_err_raises(self, service: ProcessService):
        with pytest.raises(StdErrError) as exc_info:
            await service.exec(PY, ["-c", BOTH_STREAMS], SpawnOptions(throw_on_std_err=True))
        assert exc_info.value.std_err is not None
        assert "err" in exc_info.value.std_err
        assert exc_info.value.category == "unknown"

    async def test_throw_on_std_err_raises_even_when_merged(self, service: ProcessService):
        options = SpawnOptions(throw_on_std_err=True, merge_std_out_err=True)
        with pytest.raises(StdErrError):
            await service.exec(PY, ["-c", BOTH_STREAMS], options)

    async def test_throw_on_std_err_without_stderr_succeeds(self, service: ProcessService):
        result = await service.exec(
            PY, ["-c", "print('clean')"], SpawnOptions(throw_on_std_err=True)
        )
        assert result.stdout.strip() == "clean"

    async def test_merge_puts_stderr_in_stdout(self, service: ProcessService):
        result = await service.exec(
            PY, ["-c", BOTH_STREAMS], SpawnOptions(merge_std_out_err=True)
        )
        assert "out" in result.stdout
        assert "err" in result.stdout
        assert result.stderr is None

    async def test_non_zero_exit_is_not_an_error(self, service: ProcessService):
        result = await service.exec(PY, ["-c", "import sys; print('x'); sys.exit(3)"])
        assert result.stdout.strip() == "x"

    async def test_env_option_replaces_environment(self, service: ProcessService):
        result = await service.exec(
            PY,
            ["-c", "import os; print(os.environ.get('PYEXECD_TEST', 'missing'))"],
            SpawnOptions(env={"PYEXECD_TEST": "set"}),
        )
        assert result.stdout.strip() == "set"

    async def test_base_env_used_by_default(self):
        svc = ProcessService(env={"PYEXECD_BASE": "base"})
        try:
            result = await svc.exec(
                PY, ["-c", "import os; print(os.environ.get('PYEXECD_BASE'))"]
            )
        finally:
            svc.dispose()
        assert result.stdout.strip() == "base"

    async def test_cwd_option(self, service: ProcessService, tmp_path):
        result = await service.exec(
            PY, ["-c", "import os; print(os.getcwd())"], SpawnOptions(cwd=tmp_path)
        )
        assert result.stdout.strip() == str(tmp_path.resolve())

    async def test_spawn_failure_is_wrapped(self, service: ProcessService):
        with pytest.raises(WrappedError) as exc_info:
            await service.exec("/nonexistent/python", [])
        assert isinstance(exc_info.value.original_exception, OSError)

    async def test_cancelled_before_spawn(self, service: ProcessService):
        source = CancellationTokenSource()
        source.cancel()
        with pytest.raises(CancellationError):
            await service.exec(PY, ["-c", "print(1)"], SpawnOptions(token=source.token))

    async def test_cancellation_terminates_process(self, service: ProcessService):
        source = CancellationTokenSource()
        task = asyncio.ensure_future(
            service.exec(PY, ["-c", SLEEPER], SpawnOptions(token=source.token))
        )
        await asyncio.sleep(0.5)
        source.cancel()

        with pytest.raises(CancellationError):
            await asyncio.wait_for(task, 10)
        assert service._processes == set()

    async def test_timeout(self, service: ProcessService):
        with pytest.raises(ProcessTimeoutError) as exc_info:
            await service.exec(PY, ["-c", SLEEPER], SpawnOptions(timeout=0.5))
        assert exc_info.value.category == "timeout"
        assert exc_info.value.timeout == 0.5


class TestExecEvent:
    async def test_exec_event_emitted_before_spawn(self, service: ProcessService):
        seen: list[tuple[str, list[str]]] = []
        service.on("exec", lambda file, args, options: seen.append((file, args)))

        await service.exec(PY, ["-c", "pass"])

        assert seen == [(PY, ["-c", "pass"])]

    async def test_unsubscribe(self, service: ProcessService):
        seen: list[str] = []
        unsubscribe = service.on("exec", lambda file, args, options: seen.append(file))
        unsubscribe()

        await service.exec(PY, ["-c", "pass"])

        assert seen == []

    def test_unknown_event_rejected(self, service: ProcessService):
        with pytest.raises(ValueError, match="Unsupported event"):
            service.on("exit", lambda *a: None)  # type: ignore[arg-type]


class TestShellExec:
    async def test_runs_through_shell(self, service: ProcessService):
        result = await service.shell_exec(f'"{PY}" -c "print(6 * 7)"')
        assert result.stdout.strip() == "42"

    async def test_non_zero_exit_raises(self, service: ProcessService):
        with pytest.raises(ProcessExitError) as exc_info:
            await service.shell_exec("exit 4")
        assert exc_info.value.exit_code == 4

    async def test_throw_on_std_err(self, service: ProcessService):
        with pytest.raises(StdErrError):
            await service.shell_exec("echo oops 1>&2", ShellOptions(throw_on_std_err=True))


class TestExecObservable:
    async def test_streams_both_sources(self, service: ProcessService):
        result = service.exec_observable(PY, ["-c", BOTH_STREAMS])
        async with result:
            outputs = await result.out.collect()

        text = {source: "".join(o.out for o in outputs if o.source == source)
                for source in ("stdout", "stderr")}
        assert text["stdout"].strip() == "out"
        assert text["stderr"].strip() == "err"

    async def test_merge_reports_everything_as_stdout(self, service: ProcessService):
        result = service.exec_observable(
            PY, ["-c", BOTH_STREAMS], SpawnOptions(merge_std_out_err=True)
        )
        async with result:
            outputs = await result.out.collect()

        assert {o.source for o in outputs} == {"stdout"}
        assert "err" in "".join(o.out for o in outputs)

    async def test_throw_on_std_err_fails_stream(self, service: ProcessService):
        result = service.exec_observable(
            PY, ["-c", BOTH_STREAMS], SpawnOptions(throw_on_std_err=True)
        )
        async with result:
            with pytest.raises(StdErrError):
                await result.out.collect()

    async def test_spawn_failure_surfaces_on_stream(self, service: ProcessService):
        result = service.exec_observable("/nonexistent/python", [])
        async with result:
            with pytest.raises(WrappedError):
                await result.out.collect()

    async def test_cancellation_terminates_process_and_stops_output(
        self, service: ProcessService
    ):
        source = CancellationTokenSource()
        result = service.exec_observable(
            PY, ["-c", SLEEPER], SpawnOptions(token=source.token)
        )
        async with result:
            first = await anext(result.out)
            assert first == Output("stdout", "started\n")
            source.cancel()
            with pytest.raises(CancellationError):
                await anext(result.out)
            with pytest.raises(StopAsyncIteration):
                await anext(result.out)

        assert result.proc is not None
        await _wait_for_exit(result.proc)

    async def test_dispose_terminates_process(self, service: ProcessService):
        result = service.exec_observable(PY, ["-c", SLEEPER])
        await anext(result.out)
        proc = result.proc
        assert proc is not None

        result.dispose()
        result.dispose()  # idempotent

        assert result.disposed
        await _wait_for_exit(proc)
        assert await result.out.collect() == []

    async def test_timeout_fails_stream(self, service: ProcessService):
        result = service.exec_observable(PY, ["-c", SLEEPER], SpawnOptions(timeout=0.5))
        async with result:
            with pytest.raises(ProcessTimeoutError):
                await result.out.collect()

    async def test_exit_code_reported_after_output(self, service: ProcessService):
        result = service.exec_observable(PY, ["-c", "import sys; print('x'); sys.exit(5)"])
        assert result.exit_code is None
        async with result:
            await result.out.collect()
        assert result.exit_code == 5

    async def test_exit_code_zero_on_success(self, service: ProcessService):
        async with service.exec_observable(PY, ["-c", "pass"]) as result:
            await result.out.collect()
        assert result.exit_code == 0


class TestDispose:
    async def test_dispose_kills_running_processes(self):
        svc = ProcessService()
        result = svc.exec_observable(PY, ["-c", SLEEPER])
        await anext(result.out)
        assert result.proc is not None

        svc.dispose()

        await _wait_for_exit(result.proc)
