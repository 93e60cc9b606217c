"""Tests for PythonDaemonExecutionService against real daemon processes."""

from __future__ import annotations

import asyncio
import os

import pytest
from conftest import make_settings

from pyexecd.cancellation import CancellationTokenSource
from pyexecd.config import ProcessConfig
from pyexecd.errors import CancellationError, DaemonError, ModuleNotInstalledError, StdErrError
from pyexecd.event_bus import DaemonExitedEvent, EventBus
from pyexecd.execution import PythonDaemonExecutionService, PythonExecutionService, launch_daemon
from pyexecd.process import ProcessService
from pyexecd.types import PythonEnvironment, SpawnOptions

PID_CODE = "import os; print(os.getpid())"


@pytest.fixture
def python_execution(interpreter: PythonEnvironment):
    process_service = ProcessService()
    yield PythonExecutionService(interpreter, process_service)
    process_service.dispose()


@pytest.fixture
async def daemon(python_execution: PythonExecutionService):
    service = await launch_daemon(python_execution)
    yield service
    await service.stop()


async def _wait_dead(daemon: PythonDaemonExecutionService, timeout: float = 10.0) -> None:
    async with asyncio.timeout(timeout):
        while daemon.is_alive:
            await asyncio.sleep(0.05)


class TestLaunch:
    async def test_handshake(self, daemon: PythonDaemonExecutionService):
        assert daemon.is_alive
        assert await daemon.ping("again") == "again"

    async def test_unknown_daemon_module_fails_handshake(
        self, python_execution: PythonExecutionService
    ):
        with pytest.raises(DaemonError) as exc_info:
            await launch_daemon(python_execution, daemon_module="nonexistent_module_xyz")
        assert exc_info.value.category == "daemon"

    async def test_daemon_class_override(self, python_execution: PythonExecutionService):
        class CustomDaemon(PythonDaemonExecutionService):
            pass

        service = await launch_daemon(python_execution, daemon_class=CustomDaemon)
        try:
            assert isinstance(service, CustomDaemon)
        finally:
            await service.stop()

    async def test_daemon_class_must_extend_service(
        self, python_execution: PythonExecutionService
    ):
        with pytest.raises(TypeError):
            await launch_daemon(python_execution, daemon_class=dict)  # type: ignore[arg-type]


class TestIntrospection:
    async def test_interpreter_information(self, daemon: PythonDaemonExecutionService):
        info = await daemon.get_interpreter_information()
        assert info is not None
        assert info.path == daemon.python_execution.python_path

    async def test_executable_path(self, daemon: PythonDaemonExecutionService):
        path = await daemon.get_executable_path()
        assert os.path.isfile(path)

    async def test_is_module_installed(self, daemon: PythonDaemonExecutionService):
        assert await daemon.is_module_installed("json") is True
        assert await daemon.is_module_installed("nonexistent_module_xyz") is False
        assert await daemon.is_module_installed("bad name") is False


class TestExec:
    async def test_code_runs_inside_daemon(self, daemon: PythonDaemonExecutionService):
        result = await daemon.exec(["-c", PID_CODE])
        assert int(result.stdout) == daemon.pid
        assert result.stderr is None

    async def test_script_runs_inside_daemon(self, daemon, tmp_path):
        (tmp_path / "script.py").write_text("import os, sys; print(os.getpid(), sys.argv[1])\n")
        result = await daemon.exec(["script.py", "arg"], SpawnOptions(cwd=tmp_path))
        assert result.stdout.split() == [str(daemon.pid), "arg"]

    async def test_unsupported_option_falls_back(self, daemon: PythonDaemonExecutionService):
        result = await daemon.exec(["-c", PID_CODE], SpawnOptions(timeout=30))
        assert int(result.stdout) != daemon.pid

    async def test_unsupported_args_fall_back(self, daemon: PythonDaemonExecutionService):
        result = await daemon.exec(["-m", "json.tool", "--help"])
        assert "usage" in result.stdout.lower()

    async def test_same_shape_as_plain_process(self, daemon: PythonDaemonExecutionService):
        code = "import sys; print('out'); print('err', file=sys.stderr)"
        from_daemon = await daemon.exec(["-c", code])
        from_process = await daemon.python_execution.exec(["-c", code])
        assert from_daemon == from_process

    async def test_throw_on_std_err(self, daemon: PythonDaemonExecutionService):
        with pytest.raises(StdErrError):
            await daemon.exec(
                ["-c", "import sys; print('x', file=sys.stderr)"],
                SpawnOptions(throw_on_std_err=True),
            )
        assert daemon.is_alive

    async def test_merge(self, daemon: PythonDaemonExecutionService):
        result = await daemon.exec(
            ["-c", "import sys; print('a'); print('b', file=sys.stderr)"],
            SpawnOptions(merge_std_out_err=True),
        )
        assert result.stdout == "a\nb\n"
        assert result.stderr is None

    async def test_cancellation_kills_daemon(self, daemon: PythonDaemonExecutionService):
        source = CancellationTokenSource()
        task = asyncio.ensure_future(
            daemon.exec(["-c", "import time; time.sleep(30)"], SpawnOptions(token=source.token))
        )
        await asyncio.sleep(0.3)
        source.cancel()

        with pytest.raises(CancellationError):
            await asyncio.wait_for(task, 10)
        await _wait_dead(daemon)

    async def test_dead_daemon_falls_back(self, daemon: PythonDaemonExecutionService):
        daemon.dispose()
        await _wait_dead(daemon)

        result = await daemon.exec(["-c", "print('still works')"])
        assert result.stdout.strip() == "still works"


class TestExecModule:
    async def test_module_runs_inside_daemon(self, daemon: PythonDaemonExecutionService):
        result = await daemon.exec_module("json.tool", ["--help"])
        assert "usage" in result.stdout.lower()

    async def test_missing_module_is_notinstalled(self, daemon: PythonDaemonExecutionService):
        with pytest.raises(ModuleNotInstalledError):
            await daemon.exec_module("nonexistent_module_xyz", ["--version"])


class TestObservable:
    async def test_streams_script_output(self, daemon, tmp_path):
        (tmp_path / "script.py").write_text(
            "import sys\nprint('one')\nprint('two', file=sys.stderr)\n"
        )
        async with daemon.exec_observable(["script.py"], SpawnOptions(cwd=tmp_path)) as result:
            outputs = await result.out.collect()

        assert "".join(o.out for o in outputs if o.source == "stdout") == "one\n"
        assert "".join(o.out for o in outputs if o.source == "stderr") == "two\n"
        assert daemon.is_alive

    async def test_module_observable(self, daemon: PythonDaemonExecutionService):
        async with daemon.exec_module_observable("json.tool", ["--help"]) as result:
            outputs = await result.out.collect()
        assert "usage" in "".join(o.out for o in outputs).lower()

    async def test_code_falls_back_to_process(self, daemon: PythonDaemonExecutionService):
        async with daemon.exec_observable(["-c", PID_CODE]) as result:
            outputs = await result.out.collect()
        assert int("".join(o.out for o in outputs)) != daemon.pid

    async def test_throw_on_std_err_fails_stream(self, daemon: PythonDaemonExecutionService):
        result = daemon.exec_module_observable(
            "nonexistent_module_xyz", [], SpawnOptions(throw_on_std_err=True)
        )
        async with result:
            with pytest.raises(StdErrError):
                await result.out.collect()

    async def test_dispose_kills_daemon_mid_run(self, daemon, tmp_path):
        (tmp_path / "slow.py").write_text("import time\nprint('go', flush=True)\ntime.sleep(30)\n")
        result = daemon.exec_observable(["slow.py"], SpawnOptions(cwd=tmp_path))
        first = await anext(result.out)
        assert first.out == "go"

        result.dispose()

        assert not daemon.is_alive
        await _wait_dead(daemon)


class TestMethodNotSupported:
    async def test_falls_back_when_daemon_lacks_method(self, interpreter, tmp_path):
        (tmp_path / "limited_daemon.py").write_text(
            "from pyexecd.daemon import PythonDaemon as _Base\n"
            "class PythonDaemon(_Base):\n"
            "    m_exec_code = None\n"
        )
        process_service = ProcessService(env={**os.environ, "PYTHONPATH": str(tmp_path)})
        python_execution = PythonExecutionService(interpreter, process_service)
        daemon = await launch_daemon(python_execution, daemon_module="limited_daemon")
        try:
            result = await daemon.exec(["-c", PID_CODE])
            assert int(result.stdout) != daemon.pid
        finally:
            await daemon.stop()
            process_service.dispose()


class TestLifecycle:
    async def test_exit_event_emitted(self, python_execution: PythonExecutionService):
        events = EventBus()
        seen: list[DaemonExitedEvent] = []
        events.subscribe(DaemonExitedEvent, seen.append)
        daemon = await launch_daemon(python_execution, events=events)

        daemon.dispose()
        daemon.dispose()  # idempotent
        await _wait_dead(daemon)
        async with asyncio.timeout(10):
            while not seen:
                await asyncio.sleep(0.05)

        assert seen[0].pid == daemon.pid

    async def test_stop_is_graceful(self, python_execution: PythonExecutionService):
        daemon = await launch_daemon(python_execution)
        await daemon.stop()
        assert not daemon.is_alive


class TestLargeOutput:
    async def test_output_beyond_read_buffer(self, monkeypatch, python_execution):
        monkeypatch.setattr(
            "pyexecd.config._settings",
            make_settings(process=ProcessConfig(max_output_size=65536)),
        )
        daemon = await launch_daemon(python_execution)
        try:
            args = ["-c", "print('x' * 200000)"]
            from_daemon = await daemon.exec(args)

            assert from_daemon == await python_execution.exec(args)
            assert len(from_daemon.stdout) == 200001
            assert daemon.is_alive
            assert await daemon.ping("after") == "after"
        finally:
            await daemon.stop()


class TestExitCode:
    async def test_module_observable_reports_failure(self, daemon: PythonDaemonExecutionService):
        async with daemon.exec_module_observable("nonexistent_module_xyz", []) as result:
            await result.out.collect()
        assert result.exit_code == 1
        assert daemon.is_alive

    async def test_script_exit_code(self, daemon, tmp_path):
        (tmp_path / "script.py").write_text("import sys\nprint('bye')\nsys.exit(4)\n")
        async with daemon.exec_observable(["script.py"], SpawnOptions(cwd=tmp_path)) as result:
            await result.out.collect()
        assert result.exit_code == 4

    async def test_success_is_zero(self, daemon: PythonDaemonExecutionService):
        async with daemon.exec_module_observable("json.tool", ["--help"]) as result:
            await result.out.collect()
        assert result.exit_code == 0


class TestCancelledLaunch:
    async def test_slow_handshake_cancelled_kills_daemon(self, interpreter, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        (tmp_path / "slow_daemon.py").write_text(
            "import os, time\n"
            f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))\n"
            "time.sleep(30)\n"
            "from pyexecd.daemon import PythonDaemon\n"
        )
        process_service = ProcessService(env={**os.environ, "PYTHONPATH": str(tmp_path)})
        python_execution = PythonExecutionService(interpreter, process_service)
        try:
            launch = asyncio.ensure_future(
                launch_daemon(python_execution, daemon_module="slow_daemon")
            )
            async with asyncio.timeout(10):
                while not pid_file.exists() or not pid_file.read_text():
                    await asyncio.sleep(0.05)
            pid = int(pid_file.read_text())

            launch.cancel()
            with pytest.raises(asyncio.CancelledError):
                await launch

            async with asyncio.timeout(10):
                while _pid_running(pid):
                    await asyncio.sleep(0.05)
        finally:
            process_service.dispose()


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True
