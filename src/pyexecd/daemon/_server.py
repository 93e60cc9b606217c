"""Daemon side of the execution protocol — JSON Lines over stdin/stdout.

Runs inside the *target* interpreter, which may not have pyexecd's
dependencies installed, so this module uses the standard library only.

Protocol (JSON-RPC 2.0, one object per line):
  stdin  (requests):      {"jsonrpc":"2.0","id":1,"method":"exec_module","params":{...}}
  stdout (responses):     {"jsonrpc":"2.0","id":1,
                           "result":{"stdout":"...","stderr":"...","exit_code":0}}
                          {"jsonrpc":"2.0","id":1,"error":{"code":-32601,"message":"..."}}
  stdout (notifications): {"jsonrpc":"2.0","method":"output",
                           "params":{"id":1,"source":"stdout","out":"..."}}

Methods are looked up as ``m_<method>`` on the daemon instance, so a
subclass loaded with ``--daemon-module`` can add its own.
"""

import contextlib
import importlib.util
import inspect
import io
import json
import logging
import os
import runpy
import struct
import sys
import threading
import traceback

log = logging.getLogger("pyexecd.daemon")

METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
PARSE_ERROR = -32700


class _StreamingWriter(io.TextIOBase):
    """File-like object that relays every write as an ``output`` notification."""

    def __init__(self, daemon, request_id, source, capture=None):
        self._daemon = daemon
        self._request_id = request_id
        self._source = source
        self._capture = capture

    def writable(self):
        return True

    def write(self, text):
        if text:
            if self._capture is not None:
                self._capture.write(text)
            self._daemon.notify(
                "output", {"id": self._request_id, "source": self._source, "out": text}
            )
        return len(text)


class _Tee(io.TextIOBase):
    def __init__(self, *targets):
        self._targets = targets

    def writable(self):
        return True

    def write(self, text):
        for target in self._targets:
            target.write(text)
        return len(text)


class PythonDaemon:
    def __init__(self, rx, tx):
        self._rx = rx
        self._tx = tx
        self._lock = threading.Lock()
        self._running = True

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, message):
        line = json.dumps(message) + "\n"
        with self._lock:
            self._tx.write(line)
            self._tx.flush()

    def notify(self, method, params):
        self._send({"jsonrpc": "2.0", "method": method, "params": params})

    def _respond(self, request_id, result):
        self._send({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _respond_error(self, request_id, code, message, data=None):
        error = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        self._send({"jsonrpc": "2.0", "id": request_id, "error": error})

    def serve_forever(self):
        log.info("Daemon started, pid %s, python %s", os.getpid(), sys.executable)
        while self._running:
            line = self._rx.readline()
            if not line:
                break
            line = line.strip()
            if line:
                self._handle_line(line)
        log.info("Daemon exiting")

    def _handle_line(self, line):
        try:
            request = json.loads(line)
        except ValueError as exc:
            self._respond_error(None, PARSE_ERROR, "Invalid JSON: %s" % exc)
            return

        request_id = request.get("id")
        method = request.get("method") or ""
        handler = getattr(self, "m_" + method, None)
        if handler is None:
            self._respond_error(request_id, METHOD_NOT_FOUND, "Method not found: %s" % method)
            return

        params = request.get("params") or {}
        if "_request_id" in inspect.signature(handler).parameters:
            params = dict(params, _request_id=request_id)
        try:
            result = handler(**params)
        except TypeError as exc:
            self._respond_error(request_id, INVALID_PARAMS, str(exc))
        except Exception as exc:
            log.exception("Daemon method %s failed", method)
            self._respond_error(
                request_id,
                INTERNAL_ERROR,
                str(exc),
                {"type": type(exc).__name__, "traceback": traceback.format_exc()},
            )
        else:
            self._respond(request_id, result)

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _execution_context(self, argv, cwd=None, env=None, path0=None):
        """Temporarily apply argv, cwd, env, and sys.path[0] for one run."""
        saved_argv = sys.argv[:]
        saved_path = sys.path[:]
        saved_cwd = os.getcwd()
        saved_env = dict(os.environ)
        sys.argv = list(argv)
        if path0 is not None:
            sys.path.insert(0, path0)
        if env is not None:
            os.environ.clear()
            os.environ.update(env)
        if cwd:
            os.chdir(cwd)
        try:
            yield
        finally:
            sys.argv = saved_argv
            sys.path[:] = saved_path
            os.chdir(saved_cwd)
            os.environ.clear()
            os.environ.update(saved_env)

    def _run(self, target, argv, cwd, env, path0, stdout, stderr):
        """Run *target* with redirected streams and return its exit code.

        Failures land on stderr and in the exit code like a real process.
        """
        exit_code = 0
        with self._execution_context(argv, cwd, env, path0):
            with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
                try:
                    target()
                except SystemExit as exc:
                    if isinstance(exc.code, int):
                        exit_code = exc.code
                    elif exc.code is not None:
                        stderr.write("%s\n" % (exc.code,))
                        exit_code = 1
                except BaseException:
                    stderr.write(traceback.format_exc())
                    exit_code = 1
                finally:
                    for stream in (sys.stdout, sys.stderr):
                        with contextlib.suppress(Exception):
                            stream.flush()
        return exit_code

    def _capture(self, target, argv, cwd=None, env=None, path0=None, merge=False):
        out = io.StringIO()
        err = io.StringIO()
        stderr_target = _Tee(out, err) if merge else err
        exit_code = self._run(target, argv, cwd, env, path0, out, stderr_target)
        return {
            "stdout": out.getvalue(),
            "stderr": err.getvalue(),
            "merged": bool(merge),
            "exit_code": exit_code,
        }

    def _stream(self, request_id, target, argv, cwd=None, env=None, path0=None, merge=False):
        err = io.StringIO()
        stdout = _StreamingWriter(self, request_id, "stdout")
        stderr = _StreamingWriter(self, request_id, "stdout" if merge else "stderr", capture=err)
        exit_code = self._run(target, argv, cwd, env, path0, stdout, stderr)
        return {"stderr": err.getvalue(), "merged": bool(merge), "exit_code": exit_code}

    @staticmethod
    def _module_target(module_name):
        def _target():
            runpy.run_module(module_name, run_name="__main__", alter_sys=True)

        return _target

    @staticmethod
    def _file_target(file_name):
        def _target():
            runpy.run_path(file_name, run_name="__main__")

        return _target

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def m_ping(self, data=None):
        return {"pong": data}

    def m_get_executable(self):
        return {"path": sys.executable}

    def m_get_interpreter_information(self):
        return {
            "versionInfo": list(sys.version_info[:4]),
            "sysPrefix": sys.prefix,
            "version": sys.version,
            "is64Bit": struct.calcsize("P") == 8,
            "executable": sys.executable,
        }

    def m_is_module_installed(self, module_name):
        try:
            return {"exists": importlib.util.find_spec(module_name) is not None}
        except (ImportError, ValueError):
            return {"exists": False}

    def m_exec_code(self, code, args=(), cwd=None, env=None, merge=False):
        def _target():
            exec(compile(code, "<string>", "exec"), {"__name__": "__main__"})

        argv = ["-c"] + list(args)
        return self._capture(_target, argv, cwd, env, "", merge)

    def m_exec_file(self, file_name, args=(), cwd=None, env=None, merge=False):
        file_name = os.path.abspath(os.path.join(cwd or os.getcwd(), file_name))
        argv = [file_name] + list(args)
        path0 = os.path.dirname(file_name)
        return self._capture(self._file_target(file_name), argv, cwd, env, path0, merge)

    def m_exec_module(self, module_name, args=(), cwd=None, env=None, merge=False):
        argv = [module_name] + list(args)
        path0 = cwd or os.getcwd()
        return self._capture(self._module_target(module_name), argv, cwd, env, path0, merge)

    def m_exec_file_observable(
        self, file_name, args=(), cwd=None, env=None, merge=False, _request_id=None
    ):
        file_name = os.path.abspath(os.path.join(cwd or os.getcwd(), file_name))
        argv = [file_name] + list(args)
        path0 = os.path.dirname(file_name)
        return self._stream(
            _request_id, self._file_target(file_name), argv, cwd, env, path0, merge
        )

    def m_exec_module_observable(
        self, module_name, args=(), cwd=None, env=None, merge=False, _request_id=None
    ):
        argv = [module_name] + list(args)
        return self._stream(
            _request_id, self._module_target(module_name), argv, cwd, env, cwd or os.getcwd(), merge
        )

    def m_exit(self):
        self._running = False
        return {}
