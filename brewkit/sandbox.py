# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Scoped execution of recipe, hook and test subprocesses.
"""
from __future__ import annotations

import contextlib
import logging
import os
import selectors
import subprocess
import threading
from typing import IO, Iterator, List, Mapping, NamedTuple, Optional, Sequence

from .common import BuildStepFailed, Interrupted, PathLike

log = logging.getLogger(__name__)

# Variables carried over from the calling environment, everything else is dropped.
BASE_ENV_KEYS = (
    "PATH",
    "HOME",
    "LANG",
    "LC_ALL",
    "TMPDIR",
    "USER",
    "LOGNAME",
    "TERM",
    "SHELL",
)

TERMINATE_TIMEOUT = 5


class StepResult(NamedTuple):
    """The outcome of one subprocess."""

    returncode: int
    stdout: str
    stderr: str


class Scope:
    """
    The environment and working directory of one step.
    """

    def __init__(self, env: Mapping[str, str], cwd: Optional[str]) -> None:
        self.env = dict(env)
        self.cwd = cwd
        self.processes: List[subprocess.Popen[str]] = []


def _terminate(proc: subprocess.Popen[str]) -> None:
    if proc.poll() is not None:
        return
    log.warning("Terminating process %s", proc.pid)
    proc.terminate()
    try:
        proc.wait(TERMINATE_TIMEOUT)
    except subprocess.TimeoutExpired:
        log.warning("Killing process %s", proc.pid)
        proc.kill()
        proc.wait()


class Sandbox:
    """
    Runs commands with a controlled environment.

    The calling process' environment and working directory are never
    changed; every step gets a freshly merged environment instead, so
    nothing one step sets can be observed by another.

    :param base_env: The environment every step starts from, defaults to a
        minimal copy of the calling environment
    :type base_env: dict
    :param path_prefixes: Directories prepended to ``PATH``
    :type path_prefixes: list
    :param logfp: A handle for the log file receiving all output
    :type logfp: file
    """

    def __init__(
        self,
        base_env: Optional[Mapping[str, str]] = None,
        path_prefixes: Sequence[PathLike] = (),
        logfp: Optional[IO[str]] = None,
    ) -> None:
        if base_env is None:
            base_env = {k: os.environ[k] for k in BASE_ENV_KEYS if k in os.environ}
        self.base_env = dict(base_env)
        self.path_prefixes = [os.fspath(_) for _ in path_prefixes]
        self.logfp = logfp
        self._live: set[subprocess.Popen[str]] = set()
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def environment(
        self, overlay: Optional[Mapping[str, Optional[str]]] = None
    ) -> dict[str, str]:
        """
        Merge an overlay onto the base environment. ``None`` values unset a variable.
        """
        env = dict(self.base_env)
        if self.path_prefixes:
            path = [_ for _ in env.get("PATH", "").split(os.pathsep) if _]
            env["PATH"] = os.pathsep.join(self.path_prefixes + path)
        for key, value in (overlay or {}).items():
            if value is None:
                env.pop(key, None)
            else:
                env[key] = str(value)
        return env

    @contextlib.contextmanager
    def scope(
        self,
        env: Optional[Mapping[str, Optional[str]]] = None,
        cwd: Optional[PathLike] = None,
    ) -> Iterator[Scope]:
        """
        Context manager for one step; processes still alive on exit are terminated.
        """
        scope = Scope(self.environment(env), os.fspath(cwd) if cwd else None)
        try:
            yield scope
        finally:
            for proc in scope.processes:
                _terminate(proc)
                with self._lock:
                    self._live.discard(proc)

    def cancel(self) -> None:
        """
        Terminate every running subprocess and refuse to start new ones.
        """
        self._cancelled.set()
        with self._lock:
            live = list(self._live)
        for proc in live:
            _terminate(proc)

    def _log_line(self, line: str, is_stdout: bool) -> None:
        if is_stdout:
            log.info(line)
        else:
            log.warning(line)
        if self.logfp is not None:
            self.logfp.write(line + "\n")

    def run(
        self,
        args: Sequence[PathLike],
        env: Optional[Mapping[str, Optional[str]]] = None,
        cwd: Optional[PathLike] = None,
        input: Optional[str] = None,
        check: bool = False,
        step: int = 0,
    ) -> StepResult:
        """
        Run a command, capturing its output.

        :param args: The command and its arguments
        :type args: list
        :param env: Environment overlay for this command only
        :type env: dict
        :param cwd: Working directory for this command only
        :type cwd: str
        :param input: Text written to the command's stdin
        :type input: str
        :param check: Raise when the command exits non zero
        :type check: bool
        :param step: The recipe step index reported on failure
        :type step: int

        :raises Interrupted: If the sandbox was cancelled
        :raises BuildStepFailed: If ``check`` is set and the command fails

        :return: The exit code and captured output
        :rtype: ``brewkit.sandbox.StepResult``
        """
        if self.cancelled:
            raise Interrupted("Sandbox was cancelled")
        cmd = [os.fspath(_) for _ in args]
        log.debug("Running command: %s", " ".join(cmd))
        if self.logfp is not None:
            self.logfp.write("==> {}\n".format(" ".join(cmd)))
        stdout: List[str] = []
        stderr: List[str] = []
        with self.scope(env, cwd) as scope:
            try:
                proc = subprocess.Popen(
                    cmd,
                    env=scope.env,
                    cwd=scope.cwd,
                    stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    universal_newlines=True,
                )
            except OSError as exc:
                result = StepResult(127, "", str(exc))
                self._log_line(str(exc), False)
                if check:
                    raise BuildStepFailed(step, cmd, 127, "", str(exc))
                return result
            scope.processes.append(proc)
            with self._lock:
                self._live.add(proc)

            feeder = None
            if input is not None:
                feeder = threading.Thread(target=self._feed, args=(proc, input))
                feeder.start()

            stdout_stream = proc.stdout
            stderr_stream = proc.stderr
            assert stdout_stream is not None and stderr_stream is not None
            # Read both stdout and stderr simultaneously
            sel = selectors.DefaultSelector()
            sel.register(stdout_stream, selectors.EVENT_READ)
            sel.register(stderr_stream, selectors.EVENT_READ)
            while sel.get_map():
                for key, _ in sel.select():
                    stream = key.fileobj
                    line = stream.readline()  # type: ignore[union-attr]
                    if not line:
                        sel.unregister(stream)
                        continue
                    is_stdout = stream is stdout_stream
                    (stdout if is_stdout else stderr).append(line)
                    self._log_line(line.rstrip("\n"), is_stdout)
            sel.close()
            proc.wait()
            if feeder is not None:
                feeder.join()
            with self._lock:
                self._live.discard(proc)

        if self.cancelled:
            raise Interrupted("Command '{}' was cancelled".format(" ".join(cmd)))
        result = StepResult(proc.returncode, "".join(stdout), "".join(stderr))
        if check and result.returncode != 0:
            raise BuildStepFailed(
                step, cmd, result.returncode, result.stdout, result.stderr
            )
        return result

    @staticmethod
    def _feed(proc: subprocess.Popen[str], data: str) -> None:
        stdin = proc.stdin
        if stdin is None:
            return
        try:
            stdin.write(data)
        except (BrokenPipeError, OSError):
            pass
        finally:
            try:
                stdin.close()
            except (BrokenPipeError, OSError):
                pass
