"""
Child process execution with timeout enforcement and output capture.

Each child is started in its own session so that it and anything it
spawns share a process group; timeouts and cancellation signal the
whole group. Output is read on background threads while a watcher
thread waits for exit, and the outcome is delivered through a
concurrent.futures.Future.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from jobrunner.exceptions import ProcessSpawnFailed

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of one child process."""
    exit_code: Optional[int]  # None when killed by a signal
    signal: Optional[int]  # Terminating signal number, if any
    output: str  # stdout followed by stderr
    duration_seconds: float
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def describe(self) -> str:
        if self.timed_out:
            return f"timed out after {self.duration_seconds:.2f}s"
        if self.signal is not None:
            return f"terminated by signal {self.signal} after {self.duration_seconds:.2f}s"
        return f"exited with code {self.exit_code} after {self.duration_seconds:.2f}s"


class ProcessHandle:
    """
    A running child process.

    The handle is hashable and is what the job registry tracks while the
    process is alive. Call result() to block until the outcome is known.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        timeout: Optional[float],
        kill_grace: float = 5.0,
        label: str = ""
    ):
        self.process = process
        self.pid = process.pid
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.label = label
        self.started = time.monotonic()

        self._stdout: List[str] = []
        self._stderr: List[str] = []
        self._future: Future = Future()
        self._timed_out = False
        self._terminate_requested = threading.Event()

        self._readers = [
            threading.Thread(
                target=self._read_stream, args=(process.stdout, self._stdout),
                name=f"proc-{self.pid}-stdout", daemon=True
            ),
            threading.Thread(
                target=self._read_stream, args=(process.stderr, self._stderr),
                name=f"proc-{self.pid}-stderr", daemon=True
            ),
        ]
        for reader in self._readers:
            reader.start()

        self._watcher = threading.Thread(
            target=self._watch, name=f"proc-{self.pid}-watch", daemon=True
        )
        self._watcher.start()

    def __repr__(self):
        return f"ProcessHandle(pid={self.pid}, label={self.label!r})"

    def _read_stream(self, stream, output_list: List[str]):
        try:
            for line in stream:
                output_list.append(line)
                logger.debug(f"{self.label}{line.rstrip()}")
        except (OSError, ValueError):
            # Stream closed underneath us after the group was killed
            pass
        finally:
            stream.close()

    def _signal_group(self, sig: int) -> bool:
        try:
            os.killpg(self.pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning(f"{self.label}Cannot signal process group {self.pid}: {e}")
            return False

    def _watch(self):
        try:
            try:
                self.process.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                self._timed_out = True
                logger.warning(
                    f"{self.label}Process {self.pid} exceeded timeout of {self.timeout}s, terminating"
                )
                self._signal_group(signal.SIGTERM)
                try:
                    self.process.wait(timeout=self.kill_grace)
                except subprocess.TimeoutExpired:
                    self._signal_group(signal.SIGKILL)
                    self.process.wait()

            # Background children may keep the pipes open after the main process exits
            for reader in self._readers:
                reader.join(timeout=self.kill_grace)
            if any(r.is_alive() for r in self._readers):
                logger.warning(f"{self.label}Killing leftover children of process {self.pid}")
                self._signal_group(signal.SIGKILL)
                for reader in self._readers:
                    reader.join()

            self._future.set_result(self._build_result())
        except Exception as e:
            logger.error(f"{self.label}Failed while waiting for process {self.pid}: {e}")
            self._future.set_exception(e)

    def _build_result(self) -> ProcessResult:
        returncode = self.process.returncode
        duration = time.monotonic() - self.started
        if returncode is not None and returncode < 0:
            exit_code, sig = None, -returncode
        else:
            exit_code, sig = returncode, None
        return ProcessResult(
            exit_code=exit_code,
            signal=sig,
            output=''.join(self._stdout) + ''.join(self._stderr),
            duration_seconds=duration,
            timed_out=self._timed_out
        )

    def terminate(self, sig: int = signal.SIGTERM):
        """
        Signal the process group without waiting for it to exit.

        If the group is still alive after the grace period it is killed.
        """
        if self.done():
            return
        self._terminate_requested.set()
        if self._signal_group(sig) and sig != signal.SIGKILL:
            timer = threading.Timer(self.kill_grace, self._escalate)
            timer.daemon = True
            timer.start()

    def _escalate(self):
        if self.process.poll() is None:
            logger.warning(f"{self.label}Process {self.pid} ignored termination, killing")
            self._signal_group(signal.SIGKILL)

    @property
    def terminate_requested(self) -> bool:
        return self._terminate_requested.is_set()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> ProcessResult:
        """Block until the process has finished and return its outcome."""
        return self._future.result(timeout=timeout)

    def add_done_callback(self, fn: Callable[['ProcessHandle'], None]):
        self._future.add_done_callback(lambda _f: fn(self))


class ProcessRunner:
    """
    Spawns child processes bound to a working directory, environment and timeout.

    Usage:
        runner = ProcessRunner()
        handle = runner.spawn('/bin/sh', ['-c', 'echo hello'], cwd='/tmp', env={}, timeout=60)
        result = handle.result()
    """

    def __init__(self, kill_grace: float = 5.0):
        self.kill_grace = kill_grace

    def spawn(
        self,
        executable: str,
        args: Sequence[str],
        cwd: str,
        env: Dict[str, str],
        timeout: Optional[float],
        label: str = ""
    ) -> ProcessHandle:
        """
        Start a child process.

        Args:
            executable: Program to run
            args: Arguments after the program name
            cwd: Working directory
            env: Complete environment for the child
            timeout: Wall-clock limit in seconds (None for no limit)
            label: Log prefix

        Returns:
            ProcessHandle for the running process

        Raises:
            ProcessSpawnFailed: If the process could not be started
        """
        argv = [executable, *args]
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors='replace',
                cwd=str(cwd),
                env=env,
                start_new_session=True  # Own process group for group-wide signals
            )
        except (OSError, ValueError) as e:
            raise ProcessSpawnFailed(f"Failed to start {executable}: {e}") from e

        logger.debug(f"{label}Started process {process.pid}: {argv!r}")
        return ProcessHandle(process, timeout=timeout, kill_grace=self.kill_grace, label=label)

    def run(self, executable: str, args: Sequence[str], cwd: str,
            env: Dict[str, str], timeout: Optional[float], label: str = "") -> ProcessResult:
        """Spawn and wait for the result."""
        return self.spawn(executable, args, cwd, env, timeout, label).result()
