"""
Streaming shell command execution.

Runs one shell command and forwards its output line by line while it runs,
instead of collecting it to completion like subprocess.run().

- stdout and stderr are read by two threads, tagged [OUT] / [ERR], and
  written to one LineSink that serializes whole lines.
- A Deadline bounds wall-clock time. On expiry, or when the cancel event is
  set, the command's whole process group gets SIGTERM, then SIGKILL after
  a grace period.
- Both readers are joined before run() returns or raises, so every line is
  in the sink before the caller reports a final status.

Usage:
    from core.stream_runner import StreamRunner

    runner = StreamRunner()
    result = runner.run("ansible-playbook site.yml", print, deadline=Deadline.after(600))
"""

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, IO, Optional, Sequence

from core.deadline import Deadline
from core.errors import ExecutionError, ProvisionTimeoutError, RunCancelledError

logger = logging.getLogger(__name__)

OUT_PREFIX = "[OUT]"
ERR_PREFIX = "[ERR]"

# How often the waiting thread checks the deadline and cancel event
POLL_INTERVAL = 0.1


@dataclass
class RunResult:
    """Result of a completed command"""
    command: str
    return_code: int
    elapsed_time: float = 0.0
    stdout_lines: int = 0
    stderr_lines: int = 0

    @property
    def success(self) -> bool:
        return self.return_code == 0


class LineSink:
    """Thread-safe line writer shared by both output readers."""

    def __init__(self, write: Callable[[str], None]):
        self._write = write
        self._lock = threading.Lock()

    def write(self, line: str) -> None:
        with self._lock:
            self._write(line)

    __call__ = write


class StreamRunner:
    """
    Executes shell commands with live, line-buffered output.

    Each command runs as `<shell> -lc <command>` so the login environment
    (PATH, ansible config) applies, in a new session so a timeout or cancel
    can stop everything the command started.
    """

    def __init__(
        self,
        shell: str = "/bin/bash",
        shell_args: Sequence[str] = ("-lc",),
        kill_grace: float = 5.0,
        cwd: Optional[str] = None,
        env: Optional[dict] = None,
    ):
        self.shell = shell
        self.shell_args = tuple(shell_args)
        self.kill_grace = kill_grace
        self.cwd = cwd
        self.env = env

    def run(
        self,
        command: str,
        sink: Callable[[str], None],
        deadline: Optional[Deadline] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RunResult:
        """
        Run command, writing each output line to sink as it is produced.

        Args:
            command: Shell command line
            sink: Callable receiving one tagged line at a time
            deadline: Wall-clock bound (default: unbounded)
            cancel: Event that stops the command when set

        Returns:
            RunResult for a zero exit status

        Raises:
            ProvisionTimeoutError: deadline expired, command terminated
            RunCancelledError: cancel was set, command terminated
            ExecutionError: command could not start or exited non-zero
        """
        deadline = deadline or Deadline.never()
        label = deadline.label or "command"
        if deadline.expired():
            raise ProvisionTimeoutError(f"{label} timeout before start")

        if not isinstance(sink, LineSink):
            sink = LineSink(sink)

        start_time = time.time()
        try:
            proc = subprocess.Popen(
                [self.shell, *self.shell_args, command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutionError(f"failed to start command: {e}") from e

        counts = {OUT_PREFIX: 0, ERR_PREFIX: 0}
        readers = [
            threading.Thread(
                target=self._pump,
                args=(stream, prefix, sink, counts),
                name=f"stream-runner-{proc.pid}-{name}",
                daemon=True,
            )
            for stream, prefix, name in (
                (proc.stdout, OUT_PREFIX, "stdout"),
                (proc.stderr, ERR_PREFIX, "stderr"),
            )
        ]
        for reader in readers:
            reader.start()

        stopped = None
        try:
            stopped = self._wait(proc, deadline, cancel)
        finally:
            if proc.poll() is None:
                self._terminate(proc)
            for reader in readers:
                reader.join()
            proc.stdout.close()
            proc.stderr.close()

        elapsed = time.time() - start_time

        if stopped == "timeout":
            logger.warning(f"{label} timed out after {elapsed:.1f}s: {command}")
            raise ProvisionTimeoutError(f"{label} timeout after {elapsed:.1f}s")
        if stopped == "cancelled":
            logger.warning(f"{label} cancelled after {elapsed:.1f}s: {command}")
            raise RunCancelledError(f"{label} cancelled", return_code=proc.returncode)
        if proc.returncode != 0:
            raise ExecutionError(f"exit status {proc.returncode}", return_code=proc.returncode)

        return RunResult(
            command=command,
            return_code=proc.returncode,
            elapsed_time=elapsed,
            stdout_lines=counts[OUT_PREFIX],
            stderr_lines=counts[ERR_PREFIX],
        )

    def _wait(
        self,
        proc: subprocess.Popen,
        deadline: Deadline,
        cancel: Optional[threading.Event],
    ) -> Optional[str]:
        """Block until exit, deadline or cancel. Returns why the command was stopped, if it was."""
        while True:
            timeout = POLL_INTERVAL
            remaining = deadline.remaining()
            if remaining is not None:
                timeout = min(timeout, remaining)
            try:
                proc.wait(timeout=timeout)
                return None
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.is_set():
                self._terminate(proc)
                return "cancelled"
            if deadline.expired():
                self._terminate(proc)
                return "timeout"

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the process group, SIGKILL it if still alive after kill_grace."""
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                pass
            try:
                proc.wait(timeout=self.kill_grace)
                return
            except subprocess.TimeoutExpired:
                logger.warning(f"pid {proc.pid} ignored {sig.name}")
        proc.wait()

    @staticmethod
    def _pump(stream: IO[bytes], prefix: str, sink: LineSink, counts: dict) -> None:
        """Copy lines from one pipe to the sink until EOF."""
        sink_failed = False
        for raw in iter(stream.readline, b""):
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if sink_failed:
                continue
            try:
                sink.write(f"{prefix} {text}")
                counts[prefix] += 1
            except Exception as e:
                # Keep draining so the child never blocks on a full pipe
                sink_failed = True
                logger.warning(f"stream {prefix}: sink failed, discarding further output: {e}")
