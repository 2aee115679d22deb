"""
Tests for streaming command execution.

These run real /bin/bash commands (with -c rather than -lc so the
developer's login profile does not leak into the output).
"""

import threading
import time

import pytest

from core.deadline import Deadline
from core.errors import ExecutionError, ProvisionTimeoutError, RunCancelledError
from core.stream_runner import LineSink, StreamRunner


@pytest.fixture
def runner():
    return StreamRunner(shell="/bin/bash", shell_args=("-c",), kill_grace=0.5)


@pytest.fixture
def lines():
    return []


class TestRun:
    def test_stdout_in_order(self, runner, lines):
        result = runner.run("for i in 1 2 3; do echo line$i; done", lines.append)

        assert lines == ["[OUT] line1", "[OUT] line2", "[OUT] line3"]
        assert result.success
        assert result.stdout_lines == 3
        assert result.stderr_lines == 0

    def test_stderr_tagged(self, runner, lines):
        result = runner.run("echo fine; echo broken >&2", lines.append)

        assert "[OUT] fine" in lines
        assert "[ERR] broken" in lines
        assert result.stderr_lines == 1

    def test_streams_before_exit(self, runner):
        """The first line arrives while the command is still running"""
        first_seen = threading.Event()

        def sink(line):
            first_seen.set()

        worker = threading.Thread(
            target=runner.run, args=("echo early; sleep 1; echo late", sink)
        )
        started = time.monotonic()
        worker.start()
        assert first_seen.wait(timeout=0.8)
        assert time.monotonic() - started < 0.9
        worker.join()

    def test_non_zero_exit(self, runner, lines):
        with pytest.raises(ExecutionError, match="exit status 3") as exc_info:
            runner.run("echo before; exit 3", lines.append)

        assert exc_info.value.return_code == 3
        assert not isinstance(exc_info.value, RunCancelledError)
        # Output produced before the failure is still delivered
        assert lines == ["[OUT] before"]

    def test_shell_missing(self, lines):
        runner = StreamRunner(shell="/nonexistent/shell", shell_args=("-c",))
        with pytest.raises(ExecutionError, match="failed to start command"):
            runner.run("echo hi", lines.append)
        assert lines == []

    def test_empty_output(self, runner, lines):
        result = runner.run("true", lines.append)
        assert lines == []
        assert result.return_code == 0

    def test_partial_last_line(self, runner, lines):
        runner.run("printf 'no newline'", lines.append)
        assert lines == ["[OUT] no newline"]

    def test_invalid_utf8_replaced(self, runner, lines):
        runner.run(r"printf 'bad \xff byte\n'", lines.append)
        assert lines == ["[OUT] bad \ufffd byte"]

    def test_cwd(self, tmp_path, lines):
        runner = StreamRunner(shell="/bin/bash", shell_args=("-c",), cwd=str(tmp_path))
        runner.run("pwd", lines.append)
        assert lines == [f"[OUT] {tmp_path}"]


class TestConcurrentStreams:
    def test_lines_never_torn(self, runner, lines):
        """Both pipes writing at once still yields whole lines only"""
        command = (
            "for i in $(seq 1 300); do echo out-$i-xxxxxxxxxxxxxxxxxxxx; done & "
            "for i in $(seq 1 300); do echo err-$i-yyyyyyyyyyyyyyyyyyyy >&2; done; wait"
        )
        result = runner.run(command, lines.append)

        assert len(lines) == 600
        assert result.stdout_lines == 300
        assert result.stderr_lines == 300
        out = [line for line in lines if line.startswith("[OUT] ")]
        err = [line for line in lines if line.startswith("[ERR] ")]
        assert out == [f"[OUT] out-{i}-{'x' * 20}" for i in range(1, 301)]
        assert err == [f"[ERR] err-{i}-{'y' * 20}" for i in range(1, 301)]

    def test_line_sink_serializes_writes(self):
        active = []
        overlaps = []

        def slow_write(line):
            active.append(line)
            if len(active) > 1:
                overlaps.append(line)
            time.sleep(0.001)
            active.remove(line)

        sink = LineSink(slow_write)
        threads = [
            threading.Thread(target=lambda n=n: [sink(f"{n}-{i}") for i in range(20)])
            for n in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []

    def test_failing_sink_still_drains(self, runner):
        def sink(line):
            raise BrokenPipeError("client gone")

        # Enough output to fill a pipe buffer if nobody were reading
        result = runner.run("head -c 200000 /dev/zero | tr '\\0' 'a' | fold -w 100", sink)
        assert result.success
        assert result.stdout_lines == 0


class TestDeadline:
    def test_timeout(self, runner, lines):
        started = time.monotonic()
        with pytest.raises(ProvisionTimeoutError, match="hostname step timeout") as exc_info:
            runner.run(
                "echo started; sleep 30", lines.append,
                deadline=Deadline.after(0.5, "hostname step"),
            )
        elapsed = time.monotonic() - started

        assert not isinstance(exc_info.value, ExecutionError)
        assert exc_info.value.status_code == 504
        assert elapsed < 5
        assert lines == ["[OUT] started"]

    def test_timeout_escalates_to_kill(self, runner, lines):
        started = time.monotonic()
        with pytest.raises(ProvisionTimeoutError):
            runner.run(
                "trap '' TERM; echo stubborn; sleep 30", lines.append,
                deadline=Deadline.after(0.5, "playbook step"),
            )
        # deadline + one grace period, far below the 30s sleep
        assert time.monotonic() - started < 5
        assert lines == ["[OUT] stubborn"]

    def test_kills_whole_process_group(self, runner, tmp_path, lines):
        marker = tmp_path / "survivor"
        with pytest.raises(ProvisionTimeoutError):
            runner.run(
                f"(sleep 1.5; touch {marker}) & sleep 30",
                lines.append,
                deadline=Deadline.after(0.3, "playbook step"),
            )
        time.sleep(2)
        assert not marker.exists()

    def test_expired_before_start(self, runner, lines):
        expired = Deadline(time.monotonic() - 1, "registration")
        with pytest.raises(ProvisionTimeoutError, match="before start"):
            runner.run("echo never", lines.append, deadline=expired)
        assert lines == []

    def test_finishes_within_deadline(self, runner, lines):
        result = runner.run("echo quick", lines.append, deadline=Deadline.after(10, "step"))
        assert result.success


class TestCancel:
    def test_cancel_terminates(self, runner, lines):
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        started = time.monotonic()
        try:
            with pytest.raises(RunCancelledError, match="cancelled"):
                runner.run("echo go; sleep 30", lines.append, cancel=cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - started < 5
        assert lines == ["[OUT] go"]
