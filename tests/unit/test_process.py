"""Unit tests for the process runtime.

Children are real ``sys.executable -c`` processes so streaming, exit codes
and cancellation are exercised end to end.
"""

import re
import sys
import time

import pytest

from conftest import FAKE_AGENT

from speckflow.errors import ProcessError
from speckflow.models import SpecId, WorkflowCommandType
from speckflow.process import ProcessOutput, ProcessOutputKind, ProcessService


SCRIPT_BOTH_STREAMS = (
    "import sys\n"
    "for i in range(5):\n"
    "    print('out %d' % i, flush=True)\n"
    "    print('err %d' % i, file=sys.stderr, flush=True)\n"
)


def collect(handle, timeout=15.0):
    """Receive events until the terminal one."""
    events = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        event = handle.recv(timeout=0.1)
        if event is None:
            continue
        events.append(event)
        if event.is_terminal():
            return events
    raise AssertionError(f"no terminal event within {timeout}s: {events}")


def python(code):
    return sys.executable, ["-c", code]


class TestProcessHandle:
    """Test cases for spawn, streaming and termination."""

    def test_streams_lines_in_order(self, tmp_path):
        """Test per-stream ordering and the final exit event."""
        command, args = python(SCRIPT_BOTH_STREAMS)
        handle = ProcessService(tmp_path).spawn(command, args, tmp_path)

        events = collect(handle)

        stdout = [e.text for e in events if e.kind is ProcessOutputKind.STDOUT]
        stderr = [e.text for e in events if e.kind is ProcessOutputKind.STDERR]
        assert stdout == [f"out {i}" for i in range(5)]
        assert stderr == [f"err {i}" for i in range(5)]
        assert events[-1] == ProcessOutput.exit(0)
        assert sum(1 for e in events if e.is_terminal()) == 1
        handle.close()

    def test_nothing_after_terminal_event(self, tmp_path):
        """Test that the terminal event is the last one delivered."""
        command, args = python("print('only')")
        handle = ProcessService(tmp_path).spawn(command, args, tmp_path)

        events = collect(handle)
        time.sleep(0.2)

        assert events == [ProcessOutput.stdout("only"), ProcessOutput.exit(0)]
        assert handle.try_recv() is None
        assert not handle.is_running()
        handle.close()

    def test_nonzero_exit_code(self, tmp_path):
        """Test that the exit code is reported."""
        command, args = python("import sys; sys.exit(3)")
        handle = ProcessService(tmp_path).spawn(command, args, tmp_path)

        assert collect(handle)[-1] == ProcessOutput.exit(3)
        assert handle.wait() == 3

    def test_exit_while_helper_holds_pipes(self, tmp_path):
        """Test that a natural exit still reports Exit when wait times out on the readers."""
        command, args = python(
            "import subprocess, sys\n"
            "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(1.5)'])\n"
            "print('hi', flush=True)\n"
        )
        handle = ProcessService(tmp_path).spawn(command, args, tmp_path)

        assert handle.wait(timeout=0.5) == 0
        assert handle.is_running()

        assert collect(handle) == [ProcessOutput.stdout("hi"), ProcessOutput.exit(0)]
        assert not handle.is_running()
        handle.close()

    def test_try_recv_empty(self, tmp_path):
        """Test the non-blocking poll with nothing buffered."""
        command, args = python("import time; time.sleep(5)")
        handle = ProcessService(tmp_path).spawn(command, args, tmp_path)
        try:
            assert handle.try_recv() is None
            assert handle.is_running()
        finally:
            handle.close()

    def test_kill_yields_terminated(self, tmp_path):
        """Test that kill clears the flag and ends with Terminated."""
        command, args = python("import time\nprint('ready', flush=True)\ntime.sleep(30)")
        handle = ProcessService(tmp_path).spawn(command, args, tmp_path)
        first = handle.recv(timeout=10)
        assert first == ProcessOutput.stdout("ready")

        handle.kill()
        handle.kill()

        assert not handle.is_running()
        assert collect(handle)[-1].kind is ProcessOutputKind.TERMINATED
        assert handle.wait() == -1
        handle.close()

    def test_log_file_prefixes(self, tmp_path):
        """Test that output is mirrored into the log with stream prefixes."""
        log_file = tmp_path / "run.log"
        command, args = python(SCRIPT_BOTH_STREAMS)
        handle = ProcessService(tmp_path).spawn(command, args, tmp_path, log_file=log_file)

        collect(handle)
        handle.close()

        lines = log_file.read_text().splitlines()
        assert [line for line in lines if line.startswith("[OUT] ")] == [f"[OUT] out {i}" for i in range(5)]
        assert [line for line in lines if line.startswith("[ERR] ")] == [f"[ERR] err {i}" for i in range(5)]

    def test_close_stops_delivery(self, tmp_path):
        """Test that a closed handle yields nothing."""
        command, args = python("import time\nwhile True:\n    print('tick', flush=True)\n    time.sleep(0.01)")
        handle = ProcessService(tmp_path).spawn(command, args, tmp_path)
        handle.recv(timeout=10)

        handle.close()

        assert handle.try_recv() is None
        assert not handle.is_running()

    def test_spawn_failure(self, tmp_path):
        """Test that a missing executable raises ProcessError."""
        with pytest.raises(ProcessError, match="Failed to spawn process"):
            ProcessService(tmp_path).spawn(str(tmp_path / "no-such-binary"), [], tmp_path)


class TestSpawnWorkflow:
    """Test cases for workflow spawning and log headers."""

    def test_header_and_arguments(self, tmp_path):
        """Test the log name, header and the appended tool argument."""
        spec_dir = tmp_path / "specs" / "001-auth"
        spec_dir.mkdir(parents=True)
        service = ProcessService(tmp_path / "logs")

        handle = service.spawn_workflow(
            WorkflowCommandType.PLAN,
            SpecId(1, "auth"),
            spec_dir,
            sys.executable,
            [str(FAKE_AGENT)],
        )
        events = collect(handle)
        handle.close()

        assert re.fullmatch(r"001-auth-speckit\.plan-\d+\.log", handle.log_file.name)
        lines = handle.log_file.read_text().splitlines()
        assert lines[0] == "# Workflow: speckit.plan for 001-auth"
        assert re.fullmatch(r"# Started: \d+", lines[1])
        assert lines[2] == f"# Directory: {spec_dir}"
        assert lines[3] == "---"
        assert "[OUT] speckit.plan line 0" in lines
        assert "[ERR] speckit.plan warning" in lines
        assert events[-1] == ProcessOutput.exit(0)
        assert (spec_dir / "plan.md").exists()
