"""Subprocess execution with streamed output.

A spawned child gets one reader thread per output stream. Both readers
publish onto a single queue, append to an optional log file before
publishing, and the reader that finishes last publishes exactly one
terminal event (``EXIT``, ``TERMINATED`` or ``ERROR``).

A detached child instead writes straight into its log file, so it keeps
running after the spawning process exits.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, List, Optional, Sequence, Tuple

from .errors import ProcessError
from .models import SpecId, WorkflowCommandType


logger = logging.getLogger("speckflow.process")

_POSIX = os.name == "posix"


class ProcessOutputKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    EXIT = "exit"
    TERMINATED = "terminated"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ProcessOutput:
    """One event from a running child."""

    kind: ProcessOutputKind
    text: Optional[str] = None
    code: Optional[int] = None

    @classmethod
    def stdout(cls, text: str) -> "ProcessOutput":
        return cls(ProcessOutputKind.STDOUT, text=text)

    @classmethod
    def stderr(cls, text: str) -> "ProcessOutput":
        return cls(ProcessOutputKind.STDERR, text=text)

    @classmethod
    def exit(cls, code: int) -> "ProcessOutput":
        return cls(ProcessOutputKind.EXIT, code=code)

    @classmethod
    def terminated(cls) -> "ProcessOutput":
        return cls(ProcessOutputKind.TERMINATED)

    @classmethod
    def error(cls, message: str) -> "ProcessOutput":
        return cls(ProcessOutputKind.ERROR, text=message)

    def is_terminal(self) -> bool:
        return self.kind in (ProcessOutputKind.EXIT, ProcessOutputKind.TERMINATED, ProcessOutputKind.ERROR)


def _exit_code(returncode: Optional[int]) -> int:
    if returncode is None or returncode < 0:
        return -1
    return returncode


class ProcessHandle:
    """Owns a live child process, its event queue and its running flag."""

    def __init__(self, process: subprocess.Popen, log_file: Optional[Path] = None):
        self._process = process
        self._log_file = Path(log_file) if log_file else None
        self._log_stream: Optional[IO[str]] = None
        self._log_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._events: "queue.Queue[ProcessOutput]" = queue.Queue()
        self._running = threading.Event()
        self._running.set()
        self._killed = threading.Event()
        self._read_error: Optional[str] = None
        self._closed = False
        self.start_time = time.monotonic()

        if self._log_file is not None:
            try:
                self._log_stream = self._log_file.open("a", encoding="utf-8")
            except OSError as e:
                logger.warning("Cannot open log file %s: %s", self._log_file, e)

        self._readers: List[threading.Thread] = []
        streams = (
            (process.stdout, ProcessOutputKind.STDOUT, "[OUT] "),
            (process.stderr, ProcessOutputKind.STDERR, "[ERR] "),
        )
        self._open_readers = sum(1 for pipe, _, _ in streams if pipe is not None)
        for pipe, kind, prefix in streams:
            if pipe is None:
                continue
            reader = threading.Thread(
                target=self._read_stream,
                args=(pipe, kind, prefix),
                name=f"speckflow-{kind.value}-{process.pid}",
                daemon=True,
            )
            self._readers.append(reader)
        for reader in self._readers:
            reader.start()
        if not self._readers:
            self._finish()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def log_file(self) -> Optional[Path]:
        return self._log_file

    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def is_running(self) -> bool:
        return self._running.is_set()

    # -- reader side -------------------------------------------------------

    def _read_stream(self, pipe: IO[str], kind: ProcessOutputKind, prefix: str) -> None:
        try:
            for raw in iter(pipe.readline, ""):
                if self._killed.is_set():
                    break
                line = raw[:-1] if raw.endswith("\n") else raw
                if line.endswith("\r"):
                    line = line[:-1]
                self._write_log(prefix + line)
                self._events.put(ProcessOutput(kind, text=line))
        except (OSError, ValueError) as e:
            with self._state_lock:
                if self._read_error is None:
                    self._read_error = f"Failed to read {kind.value}: {e}"
        finally:
            self._reader_done()

    def _write_log(self, line: str) -> None:
        with self._log_lock:
            if self._log_stream is None:
                return
            try:
                self._log_stream.write(line + "\n")
                self._log_stream.flush()
            except (OSError, ValueError) as e:
                logger.warning("Log write to %s failed: %s", self._log_file, e)
                self._log_stream = None

    def _reader_done(self) -> None:
        with self._state_lock:
            self._open_readers -= 1
            last = self._open_readers == 0
        if last:
            self._finish()

    def _finish(self) -> None:
        """Reap the child and publish the single terminal event."""
        try:
            returncode = self._process.wait()
        except OSError as e:
            returncode = None
            with self._state_lock:
                if self._read_error is None:
                    self._read_error = str(e)

        if self._read_error is not None:
            event = ProcessOutput.error(self._read_error)
        elif self._killed.is_set():
            event = ProcessOutput.terminated()
        else:
            event = ProcessOutput.exit(_exit_code(returncode))

        with self._log_lock:
            if self._log_stream is not None:
                self._log_stream.close()
                self._log_stream = None

        self._running.clear()
        self._events.put(event)
        logger.debug("Process %s finished: %s", self._process.pid, event.kind.value)

    # -- consumer side -----------------------------------------------------

    def try_recv(self) -> Optional[ProcessOutput]:
        """Return the next buffered event, or None when nothing is buffered."""
        if self._closed:
            return None
        try:
            return self._events.get_nowait()
        except queue.Empty:
            return None

    def recv(self, timeout: Optional[float] = None) -> Optional[ProcessOutput]:
        """Block for the next event; None when the timeout expires."""
        if self._closed:
            return None
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def kill(self) -> None:
        """Mark the handle killed and kill the child (and its process group)."""
        self._killed.set()
        self._running.clear()
        if self._process.poll() is not None:
            return
        try:
            if _POSIX:
                os.killpg(self._process.pid, signal.SIGKILL)
            else:
                self._process.kill()
        except ProcessLookupError:
            logger.debug("Process %s already exited", self._process.pid)
        except OSError as e:
            raise ProcessError(f"Failed to kill process {self._process.pid}: {e}") from e

    def wait(self, timeout: Optional[float] = None) -> int:
        """Wait for the child and its readers; returns the exit code or -1.

        Readers still draining when the join times out keep the handle running
        until they publish the terminal event.
        """
        try:
            returncode = self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise ProcessError(f"Process {self._process.pid} did not exit within {timeout}s") from e
        for reader in self._readers:
            reader.join(timeout)
        return _exit_code(returncode)

    def close(self) -> None:
        """Kill if still running, join the readers and release the pipes."""
        if self._closed:
            return
        if self._process.poll() is None:
            self.kill()
        for reader in self._readers:
            reader.join(timeout=5)
        for pipe in (self._process.stdout, self._process.stderr):
            if pipe is not None:
                pipe.close()
        self._closed = True

    def __enter__(self) -> "ProcessHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ProcessService:
    """Spawns agent processes and owns their log directory."""

    def __init__(self, log_dir: Path | str):
        self.log_dir = Path(log_dir)

    def spawn(
        self,
        command: str,
        args: Sequence[str],
        working_dir: Path | str,
        log_file: Optional[Path] = None,
    ) -> ProcessHandle:
        """Start ``command`` with piped output; returns immediately."""
        try:
            process = subprocess.Popen(
                [command, *args],
                cwd=str(working_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=_POSIX,
            )
        except OSError as e:
            raise ProcessError(f"Failed to spawn process: {e}") from e
        logger.info("Spawned %s (pid %s) in %s", command, process.pid, working_dir)
        return ProcessHandle(process, log_file=log_file)

    def log_file_path(self, command_type: WorkflowCommandType, spec_id: SpecId | str, epoch: int) -> Path:
        return self.log_dir / f"{spec_id}-{command_type.tool_name}-{epoch}.log"

    def spawn_detached(
        self,
        command: str,
        args: Sequence[str],
        working_dir: Path | str,
        log_file: Path,
    ) -> subprocess.Popen:
        """Start ``command`` with both streams appended straight to ``log_file``.

        Nothing in this process reads the child's output, so it keeps running
        and logging after the caller exits.
        """
        try:
            with Path(log_file).open("a", encoding="utf-8") as log:
                process = subprocess.Popen(
                    [command, *args],
                    cwd=str(working_dir),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=_POSIX,
                )
        except OSError as e:
            raise ProcessError(f"Failed to spawn process: {e}") from e
        logger.info("Spawned detached %s (pid %s) in %s", command, process.pid, working_dir)
        return process

    def _write_header(
        self, command_type: WorkflowCommandType, spec_id: SpecId | str, spec_directory: Path | str
    ) -> Path:
        epoch = int(time.time())
        log_path = self.log_file_path(command_type, spec_id, epoch)
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with log_path.open("w", encoding="utf-8") as log:
                log.write(f"# Workflow: {command_type.tool_name} for {spec_id}\n")
                log.write(f"# Started: {epoch}\n")
                log.write(f"# Directory: {spec_directory}\n")
                log.write("---\n")
        except OSError as e:
            raise ProcessError(f"Cannot write log file {log_path}: {e}") from e
        return log_path

    def spawn_workflow(
        self,
        command_type: WorkflowCommandType,
        spec_id: SpecId | str,
        spec_directory: Path | str,
        agent_command: str,
        agent_args: Sequence[str],
    ) -> ProcessHandle:
        """Write the log header and run ``agent_command *agent_args <tool>``."""
        log_path = self._write_header(command_type, spec_id, spec_directory)
        args = [*agent_args, command_type.tool_name]
        return self.spawn(agent_command, args, spec_directory, log_file=log_path)

    def spawn_workflow_detached(
        self,
        command_type: WorkflowCommandType,
        spec_id: SpecId | str,
        spec_directory: Path | str,
        agent_command: str,
        agent_args: Sequence[str],
    ) -> Tuple[subprocess.Popen, Path]:
        """Like :meth:`spawn_workflow`, but the child writes its own log."""
        log_path = self._write_header(command_type, spec_id, spec_directory)
        args = [*agent_args, command_type.tool_name]
        return self.spawn_detached(agent_command, args, spec_directory, log_path), log_path
