"""Workflow command execution.

The runner admits at most one command at a time, checks it against the
specification's phase, spawns the agent and folds the process events back
into the :class:`~speckflow.models.WorkflowCommand`.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .config import AgentConfig
from .errors import CommandAlreadyRunning, CommandNotAllowed
from .models import OutputStream, Specification, WorkflowCommand, WorkflowCommandType, WorkflowPhase
from .process import ProcessHandle, ProcessOutput, ProcessOutputKind, ProcessService
from .speckflow_logging import log_command_finished, log_command_started


logger = logging.getLogger("speckflow.runner")


def ensure_command_allowed(phase: WorkflowPhase, command_type: WorkflowCommandType) -> None:
    """Raise CommandNotAllowed unless ``command_type`` is legal in ``phase``."""
    if not phase.allows(command_type):
        raise CommandNotAllowed(command_type.display_name, phase.display_name)


def apply_event(command: WorkflowCommand, event: ProcessOutput) -> None:
    """Fold one process event into the command's output and state."""
    if event.kind is ProcessOutputKind.STDOUT:
        command.add_output(event.text or "", OutputStream.STDOUT)
    elif event.kind is ProcessOutputKind.STDERR:
        command.add_output(event.text or "", OutputStream.STDERR)
    elif event.kind is ProcessOutputKind.EXIT:
        command.complete(event.code if event.code is not None else -1)
    elif event.kind is ProcessOutputKind.TERMINATED:
        command.cancel()
    elif event.kind is ProcessOutputKind.ERROR:
        command.fail(event.text or "process error")


class WorkflowRunner:
    """Single-flight executor for workflow commands."""

    def __init__(self, process_service: ProcessService, agent_command: str, agent_args: Sequence[str] = ()):
        self.process_service = process_service
        self.agent_command = agent_command
        self.agent_args = list(agent_args)
        self.active: Optional[WorkflowCommand] = None
        self.handle: Optional[ProcessHandle] = None

    @classmethod
    def default_with_log_dir(cls, log_dir: Path | str) -> "WorkflowRunner":
        """Build a runner that launches the default agent command."""
        agent = AgentConfig()
        return cls(ProcessService(log_dir), agent.command, agent.args)

    def is_busy(self) -> bool:
        if self.active is not None and not self.active.state.is_finished():
            return True
        return self.handle is not None and self.handle.is_running()

    def start_command(
        self, command_type: WorkflowCommandType, spec: Specification
    ) -> Tuple[WorkflowCommand, ProcessHandle]:
        """Spawn the agent for ``command_type`` against ``spec``."""
        ensure_command_allowed(spec.phase, command_type)
        if self.is_busy():
            raise CommandAlreadyRunning()

        if self.handle is not None:
            self.handle.close()
            self.handle = None

        handle = self.process_service.spawn_workflow(
            command_type,
            spec.id,
            spec.directory,
            self.agent_command,
            self.agent_args,
        )
        command = WorkflowCommand(command_type, spec.id, log_path=handle.log_file)
        command.start(handle.pid)
        self.active = command
        self.handle = handle

        logger.info("Started %s for %s (pid %s)", command_type.tool_name, spec.id, handle.pid)
        log_command_started(command_type.value, str(spec.id), pid=handle.pid, log_path=str(handle.log_file))
        return command, handle

    def start_detached(self, command_type: WorkflowCommandType, spec: Specification) -> WorkflowCommand:
        """Spawn the agent with its output going straight to the log file.

        No events are delivered for a detached command; the log file is its
        only record and it stays Running in this process.
        """
        ensure_command_allowed(spec.phase, command_type)
        if self.is_busy():
            raise CommandAlreadyRunning()
        self.close()

        process, log_path = self.process_service.spawn_workflow_detached(
            command_type,
            spec.id,
            spec.directory,
            self.agent_command,
            self.agent_args,
        )
        command = WorkflowCommand(command_type, spec.id, log_path=log_path)
        command.start(process.pid)
        self.active = command

        logger.info("Started detached %s for %s (pid %s)", command_type.tool_name, spec.id, process.pid)
        log_command_started(command_type.value, str(spec.id), pid=process.pid, log_path=str(log_path), detached=True)
        return command

    def poll(self) -> List[ProcessOutput]:
        """Drain buffered events into the active command."""
        events: List[ProcessOutput] = []
        if self.active is None or self.handle is None:
            return events
        while True:
            event = self.handle.try_recv()
            if event is None:
                break
            self._apply(event)
            events.append(event)
        return events

    def _apply(self, event: ProcessOutput) -> None:
        command = self.active
        was_finished = command.state.is_finished()
        apply_event(command, event)
        if not was_finished and command.state.is_finished():
            log_command_finished(
                command.command_type.value,
                str(command.spec_id),
                command.state.status.value,
                exit_code=command.state.exit_code,
                error=command.state.error,
            )

    def wait(self, timeout: Optional[float] = None, poll_interval: float = 0.05) -> Optional[WorkflowCommand]:
        """Block until the active command is terminal or ``timeout`` expires."""
        if self.active is None or self.handle is None:
            return self.active
        deadline = time.monotonic() + timeout if timeout is not None else None
        while not self.active.state.is_finished():
            remaining = poll_interval
            if deadline is not None:
                remaining = min(poll_interval, deadline - time.monotonic())
                if remaining <= 0:
                    break
            event = self.handle.recv(timeout=remaining)
            if event is not None:
                self._apply(event)
        self.poll()
        return self.active

    def cancel(self) -> Optional[WorkflowCommand]:
        """Kill the active process and mark its command cancelled.

        Returns None when there is nothing to cancel: no command, or one that
        already reached a terminal state (including an exit still queued).
        """
        self.poll()
        if self.active is None or self.active.state.is_finished():
            return None
        if self.handle is not None:
            self.handle.kill()
        self.active.cancel()
        log_command_finished(self.active.command_type.value, str(self.active.spec_id), "cancelled")
        logger.info("Cancelled %s for %s", self.active.command_type.tool_name, self.active.spec_id)
        return self.active

    def record(self, command: WorkflowCommand) -> None:
        """Track a command executed outside the process runtime as the active one."""
        if self.is_busy():
            raise CommandAlreadyRunning()
        self.close()
        self.active = command
        log_command_started(command.command_type.value, str(command.spec_id), transport="mcp")

    def finish(self, command: WorkflowCommand) -> None:
        log_command_finished(
            command.command_type.value,
            str(command.spec_id),
            command.state.status.value,
            exit_code=command.state.exit_code,
            error=command.state.error,
        )

    def close(self) -> None:
        if self.handle is not None:
            self.handle.close()
            self.handle = None
