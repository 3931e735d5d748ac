"""Workflow management for speckflow.

This module composes the specification, git, process and protocol services
into the operations a front end needs. Every public method returns a
dictionary; failures come back as ``{"error", "suggestion", "message"}``
dictionaries instead of raising.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import TRANSPORT_MCP, ProjectConfig
from .errors import (
    BranchNotFound,
    CannotDeleteMain,
    CommandAlreadyRunning,
    CommandNotAllowed,
    GitError,
    McpError,
    NotARepository,
    PathExists,
    RpcError,
    SpecAlreadyExists,
    SpecDirectoryNotFound,
    SpecNotFound,
    SpeckFlowError,
    WorktreeDirty,
    WorktreeExists,
    WorktreeNotFound,
)
from .git import GitRunner, GitService
from .mcp_client import McpClient, error_kind
from .models import (
    ExecutionStatus,
    OutputLine,
    OutputStream,
    Project,
    SpecId,
    Specification,
    Worktree,
    WorktreeStatus,
    WorktreeSyncStatus,
    WorkflowCommand,
    WorkflowCommandType,
)
from .process import ProcessOutput, ProcessService
from .runner import WorkflowRunner, ensure_command_allowed
from .specs import SpecService, to_kebab
from .speckflow_logging import (
    log_error_with_context,
    log_operation,
    log_performance,
    log_worktree_event,
)


logger = logging.getLogger("speckflow.workflow")

ClientFactory = Callable[[Path], McpClient]

_SUGGESTIONS = {
    SpecDirectoryNotFound: "Create a specification with 'new' to initialize the specs directory",
    SpecNotFound: "List specifications with 'specs' and use one of the reported IDs",
    SpecAlreadyExists: "Choose a different name for the specification",
    NotARepository: "Run speckflow inside a git repository or pass --root",
    BranchNotFound: "Create the branch first or check the branch name",
    WorktreeExists: "Use 'switch' to reuse the existing worktree",
    PathExists: "Remove the directory or choose a different worktree directory",
    WorktreeNotFound: "List worktrees with 'worktrees' and use one of the reported paths",
    CannotDeleteMain: "The main worktree cannot be removed",
    WorktreeDirty: "Commit or stash the changes, or retry with --force",
    CommandNotAllowed: "Run one of the commands available in the current phase",
    CommandAlreadyRunning: "Wait for the running command to finish or cancel it",
}


def _event_to_dict(event: ProcessOutput) -> Dict[str, Any]:
    data: Dict[str, Any] = {"kind": event.kind.value}
    if event.text is not None:
        data["text"] = event.text
    if event.code is not None:
        data["code"] = event.code
    return data


class WorkflowManager:
    """Coordinates specifications, worktrees and agent commands for one project."""

    def __init__(
        self,
        root: Path | str,
        config: Optional[ProjectConfig] = None,
        git_runner: Optional[GitRunner] = None,
        process_service: Optional[ProcessService] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config or ProjectConfig.load()
        self.project = Project.new(root, self.config)
        self.spec_service = SpecService(self.project.specs_directory)

        try:
            self.git: Optional[GitService] = GitService(
                self.project.root_path, remote=self.config.git.remote, runner=git_runner
            )
        except NotARepository:
            logger.warning("%s is not a git repository; worktree operations are disabled", self.project.root_path)
            self.git = None

        self.runner = WorkflowRunner(
            process_service or ProcessService(self.project.log_directory),
            self.config.agent.command,
            self.config.agent.args,
        )
        self._client_factory = client_factory or self._default_client

        self.worktrees: List[Worktree] = []
        self.worktree_statuses: Dict[Path, WorktreeStatus] = {}
        self.sync_statuses: Dict[str, WorktreeSyncStatus] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _default_client(self, working_dir: Path) -> McpClient:
        return McpClient(
            self.config.agent.command,
            self.config.agent.args,
            working_dir=working_dir,
            timeout=self.config.agent.timeout_seconds,
        )

    def _error(self, error: Exception, operation: str, next_step: Optional[str] = None, **context: Any) -> Dict[str, Any]:
        log_error_with_context(error, {"operation": operation, **context})
        suggestion = _SUGGESTIONS.get(type(error), "Check the arguments and the project state, then retry")
        result: Dict[str, Any] = {
            "error": str(error),
            "error_type": type(error).__name__,
            "suggestion": suggestion,
            "message": f"Error: {error}",
        }
        if isinstance(error, RpcError):
            result["error_code"] = error.code
            result["error_kind"] = error_kind(error.code)
        if next_step:
            result["next_suggested_step"] = next_step
        return result

    def _require_git(self) -> GitService:
        if self.git is None:
            raise NotARepository(self.project.root_path)
        return self.git

    def _find_spec(self, spec_ref: str) -> Specification:
        """Resolve ``NNN-name`` or a bare number to a specification."""
        spec_ref = (spec_ref or "").strip()
        if spec_ref.isdigit():
            number = int(spec_ref)
            for spec in self.spec_service.discover_specs():
                if spec.number == number:
                    return spec
            raise SpecNotFound(spec_ref)
        return self.spec_service.load_spec(SpecId.parse(spec_ref))

    def _refresh_worktrees(self, include_sync: bool = False) -> List[Worktree]:
        """Rebuild the worktree list and the status caches."""
        git = self._require_git()
        worktrees = git.list_worktrees()
        statuses: Dict[Path, WorktreeStatus] = {}
        for worktree in worktrees:
            if not worktree.is_detached():
                worktree.status = git.worktree_status(worktree.path)
            statuses[worktree.path] = worktree.status
        self.worktrees = worktrees
        self.worktree_statuses = statuses
        if include_sync:
            self.sync_statuses = {
                worktree.branch: git.sync_status(worktree.branch)
                for worktree in worktrees
                if not worktree.is_detached()
            }
        return worktrees

    def find_worktree_for_spec(self, spec: Specification) -> Optional[Worktree]:
        """Match a worktree to a specification by branch name."""
        for worktree in self.worktrees:
            if worktree.branch == spec.branch:
                return worktree
        for worktree in self.worktrees:
            if worktree.branch.endswith("/" + spec.branch):
                return worktree
        return None

    # ------------------------------------------------------------------
    # Specifications
    # ------------------------------------------------------------------

    def list_specs(self) -> Dict[str, Any]:
        """List every specification with its phase."""
        try:
            specs = self.spec_service.discover_specs()
        except SpeckFlowError as e:
            return self._error(e, "list_specs", next_step="new", specs_directory=str(self.project.specs_directory))
        return {
            "specs_directory": str(self.project.specs_directory),
            "specs": [spec.to_dict() for spec in specs],
            "count": len(specs),
            "message": f"Found {len(specs)} specifications",
        }

    def spec_status(self, spec_id: str) -> Dict[str, Any]:
        """Phase, legal commands, artifacts and worktree of one specification."""
        try:
            spec = self._find_spec(spec_id)
            worktree = None
            if self.git is not None:
                self._refresh_worktrees()
                worktree = self.find_worktree_for_spec(spec)
        except (SpeckFlowError, ValueError) as e:
            return self._error(e, "spec_status", next_step="specs", spec_id=spec_id)

        commands = spec.phase.available_commands()
        return {
            "spec": spec.to_dict(),
            "phase": spec.phase.value,
            "available_commands": [command.value for command in commands],
            "artifacts": [artifact.value for artifact in spec.artifacts.available()],
            "worktree": worktree.to_dict() if worktree else None,
            "next_suggested_step": commands[0].value,
            "message": f"{spec.id} is in the {spec.phase.display_name} phase",
        }

    def create_spec(self, name: str) -> Dict[str, Any]:
        """Create a specification directory, its branch and its worktree."""
        slug = to_kebab(name or "")
        try:
            if not slug:
                raise ValueError("Specification name must contain at least one letter or digit")
            with log_operation("create_spec", name=slug):
                number = self.spec_service.next_number()
                spec = self.spec_service.create_spec(number, slug)
        except (SpeckFlowError, ValueError) as e:
            return self._error(e, "create_spec", next_step="new", name=name)

        branch_created = False
        worktree_path: Optional[Path] = None
        warnings: List[str] = []
        if self.git is not None:
            try:
                if not self.git.branch_exists(spec.branch):
                    self.git.create_branch(spec.branch)
                    branch_created = True
            except GitError as e:
                logger.warning("Could not create branch %s: %s", spec.branch, e)
                warnings.append(f"Could not create branch {spec.branch}: {e}")
            try:
                worktree_path, _ = self._switch(spec)
            except GitError as e:
                logger.warning("Could not switch to %s: %s", spec.id, e)
                warnings.append(f"Could not create worktree: {e}")

        result: Dict[str, Any] = {
            "spec": spec.to_dict(),
            "branch_created": branch_created,
            "worktree_path": str(worktree_path) if worktree_path else None,
            "next_suggested_step": "specify",
            "message": (
                f"Created and switched to: {worktree_path}" if worktree_path else f"Created spec: {spec.id}"
            ),
        }
        if warnings:
            result["warnings"] = warnings
        return result

    # ------------------------------------------------------------------
    # Worktrees
    # ------------------------------------------------------------------

    @log_performance("list_worktrees")
    def list_worktrees(self, include_sync: bool = False) -> Dict[str, Any]:
        """List worktrees with their status and, optionally, remote sync."""
        try:
            worktrees = self._refresh_worktrees(include_sync=include_sync)
        except SpeckFlowError as e:
            return self._error(e, "list_worktrees")

        entries = []
        for worktree in worktrees:
            entry = worktree.to_dict()
            if include_sync and worktree.branch in self.sync_statuses:
                entry["sync"] = self.sync_statuses[worktree.branch].to_dict()
            entries.append(entry)
        return {"worktrees": entries, "count": len(entries), "message": f"Found {len(entries)} worktrees"}

    def _switch(self, spec: Specification) -> tuple:
        git = self._require_git()
        self._refresh_worktrees()
        existing = self.find_worktree_for_spec(spec)
        if existing is not None:
            return existing.path, False

        if not git.branch_exists(spec.branch):
            git.create_branch(spec.branch)
        path = self.project.worktree_path_for_branch(spec.branch)
        with log_operation("create_worktree", branch=spec.branch, path=str(path)):
            git.create_worktree(spec.branch, path)
        log_worktree_event("created", spec.branch, path, spec_id=str(spec.id))
        self._refresh_worktrees()
        return path, True

    def switch_to_spec(self, spec_id: str) -> Dict[str, Any]:
        """Return the specification's worktree, creating it when missing."""
        try:
            spec = self._find_spec(spec_id)
            path, created = self._switch(spec)
        except (SpeckFlowError, ValueError) as e:
            return self._error(e, "switch_to_spec", next_step="worktrees", spec_id=spec_id)
        return {
            "spec_id": str(spec.id),
            "branch": spec.branch,
            "worktree_path": str(path),
            "created": created,
            "message": f"{'Created and switched to' if created else 'Switched to'}: {path}",
        }

    def delete_worktree(self, path: str, force: bool = False) -> Dict[str, Any]:
        """Remove a worktree; dirty worktrees need ``force``."""
        try:
            git = self._require_git()
            with log_operation("delete_worktree", path=path, force=force):
                worktree = git.find_worktree(path)
                git.delete_worktree(Path(path), force=force)
            if worktree is not None:
                log_worktree_event("deleted", worktree.branch, worktree.path, force=force)
            self._refresh_worktrees()
        except SpeckFlowError as e:
            return self._error(e, "delete_worktree", next_step="worktrees", path=path, force=force)
        return {"path": path, "deleted": True, "message": f"Worktree deleted: {path}"}

    # ------------------------------------------------------------------
    # Workflow commands
    # ------------------------------------------------------------------

    def run_workflow(self, spec_id: str, command: str, detach: bool = False) -> Dict[str, Any]:
        """Start a workflow command through the configured transport.

        With ``detach`` the agent writes straight to its log file and outlives
        this process; no output events are collected for it.
        """
        if self.config.agent.transport == TRANSPORT_MCP:
            return self.call_workflow_tool(spec_id, command)
        try:
            command_type = WorkflowCommandType.parse(command)
            spec = self._find_spec(spec_id)
            if detach:
                workflow_command = self.runner.start_detached(command_type, spec)
            else:
                workflow_command, handle = self.runner.start_command(command_type, spec)
        except (SpeckFlowError, ValueError) as e:
            return self._error(e, "run_workflow", next_step="status", spec_id=spec_id, command=command)
        if detach:
            return {
                "command": workflow_command.to_dict(),
                "pid": workflow_command.state.pid,
                "log_path": str(workflow_command.log_path),
                "detached": True,
                "message": f"Started {command_type.tool_name} for {spec.id} in the background",
            }
        return {
            "command": workflow_command.to_dict(),
            "pid": handle.pid,
            "log_path": str(handle.log_file) if handle.log_file else None,
            "message": f"Started {command_type.tool_name} for {spec.id}",
        }

    def poll(self) -> Dict[str, Any]:
        """Drain pending process output into the active command."""
        events = self.runner.poll()
        command = self.runner.active
        return {
            "events": [_event_to_dict(event) for event in events],
            "command": command.to_dict() if command else None,
            "running": self.runner.is_busy(),
        }

    def wait_for_command(
        self,
        timeout: Optional[float] = None,
        on_output: Optional[Callable[[OutputLine], None]] = None,
    ) -> Dict[str, Any]:
        """Wait for the active command, streaming new output to ``on_output``."""
        command = self.runner.active
        if command is None:
            return {
                "error": "No command has been started",
                "suggestion": "Start one with 'run'",
                "next_suggested_step": "run",
                "message": "Error: No command has been started",
            }

        deadline = time.monotonic() + timeout if timeout is not None else None
        delivered = 0
        while True:
            slice_timeout = 0.2
            if deadline is not None:
                slice_timeout = max(0.0, min(slice_timeout, deadline - time.monotonic()))
            self.runner.wait(timeout=slice_timeout)
            if on_output is not None:
                for line in command.output[delivered:]:
                    on_output(line)
            delivered = len(command.output)
            if command.state.is_finished():
                break
            if deadline is not None and time.monotonic() >= deadline:
                break

        finished = command.state.is_finished()
        result: Dict[str, Any] = {
            "command": command.to_dict(include_output=True),
            "finished": finished,
            "message": (
                f"{command.command_type.display_name} {command.state.status.value}"
                if finished
                else f"{command.command_type.display_name} still running"
            ),
        }
        if not finished:
            result["timed_out"] = True
        elif command.state.error is not None:
            result["error"] = command.state.error
        elif command.state.exit_code not in (None, 0):
            result["error"] = f"{command.command_type.tool_name} exited with code {command.state.exit_code}"
        elif command.state.status is ExecutionStatus.CANCELLED:
            result["error"] = f"{command.command_type.tool_name} was cancelled"
        return result

    def cancel_command(self) -> Dict[str, Any]:
        """Kill the running command and mark it cancelled."""
        try:
            command = self.runner.cancel()
        except SpeckFlowError as e:
            return self._error(e, "cancel_command")
        if command is None:
            return {"cancelled": False, "message": "No command is running"}
        command.add_output("Command cancelled by user", OutputStream.STDERR)
        return {"cancelled": True, "command": command.to_dict(), "message": "Command cancelled"}

    # ------------------------------------------------------------------
    # Protocol transport
    # ------------------------------------------------------------------

    def list_agent_tools(self) -> Dict[str, Any]:
        """Connect to the agent and list the tools it offers."""
        try:
            with self._client_factory(self.project.root_path) as client:
                client.connect()
                info = client.initialize()
                tools = client.list_tools()
        except McpError as e:
            return self._error(e, "list_agent_tools", command=self.config.agent.command)
        return {
            "server": info.to_dict(),
            "tools": [{"name": tool.name, "description": tool.description} for tool in tools],
            "count": len(tools),
            "message": f"Agent offers {len(tools)} tools",
        }

    def call_workflow_tool(
        self, spec_id: str, command: str, extra_args: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Run a workflow command as a protocol tool call."""
        try:
            command_type = WorkflowCommandType.parse(command)
            spec = self._find_spec(spec_id)
            ensure_command_allowed(spec.phase, command_type)
            if self.runner.is_busy():
                raise CommandAlreadyRunning()
        except (SpeckFlowError, ValueError) as e:
            return self._error(e, "call_workflow_tool", next_step="status", spec_id=spec_id, command=command)

        workflow_command = WorkflowCommand(command_type, spec.id)
        self.runner.record(workflow_command)
        try:
            with self._client_factory(spec.directory) as client:
                client.connect()
                client.initialize()
                workflow_command.start()
                result = client.call_workflow(command_type, spec.directory, extra_args)
        except McpError as e:
            workflow_command.start()
            workflow_command.fail(str(e))
            self.runner.finish(workflow_command)
            failure = self._error(e, "call_workflow_tool", next_step="status", spec_id=spec_id, command=command)
            failure["command"] = workflow_command.to_dict(include_output=True)
            return failure

        for line in result.text().splitlines():
            workflow_command.add_output(line, OutputStream.STDERR if result.is_error else OutputStream.STDOUT)
        if result.is_error:
            workflow_command.fail(result.text() or "tool reported an error")
        else:
            workflow_command.complete(0)
        self.runner.finish(workflow_command)

        return {
            "command": workflow_command.to_dict(include_output=True),
            "result": result.to_dict(),
            "message": (
                f"{command_type.tool_name} failed for {spec.id}"
                if result.is_error
                else f"{command_type.tool_name} completed for {spec.id}"
            ),
        }

    def close(self) -> None:
        self.runner.close()
