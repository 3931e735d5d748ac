"""Error taxonomy for speckflow.

Every error renders as a single human-readable line via ``str()``. Service
modules raise these; the :class:`~speckflow.workflow.WorkflowManager` facade
converts them into error dictionaries for display.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional


class SpeckFlowError(Exception):
    """Base class for all speckflow errors."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigError(SpeckFlowError):
    """Configuration could not be loaded."""


class ConfigInvalid(ConfigError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Invalid configuration: {detail}")


# ---------------------------------------------------------------------------
# Git / worktree
# ---------------------------------------------------------------------------


class GitError(SpeckFlowError):
    """Git or worktree operation failed."""


class NotARepository(GitError):
    def __init__(self, path: Optional[Path] = None):
        self.path = path
        super().__init__("Not a git repository")


class BranchNotFound(GitError):
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Branch not found: {branch}")


class WorktreeExists(GitError):
    def __init__(self, branch: str):
        self.branch = branch
        super().__init__(f"Worktree already exists for branch: {branch}")


class WorktreeNotFound(GitError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Worktree not found: {path}")


class CannotDeleteMain(GitError):
    def __init__(self):
        super().__init__("Cannot delete main worktree")


class WorktreeDirty(GitError):
    def __init__(self, path: Optional[Path] = None):
        self.path = path
        super().__init__("Worktree has uncommitted changes")


class PathExists(GitError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Path already exists: {path}")


class NoRemote(GitError):
    def __init__(self):
        super().__init__("No remote configured")


class GitOperationError(GitError):
    def __init__(self, diagnostic: str):
        self.diagnostic = diagnostic.strip()
        super().__init__(f"Git operation failed: {self.diagnostic}")


class GitIOError(GitError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"IO error: {detail}")


# ---------------------------------------------------------------------------
# Specifications
# ---------------------------------------------------------------------------


class SpecError(SpeckFlowError):
    """Specification lookup or creation failed."""


class SpecNotFound(SpecError):
    def __init__(self, spec_id: str):
        self.spec_id = spec_id
        super().__init__(f"Specification not found: {spec_id}")


class SpecAlreadyExists(SpecError):
    def __init__(self, spec_id: str):
        self.spec_id = spec_id
        super().__init__(f"Specification already exists: {spec_id}")


class InvalidSpecId(SpecError, ValueError):
    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid specification ID: {value}")


class InvalidSpecName(SpecError, ValueError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Invalid specification name: {name}")


class SpecDirectoryNotFound(SpecError):
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Specs directory not found: {path}")


class ArtifactNotFound(SpecError):
    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(f"Artifact not found: {filename}")


class SpecIOError(SpecError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"IO error: {detail}")


# ---------------------------------------------------------------------------
# Control protocol
# ---------------------------------------------------------------------------


class McpError(SpeckFlowError):
    """Control-protocol client error."""


class ConnectionFailed(McpError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Connection failed: {detail}")


class AlreadyConnected(McpError):
    def __init__(self):
        super().__init__("Already connected")


class NotConnected(McpError):
    def __init__(self):
        super().__init__("Not connected")


class NotInitialized(McpError):
    def __init__(self):
        super().__init__("Not initialized")


class SpawnFailed(McpError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Failed to spawn process: {detail}")


class ProtocolError(McpError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Protocol error: {detail}")


class RpcError(McpError):
    def __init__(self, code: int, message: str, data: Any = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error (code {code}): {message}")


class McpTimeout(McpError):
    def __init__(self):
        super().__init__("Request timeout")


class RequestCancelled(McpError):
    def __init__(self):
        super().__init__("Request cancelled")


class ToolNotFound(McpError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool not found: {name}")


class ToolFailed(McpError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Tool execution failed: {detail}")


class InvalidResponse(McpError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Invalid response: {detail}")


class SerializationError(McpError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Serialization error: {detail}")


class DeserializationError(McpError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Deserialization error: {detail}")


class McpIOError(McpError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"IO error: {detail}")


# ---------------------------------------------------------------------------
# Processes and workflow commands
# ---------------------------------------------------------------------------


class ProcessError(SpeckFlowError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Process error: {detail}")


class WorkflowError(SpeckFlowError):
    """Workflow command could not be admitted or started."""


class CommandNotAllowed(WorkflowError, ValueError):
    def __init__(self, command: str, phase: str):
        self.command = command
        self.phase = phase
        super().__init__(f"Command '{command}' is not available in phase {phase}")


class CommandAlreadyRunning(WorkflowError):
    def __init__(self):
        super().__init__("A command is already running")
