"""Data models for speckflow.

This module contains the core data structures used throughout the system:
specification identifiers and artifacts, the workflow phase engine, workflow
commands and their execution state, worktrees and their status, and the
project context tying them together.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import ProjectConfig
from .errors import InvalidSpecId, InvalidSpecName


_SPEC_ID_PATTERN = re.compile(r"^(\d{3})-(.+)$")
DETACHED_BRANCH = "(detached)"


# ---------------------------------------------------------------------------
# Specifications
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True, slots=True)
class SpecId:
    """Unique identifier for a specification, serialized as ``NNN-name``."""

    number: int
    name: str

    @classmethod
    def new(cls, number: int, name: str) -> "SpecId":
        """Create a SpecId from its parts, validating both."""
        if not 0 <= number <= 999:
            raise InvalidSpecId(f"{number}-{name}")
        if not name or "/" in name or "\\" in name:
            raise InvalidSpecName(name)
        return cls(number, name)

    @classmethod
    def parse(cls, value: str) -> "SpecId":
        """Parse a SpecId from its ``NNN-name`` form."""
        match = _SPEC_ID_PATTERN.match(value or "")
        if not match:
            raise InvalidSpecId(value)
        return cls(int(match.group(1)), match.group(2))

    @classmethod
    def try_parse(cls, value: str) -> Optional["SpecId"]:
        try:
            return cls.parse(value)
        except InvalidSpecId:
            return None

    def as_str(self) -> str:
        return f"{self.number:03d}-{self.name}"

    def __str__(self) -> str:
        return self.as_str()


class ArtifactType(str, Enum):
    """Documents that may live in a specification directory."""

    SPEC = "spec"
    PLAN = "plan"
    TASKS = "tasks"
    RESEARCH = "research"
    DATA_MODEL = "data-model"

    @property
    def filename(self) -> str:
        return f"{self.value}.md"


@dataclass(slots=True)
class SpecArtifacts:
    """Presence flags and paths for the documents of a specification."""

    has_spec: bool = False
    has_plan: bool = False
    has_tasks: bool = False
    has_research: bool = False
    spec_path: Optional[Path] = None
    plan_path: Optional[Path] = None
    tasks_path: Optional[Path] = None
    research_path: Optional[Path] = None

    @classmethod
    def scan(cls, directory: Path) -> "SpecArtifacts":
        """Scan a directory for the four tracked documents."""
        paths = {
            kind: directory / kind.filename
            for kind in (ArtifactType.SPEC, ArtifactType.PLAN, ArtifactType.TASKS, ArtifactType.RESEARCH)
        }
        present = {kind: path.is_file() for kind, path in paths.items()}
        return cls(
            has_spec=present[ArtifactType.SPEC],
            has_plan=present[ArtifactType.PLAN],
            has_tasks=present[ArtifactType.TASKS],
            has_research=present[ArtifactType.RESEARCH],
            spec_path=paths[ArtifactType.SPEC] if present[ArtifactType.SPEC] else None,
            plan_path=paths[ArtifactType.PLAN] if present[ArtifactType.PLAN] else None,
            tasks_path=paths[ArtifactType.TASKS] if present[ArtifactType.TASKS] else None,
            research_path=paths[ArtifactType.RESEARCH] if present[ArtifactType.RESEARCH] else None,
        )

    def available(self) -> List[ArtifactType]:
        """Return the artifact types present, in workflow order."""
        kinds: List[ArtifactType] = []
        if self.has_spec:
            kinds.append(ArtifactType.SPEC)
        if self.has_plan:
            kinds.append(ArtifactType.PLAN)
        if self.has_tasks:
            kinds.append(ArtifactType.TASKS)
        if self.has_research:
            kinds.append(ArtifactType.RESEARCH)
        return kinds

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Convert to dictionary representation."""
        return {
            "spec_path": str(self.spec_path) if self.spec_path else None,
            "plan_path": str(self.plan_path) if self.plan_path else None,
            "tasks_path": str(self.tasks_path) if self.tasks_path else None,
            "research_path": str(self.research_path) if self.research_path else None,
        }


class WorkflowCommandType(str, Enum):
    """Agent actions that can be run against a specification."""

    SPECIFY = "specify"
    CLARIFY = "clarify"
    PLAN = "plan"
    TASKS = "tasks"
    IMPLEMENT = "implement"

    @property
    def tool_name(self) -> str:
        """Protocol tool name for this command."""
        return f"speckit.{self.value}"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def shortcut_hint(self) -> str:
        return self.value[0]

    @classmethod
    def parse(cls, value: str) -> "WorkflowCommandType":
        """Resolve a command from its name, display name or tool name."""
        normalized = (value or "").strip().lower()
        if normalized.startswith("speckit."):
            normalized = normalized[len("speckit."):]
        try:
            return cls(normalized)
        except ValueError:
            choices = ", ".join(command.value for command in cls)
            raise ValueError(f"Unknown workflow command '{value}'. Expected one of: {choices}") from None


class WorkflowPhase(str, Enum):
    """Lifecycle phase of a specification, derived from its artifacts."""

    SPECIFY = "specify"
    CLARIFY = "clarify"
    TASKS = "tasks"
    IMPLEMENT = "implement"

    @classmethod
    def from_artifacts(cls, artifacts: SpecArtifacts) -> "WorkflowPhase":
        """Determine the phase from which documents exist."""
        if not artifacts.has_spec:
            return cls.SPECIFY
        if not artifacts.has_plan:
            return cls.CLARIFY
        if not artifacts.has_tasks:
            return cls.TASKS
        return cls.IMPLEMENT

    def available_commands(self) -> List[WorkflowCommandType]:
        """Commands that are legal in this phase."""
        return list(_PHASE_COMMANDS[self])

    def allows(self, command: WorkflowCommandType) -> bool:
        return command in _PHASE_COMMANDS[self]

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def badge(self) -> str:
        return _PHASE_BADGES[self]

    def __str__(self) -> str:
        return self.display_name


_PHASE_COMMANDS = {
    WorkflowPhase.SPECIFY: (WorkflowCommandType.SPECIFY,),
    WorkflowPhase.CLARIFY: (WorkflowCommandType.CLARIFY, WorkflowCommandType.PLAN),
    WorkflowPhase.TASKS: (WorkflowCommandType.TASKS,),
    WorkflowPhase.IMPLEMENT: (WorkflowCommandType.IMPLEMENT,),
}

_PHASE_BADGES = {
    WorkflowPhase.SPECIFY: "[SPEC]",
    WorkflowPhase.CLARIFY: "[CLARIFY]",
    WorkflowPhase.TASKS: "[TASKS]",
    WorkflowPhase.IMPLEMENT: "[IMPL]",
}


@dataclass(slots=True)
class Specification:
    """A feature under development, backed by a ``NNN-name`` directory."""

    id: SpecId
    number: int
    name: str
    branch: str
    phase: WorkflowPhase
    artifacts: SpecArtifacts
    directory: Path

    @classmethod
    def from_directory(cls, directory: Path, artifacts: Optional[SpecArtifacts] = None) -> "Specification":
        """Create a Specification from a directory and its scanned artifacts."""
        spec_id = SpecId.parse(directory.name)
        if artifacts is None:
            artifacts = SpecArtifacts.scan(directory)
        return cls(
            id=spec_id,
            number=spec_id.number,
            name=spec_id.name,
            branch=directory.name,
            phase=WorkflowPhase.from_artifacts(artifacts),
            artifacts=artifacts,
            directory=directory,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "spec_id": str(self.id),
            "number": self.number,
            "name": self.name,
            "branch": self.branch,
            "phase": self.phase.value,
            "badge": self.phase.badge,
            "available_commands": [command.value for command in self.phase.available_commands()],
            "directory": str(self.directory),
            "artifacts": self.artifacts.to_dict(),
        }


# ---------------------------------------------------------------------------
# Workflow commands
# ---------------------------------------------------------------------------


class OutputStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"

    @property
    def indicator(self) -> str:
        return "!" if self is OutputStream.STDERR else ""


@dataclass(slots=True)
class OutputLine:
    """A single line of command output."""

    content: str
    stream: OutputStream = OutputStream.STDOUT
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "stream": self.stream.value, "timestamp": self.timestamp}


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED})


@dataclass(frozen=True, slots=True)
class ExecutionState:
    """Execution state of a workflow command.

    ``started_at`` is a monotonic clock reading and only meaningful while
    running; ``exit_code`` and ``duration`` are set once completed and
    ``error`` once failed.
    """

    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: Optional[float] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    duration: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def pending(cls) -> "ExecutionState":
        return cls()

    @classmethod
    def running(cls, pid: Optional[int] = None) -> "ExecutionState":
        return cls(ExecutionStatus.RUNNING, started_at=time.monotonic(), pid=pid)

    @classmethod
    def completed(cls, exit_code: int, duration: float) -> "ExecutionState":
        return cls(ExecutionStatus.COMPLETED, exit_code=exit_code, duration=duration)

    @classmethod
    def cancelled(cls) -> "ExecutionState":
        return cls(ExecutionStatus.CANCELLED)

    @classmethod
    def failed(cls, error: str) -> "ExecutionState":
        return cls(ExecutionStatus.FAILED, error=error)

    def is_pending(self) -> bool:
        return self.status is ExecutionStatus.PENDING

    def is_running(self) -> bool:
        return self.status is ExecutionStatus.RUNNING

    def is_finished(self) -> bool:
        """True once completed, cancelled or failed."""
        return self.status in _TERMINAL_STATUSES

    @property
    def indicator(self) -> str:
        if self.status is ExecutionStatus.PENDING:
            return "⏳"
        if self.status is ExecutionStatus.RUNNING:
            return "🔄"
        if self.status is ExecutionStatus.COMPLETED and self.exit_code == 0:
            return "✓"
        if self.status is ExecutionStatus.CANCELLED:
            return "⊘"
        return "✗"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value, "indicator": self.indicator}
        if self.pid is not None:
            data["pid"] = self.pid
        if self.exit_code is not None:
            data["exit_code"] = self.exit_code
        if self.duration is not None:
            data["duration"] = round(self.duration, 3)
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(slots=True)
class WorkflowCommand:
    """A workflow command and everything it has produced so far.

    State changes only move forward: once the command is completed,
    cancelled or failed, further transitions are ignored.
    """

    command_type: WorkflowCommandType
    spec_id: SpecId
    state: ExecutionState = field(default_factory=ExecutionState.pending)
    output: List[OutputLine] = field(default_factory=list)
    log_path: Optional[Path] = None

    def start(self, pid: Optional[int] = None) -> None:
        """Mark the command as running."""
        if self.state.is_pending():
            self.state = ExecutionState.running(pid)

    def complete(self, exit_code: int) -> None:
        """Mark the command as completed with the process exit code."""
        if self.state.is_running():
            duration = time.monotonic() - (self.state.started_at or time.monotonic())
            self.state = ExecutionState.completed(exit_code, duration)

    def cancel(self) -> None:
        """Mark the command as cancelled."""
        if not self.state.is_finished():
            self.state = ExecutionState.cancelled()

    def fail(self, error: str) -> None:
        """Mark the command as failed."""
        if not self.state.is_finished():
            self.state = ExecutionState.failed(error)

    def add_output(self, content: str, stream: OutputStream = OutputStream.STDOUT) -> None:
        self.output.append(OutputLine(content, stream))

    def output_text(self) -> str:
        """Get all output as a single string."""
        return "\n".join(line.content for line in self.output)

    def to_dict(self, include_output: bool = False) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {
            "command": self.command_type.value,
            "tool_name": self.command_type.tool_name,
            "spec_id": str(self.spec_id),
            "state": self.state.to_dict(),
            "output_lines": len(self.output),
            "log_path": str(self.log_path) if self.log_path else None,
        }
        if include_output:
            data["output"] = [line.content for line in self.output]
        return data


# ---------------------------------------------------------------------------
# Worktrees
# ---------------------------------------------------------------------------


class WorktreeState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    DETACHED = "detached"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class WorktreeStatus:
    """Working tree status; the counts are only meaningful when dirty."""

    state: WorktreeState = WorktreeState.UNKNOWN
    modified: int = 0
    staged: int = 0
    untracked: int = 0

    @classmethod
    def clean(cls) -> "WorktreeStatus":
        return cls(WorktreeState.CLEAN)

    @classmethod
    def dirty(cls, modified: int = 0, staged: int = 0, untracked: int = 0) -> "WorktreeStatus":
        return cls(WorktreeState.DIRTY, modified, staged, untracked)

    @classmethod
    def detached(cls) -> "WorktreeStatus":
        return cls(WorktreeState.DETACHED)

    @classmethod
    def unknown(cls) -> "WorktreeStatus":
        return cls(WorktreeState.UNKNOWN)

    def is_clean(self) -> bool:
        return self.state is WorktreeState.CLEAN

    def is_dirty(self) -> bool:
        return self.state is WorktreeState.DIRTY

    @property
    def indicator(self) -> str:
        return {
            WorktreeState.CLEAN: "",
            WorktreeState.DIRTY: "*",
            WorktreeState.DETACHED: "!",
            WorktreeState.UNKNOWN: "?",
        }[self.state]

    def description(self) -> str:
        if self.state is WorktreeState.DIRTY:
            parts = []
            if self.modified:
                parts.append(f"{self.modified}M")
            if self.staged:
                parts.append(f"{self.staged}S")
            if self.untracked:
                parts.append(f"{self.untracked}?")
            return " ".join(parts)
        if self.state is WorktreeState.DETACHED:
            return "Detached HEAD"
        return self.state.value.capitalize()

    def __str__(self) -> str:
        return self.description()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "modified": self.modified,
            "staged": self.staged,
            "untracked": self.untracked,
            "description": self.description(),
        }


@dataclass(frozen=True, slots=True)
class WorktreeSyncStatus:
    """Ahead/behind counts against the same-named remote branch."""

    ahead: int = 0
    behind: int = 0
    remote_exists: bool = False

    def is_synced(self) -> bool:
        return self.remote_exists and self.ahead == 0 and self.behind == 0

    @property
    def indicator(self) -> str:
        if not self.remote_exists:
            return "⊘"
        if self.ahead and self.behind:
            return f"↑{self.ahead}↓{self.behind}"
        if self.ahead:
            return f"↑{self.ahead}"
        if self.behind:
            return f"↓{self.behind}"
        return "✓"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ahead": self.ahead,
            "behind": self.behind,
            "remote_exists": self.remote_exists,
            "indicator": self.indicator,
        }


@dataclass(slots=True)
class Worktree:
    """A git worktree as reported by the worktree listing."""

    path: Path
    branch: str
    is_main: bool = False
    status: WorktreeStatus = field(default_factory=WorktreeStatus.unknown)
    spec_id: Optional[SpecId] = None

    def __post_init__(self) -> None:
        if self.spec_id is None:
            self.spec_id = SpecId.try_parse(self.branch)

    def has_spec(self) -> bool:
        return self.spec_id is not None

    def is_detached(self) -> bool:
        return self.branch == DETACHED_BRANCH

    @property
    def display_name(self) -> str:
        return self.branch

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "path": str(self.path),
            "branch": self.branch,
            "is_main": self.is_main,
            "spec_id": str(self.spec_id) if self.spec_id else None,
            "status": self.status.to_dict(),
        }


# ---------------------------------------------------------------------------
# Project context
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Project:
    """The repository a speckflow session operates on."""

    root_path: Path
    specs_directory: Path
    worktree_directory: Path
    log_directory: Path
    main_branch: str
    config: ProjectConfig

    @classmethod
    def new(cls, root_path: Path | str, config: Optional[ProjectConfig] = None) -> "Project":
        root = Path(root_path).expanduser().resolve()
        config = config or ProjectConfig()
        return cls(
            root_path=root,
            specs_directory=root / config.git.specs_directory,
            worktree_directory=root / config.worktree.directory,
            log_directory=root / config.logging.log_directory,
            main_branch=config.git.main_branch,
            config=config,
        )

    @staticmethod
    def discover(start_path: Optional[Path | str] = None) -> Optional[Path]:
        """Walk up from ``start_path`` to the first directory containing ``.git``."""
        current = Path(start_path or Path.cwd()).expanduser().resolve()
        for candidate in (current, *current.parents):
            if (candidate / ".git").exists():
                return candidate
        return None

    def has_specs_directory(self) -> bool:
        return self.specs_directory.is_dir()

    def ensure_worktree_directory(self) -> Path:
        self.worktree_directory.mkdir(parents=True, exist_ok=True)
        return self.worktree_directory

    def worktree_path_for_branch(self, branch: str) -> Path:
        return self.worktree_directory / branch
