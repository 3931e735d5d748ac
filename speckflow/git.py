"""Git worktree management.

Every git invocation goes through a :data:`GitRunner` callable so the
porcelain parsing and the safety checks can be exercised without a real
repository. The parsers are plain module-level functions.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import (
    BranchNotFound,
    CannotDeleteMain,
    GitIOError,
    GitOperationError,
    NoRemote,
    NotARepository,
    PathExists,
    WorktreeDirty,
    WorktreeExists,
    WorktreeNotFound,
)
from .models import DETACHED_BRANCH, Worktree, WorktreeStatus, WorktreeSyncStatus
from .speckflow_logging import log_performance


logger = logging.getLogger("speckflow.git")


@dataclass(frozen=True, slots=True)
class GitOutput:
    """Captured result of one git invocation."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


GitRunner = Callable[[Sequence[str], Path], GitOutput]


def run_git(args: Sequence[str], cwd: Path) -> GitOutput:
    """Run ``git <args>`` in ``cwd`` and capture its output."""
    try:
        completed = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except FileNotFoundError as e:
        raise GitIOError(f"git executable not found: {e}") from e
    except OSError as e:
        raise GitIOError(str(e)) from e
    return GitOutput(completed.returncode, completed.stdout, completed.stderr)


# ---------------------------------------------------------------------------
# Porcelain parsers
# ---------------------------------------------------------------------------


def parse_worktree_list(output: str) -> List[Worktree]:
    """Parse ``git worktree list --porcelain`` output.

    Records are separated by blank lines. Bare records are dropped, detached
    records get the ``(detached)`` branch, and the first kept record is the
    main worktree.
    """
    worktrees: List[Worktree] = []
    path: Optional[str] = None
    branch: Optional[str] = None
    bare = False

    def flush() -> None:
        if path is None or bare:
            return
        name = branch if branch is not None else DETACHED_BRANCH
        status = WorktreeStatus.detached() if name == DETACHED_BRANCH else WorktreeStatus.unknown()
        worktrees.append(Worktree(Path(path), name, is_main=not worktrees, status=status))

    for line in output.splitlines():
        if line.startswith("worktree "):
            flush()
            path, branch, bare = line[len("worktree "):], None, False
        elif line.startswith("branch "):
            ref = line[len("branch "):]
            branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
        elif line == "detached":
            branch = DETACHED_BRANCH
        elif line == "bare":
            bare = True
    flush()
    return worktrees


def parse_status_porcelain(output: str) -> WorktreeStatus:
    """Classify ``git status --porcelain`` output by its two status columns."""
    modified = staged = untracked = 0
    for line in output.splitlines():
        if len(line) < 2:
            continue
        index, work = line[0], line[1]
        if index == "?" and work == "?":
            untracked += 1
            continue
        if index != " ":
            staged += 1
        if work != " ":
            modified += 1
    if modified == staged == untracked == 0:
        return WorktreeStatus.clean()
    return WorktreeStatus.dirty(modified=modified, staged=staged, untracked=untracked)


def parse_ahead_behind(output: str) -> Tuple[int, int]:
    """Parse ``git rev-list --left-right --count`` output into (ahead, behind)."""
    parts = output.split()
    if len(parts) != 2:
        raise ValueError(f"Unexpected rev-list output: {output!r}")
    return int(parts[0]), int(parts[1])


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class GitService:
    """Worktree lifecycle operations for one repository."""

    def __init__(self, repo_path: Path | str, remote: Optional[str] = "origin", runner: Optional[GitRunner] = None):
        self.repo_path = Path(repo_path)
        if not (self.repo_path / ".git").exists():
            raise NotARepository(self.repo_path)
        self.remote = remote
        self._runner: GitRunner = runner or run_git

    def _git(self, *args: str, cwd: Optional[Path] = None) -> GitOutput:
        logger.debug("git %s", " ".join(args))
        return self._runner(list(args), cwd or self.repo_path)

    def _git_checked(self, *args: str, cwd: Optional[Path] = None) -> GitOutput:
        result = self._git(*args, cwd=cwd)
        if not result.ok:
            raise GitOperationError(result.stderr or f"git {args[0]} exited with {result.returncode}")
        return result

    @log_performance("list_worktrees")
    def list_worktrees(self) -> List[Worktree]:
        """List all worktrees; statuses are Unknown except for detached entries."""
        result = self._git_checked("worktree", "list", "--porcelain")
        return parse_worktree_list(result.stdout)

    def main_worktree(self) -> Worktree:
        worktrees = self.list_worktrees()
        if not worktrees:
            raise GitOperationError("No worktrees found")
        return worktrees[0]

    def find_worktree(self, path: Path | str) -> Optional[Worktree]:
        target = _normalize(Path(path))
        for worktree in self.list_worktrees():
            if _normalize(worktree.path) == target:
                return worktree
        return None

    def branch_exists(self, branch: str) -> bool:
        """True if the branch exists locally or on the remote."""
        if self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}").ok:
            return True
        if self.remote:
            return self._git("rev-parse", "--verify", "--quiet", f"refs/remotes/{self.remote}/{branch}").ok
        return False

    def create_branch(self, branch: str, start_point: Optional[str] = None) -> None:
        args = ["branch", branch]
        if start_point:
            args.append(start_point)
        self._git_checked(*args)
        logger.info("Created branch %s", branch)

    def current_branch(self, path: Optional[Path] = None) -> Optional[str]:
        """Return the branch checked out at ``path``, or None when detached."""
        result = self._git_checked("rev-parse", "--abbrev-ref", "HEAD", cwd=path)
        name = result.stdout.strip()
        return None if name == "HEAD" else name

    def create_worktree(self, branch: str, path: Path) -> Worktree:
        """Create a worktree for an existing branch at ``path``."""
        path = Path(path)
        if not self.branch_exists(branch):
            raise BranchNotFound(branch)
        if any(worktree.branch == branch for worktree in self.list_worktrees()):
            raise WorktreeExists(branch)
        if path.exists():
            raise PathExists(path)

        path.parent.mkdir(parents=True, exist_ok=True)
        self._git_checked("worktree", "add", str(path), branch)
        logger.info("Created worktree for %s at %s", branch, path)
        return Worktree(path, branch, is_main=False)

    def delete_worktree(self, path: Path, force: bool = False) -> None:
        """Remove a worktree; the main worktree is never removed."""
        worktree = self.find_worktree(path)
        if worktree is None:
            raise WorktreeNotFound(Path(path))
        if worktree.is_main:
            raise CannotDeleteMain()
        if not force and self.worktree_status(worktree.path).is_dirty():
            raise WorktreeDirty(worktree.path)

        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(worktree.path))
        self._git_checked(*args)
        logger.info("Removed worktree %s", worktree.path)

    def worktree_status(self, path: Path) -> WorktreeStatus:
        """Return the working tree status, or Unknown when it cannot be read."""
        path = Path(path)
        if not path.is_dir():
            return WorktreeStatus.unknown()
        try:
            result = self._git("status", "--porcelain", cwd=path)
        except GitIOError as e:
            logger.debug("Status unavailable for %s: %s", path, e)
            return WorktreeStatus.unknown()
        if not result.ok:
            return WorktreeStatus.unknown()
        return parse_status_porcelain(result.stdout)

    def remotes(self) -> List[str]:
        result = self._git_checked("remote")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def default_remote(self) -> str:
        """Return the configured remote if present, else the first one."""
        remotes = self.remotes()
        if not remotes:
            raise NoRemote()
        if self.remote in remotes:
            return self.remote
        return remotes[0]

    def sync_status(self, branch: str) -> WorktreeSyncStatus:
        """Ahead/behind counts against the remote branch; never raises."""
        try:
            remote = self.default_remote()
            if not self._git("rev-parse", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}").ok:
                return WorktreeSyncStatus(0, 0, remote_exists=False)
            result = self._git("rev-list", "--left-right", "--count", f"{branch}...{remote}/{branch}")
        except (NoRemote, GitOperationError, GitIOError) as e:
            logger.debug("Sync status unavailable for %s: %s", branch, e)
            return WorktreeSyncStatus(0, 0, remote_exists=False)

        if not result.ok:
            return WorktreeSyncStatus(0, 0, remote_exists=True)
        try:
            ahead, behind = parse_ahead_behind(result.stdout)
        except ValueError:
            return WorktreeSyncStatus(0, 0, remote_exists=True)
        return WorktreeSyncStatus(ahead, behind, remote_exists=True)


def _normalize(path: Path) -> Path:
    return path.expanduser().resolve(strict=False)
