"""Shared fixtures for the speckflow test suite."""

import sys
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pytest

from speckflow.config import ProjectConfig
from speckflow.git import GitOutput


FIXTURES = Path(__file__).parent / "fixtures"
FAKE_AGENT = FIXTURES / "fake_agent.py"
FAKE_MCP_SERVER = FIXTURES / "fake_mcp_server.py"


class FakeGitRunner:
    """Scripted stand-in for the git executable.

    Responses are keyed by the exact argument tuple; unscripted calls fail
    the way ``git rev-parse --verify`` does for a missing ref.
    """

    def __init__(self):
        self.responses: Dict[Tuple[str, ...], GitOutput] = {}
        self.calls: List[Tuple[Tuple[str, ...], Path]] = []

    def on(self, *args: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> "FakeGitRunner":
        self.responses[tuple(args)] = GitOutput(returncode, stdout, stderr)
        return self

    def __call__(self, args: Sequence[str], cwd: Path) -> GitOutput:
        key = tuple(args)
        self.calls.append((key, Path(cwd)))
        return self.responses.get(key, GitOutput(1, "", f"fatal: unscripted git {' '.join(key)}"))

    def called(self, *args: str) -> bool:
        return any(call == tuple(args) for call, _ in self.calls)


def make_spec(specs_dir: Path, name: str, *artifacts: str) -> Path:
    """Create a spec directory holding the named artifact files."""
    directory = specs_dir / name
    directory.mkdir(parents=True, exist_ok=True)
    for artifact in artifacts:
        (directory / artifact).write_text(f"# {artifact}\n", encoding="utf-8")
    return directory


@pytest.fixture
def fake_git():
    return FakeGitRunner()


@pytest.fixture
def repo_root(tmp_path):
    """A directory that looks like a repository root."""
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    return root


@pytest.fixture
def agent_config():
    """Configuration whose agent is the fake agent script."""
    config = ProjectConfig()
    config.agent.command = sys.executable
    config.agent.args = [str(FAKE_AGENT)]
    return config
