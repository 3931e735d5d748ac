"""Unit tests for the WorkflowManager facade.

Failures must come back as dictionaries carrying ``error``, ``suggestion``
and ``message`` rather than exceptions.
"""

import sys
from pathlib import Path

import pytest

from conftest import FAKE_MCP_SERVER, FakeGitRunner, make_spec

from speckflow.config import ProjectConfig
from speckflow.mcp_client import McpClient
from speckflow.workflow import WorkflowManager


def _listing(*records):
    return "\n\n".join("\n".join(record) for record in records) + "\n"


@pytest.fixture
def project(tmp_path):
    """A non-repository project with a specs directory."""
    root = tmp_path / "project"
    (root / "specs").mkdir(parents=True)
    return root


@pytest.fixture
def manager(project, agent_config):
    manager = WorkflowManager(project, config=agent_config)
    yield manager
    manager.close()


def fake_client_factory(mode="normal"):
    def factory(working_dir: Path) -> McpClient:
        return McpClient(sys.executable, [str(FAKE_MCP_SERVER), mode], working_dir=working_dir, timeout=10)
    return factory


def assert_error_dict(result):
    assert "error" in result
    assert "suggestion" in result
    assert result["message"].startswith("Error: ")


class TestSpecOperations:
    """Test cases for specification operations."""

    def test_list_specs_missing_directory(self, tmp_path):
        """Test the error dict when no specs directory exists."""
        manager = WorkflowManager(tmp_path, config=ProjectConfig())

        result = manager.list_specs()

        assert_error_dict(result)
        assert result["error_type"] == "SpecDirectoryNotFound"
        assert result["next_suggested_step"] == "new"

    def test_list_specs(self, manager, project):
        """Test listing specifications."""
        make_spec(project / "specs", "002-b", "spec.md")
        make_spec(project / "specs", "001-a")

        result = manager.list_specs()

        assert result["count"] == 2
        assert [spec["spec_id"] for spec in result["specs"]] == ["001-a", "002-b"]
        assert result["specs"][1]["phase"] == "clarify"

    def test_spec_status(self, manager, project):
        """Test status of a spec in the Clarify phase."""
        make_spec(project / "specs", "003-search", "spec.md")

        result = manager.spec_status("003-search")

        assert result["phase"] == "clarify"
        assert result["available_commands"] == ["clarify", "plan"]
        assert result["artifacts"] == ["spec"]
        assert result["worktree"] is None
        assert result["next_suggested_step"] == "clarify"

    def test_spec_status_by_number(self, manager, project):
        """Test resolving a spec by its bare number."""
        make_spec(project / "specs", "003-search")

        assert manager.spec_status("3")["spec"]["spec_id"] == "003-search"

    @pytest.mark.parametrize("spec_ref", ["009-missing", "9", "not-an-id"])
    def test_spec_status_unknown(self, manager, spec_ref):
        """Test unknown or malformed references."""
        assert_error_dict(manager.spec_status(spec_ref))

    def test_create_spec_without_git(self, manager, project):
        """Test creation outside a repository."""
        make_spec(project / "specs", "004-existing")

        result = manager.create_spec("User Profile Page")

        assert result["spec"]["spec_id"] == "005-user-profile-page"
        assert (project / "specs" / "005-user-profile-page").is_dir()
        assert result["worktree_path"] is None
        assert result["next_suggested_step"] == "specify"

    def test_create_spec_invalid_name(self, manager):
        """Test that names without letters or digits are refused."""
        assert_error_dict(manager.create_spec("!!!"))

    def test_create_first_spec(self, manager, project):
        """Test creating the first spec in a fresh project."""
        (project / "specs").rmdir()

        result = manager.create_spec("first")

        assert result["spec"]["spec_id"] == "001-first"


class TestWorktreeOperations:
    """Test cases for worktree operations with a scripted git."""

    def _manager(self, repo_root, runner):
        return WorkflowManager(repo_root, config=ProjectConfig(), git_runner=runner)

    def test_requires_repository(self, manager):
        """Test worktree operations outside a repository."""
        result = manager.list_worktrees()

        assert_error_dict(result)
        assert result["error"] == "Not a git repository"

    def test_list_worktrees_with_status_and_sync(self, repo_root):
        """Test that statuses and sync counts are attached."""
        linked = repo_root / ".worktrees" / "001-a"
        linked.mkdir(parents=True)
        runner = FakeGitRunner()
        runner.on("worktree", "list", "--porcelain", stdout=_listing(
            [f"worktree {repo_root}", "branch refs/heads/main"],
            [f"worktree {linked}", "branch refs/heads/001-a"],
        ))
        runner.on("status", "--porcelain", stdout="?? new.txt\n")
        runner.on("remote", stdout="origin\n")
        runner.on("rev-parse", "--verify", "--quiet", "refs/remotes/origin/main", stdout="aaaa\n")
        runner.on("rev-list", "--left-right", "--count", "main...origin/main", stdout="0\t2\n")
        manager = self._manager(repo_root, runner)

        result = manager.list_worktrees(include_sync=True)

        assert result["count"] == 2
        main, feature = result["worktrees"]
        assert main["is_main"] and main["sync"]["indicator"] == "↓2"
        assert feature["spec_id"] == "001-a"
        assert feature["status"]["state"] == "dirty"
        assert feature["sync"]["remote_exists"] is False
        assert manager.worktree_statuses[linked].untracked == 1

    def test_delete_main_worktree(self, repo_root):
        """Test that deleting the main worktree is reported as an error."""
        runner = FakeGitRunner()
        runner.on("worktree", "list", "--porcelain", stdout=_listing([f"worktree {repo_root}", "branch refs/heads/main"]))

        result = self._manager(repo_root, runner).delete_worktree(str(repo_root), force=True)

        assert_error_dict(result)
        assert result["error"] == "Cannot delete main worktree"
        assert result["next_suggested_step"] == "worktrees"

    def test_switch_uses_existing_worktree(self, repo_root):
        """Test that an existing worktree for the branch is reused."""
        make_spec(repo_root / "specs", "001-a")
        linked = repo_root / ".worktrees" / "001-a"
        runner = FakeGitRunner()
        runner.on("worktree", "list", "--porcelain", stdout=_listing(
            [f"worktree {repo_root}", "branch refs/heads/main"],
            [f"worktree {linked}", "branch refs/heads/001-a"],
        ))

        result = self._manager(repo_root, runner).switch_to_spec("001-a")

        assert result["created"] is False
        assert result["worktree_path"] == str(linked)
        assert not any(call[:2] == ("worktree", "add") for call, _ in runner.calls)


class TestProcessTransport:
    """Test cases for running commands through the process runtime."""

    def test_run_and_wait(self, manager, project):
        """Test a successful run with streamed output."""
        make_spec(project / "specs", "001-auth")
        streamed = []

        started = manager.run_workflow("001-auth", "specify")
        result = manager.wait_for_command(timeout=15, on_output=streamed.append)

        assert started["command"]["state"]["status"] == "running"
        assert Path(started["log_path"]).exists()
        assert result["finished"] is True
        assert "error" not in result
        assert result["command"]["state"]["status"] == "completed"
        assert "speckit.specify line 0" in [line.content for line in streamed]
        assert manager.spec_status("001-auth")["phase"] == "clarify"

    def test_run_illegal_command(self, manager, project):
        """Test the phase gate through the facade."""
        make_spec(project / "specs", "001-auth")

        result = manager.run_workflow("001-auth", "implement")

        assert_error_dict(result)
        assert result["error_type"] == "CommandNotAllowed"

    def test_run_unknown_command(self, manager, project):
        """Test an unknown command name."""
        make_spec(project / "specs", "001-auth")

        assert_error_dict(manager.run_workflow("001-auth", "deploy"))

    def test_nonzero_exit_reported(self, project, agent_config):
        """Test that a failing agent produces an error in the wait result."""
        agent_config.agent.args = agent_config.agent.args + ["--exit-code", "2"]
        manager = WorkflowManager(project, config=agent_config)
        make_spec(project / "specs", "001-auth")

        manager.run_workflow("001-auth", "specify")
        result = manager.wait_for_command(timeout=15)
        manager.close()

        assert result["command"]["state"]["exit_code"] == 2
        assert "exited with code 2" in result["error"]

    def test_second_run_refused(self, project, agent_config):
        """Test the single-flight gate through the facade."""
        agent_config.agent.args = agent_config.agent.args + ["--sleep", "30"]
        manager = WorkflowManager(project, config=agent_config)
        make_spec(project / "specs", "001-auth")

        manager.run_workflow("001-auth", "specify")
        second = manager.run_workflow("001-auth", "specify")
        cancelled = manager.cancel_command()
        manager.wait_for_command(timeout=10)
        manager.close()

        assert second["error"] == "A command is already running"
        assert cancelled["cancelled"] is True
        assert cancelled["command"]["state"]["status"] == "cancelled"

    def test_cancel_after_completion(self, manager, project):
        """Test that cancelling a finished command leaves it completed."""
        make_spec(project / "specs", "001-auth")
        manager.run_workflow("001-auth", "specify")
        finished = manager.wait_for_command(timeout=15)

        result = manager.cancel_command()
        status = manager.poll()

        assert result == {"cancelled": False, "message": "No command is running"}
        assert status["command"]["state"]["status"] == "completed"
        assert status["command"]["output_lines"] == finished["command"]["output_lines"]
        assert "Command cancelled by user" not in manager.runner.active.output_text()

    def test_wait_without_command(self, manager):
        """Test waiting when nothing was started."""
        assert "error" in manager.wait_for_command(timeout=0.1)

    def test_cancel_without_command(self, manager):
        """Test cancelling when nothing was started."""
        assert manager.cancel_command() == {"cancelled": False, "message": "No command is running"}

    def test_poll(self, manager, project):
        """Test draining events through poll."""
        make_spec(project / "specs", "001-auth")
        manager.run_workflow("001-auth", "specify")
        manager.wait_for_command(timeout=15)

        result = manager.poll()

        assert result["running"] is False
        assert result["command"]["state"]["status"] == "completed"


class TestProtocolTransport:
    """Test cases for the protocol transport."""

    def test_list_agent_tools(self, project):
        """Test listing the agent's tools."""
        manager = WorkflowManager(project, config=ProjectConfig(), client_factory=fake_client_factory())

        result = manager.list_agent_tools()

        assert result["server"]["server_name"] == "fake-agent"
        assert "speckit.plan" in [tool["name"] for tool in result["tools"]]

    def test_call_workflow_tool(self, project):
        """Test a successful tool-driven command."""
        spec_dir = make_spec(project / "specs", "001-auth", "spec.md")
        manager = WorkflowManager(project, config=ProjectConfig(), client_factory=fake_client_factory())

        result = manager.call_workflow_tool("001-auth", "plan", {"depth": "full"})

        assert result["command"]["state"]["status"] == "completed"
        assert result["command"]["output"] == [f"speckit.plan ran in {spec_dir}", "depth=full"]
        assert result["result"]["is_error"] is False

    def test_tool_error_marks_command_failed(self, project):
        """Test that isError results become Failed commands."""
        make_spec(project / "specs", "001-auth")
        manager = WorkflowManager(project, config=ProjectConfig(), client_factory=fake_client_factory())

        result = manager.call_workflow_tool("001-auth", "specify", {"fail": True})

        assert result["command"]["state"]["status"] == "failed"
        assert result["command"]["state"]["error"] == "speckit.specify refused"

    def test_protocol_failure(self, project):
        """Test that protocol errors become error dicts with a failed command."""
        make_spec(project / "specs", "001-auth")
        manager = WorkflowManager(project, config=ProjectConfig(), client_factory=fake_client_factory("die"))

        result = manager.call_workflow_tool("001-auth", "specify")

        assert_error_dict(result)
        assert result["error_type"] == "ConnectionFailed"
        assert result["command"]["state"]["status"] == "failed"

    def test_run_workflow_uses_mcp_transport(self, project):
        """Test that the mcp transport routes run_workflow to a tool call."""
        make_spec(project / "specs", "001-auth")
        config = ProjectConfig()
        config.agent.transport = "mcp"
        manager = WorkflowManager(project, config=config, client_factory=fake_client_factory())

        result = manager.run_workflow("001-auth", "specify")

        assert result["command"]["tool_name"] == "speckit.specify"
        assert result["command"]["state"]["status"] == "completed"

    def test_invalid_reply(self, project):
        """Test that malformed replies are reported with their type."""
        make_spec(project / "specs", "001-auth")
        manager = WorkflowManager(project, config=ProjectConfig(), client_factory=fake_client_factory("no-result"))

        result = manager.call_workflow_tool("001-auth", "specify")

        assert result["error_type"] == "InvalidResponse"
