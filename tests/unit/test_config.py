"""Unit tests for speckflow configuration."""

import pytest

from speckflow.config import ProjectConfig, resolve_project_root
from speckflow.errors import ConfigInvalid


class TestProjectConfig:
    """Test cases for ProjectConfig."""

    def test_defaults(self):
        """Test the default values."""
        config = ProjectConfig.load(environ={})

        assert config.worktree.directory == ".worktrees"
        assert config.agent.command == "claude"
        assert config.agent.args == ["--mcp"]
        assert config.agent.transport == "process"
        assert config.agent.timeout_seconds == 60
        assert config.git.specs_directory == "specs"
        assert config.git.main_branch == "main"
        assert config.git.remote == "origin"
        assert config.logging.level == "WARNING"

    def test_environment_overrides(self):
        """Test that SPECKFLOW_* variables override defaults."""
        config = ProjectConfig.load(environ={
            "SPECKFLOW_AGENT_COMMAND": "my-agent",
            "SPECKFLOW_AGENT_ARGS": "--mode 'two words'",
            "SPECKFLOW_AGENT_TRANSPORT": "MCP",
            "SPECKFLOW_AGENT_TIMEOUT": "15",
            "SPECKFLOW_SPECS_DIR": "docs/specs",
            "SPECKFLOW_LOG_LEVEL": "debug",
        })

        assert config.agent.command == "my-agent"
        assert config.agent.args == ["--mode", "two words"]
        assert config.agent.transport == "mcp"
        assert config.agent.timeout_seconds == 15
        assert config.git.specs_directory == "docs/specs"
        assert config.logging.level == "DEBUG"

    def test_blank_values_are_ignored(self):
        """Test that empty variables keep the default."""
        config = ProjectConfig.load(environ={"SPECKFLOW_AGENT_COMMAND": "   "})

        assert config.agent.command == "claude"

    @pytest.mark.parametrize(
        "name,value",
        [
            ("SPECKFLOW_AGENT_TIMEOUT", "soon"),
            ("SPECKFLOW_AGENT_TIMEOUT", "0"),
            ("SPECKFLOW_AGENT_TRANSPORT", "carrier-pigeon"),
            ("SPECKFLOW_AGENT_ARGS", "'unterminated"),
            ("SPECKFLOW_LOG_LEVEL", "LOUD"),
        ],
    )
    def test_invalid_values_raise(self, name, value):
        """Test that invalid overrides raise ConfigInvalid."""
        with pytest.raises(ConfigInvalid):
            ProjectConfig.load(environ={name: value})

    def test_to_dict(self):
        """Test dictionary conversion."""
        data = ProjectConfig().to_dict()

        assert data["agent"]["args"] == ["--mcp"]
        assert data["logging"]["log_directory"] == ".speckflow/logs"


class TestResolveProjectRoot:
    """Test cases for project root resolution."""

    def test_explicit_wins(self):
        """Test that an explicit root beats the environment."""
        assert resolve_project_root("/a", environ={"SPECKFLOW_PROJECT_ROOT": "/b"}) == "/a"

    def test_environment(self):
        """Test the environment fallback."""
        assert resolve_project_root(None, environ={"SPECKFLOW_PROJECT_ROOT": "/b"}) == "/b"
        assert resolve_project_root(None, environ={}) is None
