"""Configuration for speckflow.

Configuration is built from defaults and ``SPECKFLOW_*`` environment
variables. There is no file layering.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigInvalid


TRANSPORT_PROCESS = "process"
TRANSPORT_MCP = "mcp"
TRANSPORTS = (TRANSPORT_PROCESS, TRANSPORT_MCP)

ENV_PREFIX = "SPECKFLOW_"


@dataclass(slots=True)
class WorktreeConfig:
    directory: str = ".worktrees"


@dataclass(slots=True)
class AgentConfig:
    """How the external agent is launched."""

    command: str = "claude"
    args: List[str] = field(default_factory=lambda: ["--mcp"])
    transport: str = TRANSPORT_PROCESS
    timeout_seconds: int = 60


@dataclass(slots=True)
class GitConfig:
    specs_directory: str = "specs"
    main_branch: str = "main"
    remote: str = "origin"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"
    log_directory: str = ".speckflow/logs"


@dataclass(slots=True)
class ProjectConfig:
    """Complete speckflow configuration."""

    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    git: GitConfig = field(default_factory=GitConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, environ: Optional[Mapping[str, str]] = None) -> "ProjectConfig":
        """Build a configuration from defaults and environment overrides."""
        env = os.environ if environ is None else environ
        config = cls()

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        overrides = {
            "WORKTREE_DIR": (config.worktree, "directory", str),
            "AGENT_COMMAND": (config.agent, "command", str),
            "AGENT_ARGS": (config.agent, "args", shlex.split),
            "AGENT_TRANSPORT": (config.agent, "transport", str.lower),
            "AGENT_TIMEOUT": (config.agent, "timeout_seconds", int),
            "SPECS_DIR": (config.git, "specs_directory", str),
            "MAIN_BRANCH": (config.git, "main_branch", str),
            "REMOTE": (config.git, "remote", str),
            "LOG_LEVEL": (config.logging, "level", str.upper),
            "LOG_DIR": (config.logging, "log_directory", str),
        }
        for name, (section, attribute, convert) in overrides.items():
            value = get(name)
            if value is None:
                continue
            try:
                setattr(section, attribute, convert(value))
            except ValueError as e:
                raise ConfigInvalid(f"{ENV_PREFIX}{name}: {e}") from e

        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigInvalid when a value is out of range."""
        if self.agent.transport not in TRANSPORTS:
            raise ConfigInvalid(
                f"agent.transport must be one of {', '.join(TRANSPORTS)}, got '{self.agent.transport}'"
            )
        if self.agent.timeout_seconds <= 0:
            raise ConfigInvalid("agent.timeout_seconds must be positive")
        if not self.agent.command:
            raise ConfigInvalid("agent.command must not be empty")
        if not isinstance(logging.getLevelName(self.logging.level), int):
            raise ConfigInvalid(f"logging.level '{self.logging.level}' is not a logging level")
        for name, value in (
            ("worktree.directory", self.worktree.directory),
            ("git.specs_directory", self.git.specs_directory),
            ("git.main_branch", self.git.main_branch),
            ("logging.log_directory", self.logging.log_directory),
        ):
            if not value:
                raise ConfigInvalid(f"{name} must not be empty")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "worktree": {"directory": self.worktree.directory},
            "agent": {
                "command": self.agent.command,
                "args": list(self.agent.args),
                "transport": self.agent.transport,
                "timeout_seconds": self.agent.timeout_seconds,
            },
            "git": {
                "specs_directory": self.git.specs_directory,
                "main_branch": self.git.main_branch,
                "remote": self.git.remote,
            },
            "logging": {"level": self.logging.level, "log_directory": self.logging.log_directory},
        }


def resolve_project_root(explicit: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the explicit root, or ``SPECKFLOW_PROJECT_ROOT`` when set."""
    if explicit:
        return explicit
    env = os.environ if environ is None else environ
    value = env.get(ENV_PREFIX + "PROJECT_ROOT")
    return value.strip() if value and value.strip() else None
