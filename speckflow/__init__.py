"""speckflow - parallel feature workflows over git worktrees and an external agent."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__version__ = "0.1.0"

__all__ = [
    "WorkflowManager",
    "WorkflowRunner",
    "GitService",
    "SpecService",
    "ProcessService",
    "McpClient",
    "ProjectConfig",
]
