"""Command-line front end for speckflow."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from speckflow.config import ProjectConfig, resolve_project_root
from speckflow.errors import ConfigError
from speckflow.models import OutputLine, OutputStream, Project
from speckflow.speckflow_logging import setup_logging
from speckflow.workflow import WorkflowManager


def _resolve_root(explicit: Optional[str]) -> Path:
    root = resolve_project_root(explicit)
    if root:
        return Path(root).expanduser().resolve()
    discovered = Project.discover(Path.cwd())
    return discovered if discovered is not None else Path.cwd().resolve()


def _parse_extra_args(pairs: List[str]) -> Dict[str, Any]:
    """Turn ``key=value`` pairs into a dict; values are JSON when they parse."""
    extra: Dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected key=value, got '{pair}'")
        try:
            extra[key] = json.loads(value)
        except ValueError:
            extra[key] = value
    return extra


def _print_line(line: OutputLine) -> None:
    stream = sys.stderr if line.stream is OutputStream.STDERR else sys.stdout
    print(line.content, file=stream, flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speckflow",
        description="Run spec-driven feature workflows across git worktrees.",
    )
    parser.add_argument("--root", help="Project root (defaults to SPECKFLOW_PROJECT_ROOT or the enclosing repository)")
    parser.add_argument("--log-level", help="Logging level, e.g. INFO or DEBUG")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("specs", help="List specifications")

    status = sub.add_parser("status", help="Show a specification's phase and worktree")
    status.add_argument("spec")

    new = sub.add_parser("new", help="Create a specification, its branch and its worktree")
    new.add_argument("name")

    worktrees = sub.add_parser("worktrees", help="List worktrees")
    worktrees.add_argument("--sync", action="store_true", help="Include ahead/behind counts")

    switch = sub.add_parser("switch", help="Find or create the worktree of a specification")
    switch.add_argument("spec")

    remove = sub.add_parser("remove", help="Remove a worktree")
    remove.add_argument("path")
    remove.add_argument("--force", action="store_true", help="Remove even with uncommitted changes")

    run = sub.add_parser("run", help="Run a workflow command")
    run.add_argument("spec")
    run.add_argument("workflow", metavar="COMMAND")
    run.add_argument("--no-wait", action="store_true", help="Start the agent in the background with its output going to the log file")
    run.add_argument("--timeout", type=float, default=None, help="Seconds to wait before cancelling")

    sub.add_parser("tools", help="List the tools offered by the agent")

    call = sub.add_parser("call", help="Run a workflow command as a protocol tool call")
    call.add_argument("spec")
    call.add_argument("workflow", metavar="COMMAND")
    call.add_argument("--arg", action="append", default=[], metavar="KEY=VALUE", help="Extra tool argument")

    return parser


def run_command(manager: WorkflowManager, args: argparse.Namespace) -> Dict[str, Any]:
    if args.command == "specs":
        return manager.list_specs()
    if args.command == "status":
        return manager.spec_status(args.spec)
    if args.command == "new":
        return manager.create_spec(args.name)
    if args.command == "worktrees":
        return manager.list_worktrees(include_sync=args.sync)
    if args.command == "switch":
        return manager.switch_to_spec(args.spec)
    if args.command == "remove":
        return manager.delete_worktree(args.path, force=args.force)
    if args.command == "tools":
        return manager.list_agent_tools()
    if args.command == "call":
        try:
            extra = _parse_extra_args(args.arg)
        except ValueError as e:
            return {"error": str(e), "suggestion": "Pass extra arguments as --arg key=value", "message": f"Error: {e}"}
        return manager.call_workflow_tool(args.spec, args.workflow, extra)
    if args.command == "run":
        started = manager.run_workflow(args.spec, args.workflow, detach=args.no_wait)
        if "error" in started or args.no_wait or "result" in started:
            return started
        result = manager.wait_for_command(timeout=args.timeout, on_output=_print_line)
        if result.get("timed_out"):
            manager.cancel_command()
            result = manager.wait_for_command(timeout=5)
            result["timed_out"] = True
            result["error"] = f"Command timed out after {args.timeout}s"
        return result
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = ProjectConfig.load()
    except ConfigError as e:
        print(json.dumps({"error": str(e), "message": f"Error: {e}"}, indent=2))
        return 1
    setup_logging((args.log_level or config.logging.level).upper())

    manager = WorkflowManager(_resolve_root(args.root), config=config)
    try:
        result = run_command(manager, args)
    finally:
        manager.close()

    print(json.dumps(result, indent=2, default=str))
    return 1 if "error" in result else 0


if __name__ == "__main__":
    sys.exit(main())
