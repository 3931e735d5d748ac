"""Logging and observability utilities for speckflow.

This module provides structured logging, performance monitoring,
and observability hooks for worktree and workflow-command events.
"""

from __future__ import annotations

import json
import time
import logging as std_logging
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from .errors import SpeckFlowError


ROOT_LOGGER = "speckflow"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def setup_logging(log_level: Union[str, int] = std_logging.WARNING, log_file: Optional[Path] = None) -> None:
    """Setup structured logging for speckflow."""

    logger = std_logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)

    # Clear existing handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    detailed_formatter = std_logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Console handler
    console_handler = std_logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(detailed_formatter)
    logger.addHandler(console_handler)

    # File handler (if specified)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = std_logging.FileHandler(log_file)
        file_handler.setLevel(std_logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        logger.addHandler(file_handler)

    logger.info("speckflow logging initialized")


class JsonFormatter(std_logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: std_logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


MAX_METRICS_PER_NAME = 100


class PerformanceMonitor:
    """Collects duration metrics for speckflow operations.

    Only the most recent ``max_per_metric`` samples are kept for each name.
    """

    def __init__(self, max_per_metric: int = MAX_METRICS_PER_NAME):
        self.max_per_metric = max_per_metric
        self.metrics: Dict[str, Deque[Dict[str, Any]]] = {}

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, str]] = None) -> None:
        """Record a performance metric."""
        metric = {
            "timestamp": _utc_now(),
            "name": name,
            "value": value,
            "tags": tags or {}
        }
        if name not in self.metrics:
            self.metrics[name] = deque(maxlen=self.max_per_metric)
        self.metrics[name].append(metric)

        logger = std_logging.getLogger(f"{ROOT_LOGGER}.performance")
        logger.debug(f"Metric recorded: {name}={value}", extra={"extra_fields": metric})

    def get_metrics(self, name: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Get recorded metrics."""
        if name:
            return {name: list(self.metrics.get(name, ()))}
        return {key: list(samples) for key, samples in self.metrics.items()}

    def clear(self) -> None:
        self.metrics.clear()


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


def log_performance(operation_name: str):
    """Decorator to log performance metrics for operations."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.monotonic()
            logger = std_logging.getLogger(f"{ROOT_LOGGER}.performance")

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                duration = time.monotonic() - start_time
                performance_monitor.record_metric(
                    f"{operation_name}_duration",
                    duration,
                    {"status": "error", "error_type": type(e).__name__}
                )
                logger.debug(f"Failed operation: {operation_name} after {duration:.3f}s - {e}")
                raise

            duration = time.monotonic() - start_time
            performance_monitor.record_metric(
                f"{operation_name}_duration",
                duration,
                {"status": "success"}
            )
            logger.debug(
                f"Completed operation: {operation_name} in {duration:.3f}s",
                extra={"extra_fields": {
                    "operation": operation_name,
                    "duration": duration,
                    "status": "success"
                }}
            )
            return result

        return wrapper
    return decorator


@contextmanager
def log_operation(operation_name: str, **extra_fields):
    """Context manager to log operations with custom fields."""
    logger = std_logging.getLogger(f"{ROOT_LOGGER}.operations")
    start_time = time.monotonic()

    logger.info(f"Starting operation: {operation_name}", extra={"extra_fields": {
        "operation": operation_name,
        "status": "started",
        **extra_fields
    }})

    try:
        yield
    except Exception as e:
        duration = time.monotonic() - start_time
        logger.warning(f"Failed operation: {operation_name} after {duration:.3f}s - {e}", extra={"extra_fields": {
            "operation": operation_name,
            "status": "failed",
            "duration": duration,
            "error_type": type(e).__name__,
            "error_message": str(e),
            **extra_fields
        }})
        raise

    duration = time.monotonic() - start_time
    logger.info(f"Completed operation: {operation_name} in {duration:.3f}s", extra={"extra_fields": {
        "operation": operation_name,
        "status": "completed",
        "duration": duration,
        **extra_fields
    }})


class ObservabilityHooks:
    """Observability hooks for worktree and workflow-command events."""

    def __init__(self):
        self.hooks: Dict[str, List[Callable[..., Any]]] = {}
        self.logger = std_logging.getLogger(f"{ROOT_LOGGER}.observability")

    def register_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        """Register a callback for a specific event type."""
        self.hooks.setdefault(event_type, []).append(callback)
        self.logger.debug(f"Registered hook for event: {event_type}")

    def unregister_hook(self, event_type: str, callback: Callable[..., Any]) -> None:
        callbacks = self.hooks.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def trigger_hooks(self, event_type: str, **data) -> None:
        """Trigger all callbacks for a specific event type.

        A failing hook is logged and does not stop the remaining hooks.
        """
        callbacks = list(self.hooks.get(event_type, []))
        if not callbacks:
            return
        self.logger.debug(f"Triggering {len(callbacks)} hooks for event: {event_type}")
        for hook in callbacks:
            try:
                hook(**data)
            except Exception as e:
                self.logger.error(f"Hook failed for event {event_type}: {e}")

    def emit(self, event_type: str, spec_id: Optional[str] = None, **data) -> None:
        """Log an event and trigger its hooks."""
        event_data = {
            "timestamp": _utc_now(),
            "event_type": event_type,
            "spec_id": spec_id,
            **data
        }
        self.logger.info(f"Event: {event_type}", extra={"extra_fields": event_data})

        hook_data = {k: v for k, v in event_data.items() if k != "event_type"}
        self.trigger_hooks(event_type, **hook_data)


# Global observability hooks instance
observability_hooks = ObservabilityHooks()


def log_command_started(command: str, spec_id: str, **extra_fields) -> None:
    """Record that a workflow command was started."""
    observability_hooks.emit("command_started", spec_id=spec_id, command=command, **extra_fields)


def log_command_finished(command: str, spec_id: str, status: str, **extra_fields) -> None:
    """Record that a workflow command reached a terminal state."""
    observability_hooks.emit("command_finished", spec_id=spec_id, command=command, status=status, **extra_fields)


def log_worktree_event(event_type: str, branch: str, path: Union[str, Path], **extra_fields) -> None:
    observability_hooks.emit(
        f"worktree_{event_type.lower()}",
        spec_id=extra_fields.pop("spec_id", None),
        branch=branch,
        path=str(path),
        **extra_fields
    )


def log_spec_created(spec_id: str, directory: Union[str, Path], **extra_fields) -> None:
    observability_hooks.emit("spec_created", spec_id=spec_id, directory=str(directory), **extra_fields)


def log_error_with_context(error: Exception, context: Dict[str, Any], **extra_fields) -> None:
    """Log an error with rich context information."""
    logger = std_logging.getLogger(f"{ROOT_LOGGER}.errors")

    error_data = {
        "timestamp": _utc_now(),
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context,
        **extra_fields
    }

    logger.error(
        f"Error in {context.get('operation', 'unknown operation')}: {error}",
        extra={"extra_fields": error_data},
        exc_info=not isinstance(error, (SpeckFlowError, ValueError)),
    )
