"""Stdio client for the agent's control protocol.

Messages are newline-delimited JSON-RPC 2.0 envelopes built from the
``mcp.types`` models. Exchanges are synchronous: a request is written and
the calling thread blocks until the reply with the same id arrives. A
background thread feeds stdout lines into a queue; another drains stderr so
the peer never blocks on a full pipe.
"""

from __future__ import annotations

import collections
import json
import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Sequence

from mcp import types

from .errors import (
    AlreadyConnected,
    ConnectionFailed,
    DeserializationError,
    InvalidResponse,
    McpError,
    McpIOError,
    McpTimeout,
    NotConnected,
    NotInitialized,
    RequestCancelled,
    RpcError,
    SpawnFailed,
    ToolFailed,
    ToolNotFound,
)
from .models import WorkflowCommandType


logger = logging.getLogger("speckflow.mcp")

CLIENT_NAME = "speckflow"
CLIENT_VERSION = "0.1.0"

# Server-defined error codes used by agents on top of the JSON-RPC ones.
TOOL_EXECUTION_ERROR = -32000
TIMEOUT_ERROR = -32001
CANCELLED_ERROR = -32002

ERROR_CODE_NAMES = {
    types.PARSE_ERROR: "parse_error",
    types.INVALID_REQUEST: "invalid_request",
    types.METHOD_NOT_FOUND: "method_not_found",
    types.INVALID_PARAMS: "invalid_params",
    types.INTERNAL_ERROR: "internal_error",
    TOOL_EXECUTION_ERROR: "tool_execution_failed",
    TIMEOUT_ERROR: "timeout",
    CANCELLED_ERROR: "cancelled",
}

SHUTDOWN_TIMEOUT = 5.0

_EOF = object()
_CLOSED = object()


def error_kind(code: int) -> str:
    """Name a JSON-RPC error code; unknown codes map to ``server_error``."""
    return ERROR_CODE_NAMES.get(code, "server_error")


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


@dataclass(slots=True)
class InitializeInfo:
    """What the server reported during the handshake."""

    protocol_version: str
    capabilities: Dict[str, Any] = field(default_factory=dict)
    server_name: Optional[str] = None
    server_version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol_version": self.protocol_version,
            "capabilities": self.capabilities,
            "server_name": self.server_name,
            "server_version": self.server_version,
        }


@dataclass(slots=True)
class ToolResult:
    """Content blocks returned by a tool call."""

    content: List[Dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    def text(self) -> str:
        """Join the text blocks with newlines."""
        return "\n".join(block.get("text", "") for block in self.content if block.get("type") == "text")

    def raise_for_error(self) -> "ToolResult":
        if self.is_error:
            raise ToolFailed(self.text() or "tool reported an error")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "is_error": self.is_error, "text": self.text()}


class McpClient:
    """Synchronous JSON-RPC client speaking to a peer over its stdio."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        working_dir: Optional[Path | str] = None,
        timeout: Optional[float] = None,
        protocol_version: str = types.LATEST_PROTOCOL_VERSION,
    ):
        self.command = command
        self.args = list(args)
        self.working_dir = Path(working_dir) if working_dir else None
        self.timeout = timeout
        self.protocol_version = protocol_version

        self.server: Optional[InitializeInfo] = None
        self.notifications: List[Dict[str, Any]] = []
        self.stderr_lines: Deque[str] = collections.deque(maxlen=200)

        self._process: Optional[subprocess.Popen] = None
        self._lines: "queue.Queue[Any]" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._request_lock = threading.RLock()
        self._id_lock = threading.Lock()
        self._next_id = 1
        self._initialized = False
        self._tools: Optional[Dict[str, types.Tool]] = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self._process is not None

    def is_initialized(self) -> bool:
        return self._initialized

    def connect(self) -> None:
        """Spawn the peer with piped stdio and start the reader threads."""
        if self._process is not None:
            raise AlreadyConnected()
        try:
            process = subprocess.Popen(
                [self.command, *self.args],
                cwd=str(self.working_dir) if self.working_dir else None,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise SpawnFailed(str(e)) from e

        self._process = process
        self._lines = queue.Queue()
        with self._id_lock:
            self._next_id = 1
        self._initialized = False
        self._tools = None
        self.server = None
        self.notifications = []
        self.stderr_lines.clear()

        self._threads = [
            threading.Thread(target=self._read_stdout, args=(process,), name="speckflow-mcp-stdout", daemon=True),
            threading.Thread(target=self._drain_stderr, args=(process,), name="speckflow-mcp-stderr", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Connected to %s (pid %s)", self.command, process.pid)

    def _read_stdout(self, process: subprocess.Popen) -> None:
        lines = self._lines
        try:
            for raw in iter(process.stdout.readline, ""):
                lines.put(raw.rstrip("\r\n"))
        except (OSError, ValueError) as e:
            logger.debug("stdout reader stopped: %s", e)
        finally:
            lines.put(_EOF)

    def _drain_stderr(self, process: subprocess.Popen) -> None:
        try:
            for raw in iter(process.stderr.readline, ""):
                line = raw.rstrip("\r\n")
                self.stderr_lines.append(line)
                logger.debug("peer stderr: %s", line)
        except (OSError, ValueError) as e:
            logger.debug("stderr drainer stopped: %s", e)

    def close(self) -> None:
        """Shut down if possible, then kill the peer and release the pipes."""
        process = self._process
        if process is None:
            return

        if self._request_lock.acquire(blocking=False):
            try:
                self.shutdown()
            finally:
                self._request_lock.release()
        else:
            # Another thread is blocked on a reply; wake it.
            self._lines.put(_CLOSED)
        self._initialized = False

        try:
            if process.stdin is not None:
                process.stdin.close()
        except OSError as e:
            logger.debug("Closing peer stdin failed: %s", e)
        try:
            process.wait(timeout=1)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        for thread in self._threads:
            thread.join(timeout=2)
        for pipe in (process.stdout, process.stderr):
            if pipe is not None:
                pipe.close()
        self._threads = []
        self._process = None
        logger.info("Disconnected from %s", self.command)

    def __enter__(self) -> "McpClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Wire helpers
    # ------------------------------------------------------------------

    def _allocate_id(self) -> int:
        with self._id_lock:
            request_id = self._next_id
            self._next_id += 1
            return request_id

    def _send(self, message: Dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise NotConnected()
        line = json.dumps(message, separators=(",", ":"))
        try:
            process.stdin.write(line + "\n")
            process.stdin.flush()
        except (OSError, ValueError) as e:
            raise McpIOError(str(e)) from e
        logger.debug("-> %s", line)

    def _notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        notification = types.JSONRPCNotification(jsonrpc="2.0", method=method, params=params)
        self._send(_dump(notification))

    def _request(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        if self._process is None:
            raise NotConnected()
        with self._request_lock:
            request_id = self._allocate_id()
            request = types.JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
            self._send(_dump(request))
            return self._await_response(request_id, self.timeout if timeout is None else timeout)

    def _await_response(self, request_id: int, timeout: Optional[float]) -> Any:
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            remaining = None
            if deadline is not None:
                remaining = max(0.0, deadline - time.monotonic())
            try:
                item = self._lines.get(timeout=remaining)
            except queue.Empty:
                self._cancel_quietly(request_id)
                raise McpTimeout() from None

            if item is _CLOSED:
                raise RequestCancelled()
            if item is _EOF:
                self._lines.put(_EOF)
                raise ConnectionFailed("peer closed the connection")

            line = item.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError as e:
                raise DeserializationError(f"{e}: {line[:200]}") from e
            if not isinstance(message, dict):
                raise InvalidResponse(f"expected a JSON object, got {type(message).__name__}")

            if "method" in message:
                self.notifications.append(message)
                logger.debug("<- notification %s", message.get("method"))
                continue
            if message.get("id") != request_id:
                logger.debug("Discarding reply for id %r while waiting for %s", message.get("id"), request_id)
                continue

            if message.get("error") is not None:
                try:
                    error = types.ErrorData.model_validate(message["error"])
                except ValueError as e:
                    raise InvalidResponse(f"malformed error object: {e}") from e
                raise RpcError(error.code, error.message, error.data)
            if "result" not in message:
                raise InvalidResponse("response has neither result nor error")
            return message["result"]

    def _cancel_quietly(self, request_id: int) -> None:
        try:
            self.cancel_request(request_id)
        except McpError as e:
            logger.debug("Cancel for request %s not delivered: %s", request_id, e)

    def _require_initialized(self) -> None:
        if self._process is None:
            raise NotConnected()
        if not self._initialized:
            raise NotInitialized()

    # ------------------------------------------------------------------
    # Protocol operations
    # ------------------------------------------------------------------

    def initialize(self) -> InitializeInfo:
        """Perform the initialize handshake."""
        if self._process is None:
            raise NotConnected()
        params = types.InitializeRequestParams(
            protocolVersion=self.protocol_version,
            capabilities=types.ClientCapabilities(sampling=types.SamplingCapability()),
            clientInfo=types.Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
        )
        result = self._request("initialize", _dump(params))
        if not isinstance(result, dict) or "protocolVersion" not in result:
            raise InvalidResponse("initialize result is missing protocolVersion")

        info = InitializeInfo(
            protocol_version=str(result["protocolVersion"]),
            capabilities=dict(result.get("capabilities") or {}),
        )
        if result.get("serverInfo") is not None:
            try:
                server_info = types.Implementation.model_validate(result["serverInfo"])
            except ValueError as e:
                raise InvalidResponse(f"malformed serverInfo: {e}") from e
            info.server_name = server_info.name
            info.server_version = server_info.version

        self._notify("notifications/initialized")
        self._initialized = True
        self.server = info
        logger.info("Initialized session with protocol %s", info.protocol_version)
        return info

    def list_tools(self) -> List[types.Tool]:
        """Fetch and cache the tool catalog."""
        self._require_initialized()
        result = self._request("tools/list")
        try:
            tools = types.ListToolsResult.model_validate(result).tools
        except ValueError as e:
            raise InvalidResponse(f"malformed tools/list result: {e}") from e
        self._tools = {tool.name: tool for tool in tools}
        return tools

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Invoke a tool by name."""
        self._require_initialized()
        if self._tools is not None and name not in self._tools:
            raise ToolNotFound(name)
        result = self._request("tools/call", {"name": name, "arguments": arguments or {}})
        try:
            parsed = types.CallToolResult.model_validate(result)
        except ValueError as e:
            raise InvalidResponse(f"malformed tools/call result: {e}") from e
        return ToolResult(content=[_dump(block) for block in parsed.content], is_error=parsed.isError)

    def call_workflow(
        self,
        command_type: WorkflowCommandType,
        spec_directory: Path | str,
        extra_args: Optional[Dict[str, Any]] = None,
    ) -> ToolResult:
        """Run a workflow command through its protocol tool."""
        arguments: Dict[str, Any] = {"spec_directory": str(spec_directory)}
        arguments.update(extra_args or {})
        return self.call_tool(command_type.tool_name, arguments)

    def cancel_request(self, request_id: int) -> None:
        """Ask the peer to abandon a request; advisory only."""
        self._notify("$/cancelRequest", {"id": request_id})

    def shutdown(self) -> None:
        """Send shutdown and exit; a no-op when not initialized."""
        if not self._initialized:
            return
        try:
            timeout = min(self.timeout, SHUTDOWN_TIMEOUT) if self.timeout else SHUTDOWN_TIMEOUT
            self._request("shutdown", timeout=timeout)
        except McpError as e:
            logger.debug("shutdown request failed: %s", e)
        try:
            self._notify("exit")
        except McpError as e:
            logger.debug("exit notification failed: %s", e)
        finally:
            self._initialized = False
