"""Scripted newline-delimited JSON-RPC peer for the protocol client tests.

Usage: ``python fake_mcp_server.py [mode]`` where mode is one of
``normal`` (default), ``garbage`` (answers every request with a non-JSON
line), ``no-result`` (answers with neither result nor error), ``silent``
(never answers) or ``die`` (exits on the first request).
"""

import json
import sys
import time


WORKFLOW_TOOLS = ["speckit.specify", "speckit.clarify", "speckit.plan", "speckit.tasks", "speckit.implement"]
TEST_TOOLS = ["echo", "fail", "boom", "history", "slow"]


def write(message):
    if isinstance(message, str):
        sys.stdout.write(message + "\n")
    else:
        sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def result(msg_id, value):
    write({"jsonrpc": "2.0", "id": msg_id, "result": value})


def error(msg_id, code, message, data=None):
    payload = {"code": code, "message": message}
    if data is not None:
        payload["data"] = data
    write({"jsonrpc": "2.0", "id": msg_id, "error": payload})


def text(value, is_error=False):
    return {"content": [{"type": "text", "text": value}], "isError": is_error}


def call_tool(msg_id, params, received):
    name = params.get("name")
    arguments = params.get("arguments") or {}
    if name == "echo":
        result(msg_id, text(json.dumps(arguments, sort_keys=True)))
    elif name == "fail":
        result(msg_id, text("tool broke", is_error=True))
    elif name == "boom":
        error(msg_id, -32000, "Tool execution failed", {"tool": "boom"})
    elif name == "history":
        result(msg_id, text(json.dumps(received)))
    elif name == "slow":
        time.sleep(float(arguments.get("seconds", 1.0)))
        result(msg_id, text("done"))
    elif name in WORKFLOW_TOOLS and arguments.get("fail"):
        result(msg_id, text(f"{name} refused", is_error=True))
    elif name in WORKFLOW_TOOLS:
        lines = [f"{name} ran in {arguments.get('spec_directory')}"]
        lines.extend(f"{key}={arguments[key]}" for key in sorted(arguments) if key != "spec_directory")
        result(msg_id, text("\n".join(lines)))
    else:
        error(msg_id, -32602, f"Unknown tool: {name}")


def main():
    mode = sys.argv[1] if len(sys.argv) > 1 else "normal"
    received = []
    for raw in iter(sys.stdin.readline, ""):
        line = raw.strip()
        if not line:
            continue
        message = json.loads(line)
        received.append(message)
        method = message.get("method")
        msg_id = message.get("id")

        if msg_id is None:
            if method == "exit":
                return 0
            continue
        if mode == "die":
            return 3
        if mode == "silent":
            continue
        if mode == "garbage":
            write("this is not json")
            continue
        if mode == "no-result":
            write({"jsonrpc": "2.0", "id": msg_id})
            continue

        if method == "initialize":
            write({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info", "data": "hello"}})
            result(999, {"stray": True})
            result(msg_id, {
                "protocolVersion": message["params"]["protocolVersion"],
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-agent", "version": "1.0"},
            })
        elif method == "tools/list":
            tools = [
                {"name": name, "description": f"{name} tool", "inputSchema": {"type": "object"}}
                for name in WORKFLOW_TOOLS + TEST_TOOLS
            ]
            result(msg_id, {"tools": tools})
        elif method == "tools/call":
            call_tool(msg_id, message.get("params") or {}, received)
        elif method == "shutdown":
            result(msg_id, None)
        else:
            error(msg_id, -32601, "Method not found")
    return 0


if __name__ == "__main__":
    sys.exit(main())
