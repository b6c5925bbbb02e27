#!/usr/bin/env python3
"""PatchKit MCP Server — Model Context Protocol server for model-written edits.

Exposes PatchKit's extractor and patch engine as MCP tools over stdio using
JSON-RPC 2.0. All tools take and return text; the server never touches
the file system.

Tools provided:
  - patchkit_parse: Extract canonical file operations from a response
  - patchkit_apply_diff: Apply a SEARCH/REPLACE payload to content
  - patchkit_match: Locate one SEARCH text without applying it
  - patchkit_next_content: Content one operation produces from current content

Usage:
  python pk_mcp.py          # stdio mode
"""

import json
import logging
import sys
from typing import Any, Optional

from pk import find_block_match, match_to_dict, next_content, plan_diff, result_to_dict
from pk_config import PatchConfig, load_config
from pk_ops import OPERATION_TYPES, FileOperation, parse_file_operations

logger = logging.getLogger(__name__)

# MCP Protocol version
PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "patchkit"
SERVER_VERSION = "0.1.0"

TOOLS = [
    {
        "name": "patchkit_parse",
        "description": (
            "Extract file operations from a model response. Understands "
            "<<<FILE_OPERATION>>> blocks and <invoke> write_to_file / "
            "replace_in_file calls; returns deduplicated, merged operations."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "response": {
                    "type": "string",
                    "description": "Full model response text",
                },
            },
            "required": ["response"],
        },
    },
    {
        "name": "patchkit_apply_diff",
        "description": (
            "Apply a SEARCH/REPLACE payload to content. Each SEARCH is located "
            "with 4-tier matching (exact → line-trimmed → block-anchor → "
            "full-file). All-or-nothing: any unlocatable block fails the call."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "original": {
                    "type": "string",
                    "description": "Current content",
                },
                "diff": {
                    "type": "string",
                    "description": "<<<<<<< SEARCH / ======= / >>>>>>> REPLACE payload",
                },
            },
            "required": ["original", "diff"],
        },
    },
    {
        "name": "patchkit_match",
        "description": (
            "Locate a SEARCH text in content without modifying it. Returns "
            "the tier that resolved it and its offsets."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "original": {"type": "string"},
                "search": {"type": "string"},
            },
            "required": ["original", "search"],
        },
    },
    {
        "name": "patchkit_next_content",
        "description": (
            "Compute the content a single file operation produces from the "
            "current content (create, write_full, edit, replace, prepend, "
            "append, read, delete)."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "object",
                    "description": "Operation as returned by patchkit_parse",
                },
                "current": {
                    "type": "string",
                    "description": "Current content (omit if the file does not exist)",
                },
            },
            "required": ["operation"],
        },
    },
]


def make_response(id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": id, "result": result}


def make_error(id: Any, code: int, message: str, data: Any = None) -> dict:
    err = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": "2.0", "id": id, "error": err}


def _text_result(id: Any, payload: Any, is_error: bool = False) -> dict:
    return make_response(id, {
        "content": [{"type": "text", "text": json.dumps(payload, indent=2)}],
        "isError": is_error,
    })


def handle_initialize(id: Any, params: dict) -> dict:
    return make_response(id, {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {
            "tools": {},
        },
        "serverInfo": {
            "name": SERVER_NAME,
            "version": SERVER_VERSION,
        },
    })


def handle_tools_list(id: Any, params: dict) -> dict:
    return make_response(id, {"tools": TOOLS})


def _operation_from_args(data: dict) -> FileOperation:
    op_type = data.get("type")
    if op_type not in OPERATION_TYPES:
        raise ValueError(f"Unknown operation type: {op_type!r}")
    if not data.get("path"):
        raise ValueError("Operation needs a path")
    return FileOperation(
        type=op_type,
        path=data["path"],
        description=data.get("description", ""),
        content=data.get("content"),
        search=data.get("search"),
        replace=data.get("replace"),
    )


def handle_tool_call(id: Any, params: dict, config: PatchConfig) -> dict:
    name = params.get("name", "")
    args = params.get("arguments", {})

    try:
        if name == "patchkit_parse":
            ops = parse_file_operations(args["response"])
            return _text_result(id, [op.to_dict() for op in ops])

        elif name == "patchkit_apply_diff":
            result = plan_diff(args["original"], args["diff"], config)
            rd = result_to_dict(result, include_content=True)
            return _text_result(id, rd, is_error=result.status != "applied")

        elif name == "patchkit_match":
            match = find_block_match(args["original"], args["search"])
            if match is None:
                return _text_result(id, {"status": "no_match"}, is_error=True)
            found = {"status": "found", "matched_text": match.matched_text}
            found.update(match_to_dict(match))
            return _text_result(id, found)

        elif name == "patchkit_next_content":
            op = _operation_from_args(args["operation"])
            result = next_content(op, args.get("current"), config)
            rd = result_to_dict(result, file=op.path, include_content=True)
            return _text_result(id, rd, is_error=not result.ok)

    except KeyError as e:
        return make_error(id, -32602, f"Missing argument: {e.args[0]}")
    except (TypeError, ValueError) as e:
        return make_error(id, -32602, f"Invalid arguments: {e}")

    return make_error(id, -32601, f"Unknown tool: {name}")


HANDLERS = {
    "initialize": handle_initialize,
    "notifications/initialized": None,  # notification, no response
    "tools/list": handle_tools_list,
    "tools/call": handle_tool_call,
}


def run_stdio(config: Optional[PatchConfig] = None):
    """Main stdio loop — read JSON-RPC messages, dispatch, respond."""
    if config is None:
        config = load_config()
    logging.basicConfig(stream=sys.stderr, level=config.log_level.upper(),
                        format="%(levelname)s %(name)s: %(message)s")

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            resp = make_error(None, -32700, "Parse error")
            sys.stdout.write(json.dumps(resp) + "\n")
            sys.stdout.flush()
            continue

        method = msg.get("method", "")
        id = msg.get("id")
        params = msg.get("params", {})

        handler = HANDLERS.get(method)
        if handler is None:
            if id is not None and method not in HANDLERS:
                resp = make_error(id, -32601, f"Method not found: {method}")
                sys.stdout.write(json.dumps(resp) + "\n")
                sys.stdout.flush()
            # notifications (no id) or known notification methods → no response
            continue

        logger.debug("Handling %s (id=%s)", method, id)
        if handler is handle_tool_call:
            resp = handler(id, params, config)
        else:
            resp = handler(id, params)
        sys.stdout.write(json.dumps(resp) + "\n")
        sys.stdout.flush()


if __name__ == "__main__":
    run_stdio()
