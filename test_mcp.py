"""Tests for pk_mcp.py — MCP server for PatchKit."""

import json
import os
import subprocess
import sys


def mcp_call(*messages, raw_lines=()):
    """Send JSON-RPC messages to MCP server, return parsed responses."""
    lines = [json.dumps(m) for m in messages] + list(raw_lines)
    proc = subprocess.run(
        [sys.executable, "pk_mcp.py"],
        input="\n".join(lines) + "\n", capture_output=True, text=True,
        cwd=os.path.dirname(os.path.abspath(__file__)),
    )
    out = [l for l in proc.stdout.strip().split("\n") if l.strip()]
    return [json.loads(l) for l in out]


def init_msg(id=1):
    return {"jsonrpc": "2.0", "id": id, "method": "initialize", "params": {}}


def tool_call(id, name, arguments):
    return {"jsonrpc": "2.0", "id": id, "method": "tools/call",
            "params": {"name": name, "arguments": arguments}}


def tool_payload(resp):
    return json.loads(resp["result"]["content"][0]["text"])


class TestInitialize:
    def test_returns_server_info(self):
        [resp] = mcp_call(init_msg())
        assert resp["result"]["serverInfo"]["name"] == "patchkit"
        assert resp["result"]["protocolVersion"] == "2024-11-05"

    def test_has_tools_capability(self):
        [resp] = mcp_call(init_msg())
        assert "tools" in resp["result"]["capabilities"]

    def test_initialized_notification_has_no_response(self):
        resps = mcp_call(init_msg(), {"jsonrpc": "2.0", "method": "notifications/initialized"})
        assert len(resps) == 1


class TestToolsList:
    def test_lists_tools(self):
        resps = mcp_call(init_msg(), {"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}})
        names = {t["name"] for t in resps[1]["result"]["tools"]}
        assert names == {"patchkit_parse", "patchkit_apply_diff", "patchkit_match", "patchkit_next_content"}


class TestParse:
    def test_parse_response(self):
        response = (
            "Done.\n<<<FILE_OPERATION>>>\nTYPE: create\nPATH: a.py\nCONTENT:\nx = 1\n<<<END_OPERATION>>>"
        )
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_parse", {"response": response}))
        ops = tool_payload(resps[1])
        assert ops == [{"type": "create", "path": "a.py", "description": "", "content": "x = 1"}]


class TestApplyDiff:
    def test_applied(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_apply_diff", {
            "original": "hello world\n",
            "diff": "<<<<<<< SEARCH\nhello world\n=======\ngoodbye world\n>>>>>>> REPLACE",
        }))
        assert resps[1]["result"]["isError"] is False
        result = tool_payload(resps[1])
        assert result["status"] == "applied"
        assert result["content"] == "goodbye world\n"
        assert result["matches"][0]["match_type"] == "exact"

    def test_no_match_is_error(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_apply_diff", {
            "original": "hello world\n",
            "diff": "<<<<<<< SEARCH\nnot there\n=======\nx\n>>>>>>> REPLACE",
        }))
        assert resps[1]["result"]["isError"] is True
        assert tool_payload(resps[1])["status"] == "no_match"


class TestMatch:
    def test_found(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_match", {
            "original": "def f():\n    return 1\n", "search": "def f():\nreturn 1\n",
        }))
        result = tool_payload(resps[1])
        assert result["status"] == "found"
        assert result["match_type"] == "line_trimmed"
        assert result["start"] == 0

    def test_not_found(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_match", {"original": "abc", "search": "xyz"}))
        assert resps[1]["result"]["isError"] is True


class TestNextContent:
    def test_prepend(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_next_content", {
            "operation": {"type": "prepend", "path": "a.py", "content": "# header"},
            "current": "body\n",
        }))
        result = tool_payload(resps[1])
        assert result["status"] == "applied"
        assert result["content"] == "# header\nbody\n"

    def test_delete(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_next_content", {
            "operation": {"type": "delete", "path": "a.py"}, "current": "x",
        }))
        assert tool_payload(resps[1]) == {"status": "deleted", "file": "a.py"}

    def test_bad_operation_type(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_next_content", {
            "operation": {"type": "rename", "path": "a.py"},
        }))
        assert resps[1]["error"]["code"] == -32602


class TestErrors:
    def test_missing_argument(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_apply_diff", {"original": "x"}))
        assert resps[1]["error"]["code"] == -32602
        assert "diff" in resps[1]["error"]["message"]

    def test_unknown_tool(self):
        resps = mcp_call(init_msg(), tool_call(2, "patchkit_nope", {}))
        assert resps[1]["error"]["code"] == -32601

    def test_unknown_method(self):
        resps = mcp_call(init_msg(), {"jsonrpc": "2.0", "id": 2, "method": "resources/list", "params": {}})
        assert resps[1]["error"]["code"] == -32601

    def test_parse_error(self):
        resps = mcp_call(init_msg(), raw_lines=["{not json"])
        assert resps[1]["error"]["code"] == -32700


class TestRunStdio:
    def test_config_is_optional(self):
        import inspect
        import typing

        import pk_mcp
        from pk_config import PatchConfig

        hints = typing.get_type_hints(pk_mcp.run_stdio)
        assert hints["config"] == typing.Optional[PatchConfig]
        assert inspect.signature(pk_mcp.run_stdio).parameters["config"].default is None
