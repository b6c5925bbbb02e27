"""Tests for pk_wrapper.py"""

import json

import pytest

from pk_config import PatchConfig
from pk_ops import FileOperation
from pk_stream import StreamTokenizer
from pk_wrapper import OperationResponse, PatchKit


@pytest.fixture
def kit():
    return PatchKit()


@pytest.fixture
def files():
    return {
        "app.py": "def hello():\n    print('hello world')\n\ndef goodbye():\n    print('goodbye')\n",
        "old.py": "x = 1\n",
    }


def block(*lines):
    return "<<<FILE_OPERATION>>>\n" + "\n".join(lines) + "\n<<<END_OPERATION>>>"


class TestApply:
    def test_apply_diff(self, kit, files):
        payload = "<<<<<<< SEARCH\ndef hello():\n=======\ndef greet():\n>>>>>>> REPLACE"
        new = kit.apply(files["app.py"], payload)
        assert new.startswith("def greet():\n")

    def test_apply_no_match(self, kit):
        payload = "<<<<<<< SEARCH\nmissing\n=======\nx\n>>>>>>> REPLACE"
        assert kit.apply("abc\n", payload) is None

    def test_plan_reports_tiers(self, kit, files):
        payload = "<<<<<<< SEARCH\ndef goodbye():\nprint('goodbye')\n=======\ndef goodbye():\n    pass\n>>>>>>> REPLACE"
        result = kit.plan(files["app.py"], payload)
        assert result.ok
        assert result.matches[0].match_type == "line_trimmed"

    def test_config_is_used(self):
        kit = PatchKit(PatchConfig(reject_noop=False))
        payload = "<<<<<<< SEARCH\nsame\n=======\nsame\n>>>>>>> REPLACE"
        assert kit.apply("same\n", payload) == "same\n"


class TestApplyOperation:
    def test_edit_operation(self, kit, files):
        op = FileOperation(type="edit", path="app.py", search="print('goodbye')", replace="print('bye')")
        resp = kit.apply_operation(op, files["app.py"])
        assert resp.success
        assert resp.status == "applied"
        assert resp.match_types == ["exact"]
        assert "print('bye')" in resp.content

    def test_failed_edit(self, kit):
        op = FileOperation(type="edit", path="a.py", search="nope", replace="x")
        resp = kit.apply_operation(op, "abc\n")
        assert not resp.success
        assert resp.status == "no_match"
        assert resp.error is not None

    def test_response_to_json(self, kit):
        resp = kit.apply_operation(FileOperation(type="delete", path="a.py"), "x")
        data = json.loads(resp.to_json())
        assert data == {"success": True, "path": "a.py", "type": "delete", "status": "deleted"}

    def test_operation_response_defaults(self):
        resp = OperationResponse(success=True, path="a.py", type="read", status="unchanged")
        assert resp.match_types == []
        assert "match_types" not in resp.to_dict()


class TestApplyResponse:
    def test_mixed_operations(self, kit, files):
        response = "\n".join([
            "I'll make the changes.",
            block("TYPE: create", "PATH: new.py", "CONTENT:", "```python", "print('new')", "```"),
            block("TYPE: edit", "PATH: app.py", "SEARCH:", "```", "def hello():", "```",
                  "REPLACE:", "```", "def greet():", "```"),
            block("TYPE: delete", "PATH: old.py"),
            block("TYPE: read", "PATH: README.md"),
        ])
        outcome = kit.apply_response(response, files)
        assert outcome.success
        assert [r.type for r in outcome.results] == ["create", "edit", "delete", "read"]
        assert outcome.files["new.py"] == "print('new')"
        assert outcome.files["app.py"].startswith("def greet():")
        assert outcome.files["old.py"] is None
        assert outcome.reads == ["README.md"]

    def test_failed_operation_leaves_file_untouched(self, kit, files):
        response = block("TYPE: edit", "PATH: app.py", "SEARCH:", "not in file", "REPLACE:", "x")
        outcome = kit.apply_response(response, files)
        assert not outcome.success
        assert outcome.files["app.py"] == files["app.py"]

    def test_operations_see_earlier_results(self, kit):
        response = "\n".join([
            block("TYPE: create", "PATH: a.txt", "CONTENT:", "one"),
            block("TYPE: append", "PATH: a.txt", "CONTENT:", "two"),
        ])
        outcome = kit.apply_response(response, {})
        assert outcome.files["a.txt"] == "one\ntwo"

    def test_input_mapping_not_mutated(self, kit, files):
        before = dict(files)
        kit.apply_response(block("TYPE: delete", "PATH: old.py"), files)
        assert files == before

    def test_no_operations(self, kit, files):
        outcome = kit.apply_response("Just chatting.", files)
        assert outcome.results == []
        assert outcome.files == files


class TestStreaming:
    def test_each_stream_is_fresh(self, kit):
        first = kit.stream()
        second = kit.stream()
        assert isinstance(first, StreamTokenizer)
        assert first is not second
        first.feed("<<<FILE_OPERATION>>>\nTYPE: create\n")
        assert second.get_current_operation() is None

    def test_stream_then_parse_raw(self, kit):
        session = kit.stream()
        result = session.feed(block("TYPE: create", "PATH: a.py", "CONTENT:", "x = 1"))
        ops = kit.parse(result.operation.raw)
        assert [(op.type, op.path, op.content) for op in ops] == [("create", "a.py", "x = 1")]


class TestToolSchemas:
    def test_anthropic_schemas(self):
        schemas = PatchKit.anthropic_tool_schemas()
        names = [s["name"] for s in schemas]
        assert names == ["write_to_file", "replace_in_file"]
        for schema in schemas:
            assert schema["input_schema"]["type"] == "object"
            assert "path" in schema["input_schema"]["required"]

    def test_openai_schemas(self):
        schemas = PatchKit.openai_function_schemas()
        assert all(s["type"] == "function" for s in schemas)
        assert schemas[1]["function"]["name"] == "replace_in_file"
        assert "search" in schemas[1]["function"]["parameters"]["properties"]

    def test_tool_call_round_trip(self, kit):
        text = PatchKit.tool_call_to_invoke("replace_in_file", {"path": "a.py", "search": "old", "replace": "new"})
        ops = kit.parse(text)
        assert [(op.type, op.search, op.replace) for op in ops] == [("replace", "old", "new")]

    def test_prompt_mentions_markers(self):
        for compact in (False, True):
            prompt = PatchKit.file_operation_prompt(compact)
            assert "<<<FILE_OPERATION>>>" in prompt
            assert "<<<END_OPERATION>>>" in prompt
        assert len(PatchKit.file_operation_prompt(True)) < len(PatchKit.file_operation_prompt())


class TestConfigFile:
    def test_from_config_file(self, tmp_path):
        path = tmp_path / "patchkit.yaml"
        path.write_text("suspicious_max_deleted_lines: 10\n")
        kit = PatchKit.from_config_file(str(path))
        assert kit.config.suspicious_max_deleted_lines == 10
