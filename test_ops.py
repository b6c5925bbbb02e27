#!/usr/bin/env python3
"""Tests for pk_ops.py — extracting canonical operations from responses."""

import dataclasses
import unittest

from pk import apply_diff
from pk_ops import (
    FileOperation,
    apply_precedence,
    clean_content,
    dedupe_operations,
    merge_operations,
    parse_file_operations,
)


def block(*lines):
    return "<<<FILE_OPERATION>>>\n" + "\n".join(lines) + "\n<<<END_OPERATION>>>"


def invoke(name, **params):
    inner = "\n".join(
        f'<parameter name="{key}">{value}</parameter>' for key, value in params.items()
    )
    return f'<invoke name="{name}">\n{inner}\n</invoke>'


class TestBracketBlocks(unittest.TestCase):
    def test_create_with_fenced_content(self):
        response = block(
            "TYPE: create",
            "PATH: src/hello.ts",
            "DESCRIPTION: Create hello file",
            "CONTENT:",
            "```typescript",
            "export function hello() { return 'hello'; }",
            "```",
        )
        ops = parse_file_operations(response)
        self.assertEqual(len(ops), 1)
        op = ops[0]
        self.assertEqual(op.type, "create")
        self.assertEqual(op.path, "src/hello.ts")
        self.assertEqual(op.description, "Create hello file")
        self.assertEqual(op.content, "export function hello() { return 'hello'; }")

    def test_edit_keeps_indentation(self):
        response = block(
            "TYPE: edit",
            "PATH: src/hello.ts",
            "DESCRIPTION: Change greeting",
            "SEARCH:",
            "```typescript",
            "  return 'hello';",
            "```",
            "REPLACE:",
            "```typescript",
            "  return 'world';",
            "```",
        )
        op = parse_file_operations(response)[0]
        self.assertEqual(op.search, "  return 'hello';")
        self.assertEqual(op.replace, "  return 'world';")
        self.assertIsNone(op.content)
        self.assertEqual(
            op.diff_payload(),
            "<<<<<<< SEARCH\n  return 'hello';\n=======\n  return 'world';\n>>>>>>> REPLACE",
        )

    def test_unfenced_sections(self):
        response = block("TYPE: edit", "PATH: a.py", "SEARCH:", "old", "REPLACE:", "new")
        op = parse_file_operations(response)[0]
        self.assertEqual((op.search, op.replace), ("old", "new"))

    def test_delete_and_read_have_no_content(self):
        response = block("TYPE: delete", "PATH: old.py") + "\n" + block("TYPE: read", "PATH: cfg.json")
        ops = parse_file_operations(response)
        self.assertEqual([(op.type, op.path) for op in ops], [("delete", "old.py"), ("read", "cfg.json")])
        self.assertTrue(all(op.content is None for op in ops))

    def test_prepend_unfenced(self):
        response = block("TYPE: prepend", "PATH: a.js", "CONTENT:", "// License header")
        op = parse_file_operations(response)[0]
        self.assertEqual(op.content, "// License header")

    def test_quoted_path(self):
        op = parse_file_operations(block("TYPE: delete", "PATH: `src/a.py`"))[0]
        self.assertEqual(op.path, "src/a.py")

    def test_order_preserved(self):
        response = (
            "First I create.\n"
            + block("TYPE: create", "PATH: one.py", "CONTENT:", "1")
            + "\nThen another.\n"
            + block("TYPE: create", "PATH: two.py", "CONTENT:", "2")
        )
        self.assertEqual([op.path for op in parse_file_operations(response)], ["one.py", "two.py"])

    def test_escaped_markers(self):
        response = (
            "&lt;&lt;&lt;FILE_OPERATION&gt;&gt;&gt;\nTYPE: delete\nPATH: a.py\n"
            "&lt;&lt;&lt;END_OPERATION&gt;&gt;&gt;"
        )
        ops = parse_file_operations(response)
        self.assertEqual([(op.type, op.path) for op in ops], [("delete", "a.py")])

    def test_missing_path_skipped(self):
        response = block("TYPE: create", "CONTENT:", "x") + "\n" + block("TYPE: delete", "PATH: b.py")
        self.assertEqual([op.path for op in parse_file_operations(response)], ["b.py"])

    def test_unknown_type_skipped(self):
        response = block("TYPE: rename", "PATH: a.py") + "\n" + block("TYPE: delete", "PATH: b.py")
        self.assertEqual([op.type for op in parse_file_operations(response)], ["delete"])

    def test_unterminated_block_at_end(self):
        response = "<<<FILE_OPERATION>>>\nTYPE: create\nPATH: a.py\nCONTENT:\n```\nx = 1\n"
        op = parse_file_operations(response)[0]
        self.assertEqual((op.path, op.content), ("a.py", "x = 1"))

    def test_nested_fences_stay_in_content(self):
        response = block(
            "TYPE: create",
            "PATH: README.md",
            "CONTENT:",
            "```markdown",
            "# Title",
            "```bash",
            "pip install patchkit",
            "```",
            "More text",
            "```",
        )
        op = parse_file_operations(response)[0]
        self.assertEqual(op.content, "# Title\n```bash\npip install patchkit\n```\nMore text")

    def test_inner_fence_closing_the_body_is_kept(self):
        response = block("TYPE: create", "PATH: a.md", "CONTENT:", "```md", "```sh", "ls", "```", "```")
        self.assertEqual(parse_file_operations(response)[0].content, "```sh\nls\n```")

    def test_search_without_replace_skipped(self):
        response = block("TYPE: edit", "PATH: a.py", "SEARCH:", "x = 1")
        self.assertEqual(parse_file_operations(response), [])

    def test_search_without_replace_does_not_hide_other_ops(self):
        response = (
            block("TYPE: edit", "PATH: a.py", "SEARCH:", "x = 1")
            + "\n" + block("TYPE: delete", "PATH: b.py")
        )
        self.assertEqual([(op.type, op.path) for op in parse_file_operations(response)], [("delete", "b.py")])

    def test_control_artifacts_removed(self):
        response = block("TYPE: create", "PATH: a.py", "CONTENT:", "x = 1<ctrl46>", "y\x07 = 2")
        op = parse_file_operations(response)[0]
        self.assertEqual(op.content, "x = 1y = 2")


class TestInvokeBlocks(unittest.TestCase):
    def test_write_to_file(self):
        response = invoke("write_to_file", path="a.py", description="rewrite", content="\nprint(1)\n")
        op = parse_file_operations(response)[0]
        self.assertEqual(op.type, "write_full")
        self.assertEqual(op.path, "a.py")
        self.assertEqual(op.description, "rewrite")
        self.assertEqual(op.content, "print(1)")

    def test_replace_in_file(self):
        op = parse_file_operations(invoke("replace_in_file", path="a.py", search="old", replace="new"))[0]
        self.assertEqual((op.type, op.search, op.replace), ("replace", "old", "new"))

    def test_replace_with_empty_replacement(self):
        op = parse_file_operations(invoke("replace_in_file", path="a.py", search="old", replace=""))[0]
        self.assertEqual(op.replace, "")

    def test_replace_parameter_aliases(self):
        response = invoke("replace_in_file", path="a.py", search_text="old", replace_text="new")
        op = parse_file_operations(response)[0]
        self.assertEqual((op.search, op.replace), ("old", "new"))

    def test_replace_without_search_skipped(self):
        self.assertEqual(parse_file_operations(invoke("replace_in_file", path="a.py", replace="x")), [])

    def test_edit_with_diff_parameter(self):
        payload = "<<<<<<< SEARCH\na\n=======\nb\n>>>>>>> REPLACE"
        op = parse_file_operations(invoke("edit", path="a.py", diff=payload))[0]
        self.assertEqual(op.type, "edit")
        self.assertEqual(op.content, payload)

    def test_unknown_tool_ignored(self):
        self.assertEqual(parse_file_operations(invoke("run_command", command="ls")), [])

    def test_invoke_inside_bracket_block_not_parsed(self):
        inner = invoke("write_to_file", path="other.ts", content="x")
        response = block("TYPE: create", "PATH: src/file.ts", "CONTENT:", "```", inner, "```")
        ops = parse_file_operations(response)
        self.assertEqual(len(ops), 1)
        self.assertEqual(ops[0].path, "src/file.ts")
        self.assertIn("<invoke", ops[0].content)

    def test_mixed_formats_in_order_of_appearance(self):
        response = (
            invoke("write_to_file", path="first.py", content="1")
            + "\n"
            + block("TYPE: create", "PATH: second.py", "CONTENT:", "2")
        )
        self.assertEqual([op.path for op in parse_file_operations(response)], ["first.py", "second.py"])


class TestNormalization(unittest.TestCase):
    def test_duplicates_collapse(self):
        one = block("TYPE: create", "PATH: a.py", "CONTENT:", "x")
        self.assertEqual(len(parse_file_operations(one + "\n" + one)), 1)

    def test_identity_ignores_trailing_whitespace(self):
        ops = [
            FileOperation(type="create", path="a.py", content="x   "),
            FileOperation(type="create", path="a.py", content="x"),
        ]
        self.assertEqual(dedupe_operations(ops), [ops[0]])

    def test_write_full_supersedes_other_ops(self):
        response = (
            block("TYPE: edit", "PATH: a.py", "SEARCH:", "x", "REPLACE:", "y")
            + "\n"
            + invoke("write_to_file", path="a.py", content="whole")
            + "\n"
            + block("TYPE: delete", "PATH: b.py")
        )
        ops = parse_file_operations(response)
        self.assertEqual([(op.type, op.path) for op in ops], [("write_full", "a.py"), ("delete", "b.py")])

    def test_last_write_full_wins(self):
        ops = [
            FileOperation(type="write_full", path="a.py", content="1"),
            FileOperation(type="write_full", path="a.py", content="2"),
        ]
        self.assertEqual([op.content for op in apply_precedence(ops)], ["2"])

    def test_merge_replace_ops_on_one_path(self):
        response = (
            invoke("replace_in_file", path="a.py", search="aaa", replace="AAA")
            + "\n"
            + invoke("replace_in_file", path="a.py", search="bbb", replace="BBB")
        )
        ops = parse_file_operations(response)
        self.assertEqual(len(ops), 1)
        self.assertEqual(ops[0].type, "edit")
        self.assertEqual(
            ops[0].content,
            "<<<<<<< SEARCH\naaa\n=======\nAAA\n>>>>>>> REPLACE\n\n"
            "<<<<<<< SEARCH\nbbb\n=======\nBBB\n>>>>>>> REPLACE",
        )
        self.assertEqual(apply_diff("aaa\nbbb\n", ops[0].content), "AAA\nBBB\n")

    def test_merge_keeps_first_position(self):
        ops = [
            FileOperation(type="edit", path="a.py", description="one", search="a", replace="A"),
            FileOperation(type="delete", path="b.py"),
            FileOperation(type="replace", path="a.py", description="two", search="c", replace="C"),
        ]
        merged = merge_operations(ops)
        self.assertEqual([(op.type, op.path) for op in merged], [("edit", "a.py"), ("delete", "b.py")])
        self.assertEqual(merged[0].description, "one / two")

    def test_single_replace_not_merged(self):
        ops = [
            FileOperation(type="replace", path="a.py", search="a", replace="A"),
            FileOperation(type="replace", path="b.py", search="b", replace="B"),
        ]
        self.assertEqual(merge_operations(ops), ops)


class TestRobustness(unittest.TestCase):
    def test_empty_and_non_string_input(self):
        self.assertEqual(parse_file_operations(""), [])
        self.assertEqual(parse_file_operations(None), [])
        self.assertEqual(parse_file_operations(42), [])

    def test_prose_only(self):
        self.assertEqual(parse_file_operations("Nothing to do here."), [])

    def test_garbage_does_not_raise(self):
        junk = "<<<FILE_OPERATION>>>\n\x00\x01<invoke name=\"write_to_file\">" * 5
        self.assertIsInstance(parse_file_operations(junk), list)

    def test_operations_are_immutable(self):
        op = FileOperation(type="delete", path="a.py")
        with self.assertRaises(dataclasses.FrozenInstanceError):
            op.path = "b.py"

    def test_clean_content_strips_trailing_fence(self):
        self.assertEqual(clean_content("x = 1\n```\n\n"), "x = 1")

    def test_clean_content_keeps_balanced_trailing_fence(self):
        self.assertEqual(clean_content("```bash\nx\n```"), "```bash\nx\n```")
        self.assertEqual(clean_content("```bash\nx\n```\n```\n"), "```bash\nx\n```")


if __name__ == "__main__":
    unittest.main()
