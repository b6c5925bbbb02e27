"""
PatchKit Python Wrapper — importable API over the tokenizer, extractor and
patch engine.

    from pk_wrapper import PatchKit

    kit = PatchKit()
    session = kit.stream()
    for chunk in chunks:
        shown = session.feed(chunk)

    outcome = kit.apply_response(response_text, {"app.py": current_text})
    for r in outcome.results:
        print(r.path, r.status)
    new_files = outcome.files

Everything here works on text; reading and writing files is the caller's job.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pk import PatchResult, apply_diff, next_content, plan_diff
from pk_config import PatchConfig, load_config
from pk_ops import FileOperation, parse_file_operations
from pk_stream import StreamTokenizer

logger = logging.getLogger(__name__)


@dataclass
class OperationResponse:
    """Outcome of one canonical operation."""
    success: bool
    path: str
    type: str
    status: str  # applied, no_match, unchanged, deleted
    content: Optional[str] = None
    match_types: List[str] = field(default_factory=list)
    skipped: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"success": self.success, "path": self.path, "type": self.type, "status": self.status}
        if self.match_types:
            d["match_types"] = self.match_types
        if self.skipped:
            d["skipped"] = self.skipped
        if self.error:
            d["error"] = self.error
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


@dataclass
class ResponseOutcome:
    results: List[OperationResponse]
    # path -> new content; None means the file is deleted
    files: Dict[str, Optional[str]]
    reads: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)


class PatchKit:
    """
    Turn model output into new file contents.

    Usage:
        kit = PatchKit()
        ops = kit.parse(response)
        new_text = kit.apply(old_text, diff_payload)   # None when it does not apply
        outcome = kit.apply_response(response, {"a.py": "..."})
    """

    def __init__(self, config: Optional[PatchConfig] = None):
        self.config = config or PatchConfig()

    @classmethod
    def from_config_file(cls, path: Optional[str] = None) -> "PatchKit":
        return cls(load_config(path))

    def stream(self) -> StreamTokenizer:
        """A fresh tokenizer for one live stream."""
        return StreamTokenizer()

    def parse(self, response: str) -> List[FileOperation]:
        return parse_file_operations(response)

    def apply(self, original: str, diff: str) -> Optional[str]:
        return apply_diff(original, diff, self.config)

    def plan(self, original: str, diff: str) -> PatchResult:
        return plan_diff(original, diff, self.config)

    def apply_operation(self, operation: FileOperation, current: Optional[str]) -> OperationResponse:
        """
        Compute what one operation does to ``current``.

        Args:
            operation: Canonical operation from parse().
            current: Current file content, or None if the file does not exist.

        Returns:
            OperationResponse; ``content`` is the next file content.
        """
        result = next_content(operation, current, self.config)
        return OperationResponse(
            success=result.ok,
            path=operation.path,
            type=operation.type,
            status=result.status,
            content=result.content,
            match_types=[m.match_type for m in result.matches],
            skipped=result.skipped,
            error=result.error,
        )

    def apply_response(self, response: str, files: Dict[str, Optional[str]]) -> ResponseOutcome:
        """
        Apply every operation in a model response to in-memory files.

        Operations run in order, each seeing the content left by the ones
        before it. A failed operation leaves its file untouched.

        Args:
            response: Full model response text.
            files: path -> current content (None or missing for absent files).

        Returns:
            ResponseOutcome with per-operation results and the new mapping.
        """
        state: Dict[str, Optional[str]] = dict(files)
        results: List[OperationResponse] = []
        reads: List[str] = []

        for op in self.parse(response):
            resp = self.apply_operation(op, state.get(op.path))
            results.append(resp)
            if not resp.success:
                logger.warning("%s on %s failed: %s", op.type, op.path, resp.error)
                continue
            if resp.status == "deleted":
                state[op.path] = None
            elif resp.status == "unchanged":
                reads.append(op.path)
            else:
                state[op.path] = resp.content

        return ResponseOutcome(results=results, files=state, reads=reads)

    # --- Tool definitions for LLM APIs ---

    @staticmethod
    def anthropic_tool_schemas() -> List[dict]:
        """Anthropic tool_use schemas for the invoke-format tools."""
        return [
            {
                "name": "write_to_file",
                "description": (
                    "Write the complete content of a file, replacing it entirely. "
                    "Use only for new files or full rewrites."
                ),
                "input_schema": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": "Relative path of the file"},
                        "description": {"type": "string", "description": "Brief description of the change"},
                        "content": {"type": "string", "description": "Complete file content"},
                    },
                    "required": ["path", "content"],
                },
            },
            {
                "name": "replace_in_file",
                "description": (
                    "Replace one region of a file. search must quote the existing "
                    "text, with enough surrounding lines to be unique."
                ),
                "input_schema": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": "Relative path of the file"},
                        "search": {"type": "string", "description": "Existing text to find"},
                        "replace": {"type": "string", "description": "Replacement text"},
                    },
                    "required": ["path", "search", "replace"],
                },
            },
        ]

    @classmethod
    def openai_function_schemas(cls) -> List[dict]:
        """The same tools in OpenAI function calling shape."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["input_schema"],
                },
            }
            for tool in cls.anthropic_tool_schemas()
        ]

    @staticmethod
    def tool_call_to_invoke(name: str, arguments: dict) -> str:
        """Render a structured tool call as invoke text parse() understands."""
        params = "\n".join(
            f'<parameter name="{key}">{value}</parameter>'
            for key, value in arguments.items()
        )
        return f'<invoke name="{name}">\n{params}\n</invoke>'

    @staticmethod
    def file_operation_prompt(compact: bool = False) -> str:
        """System-prompt text describing the bracket format."""
        if compact:
            return FILE_OPERATION_PROMPT_COMPACT
        return FILE_OPERATION_PROMPT


FILE_OPERATION_PROMPT_COMPACT = """You can perform file operations:

<<<FILE_OPERATION>>>
TYPE: create|write_full|edit|prepend|append|delete|read
PATH: relative/path/to/file
DESCRIPTION: Brief description
CONTENT:
```
content
```
<<<END_OPERATION>>>

- create / write_full: CONTENT is the complete file.
- edit: use SEARCH: and REPLACE: sections instead of CONTENT.
- prepend / append: CONTENT is only the text to add.
- read / delete: PATH only."""

FILE_OPERATION_PROMPT = """You can perform file operations with blocks of this form:

<<<FILE_OPERATION>>>
TYPE: create|write_full|edit|prepend|append|delete|read
PATH: relative/path/to/file
DESCRIPTION: Brief description of the change
CONTENT:
```
content
```
<<<END_OPERATION>>>

Types:
- create: new file. CONTENT is the complete file.
- write_full: replace the ENTIRE file. Only for full rewrites.
- edit: change part of a file. Give SEARCH: with the exact existing code and
  REPLACE: with the new code, each in its own fenced block.
- prepend / append: add CONTENT at the very start / end of the file.
- read: PATH only; the content is provided in the next turn.
- delete: PATH only.

Rules for edit:
- SEARCH must match the file, including indentation.
- Include enough context lines in SEARCH to make it unique.
- Several edits to one file may be separate blocks; they are applied
  top to bottom in one pass, so keep them in file order.

Example:
<<<FILE_OPERATION>>>
TYPE: edit
PATH: src/utils/helper.py
DESCRIPTION: Update return value
SEARCH:
```python
    return 'hello'
```
REPLACE:
```python
    return 'world'
```
<<<END_OPERATION>>>"""
