"""Extract file operations from a complete model response.

Two wire formats carry the same intent:

  * bracket blocks   ``<<<FILE_OPERATION>>> ... <<<END_OPERATION>>>``
  * invoke blocks    ``<invoke name="write_to_file|replace_in_file">``
                     with ``<parameter name="...">`` children

Both are normalized into FileOperation values, then:
  1. dedup        identical (type, path, content, search, replace) collapse
  2. precedence   a write_full on a path removes every other op on it
  3. merge        2+ edit/replace ops on one path become one ``edit`` whose
                  content is the concatenated SEARCH/REPLACE payload

parse_file_operations() never raises; malformed blocks are skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from pk_blocks import (
    BRACKET_TYPES,
    END_MARKER,
    START_MARKER,
    contains_diff_blocks,
    count_fences,
    format_search_replace,
    is_fence,
    read_block,
    strip_blank_edges,
    unescape_markup,
)

logger = logging.getLogger(__name__)

OPERATION_TYPES = BRACKET_TYPES
CONTENT_TYPES = frozenset({"create", "edit", "write_full", "replace", "prepend", "append"})
MERGE_TYPES = frozenset({"edit", "replace"})

# invoke tool name -> canonical type
INVOKE_TOOLS = {
    "write_to_file": "write_full",
    "replace_in_file": "replace",
    "edit": "edit",
    "prepend": "prepend",
    "append": "append",
}

_START_RE = re.compile(re.escape(START_MARKER), re.IGNORECASE)
_END_RE = re.compile(re.escape(END_MARKER), re.IGNORECASE)
_INVOKE_RE = re.compile(r'<invoke\s+name=["\']([\w-]+)["\']\s*>', re.IGNORECASE)
_INVOKE_CLOSE_RE = re.compile(r'<\s*/\s*invoke\s*>', re.IGNORECASE)
_TAG_RE = re.compile(r'<[^>]+>')
_CTRL_TOKEN_RE = re.compile(r'\s*<ctrl\d+>\s*', re.IGNORECASE)
_CTRL_CHAR_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f]')


@dataclass(frozen=True)
class FileOperation:
    """One canonical file operation."""
    type: str
    path: str
    description: str = ""
    content: Optional[str] = None
    search: Optional[str] = None
    replace: Optional[str] = None

    @property
    def identity(self) -> Tuple[str, str, str, str, str]:
        return (
            self.type,
            self.path,
            _normalize(self.content),
            _normalize(self.search),
            _normalize(self.replace),
        )

    def diff_payload(self) -> Optional[str]:
        """SEARCH/REPLACE payload for this op, or None if it carries none."""
        if self.search is not None and self.replace is not None:
            return format_search_replace(self.search, self.replace)
        if contains_diff_blocks(self.content):
            return self.content
        return None

    def to_dict(self) -> dict:
        d = {"type": self.type, "path": self.path, "description": self.description}
        for name in ("content", "search", "replace"):
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        return d


def _normalize(text: Optional[str]) -> str:
    if text is None:
        return ""
    return text.replace("\r\n", "\n").rstrip()


# ---------------------------------------------------------------------------
# Content clean-up
# ---------------------------------------------------------------------------

def remove_trailing_fences(text: str) -> str:
    """Drop stray closing code fences (and blank lines) at the end.

    A trailing fence that closes a fenced block inside the body is kept.
    """
    lines = text.split("\n")
    while lines and not lines[-1].strip():
        lines.pop()
    while lines and is_fence(lines[-1]) and count_fences(lines) % 2:
        lines.pop()
        while lines and not lines[-1].strip():
            lines.pop()
    return "\n".join(lines)


def remove_control_artifacts(text: str) -> str:
    """Remove ``<ctrlNN>`` tokens and raw control characters (not tab/LF/CR)."""
    text = _CTRL_TOKEN_RE.sub("", text)
    return _CTRL_CHAR_RE.sub("", text)


def clean_content(text: str) -> str:
    return remove_trailing_fences(remove_control_artifacts(text))


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def _bracket_operations(raw: str) -> Tuple[List[Tuple[int, FileOperation]], List[Tuple[int, int]]]:
    """Parse bracket blocks; return (positioned ops, spans covered by blocks)."""
    found: List[Tuple[int, FileOperation]] = []
    spans: List[Tuple[int, int]] = []
    starts = list(_START_RE.finditer(raw))

    for i, start in enumerate(starts):
        body_start = start.end()
        limit = starts[i + 1].start() if i + 1 < len(starts) else len(raw)
        end = _END_RE.search(raw, body_start, limit)
        if end:
            body_end, span_end = end.start(), end.end()
        else:
            # Unterminated: runs to the next start marker or end of text.
            body_end = span_end = limit
        spans.append((start.start(), span_end))

        fields = read_block(raw[body_start:body_end])
        if fields.type not in OPERATION_TYPES:
            logger.debug("Skipping block at %d: unrecognized TYPE %r", start.start(), fields.type)
            continue
        if not fields.path:
            logger.debug("Skipping %s block at %d: missing PATH", fields.type, start.start())
            continue
        if fields.search is not None and fields.replace is None:
            logger.debug("Skipping %s block at %d: SEARCH without REPLACE", fields.type, start.start())
            continue

        content = fields.content
        if content is not None and fields.type in CONTENT_TYPES:
            content = clean_content(content)
        found.append((start.start(), FileOperation(
            type=fields.type,
            path=fields.path,
            description=fields.description or "",
            content=content,
            search=fields.search,
            replace=fields.replace,
        )))
    return found, spans


def _param(inner: str, *names: str) -> Optional[str]:
    for name in names:
        m = re.search(
            r'<parameter\s+name=["\']%s["\'][^>]*>(.*?)</parameter>' % re.escape(name),
            inner,
            re.IGNORECASE | re.DOTALL,
        )
        if m:
            return m.group(1)
    return None


def _invoke_operation(tool: str, inner: str) -> Optional[FileOperation]:
    op_type = INVOKE_TOOLS[tool]
    path = _param(inner, "path")
    path = _TAG_RE.sub("", path).strip() if path is not None else ""
    if not path:
        return None
    description = _param(inner, "description")
    description = _TAG_RE.sub("", description).strip() if description is not None else ""

    body = _param(inner, "content", "diff")
    search = _param(inner, "search", "search_text")
    replace = _param(inner, "replace", "replace_text")
    body = strip_blank_edges(body) if body is not None else None
    search = strip_blank_edges(search) if search is not None else None
    replace = strip_blank_edges(replace) if replace is not None else None

    if op_type in ("replace", "edit"):
        has_pair = bool(search) and replace is not None
        if not has_pair:
            search = replace = None
            if not body or (op_type == "replace" and not contains_diff_blocks(body)):
                return None
    elif body is None or (op_type != "write_full" and not body):
        return None

    if body is not None:
        body = clean_content(body)
    return FileOperation(
        type=op_type,
        path=path,
        description=description,
        content=body,
        search=search,
        replace=replace,
    )


def _invoke_operations(raw: str, excluded: List[Tuple[int, int]]) -> List[Tuple[int, FileOperation]]:
    found: List[Tuple[int, FileOperation]] = []
    for m in _INVOKE_RE.finditer(raw):
        pos = m.start()
        if any(lo <= pos < hi for lo, hi in excluded):
            continue
        tool = m.group(1).lower()
        if tool not in INVOKE_TOOLS:
            continue
        close = _INVOKE_CLOSE_RE.search(raw, m.end())
        inner = raw[m.end():close.start() if close else len(raw)]
        op = _invoke_operation(tool, inner)
        if op is None:
            logger.debug("Skipping %s invoke at %d: missing required parameters", tool, pos)
            continue
        found.append((pos, op))
    return found


def extract_operations(response: str) -> List[FileOperation]:
    """All operations from both formats, in order of first appearance."""
    raw = unescape_markup(response)
    bracket_ops, spans = _bracket_operations(raw)
    invoke_ops = _invoke_operations(raw, spans)
    positioned = sorted(bracket_ops + invoke_ops, key=lambda item: item[0])
    return [op for _, op in positioned]


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def dedupe_operations(ops: Iterable[FileOperation]) -> List[FileOperation]:
    """Collapse identical operations, keeping the earliest."""
    seen = set()
    result = []
    for op in ops:
        if op.identity in seen:
            continue
        seen.add(op.identity)
        result.append(op)
    return result


def apply_precedence(ops: List[FileOperation]) -> List[FileOperation]:
    """Keep only the last write_full for any path that has one."""
    last_full: Dict[str, int] = {}
    for i, op in enumerate(ops):
        if op.type == "write_full":
            last_full[op.path] = i
    if not last_full:
        return list(ops)
    result = []
    for i, op in enumerate(ops):
        if op.path in last_full and last_full[op.path] != i:
            logger.info("Dropping %s on %s: superseded by write_full", op.type, op.path)
            continue
        result.append(op)
    return result


def merge_operations(ops: List[FileOperation]) -> List[FileOperation]:
    """Fold 2+ edit/replace ops on one path into a single ``edit``.

    The merged op sits where the first of the group was and its content
    holds each SEARCH/REPLACE pair in original order.
    """
    groups: Dict[str, List[int]] = {}
    for i, op in enumerate(ops):
        if op.type in MERGE_TYPES and op.diff_payload() is not None:
            groups.setdefault(op.path, []).append(i)

    merged_at: Dict[int, FileOperation] = {}
    absorbed = set()
    for path, indexes in groups.items():
        if len(indexes) < 2:
            continue
        members = [ops[i] for i in indexes]
        merged_at[indexes[0]] = FileOperation(
            type="edit",
            path=path,
            description=" / ".join(op.description for op in members if op.description),
            content="\n\n".join(op.diff_payload() for op in members),
        )
        absorbed.update(indexes[1:])
        logger.debug("Merged %d edits on %s", len(members), path)

    result = []
    for i, op in enumerate(ops):
        if i in absorbed:
            continue
        result.append(merged_at.get(i, op))
    return result


def normalize_operations(ops: Iterable[FileOperation]) -> List[FileOperation]:
    return merge_operations(apply_precedence(dedupe_operations(ops)))


def parse_file_operations(response: str) -> List[FileOperation]:
    """Canonical operations found in ``response``; ``[]`` when there are none."""
    if not isinstance(response, str) or not response:
        return []
    try:
        return normalize_operations(extract_operations(response))
    except Exception:
        logger.exception("Failed to parse file operations")
        return []
