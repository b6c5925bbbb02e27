"""Wire grammar shared by the stream tokenizer, extractor and patch engine.

A bracket block looks like::

    <<<FILE_OPERATION>>>
    TYPE: edit
    PATH: src/app.py
    DESCRIPTION: rename helper
    SEARCH:
    ```python
    def old():
    ```
    REPLACE:
    ```python
    def new():
    ```
    <<<END_OPERATION>>>

Both markers may also arrive HTML-escaped (``&lt;&lt;&lt;FILE_OPERATION&gt;&gt;&gt;``).
``BlockReader`` consumes the inside of a block one line at a time, so the
tokenizer can feed it lines as their newline arrives and the extractor can
feed it a whole block at once; both end up with the same fields.

The SEARCH/REPLACE diff payload (``<<<<<<< SEARCH`` / ``=======`` /
``>>>>>>> REPLACE``) is defined at the bottom of this module.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

START_MARKER = "<<<FILE_OPERATION>>>"
END_MARKER = "<<<END_OPERATION>>>"


def escape_marker(marker: str) -> str:
    """Return the HTML-entity-escaped form of a marker."""
    return marker.replace("<", "&lt;").replace(">", "&gt;")


START_MARKERS: Tuple[str, ...] = (START_MARKER, escape_marker(START_MARKER))
END_MARKERS: Tuple[str, ...] = (END_MARKER, escape_marker(END_MARKER))

# Longest literal the tokenizer may see split across chunks.
LONGEST_MARKER = max(len(m) for m in START_MARKERS + END_MARKERS)
HOLD_BACK = LONGEST_MARKER - 1

BRACKET_TYPES = (
    "create", "edit", "delete", "read", "prepend", "append",
    "write_full", "replace",
)

SECTIONS = ("content", "search", "replace")

_TYPE_RE = re.compile(r'^TYPE:\s*([A-Za-z_]+)', re.IGNORECASE)
_PATH_RE = re.compile(r'^PATH:\s*[`\'"]?([^`\'"\r\n]+)[`\'"]?', re.IGNORECASE)
_DESC_RE = re.compile(r'^DESCRIPTION:\s*(.*)$', re.IGNORECASE)
_SECTION_RE = re.compile(r'^(CONTENT|SEARCH|REPLACE):\s*(.*)$', re.IGNORECASE)
_FIELD_RE = re.compile(r'^(TYPE|PATH|DESCRIPTION|CONTENT|SEARCH|REPLACE):')
_FENCE_RE = re.compile(r'^`{3,}')


def find_marker(text: str, markers: Tuple[str, ...], start: int = 0) -> Tuple[int, int]:
    """Find the earliest occurrence of any marker form.

    Returns (index, length), or (-1, 0) when none is present.
    """
    best_idx, best_len = -1, 0
    for marker in markers:
        idx = text.find(marker, start)
        if idx != -1 and (best_idx == -1 or idx < best_idx):
            best_idx, best_len = idx, len(marker)
    return best_idx, best_len


def unescape_markup(text: str) -> str:
    """Undo the ``&lt;``/``&gt;`` escaping some transports apply."""
    return text.replace("&lt;", "<").replace("&gt;", ">")


def is_fence(line: str) -> bool:
    return bool(_FENCE_RE.match(line.strip()))


def strip_blank_edges(text: str) -> str:
    """Drop leading and trailing blank lines, keep indentation of the rest."""
    lines = text.split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


@dataclass
class BlockFields:
    """Fields read from the inside of one bracket block."""
    type: Optional[str] = None
    path: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = None
    search: Optional[str] = None
    replace: Optional[str] = None


class BlockReader:
    """Incremental line consumer for the inside of a bracket block.

    Outside a section the reader recognizes ``TYPE:``, ``PATH:``,
    ``DESCRIPTION:`` and the section headers ``CONTENT:``, ``SEARCH:``,
    ``REPLACE:``. A section runs until the next line that starts with a
    field header, or the end of the block. An opening fence is skipped and
    the matching closing fence is dropped when the body is finalized; any
    fences in between are body text.
    """

    def __init__(self) -> None:
        self.fields = BlockFields()
        self.section: Optional[str] = None
        self.fenced = False
        self._bodies = {name: [] for name in SECTIONS}
        self._fenced = set()
        self._seen = set()

    @property
    def in_body(self) -> bool:
        return self.section is not None

    @property
    def started(self) -> bool:
        """True once any header or section line has been read."""
        return bool(self._seen)

    def feed_line(self, line: str) -> None:
        if line.endswith("\r"):
            line = line[:-1]
        trimmed = line.strip()

        if self.section is not None:
            body = self._bodies[self.section]
            if not self.fenced and is_fence(trimmed) and not any(b.strip() for b in body):
                self.fenced = True
                self._fenced.add(self.section)
                body.clear()
                return
            if not _FIELD_RE.match(trimmed):
                body.append(line)
                self._sync(self.section)
                return
            self._close_section()

        if not trimmed:
            return
        self._header_line(trimmed)

    def finish(self) -> BlockFields:
        """Close any open section and return the final fields."""
        if self.section is not None:
            self._close_section()
        for name in SECTIONS:
            if name in self._seen:
                setattr(self.fields, name, _finalize_body(self._bodies[name], name in self._fenced))
        return self.fields

    def _header_line(self, trimmed: str) -> None:
        m = _TYPE_RE.match(trimmed)
        if m:
            self.fields.type = m.group(1).lower()
            self._seen.add("type")
            return
        m = _PATH_RE.match(trimmed)
        if m:
            self.fields.path = m.group(1).strip()
            self._seen.add("path")
            return
        m = _DESC_RE.match(trimmed)
        if m:
            self.fields.description = m.group(1).strip()
            self._seen.add("description")
            return
        m = _SECTION_RE.match(trimmed)
        if m:
            self._open_section(m.group(1).lower(), m.group(2))

    def _open_section(self, name: str, rest: str) -> None:
        self.section = name
        self.fenced = False
        self._bodies[name] = []
        self._fenced.discard(name)
        self._seen.add(name)
        rest = rest.strip()
        if is_fence(rest):
            self.fenced = True
            self._fenced.add(name)
        elif rest:
            self._bodies[name].append(rest)
        self._sync(name)

    def _close_section(self) -> None:
        self._sync(self.section)
        self.section = None
        self.fenced = False

    def _sync(self, name: str) -> None:
        setattr(self.fields, name, "\n".join(self._bodies[name]))


def count_fences(lines: List[str]) -> int:
    return sum(1 for line in lines if is_fence(line))


def _finalize_body(lines: List[str], fenced: bool = False) -> str:
    lines = list(lines)
    while lines and not lines[-1].strip():
        lines.pop()
    # One closing fence: the one matching the skipped opener, or a stray
    # one that leaves an unfenced body unbalanced.
    if lines and is_fence(lines[-1]) and (fenced or count_fences(lines) % 2):
        lines.pop()
    return strip_blank_edges("\n".join(lines))


def read_block(body: str) -> BlockFields:
    """Read all fields from the text between the two markers."""
    reader = BlockReader()
    for line in body.split("\n"):
        reader.feed_line(line)
    return reader.finish()


# -- SEARCH/REPLACE diff payload ---------------------------------------------

DIFF_SEARCH_RE = re.compile(r'^<{3,} SEARCH\s*$')
DIFF_DIVIDER_RE = re.compile(r'^={3,}\s*$')
DIFF_REPLACE_RE = re.compile(r'^>{3,} REPLACE\s*$')


def contains_diff_blocks(text: Optional[str]) -> bool:
    """True if ``text`` holds at least one ``<<<<<<< SEARCH`` line."""
    if not text:
        return False
    return any(DIFF_SEARCH_RE.match(line.rstrip("\r")) for line in text.split("\n"))


def format_search_replace(search: str, replace: str) -> str:
    """Render one pair in the diff payload format the patch engine reads."""
    parts = ["<<<<<<< SEARCH"]
    if search:
        parts.append(search)
    parts.append("=======")
    if replace:
        parts.append(replace)
    parts.append(">>>>>>> REPLACE")
    return "\n".join(parts)
