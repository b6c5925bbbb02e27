"""Incremental tokenizer for FILE_OPERATION blocks in a live model stream.

Chunks may split anywhere, including inside a marker (``<<<FILE_OP`` in one
chunk, ``ERATION>>>`` in the next). The tokenizer separates prose that is
safe to display from the operation currently being streamed:

    tok = StreamTokenizer()
    for chunk in stream:
        result = tok.feed(chunk)
        ui.append_text(result.text_content)
        if result.operation:
            ui.show_operation(result.operation)
    tail = tok.finish()

One instance per live stream. ``reset()`` makes an instance reusable.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from pk_blocks import END_MARKERS, HOLD_BACK, START_MARKERS, BlockReader, find_marker

logger = logging.getLogger(__name__)


class Mode(enum.Enum):
    OUTSIDE = "outside"
    IN_HEADER = "in_header"
    IN_BODY = "in_body"


@dataclass
class OperationView:
    """What is known so far about the operation being streamed."""
    type: Optional[str] = None
    path: Optional[str] = None
    description: Optional[str] = None
    content_so_far: str = ""
    search: Optional[str] = None
    replace: Optional[str] = None
    state: str = "pending"  # pending, streaming, complete
    is_complete: bool = False
    raw: str = ""  # block text from start marker on, markers included

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


@dataclass
class FeedResult:
    text_content: str
    operation: Optional[OperationView]
    completed: List[OperationView] = field(default_factory=list)


class StreamTokenizer:
    """Finite-state tokenizer: OUTSIDE → IN_HEADER ⇄ IN_BODY → OUTSIDE.

    While outside an operation the last ``HOLD_BACK`` characters are never
    flushed as prose, so a start marker split across chunks is caught once
    the rest of it arrives. Inside an operation only whole lines are read
    (a header field is final once its newline is seen), and the same
    hold-back keeps a split end marker out of the body.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._reader: Optional[BlockReader] = None
        self._view: Optional[OperationView] = None
        self._raw: List[str] = []

    @property
    def mode(self) -> Mode:
        if self._reader is None:
            return Mode.OUTSIDE
        return Mode.IN_BODY if self._reader.in_body else Mode.IN_HEADER

    def get_current_operation(self) -> Optional[OperationView]:
        """Snapshot of the active operation, or None if none has started."""
        return dataclasses.replace(self._view) if self._view else None

    def feed(self, chunk: str) -> FeedResult:
        self._buffer += chunk
        text_parts: List[str] = []
        completed: List[OperationView] = []

        while True:
            if self._reader is None:
                idx, length = find_marker(self._buffer, START_MARKERS)
                if idx == -1:
                    safe = len(self._buffer) - HOLD_BACK
                    if safe > 0:
                        text_parts.append(self._buffer[:safe])
                        self._buffer = self._buffer[safe:]
                    break
                text_parts.append(self._buffer[:idx])
                self._begin(self._buffer[idx:idx + length])
                self._buffer = self._buffer[idx + length:]
                continue

            idx, _ = find_marker(self._buffer, END_MARKERS)
            if idx == -1:
                self._consume_lines(len(self._buffer) - HOLD_BACK)
                break
            completed.append(self._complete(idx))

        return FeedResult(
            text_content="".join(text_parts),
            operation=self._result_view(completed),
            completed=completed,
        )

    def finish(self) -> FeedResult:
        """Flush what the hold-back retained once the source is exhausted.

        An operation that never saw its end marker stays ``streaming``.
        """
        if self._reader is None:
            text, self._buffer = self._buffer, ""
            return FeedResult(text_content=text, operation=None)
        self._consume_lines(len(self._buffer))
        logger.debug("Stream ended inside an operation for %s", self._view.path)
        return FeedResult(text_content="", operation=self.get_current_operation())

    # -- transitions -----------------------------------------------------

    def _begin(self, marker: str) -> None:
        self._reader = BlockReader()
        self._view = OperationView()
        self._raw = [marker]

    def _consume_lines(self, limit: int) -> None:
        """Feed every complete line that ends before ``limit``."""
        if limit <= 0:
            return
        cut = self._buffer.rfind("\n", 0, limit)
        if cut == -1:
            return
        text = self._buffer[:cut + 1]
        self._buffer = self._buffer[cut + 1:]
        self._raw.append(text)
        for line in text.split("\n")[:-1]:
            self._reader.feed_line(line)
        self._refresh_view()

    def _complete(self, idx: int) -> OperationView:
        self._consume_lines(idx)
        idx, length = find_marker(self._buffer, END_MARKERS)
        # Text before the end marker on its own line is the last line.
        remainder = self._buffer[:idx]
        if remainder:
            self._reader.feed_line(remainder)
        self._raw.append(self._buffer[:idx + length])
        self._buffer = self._buffer[idx + length:]

        fields = self._reader.finish()
        view = self._view
        view.type = fields.type
        view.path = fields.path
        view.description = fields.description
        view.content_so_far = fields.content or ""
        view.search = fields.search
        view.replace = fields.replace
        view.state = "complete"
        view.is_complete = True
        view.raw = "".join(self._raw)
        logger.debug("Operation complete: %s %s", view.type, view.path)

        self._reader = None
        self._view = None
        self._raw = []
        return view

    def _refresh_view(self) -> None:
        fields = self._reader.fields
        view = self._view
        view.type = fields.type
        view.path = fields.path
        view.description = fields.description
        view.content_so_far = fields.content or ""
        view.search = fields.search
        view.replace = fields.replace
        if self._reader.started:
            view.state = "streaming"
        view.raw = "".join(self._raw)

    def _result_view(self, completed: List[OperationView]) -> Optional[OperationView]:
        if self._view is not None:
            return self.get_current_operation()
        if completed:
            return completed[-1]
        return None
