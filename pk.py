#!/usr/bin/env python3
"""PatchKit — apply model-written SEARCH/REPLACE edits to file content.

Each SEARCH block is located in the current content with a 4-tier cascade:
  1. Exact substring match (from the end of the previous accepted match)
  2. Line-trimmed match (indentation / trailing whitespace drift)
  3. Block-anchor match (first and last lines agree, search >= 3 lines)
  4. Full-file exact match from offset 0 (flagged out-of-order)

A patch is all-or-nothing: if any SEARCH block cannot be located, nothing
is applied. Pairs that look destructive (large deletions, drastic shrink,
no-ops) are dropped before composition.

Exit codes: 0=applied, 1=no match or error
"""

import argparse
import bisect
import difflib
import json
import logging
import os
import sys
import tomllib
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import yaml

from pk_blocks import DIFF_DIVIDER_RE, DIFF_REPLACE_RE, DIFF_SEARCH_RE
from pk_config import PatchConfig, load_config
from pk_ops import parse_file_operations
from pk_stream import StreamTokenizer

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    start: int
    end: int
    matched_text: str
    match_type: str  # "exact", "line_trimmed", "block_anchor", "full_file", "empty"
    confidence: float
    out_of_order: bool = False


@dataclass
class DiffBlock:
    search: str
    replace: str
    complete: bool = True  # closing ">>>>>>> REPLACE" line was seen


@dataclass
class PatchResult:
    status: str  # "applied", "no_match", "unchanged", "deleted"
    content: Optional[str] = None
    matches: List[MatchResult] = field(default_factory=list)
    skipped: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "no_match"


def parse_diff_blocks(payload: str) -> List[DiffBlock]:
    """Split a diff payload into (search, replace) pairs.

    Every body line keeps its trailing newline, so a one-line SEARCH of
    ``foo`` is the text ``"foo\\n"``. A block that reached its divider but
    not its closing line is returned with ``complete=False``.
    """
    blocks: List[DiffBlock] = []
    search: List[str] = []
    replace: List[str] = []
    section = None  # None, "search", "replace"

    for line in payload.replace("\r\n", "\n").split("\n"):
        if DIFF_SEARCH_RE.match(line):
            if section == "replace":
                blocks.append(DiffBlock("".join(search), "".join(replace), complete=False))
            section, search, replace = "search", [], []
            continue
        if section == "search" and DIFF_DIVIDER_RE.match(line):
            section = "replace"
            continue
        if section == "replace" and DIFF_REPLACE_RE.match(line):
            blocks.append(DiffBlock("".join(search), "".join(replace)))
            section, search, replace = None, [], []
            continue
        if section == "search":
            search.append(line + "\n")
        elif section == "replace":
            replace.append(line + "\n")

    if section == "replace":
        blocks.append(DiffBlock("".join(search), "".join(replace), complete=False))
    return blocks


# ---------------------------------------------------------------------------
# Matching tiers
# ---------------------------------------------------------------------------

def _search_lines(search: str) -> List[str]:
    lines = search.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _line_starts(lines: List[str]) -> List[int]:
    starts, pos = [], 0
    for line in lines:
        starts.append(pos)
        pos += len(line) + 1
    return starts


def _line_span(content: str, starts: List[int], first: int, count: int) -> Tuple[int, int]:
    end_line = first + count
    end = starts[end_line] if end_line < len(starts) else len(content)
    return starts[first], end


def find_exact_match(content: str, search: str, start: int = 0) -> Optional[MatchResult]:
    """Tier 1: exact substring at or after ``start``."""
    idx = content.find(search, start)
    if idx == -1:
        return None
    return MatchResult(
        start=idx,
        end=idx + len(search),
        matched_text=search,
        match_type="exact",
        confidence=1.0,
    )


def find_line_trimmed_match(content: str, search: str, start: int = 0) -> Optional[MatchResult]:
    """Tier 2: a run of whole lines whose stripped text equals the search lines."""
    content_lines = content.split("\n")
    wanted = [line.strip() for line in _search_lines(search)]
    if not wanted:
        return None
    starts = _line_starts(content_lines)
    first = bisect.bisect_left(starts, start)

    for i in range(first, len(content_lines) - len(wanted) + 1):
        if all(content_lines[i + j].strip() == w for j, w in enumerate(wanted)):
            s, e = _line_span(content, starts, i, len(wanted))
            return MatchResult(
                start=s,
                end=e,
                matched_text=content[s:e],
                match_type="line_trimmed",
                confidence=0.95,
            )
    return None


def find_block_anchor_match(content: str, search: str, start: int = 0) -> Optional[MatchResult]:
    """Tier 3: first and last stripped lines agree over a same-sized run.

    Only for searches of three lines or more; the interior may differ.
    """
    lines = _search_lines(search)
    if len(lines) < 3:
        return None
    content_lines = content.split("\n")
    first_line, last_line, size = lines[0].strip(), lines[-1].strip(), len(lines)
    starts = _line_starts(content_lines)
    first = bisect.bisect_left(starts, start)

    for i in range(first, len(content_lines) - size + 1):
        if content_lines[i].strip() != first_line:
            continue
        if content_lines[i + size - 1].strip() != last_line:
            continue
        s, e = _line_span(content, starts, i, size)
        matched = content[s:e]
        return MatchResult(
            start=s,
            end=e,
            matched_text=matched,
            match_type="block_anchor",
            confidence=round(difflib.SequenceMatcher(None, search, matched).ratio(), 4),
        )
    return None


def find_full_file_match(content: str, search: str, cursor: int = 0) -> Optional[MatchResult]:
    """Tier 4: exact match anywhere in the file, flagged if before ``cursor``."""
    match = find_exact_match(content, search, 0)
    if match is None:
        return None
    match.match_type = "full_file"
    match.out_of_order = match.start < cursor
    return match


def find_block_match(content: str, search: str, cursor: int = 0) -> Optional[MatchResult]:
    """Locate ``search`` trying each tier in order; None if no tier resolves it."""
    match = find_exact_match(content, search, cursor)
    if match is None:
        match = find_line_trimmed_match(content, search, cursor)
    if match is None:
        match = find_block_anchor_match(content, search, cursor)
    if match is None:
        match = find_full_file_match(content, search, cursor)
    if match is not None and match.match_type != "exact":
        logger.debug("SEARCH resolved by %s at %d", match.match_type, match.start)
    return match


def is_suspicious_edit(search: str, replace: str, config: Optional[PatchConfig] = None) -> Optional[str]:
    """Return why a pair looks destructive, or None if it is fine."""
    config = config or PatchConfig()
    search_lines = sum(1 for line in search.split("\n") if line.strip())
    if not replace.strip() and search_lines > config.suspicious_max_deleted_lines:
        return f"replacement empties {search_lines} lines"
    if (len(search) > config.suspicious_min_search_chars
            and len(replace) < len(search) * config.suspicious_min_ratio):
        return f"replacement shrinks {len(search)} chars to {len(replace)}"
    if config.reject_noop and search == replace:
        return "search and replace are identical"
    return None


# ---------------------------------------------------------------------------
# Applying a payload
# ---------------------------------------------------------------------------

def _overlaps(match: MatchResult, accepted: List[Tuple[MatchResult, str]]) -> bool:
    return any(match.start < m.end and m.start < match.end for m, _ in accepted)


def plan_diff(original: str, diff: str, config: Optional[PatchConfig] = None) -> PatchResult:
    """Apply a SEARCH/REPLACE payload to ``original`` and report how.

    A file whose every line ends in CRLF is matched with its endings folded
    to LF (match offsets refer to that text) and composed back to CRLF. A
    file with mixed endings is matched and composed as it is.
    """
    config = config or PatchConfig()
    use_crlf = "\r\n" in original and original.count("\n") == original.count("\r\n")
    text = original.replace("\r\n", "\n") if use_crlf else original

    blocks = parse_diff_blocks(diff)
    if not blocks:
        return PatchResult(status="no_match", error="No SEARCH/REPLACE blocks found")

    accepted: List[Tuple[MatchResult, str]] = []
    skipped = 0
    cursor = 0
    for n, block in enumerate(blocks, 1):
        if not block.search:
            if text:
                return PatchResult(
                    status="no_match",
                    error=f"Block {n}: empty SEARCH against non-empty content",
                )
            match = MatchResult(start=0, end=0, matched_text="", match_type="empty", confidence=1.0)
        else:
            match = find_block_match(text, block.search, cursor)
            if match is None:
                return PatchResult(status="no_match", error=f"Block {n}: SEARCH text not found")

        if not block.complete:
            logger.warning("Block %d has no closing REPLACE line; not applied", n)
            skipped += 1
            continue
        reason = is_suspicious_edit(block.search, block.replace, config)
        if reason:
            logger.warning("Dropping block %d: %s", n, reason)
            skipped += 1
            continue
        if _overlaps(match, accepted):
            return PatchResult(status="no_match", error=f"Block {n}: overlaps an earlier block")

        accepted.append((match, block.replace))
        if match.out_of_order:
            logger.info("Block %d matched out of order at %d", n, match.start)
            cursor = 0
        else:
            cursor = match.end

    if not accepted:
        return PatchResult(status="no_match", skipped=skipped, error="No applicable blocks")

    accepted.sort(key=lambda item: item[0].start)
    parts, pos = [], 0
    for match, replacement in accepted:
        parts.append(text[pos:match.start])
        parts.append(replacement)
        pos = match.end
    parts.append(text[pos:])
    new_content = "".join(parts)
    if use_crlf:
        new_content = new_content.replace("\n", "\r\n")

    return PatchResult(
        status="applied",
        content=new_content,
        matches=[m for m, _ in accepted],
        skipped=skipped,
    )


def apply_diff(original: str, diff: str, config: Optional[PatchConfig] = None) -> Optional[str]:
    """New content after applying ``diff``, or None when it does not apply."""
    result = plan_diff(original, diff, config)
    return result.content if result.status == "applied" else None


def _join(first: str, second: str) -> str:
    if first and second and not first.endswith("\n"):
        return first + "\n" + second
    return first + second


def next_content(operation, current: Optional[str], config: Optional[PatchConfig] = None) -> PatchResult:
    """Content that ``operation`` (a pk_ops.FileOperation) produces from ``current``."""
    current = current or ""
    body = operation.content or ""

    if operation.type in ("create", "write_full"):
        return PatchResult(status="applied", content=body)
    if operation.type in ("edit", "replace"):
        payload = operation.diff_payload()
        if payload is None:
            if operation.content is None:
                return PatchResult(status="no_match", error="No SEARCH/REPLACE pair or content to apply")
            # An edit with plain CONTENT rewrites the file.
            return PatchResult(status="applied", content=body)
        return plan_diff(current, payload, config)
    if operation.type == "prepend":
        return PatchResult(status="applied", content=_join(body, current))
    if operation.type == "append":
        return PatchResult(status="applied", content=_join(current, body))
    if operation.type == "read":
        return PatchResult(status="unchanged", content=current)
    if operation.type == "delete":
        return PatchResult(status="deleted")
    raise ValueError(f"Unknown operation type: {operation.type}")


# ---------------------------------------------------------------------------
# Syntax validation
# ---------------------------------------------------------------------------

def _parse_python(content: str, file_path: str) -> None:
    compile(content, file_path, 'exec')


# extension -> (label, parse(content, path), errors that mean "invalid")
_VALIDATORS = {
    '.py': ("Python", _parse_python, (SyntaxError, ValueError)),
    '.json': ("JSON", lambda text, _: json.loads(text), (ValueError,)),
    '.xml': ("XML", lambda text, _: ET.fromstring(text), (ET.ParseError,)),
    '.html': ("XML/HTML", lambda text, _: ET.fromstring(text), (ET.ParseError,)),
    '.htm': ("XML/HTML", lambda text, _: ET.fromstring(text), (ET.ParseError,)),
    '.yaml': ("YAML", lambda text, _: yaml.safe_load(text), (yaml.YAMLError,)),
    '.yml': ("YAML", lambda text, _: yaml.safe_load(text), (yaml.YAMLError,)),
    '.toml': ("TOML", lambda text, _: tomllib.loads(text), (tomllib.TOMLDecodeError,)),
}


def validate_syntax(file_path: str, content: str) -> Tuple[bool, Optional[str]]:
    """Check that patched content still parses, chosen by file extension.

    Returns (valid, error_message). Extensions without a parser pass.
    """
    entry = _VALIDATORS.get(os.path.splitext(file_path)[1].lower())
    if entry is None:
        return True, None
    label, parse, errors = entry
    try:
        parse(content, file_path)
    except errors as e:
        logger.debug("%s does not parse as %s: %s", file_path, label, e)
        return False, f"{label} syntax error: {e}"
    return True, None


def render_diff(before: str, after: str, file_path: str) -> str:
    """Unified diff of one file's change, with ``a/`` and ``b/`` path prefixes."""
    name = file_path.replace(os.sep, "/").lstrip("/")
    return "".join(difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{name}",
        tofile=f"b/{name}",
    ))


def match_to_dict(match: MatchResult) -> dict:
    return {
        "match_type": match.match_type,
        "start": match.start,
        "end": match.end,
        "confidence": match.confidence,
        "out_of_order": match.out_of_order,
    }


def result_to_dict(result: PatchResult, file: Optional[str] = None, include_content: bool = False) -> dict:
    """Convert PatchResult to JSON-serializable dict."""
    d = {"status": result.status}
    if file is not None:
        d["file"] = file
    if result.matches:
        d["matches"] = [match_to_dict(m) for m in result.matches]
    if result.skipped:
        d["skipped"] = result.skipped
    if result.error is not None:
        d["error"] = result.error
    if include_content and result.content is not None:
        d["content"] = result.content
    return d


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _read_text(path: str) -> str:
    with open(path, 'rb') as f:
        return f.read().decode('utf-8', errors='replace')


def _read_input(args) -> str:
    if getattr(args, "input", None):
        return _read_text(args.input)
    return sys.stdin.read()


def _cmd_apply(args, config: PatchConfig) -> int:
    if args.stdin:
        diff = sys.stdin.read()
    elif args.diff:
        diff = _read_text(args.diff)
    else:
        print(json.dumps({"status": "error", "error": "Must provide --diff or --stdin"}))
        return 1

    try:
        original = _read_text(args.file)
    except FileNotFoundError:
        print(json.dumps({"status": "error", "file": args.file, "error": f"File not found: {args.file}"}))
        return 1
    except OSError as e:
        print(json.dumps({"status": "error", "file": args.file, "error": str(e)}))
        return 1

    result = plan_diff(original, diff, config)
    out = result_to_dict(result, file=args.file)
    if result.status != "applied":
        print(json.dumps(out, indent=2))
        return 1

    diff_text = render_diff(original, result.content, args.file)
    if args.validate:
        valid, err = validate_syntax(args.file, result.content)
        out["validated"] = valid
        if not valid:
            out["status"] = "validation_error"
            out["error"] = err
            print(json.dumps(out, indent=2))
            return 1

    if args.show_diff and diff_text:
        print(diff_text, file=sys.stderr, end='')
    if not args.dry_run:
        with open(args.file, 'wb') as f:
            f.write(result.content.encode('utf-8'))
    out["diff"] = diff_text
    print(json.dumps(out, indent=2))
    return 0


def _cmd_parse(args, config: PatchConfig) -> int:
    ops = parse_file_operations(_read_input(args))
    print(json.dumps([op.to_dict() for op in ops], indent=2))
    return 0


def _cmd_stream(args, config: PatchConfig) -> int:
    text = _read_input(args)
    size = max(1, args.chunk_size)
    tokenizer = StreamTokenizer()
    prose = []
    for i in range(0, len(text), size):
        result = tokenizer.feed(text[i:i + size])
        prose.append(result.text_content)
        for view in result.completed:
            print(json.dumps({"event": "operation", **view.to_dict()}))
    tail = tokenizer.finish()
    prose.append(tail.text_content)
    if tail.operation is not None:
        print(json.dumps({"event": "truncated", **tail.operation.to_dict()}))
    print(json.dumps({"event": "text", "text": "".join(prose)}))
    return 0


def _cmd_validate(args, config: PatchConfig) -> int:
    try:
        content = _read_text(args.file)
    except OSError as e:
        print(json.dumps({"status": "error", "file": args.file, "error": str(e)}))
        return 1
    valid, err = validate_syntax(args.file, content)
    result = {"status": "valid" if valid else "invalid", "file": args.file}
    if err:
        result["error"] = err
    print(json.dumps(result, indent=2))
    return 0 if valid else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="pk",
        description="PatchKit — apply model-written file operations",
    )
    parser.add_argument("--config", help="YAML config file (default: ./patchkit.yaml if present)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    sub = parser.add_subparsers(dest="command")

    apply_parser = sub.add_parser("apply", help="Apply a SEARCH/REPLACE payload to a file")
    apply_parser.add_argument("--file", required=True, help="Target file path")
    apply_parser.add_argument("--diff", help="File holding the SEARCH/REPLACE payload")
    apply_parser.add_argument(
        "--stdin", action="store_true", help="Read the payload from stdin"
    )
    apply_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would change without writing",
    )
    apply_parser.add_argument(
        "--validate",
        action="store_true",
        help="Refuse to write content that fails a syntax check",
    )
    apply_parser.add_argument(
        "--show-diff",
        action="store_true",
        help="Print unified diff to stderr",
    )

    parse_parser = sub.add_parser("parse", help="Extract canonical operations from a response")
    parse_parser.add_argument("--input", help="Response file (default: stdin)")

    stream_parser = sub.add_parser("stream", help="Replay a response through the stream tokenizer")
    stream_parser.add_argument("--input", help="Response file (default: stdin)")
    stream_parser.add_argument(
        "--chunk-size", type=int, default=16, help="Characters per simulated chunk (default: 16)"
    )

    validate_parser = sub.add_parser("validate", help="Validate a file's syntax")
    validate_parser.add_argument("file", help="File to validate")

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(json.dumps({"status": "error", "error": f"Config error: {e}"}))
        return 1

    level = config.log_level.upper()
    if args.verbose:
        level = "DEBUG"
    elif args.quiet:
        level = "ERROR"
    logging.basicConfig(stream=sys.stderr, level=level, format="%(levelname)s %(name)s: %(message)s")

    commands = {
        "apply": _cmd_apply,
        "parse": _cmd_parse,
        "stream": _cmd_stream,
        "validate": _cmd_validate,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args, config)


if __name__ == "__main__":
    sys.exit(main())
