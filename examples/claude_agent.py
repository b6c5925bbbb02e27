#!/usr/bin/env python3
"""
PatchKit + Claude Agent — streamed FILE_OPERATION blocks applied to disk.

Claude is prompted with the bracket format. Its reply is streamed through
PatchKit's tokenizer so prose prints live and each operation is announced
the moment its block closes. When the stream ends, every operation in the
reply is applied to the working tree. ``read`` operations are answered in
the next turn.

Requirements:
    pip install anthropic patchkit

Usage:
    python claude_agent.py --task "Add type hints to all functions" --files src/
    python claude_agent.py --task "Fix the bug in auth.py" --files auth.py utils.py --dry-run
    echo "Add error handling" | python claude_agent.py --files app.py
"""

from __future__ import annotations

import argparse
import glob
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import anthropic

from pk_wrapper import PatchKit, ResponseOutcome

# ── Colors ────────────────────────────────────────────────────────

class C:
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    CYAN = "\033[36m"
    MAGENTA = "\033[35m"
    RESET = "\033[0m"


def log(icon: str, msg: str) -> None:
    print(f"{C.DIM}│{C.RESET} {icon} {msg}")


# ── Files ─────────────────────────────────────────────────────────

def gather_files(paths: list[str], max_chars: int = 100_000) -> dict[str, str]:
    """Read files/directories into a path -> content mapping."""
    found: list[str] = []
    for p in paths:
        if os.path.isdir(p):
            for ext in ("py", "js", "ts", "jsx", "tsx", "go", "rs", "rb", "java", "c", "cpp", "h"):
                found.extend(glob.glob(os.path.join(p, f"**/*.{ext}"), recursive=True))
        elif os.path.isfile(p):
            found.append(p)

    files: dict[str, str] = {}
    total = 0
    for f in sorted(set(found)):
        try:
            with open(f) as fh:
                content = fh.read()
        except OSError:
            continue
        if total + len(content) > max_chars:
            break
        files[f] = content
        total += len(content)
    return files


def format_files(files: dict[str, str]) -> str:
    if not files:
        return "(no files)"
    return "\n\n".join(f"── {path} ──\n{content}" for path, content in files.items())


def write_outcome(outcome: ResponseOutcome, before: dict[str, str]) -> None:
    """Write changed files to disk and remove deleted ones."""
    for path, content in outcome.files.items():
        if content is None:
            if os.path.exists(path):
                os.remove(path)
            continue
        if before.get(path) == content:
            continue
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            f.write(content)


def report(outcome: ResponseOutcome) -> None:
    for r in outcome.results:
        if r.success:
            detail = f" ({', '.join(r.match_types)})" if r.match_types else ""
            log("✅", f"{C.GREEN}{r.type}{C.RESET} {C.BOLD}{r.path}{C.RESET}{detail}")
        else:
            log("❌", f"{C.RED}{r.type} failed{C.RESET} {r.path}: {r.error}")


# ── Agent Loop ────────────────────────────────────────────────────

def stream_turn(client: anthropic.Anthropic, kit: PatchKit, model: str, system: str, messages: list) -> str:
    """Stream one reply, echoing prose and announcing operations; return the full text."""
    tokenizer = kit.stream()
    parts: list[str] = []
    print(f"\n{C.CYAN}Claude:{C.RESET} ", end="")
    with client.messages.stream(model=model, max_tokens=8192, system=system, messages=messages) as stream:
        for text in stream.text_stream:
            parts.append(text)
            result = tokenizer.feed(text)
            print(result.text_content, end="", flush=True)
            for op in result.completed:
                print()
                log("🔨", f"{C.MAGENTA}{op.type}{C.RESET} {op.path} {C.DIM}{op.description or ''}{C.RESET}")
    tail = tokenizer.finish()
    print(tail.text_content)
    if tail.operation is not None:
        log("⚠️", f"Reply ended inside a {tail.operation.type} block for {tail.operation.path}")
    return "".join(parts)


def run_agent(task: str, files: dict[str, str], model: str, max_turns: int, dry_run: bool) -> None:
    client = anthropic.Anthropic()  # uses ANTHROPIC_API_KEY env var
    kit = PatchKit.from_config_file()
    system = (
        "You are a precise coding agent working on the user's files.\n\n"
        + kit.file_operation_prompt()
    )
    messages = [{"role": "user", "content": f"## Task\n{task}\n\n## Current Files\n{format_files(files)}"}]

    print(f"\n{C.BOLD}{'─' * 60}{C.RESET}")
    print(f"{C.BOLD}🔧 PatchKit Agent{C.RESET}")
    print(f"{C.DIM}Task:{C.RESET} {task}")
    print(f"{C.DIM}Model:{C.RESET} {model}")
    print(f"{C.BOLD}{'─' * 60}{C.RESET}")

    state = dict(files)
    for turn in range(max_turns):
        reply = stream_turn(client, kit, model, system, messages)
        outcome = kit.apply_response(reply, state)
        report(outcome)
        if not dry_run:
            write_outcome(outcome, state)
        state = {path: content for path, content in outcome.files.items() if content is not None}

        if not outcome.reads:
            break
        provided = {}
        for path in outcome.reads:
            try:
                with open(path) as f:
                    provided[path] = f.read()
            except OSError as e:
                log("❌", f"{C.RED}Read failed{C.RESET} {path}: {e}")
        state.update(provided)
        messages.append({"role": "assistant", "content": reply})
        messages.append({"role": "user", "content": f"## Requested Files\n{format_files(provided)}"})

    print(f"\n{C.BOLD}{'─' * 60}{C.RESET}")
    print(f"{C.GREEN}✓ Done{C.RESET} ({turn + 1} turn{'s' if turn else ''})")
    print(f"{C.BOLD}{'─' * 60}{C.RESET}\n")


# ── CLI ───────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="PatchKit + Claude coding agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            '  %(prog)s --task "Add type hints" --files src/\n'
            '  echo "Refactor to async" | %(prog)s --files app.py\n'
        ),
    )
    parser.add_argument("--task", "-t", help="Coding task to perform")
    parser.add_argument("--files", "-f", nargs="+", default=["."], help="Files or directories to include as context")
    parser.add_argument("--model", "-m", default="claude-sonnet-4-20250514", help="Claude model to use")
    parser.add_argument("--max-turns", type=int, default=5, help="Maximum agent turns")
    parser.add_argument("--dry-run", action="store_true", help="Show operations without writing files")
    args = parser.parse_args()

    task = args.task or sys.stdin.read().strip()
    if not task:
        parser.error("Provide --task or pipe task via stdin")

    run_agent(task, gather_files(args.files), args.model, args.max_turns, args.dry_run)


if __name__ == "__main__":
    main()
