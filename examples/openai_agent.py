#!/usr/bin/env python3
"""
PatchKit + OpenAI Agent — function calls and bracket blocks in one reply.

The model gets PatchKit's write_to_file / replace_in_file functions and the
bracket-format prompt. Streamed text runs through the tokenizer; function
calls are collected, rendered as invoke text, and parsed together with the
text so both formats go through the same dedup / precedence / merge pass.

Requirements:
    pip install openai patchkit

Usage:
    python openai_agent.py --task "Add docstrings to all functions" --files src/
    python openai_agent.py --task "Convert to async/await" --files app.py --dry-run
"""

from __future__ import annotations

import argparse
import glob
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from openai import OpenAI

from pk_wrapper import PatchKit

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
    found: list[str] = []
    for p in paths:
        if os.path.isdir(p):
            for ext in ("py", "js", "ts", "jsx", "tsx", "go", "rs", "rb", "java"):
                found.extend(glob.glob(os.path.join(p, f"**/*.{ext}"), recursive=True))
        elif os.path.isfile(p):
            found.append(p)

    files, total = {}, 0
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


# ── Agent ─────────────────────────────────────────────────────────

def stream_reply(client: OpenAI, kit: PatchKit, model: str, messages: list) -> str:
    """Stream one reply and return its text plus function calls as invoke blocks."""
    tokenizer = kit.stream()
    text_parts: list[str] = []
    calls: dict[int, dict] = {}

    print(f"\n{C.CYAN}GPT:{C.RESET} ", end="")
    stream = client.chat.completions.create(
        model=model,
        messages=messages,
        tools=kit.openai_function_schemas(),
        stream=True,
    )
    for chunk in stream:
        if not chunk.choices:
            continue
        delta = chunk.choices[0].delta
        if delta.content:
            text_parts.append(delta.content)
            result = tokenizer.feed(delta.content)
            print(result.text_content, end="", flush=True)
            for op in result.completed:
                print()
                log("🔨", f"{C.MAGENTA}{op.type}{C.RESET} {op.path}")
        for tc in delta.tool_calls or []:
            call = calls.setdefault(tc.index, {"name": "", "arguments": ""})
            if tc.function.name:
                call["name"] = tc.function.name
            if tc.function.arguments:
                call["arguments"] += tc.function.arguments
    print(tokenizer.finish().text_content)

    invokes = []
    for index in sorted(calls):
        call = calls[index]
        try:
            arguments = json.loads(call["arguments"] or "{}")
        except json.JSONDecodeError:
            log("❌", f"{C.RED}Malformed arguments{C.RESET} for {call['name']}")
            continue
        log("🔨", f"{C.MAGENTA}{call['name']}{C.RESET}({C.DIM}{arguments.get('path', '?')}{C.RESET})")
        invokes.append(kit.tool_call_to_invoke(call["name"], arguments))
    return "\n".join(["".join(text_parts)] + invokes)


def run_agent(task: str, files: dict[str, str], model: str, dry_run: bool) -> None:
    client = OpenAI()
    kit = PatchKit.from_config_file()

    print(f"\n{C.BOLD}{'─' * 60}{C.RESET}")
    print(f"{C.BOLD}🔧 PatchKit Agent (OpenAI){C.RESET}")
    print(f"{C.DIM}Task:{C.RESET} {task}")
    print(f"{C.DIM}Model:{C.RESET} {model}")
    print(f"{C.BOLD}{'─' * 60}{C.RESET}")

    context = "\n\n".join(f"── {p} ──\n{c}" for p, c in files.items()) or "(no files found)"
    messages = [
        {
            "role": "system",
            "content": (
                "You are a precise coding agent. Edit files with the provided functions "
                "or with file operation blocks.\n\n" + kit.file_operation_prompt(compact=True)
            ),
        },
        {"role": "user", "content": f"## Task\n{task}\n\n## Current Files\n{context}"},
    ]

    reply = stream_reply(client, kit, model, messages)
    outcome = kit.apply_response(reply, files)

    for r in outcome.results:
        if r.success:
            log("✅", f"{C.GREEN}{r.type}{C.RESET} {C.BOLD}{r.path}{C.RESET}")
        else:
            log("❌", f"{C.RED}{r.type} failed{C.RESET} {r.path}: {r.error}")

    if not dry_run:
        for path, content in outcome.files.items():
            if content is None:
                if os.path.exists(path):
                    os.remove(path)
            elif files.get(path) != content:
                os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
                with open(path, "w") as f:
                    f.write(content)

    print(f"\n{C.BOLD}{'─' * 60}{C.RESET}")
    print(f"{C.GREEN}✓ Done{C.RESET} ({len(outcome.results)} operations)")
    print(f"{C.BOLD}{'─' * 60}{C.RESET}\n")


# ── CLI ───────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(description="PatchKit + OpenAI coding agent")
    parser.add_argument("--task", "-t", help="Coding task")
    parser.add_argument("--files", "-f", nargs="+", default=["."], help="Files/dirs for context")
    parser.add_argument("--model", "-m", default="gpt-4o", help="OpenAI model")
    parser.add_argument("--dry-run", action="store_true", help="Show operations without writing files")
    args = parser.parse_args()

    task = args.task or sys.stdin.read().strip()
    if not task:
        parser.error("Provide --task or pipe via stdin")

    run_agent(task, gather_files(args.files), model=args.model, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
