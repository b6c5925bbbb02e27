#!/usr/bin/env python3
"""
PatchKit Replay — apply a saved model response to the working tree.

Replays a response file through the stream tokenizer (as if it were
arriving live), then applies every operation it contains to the files
on disk.

Usage:
    python replay_response.py -i response.txt
    cat response.txt | python replay_response.py --dry-run
    python replay_response.py -i response.txt --json
"""

from __future__ import annotations

import argparse
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pk_wrapper import PatchKit


class C:
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    RESET = "\033[0m"


def read_existing(paths: list[str]) -> dict[str, str]:
    files = {}
    for path in paths:
        if os.path.isfile(path):
            with open(path) as f:
                files[path] = f.read()
    return files


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay and apply a saved model response")
    parser.add_argument("-i", "--input", help="Response file. Default: stdin")
    parser.add_argument("--chunk-size", type=int, default=24, help="Characters per replayed chunk")
    parser.add_argument("--config", help="PatchKit YAML config")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    if args.input:
        with open(args.input) as f:
            text = f.read()
    else:
        if sys.stdin.isatty():
            parser.error("Provide -i file or pipe a response via stdin")
        text = sys.stdin.read()

    kit = PatchKit.from_config_file(args.config)

    tokenizer = kit.stream()
    streamed = []
    for i in range(0, len(text), max(1, args.chunk_size)):
        streamed.extend(tokenizer.feed(text[i:i + args.chunk_size]).completed)
    if tokenizer.finish().operation is not None and not args.json_output:
        print(f"{C.YELLOW}Response ends inside an unterminated operation{C.RESET}")

    ops = kit.parse(text)
    files = read_existing([op.path for op in ops])
    outcome = kit.apply_response(text, files)

    if not args.dry_run:
        for path, content in outcome.files.items():
            if content is None:
                if os.path.exists(path):
                    os.remove(path)
            elif files.get(path) != content:
                os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
                with open(path, "w") as f:
                    f.write(content)

    ok = sum(1 for r in outcome.results if r.success)
    fail = len(outcome.results) - ok
    if args.json_output:
        print(json.dumps({
            "streamed_blocks": len(streamed),
            "total": len(outcome.results),
            "ok": ok,
            "failed": fail,
            "results": [r.to_dict() for r in outcome.results],
        }, indent=2))
        return

    print(f"{C.BOLD}{len(streamed)} block(s) streamed, {len(ops)} operation(s) after merging{C.RESET}\n")
    for i, r in enumerate(outcome.results, 1):
        if r.success:
            detail = f" — {', '.join(r.match_types)}" if r.match_types else ""
            print(f"  {C.GREEN}✓{C.RESET} [{i}] {r.type} {C.BOLD}{r.path}{C.RESET}{detail}")
        else:
            print(f"  {C.RED}✗{C.RESET} [{i}] {r.type} {C.BOLD}{r.path}{C.RESET} — {r.error}")
    print(f"\n{C.BOLD}Results:{C.RESET} {C.GREEN}{ok} ok{C.RESET}, {C.RED}{fail} failed{C.RESET}")


if __name__ == "__main__":
    main()
