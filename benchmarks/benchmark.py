#!/usr/bin/env python3
"""PatchKit Benchmark Suite — how often the matching tiers rescue a SEARCH.

Simulates SEARCH texts a model typically gets slightly wrong and compares
exact matching (baseline) against PatchKit's tier cascade
(exact → line-trimmed → block-anchor → full-file).

Usage:
    python3 benchmarks/benchmark.py
"""

import os
import sys
import time

# Add parent dir so we can import pk
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pk import apply_diff, find_block_match, find_exact_match
from pk_blocks import format_search_replace
from pk_stream import StreamTokenizer


# ---------------------------------------------------------------------------
# Cases: (name, category, file_content, model_search, cursor)
#
# cursor is where the previous block of the same payload ended; the
# full-file tier exists for searches that sit before it.
# ---------------------------------------------------------------------------

BENCHMARKS = []


def bench(name, category, content, search, cursor=0):
    BENCHMARKS.append((name, category, content, search, cursor))


# ===================== WHITESPACE =====================

bench(
    "Tabs vs spaces",
    "whitespace",
    "def process(data):\n\tresult = transform(data)\n\treturn result\n",
    "def process(data):\n    result = transform(data)\n    return result\n",
)

bench(
    "Trailing whitespace added",
    "whitespace",
    "class Config:\n    debug = False\n    verbose = True\n",
    "class Config:  \n    debug = False  \n    verbose = True  \n",
)

bench(
    "Indentation drift (4 → 2 spaces)",
    "whitespace",
    "if ready:\n    start()\n    wait()\n",
    "if ready:\n  start()\n  wait()\n",
)

bench(
    "Flattened indentation",
    "whitespace",
    "class A:\n    def run(self):\n        return 1\n",
    "def run(self):\nreturn 1\n",
)

# ===================== INTERIOR DRIFT =====================

bench(
    "Misremembered middle line",
    "interior",
    "def total(items):\n    acc = 0\n    for i in items:\n        acc += i\n    return acc\n",
    "def total(items):\n    acc = 0\n    for item in items:\n        acc += i\n    return acc\n",
)

bench(
    "Renamed local in body",
    "interior",
    "function load() {\n  const res = fetch(url);\n  return res.json();\n}\n",
    "function load() {\n  const response = fetch(url);\n  return res.json();\n}\n",
)

bench(
    "Comment paraphrased",
    "interior",
    "try:\n    # retry once on timeout\n    connect()\nexcept Timeout:\n    connect()\n",
    "try:\n    # retry on timeout\n    connect()\nexcept Timeout:\n    connect()\n",
)

# ===================== ORDERING =====================

bench(
    "Block above previous edit",
    "ordering",
    "import os\n\ndef main():\n    run()\n",
    "import os\n",
    cursor=12,
)

bench(
    "Helper defined earlier in file",
    "ordering",
    "def helper():\n    pass\n\ndef main():\n    helper()\n",
    "def helper():\n    pass\n",
    cursor=30,
)

# ===================== HALLUCINATION (not expected to recover) =====================

bench(
    "Brace style K&R vs Allman",
    "hallucination",
    "int main() {\n    printf(\"hello\\n\");\n    return 0;\n}\n",
    "int main()\n{\n    printf(\"hello\\n\");\n    return 0;\n}\n",
)

bench(
    "Expanded variable names",
    "hallucination",
    "for i, v in enumerate(vals):\n    res[i] = fn(v)\n",
    "for index, value in enumerate(vals):\n    res[index] = fn(value)\n",
)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def run_benchmarks():
    exact_pass = 0
    pk_pass = 0
    total = len(BENCHMARKS)
    results_by_category = {}

    print("=" * 78)
    print("  PatchKit Benchmark Suite — Tier Recovery")
    print("=" * 78)
    print()

    for name, category, content, search, cursor in BENCHMARKS:
        exact_ok = find_exact_match(content, search, cursor) is not None

        match = find_block_match(content, search, cursor)
        # The match must also survive the full apply path.
        applied = apply_diff(content, format_search_replace(search.rstrip("\n"), "REPLACED")) is not None
        pk_ok = match is not None and applied
        match_type = match.match_type if match else "—"
        confidence = f"{match.confidence:.0%}" if match else "—"

        exact_pass += exact_ok
        pk_pass += pk_ok
        data = results_by_category.setdefault(category, {"exact": 0, "pk": 0, "total": 0})
        data["total"] += 1
        data["exact"] += exact_ok
        data["pk"] += pk_ok

        exact_sym = "✅" if exact_ok else "❌"
        pk_sym = "✅" if pk_ok else "❌"
        print(f"  {exact_sym} → {pk_sym}  [{match_type:>12s} {confidence:>5s}]  {name}")

    print()
    print(f"  {'Category':<25s} {'Exact Match':>12s} {'PatchKit':>12s}")
    print(f"  {'─' * 25} {'─' * 12} {'─' * 12}")
    for cat, data in results_by_category.items():
        print(f"  {cat.title():<25s} {data['exact']:>6d}/{data['total']:<5d} {data['pk']:>6d}/{data['total']:<5d}")
    print()
    print(f"  Exact match baseline:  {exact_pass}/{total} ({exact_pass/total:.0%})")
    print(f"  PatchKit cascade:      {pk_pass}/{total} ({pk_pass/total:.0%})")
    print()
    return exact_pass, pk_pass, total


def run_stream_throughput(chunk_size=8, repeats=200):
    """Time the tokenizer on a response replayed in small chunks."""
    block = (
        "Some explanation of the change.\n"
        "<<<FILE_OPERATION>>>\nTYPE: edit\nPATH: src/app.py\nSEARCH:\n```\n"
        + "x = 1\n" * 20
        + "```\nREPLACE:\n```\n"
        + "x = 2\n" * 20
        + "```\n<<<END_OPERATION>>>\n"
    )
    text = block * 10
    start = time.perf_counter()
    ops = 0
    for _ in range(repeats):
        tok = StreamTokenizer()
        for i in range(0, len(text), chunk_size):
            ops += len(tok.feed(text[i:i + chunk_size]).completed)
        tok.finish()
    elapsed = time.perf_counter() - start
    mb = len(text) * repeats / 1e6
    print(f"  Tokenizer: {mb:.1f} MB in {elapsed:.2f}s ({mb / elapsed:.1f} MB/s), {ops} operations")
    print()


if __name__ == "__main__":
    exact, found, total = run_benchmarks()
    run_stream_throughput()
    sys.exit(0 if found >= exact else 1)
