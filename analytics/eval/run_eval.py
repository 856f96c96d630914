"""
Evaluation harness -- runs eval_questions.jsonl through the copilot
and generates analytics/reports/eval_report.md.

Checks:
  - Intent type     (classified type matches expected)
  - Entities        (programs / region / quarter match expected)
  - Dimension       (first breakdown dimension matches expected)
  - Error kind      (expected resolution misses are reported as such)
  - Latency         (end-to-end ms)

Runs as a dry run (plans only) unless ``--execute`` is given, in which case
every question also runs against the configured executor.
"""
from __future__ import annotations

import argparse
import datetime
import json
import sys
from pathlib import Path
from typing import Any

EVAL_PATH = Path(__file__).resolve().parent / "eval_questions.jsonl"
REPORT_PATH = Path(__file__).resolve().parents[1] / "reports" / "eval_report.md"

# Fixed reference date so "this quarter" is reproducible.
EVAL_TODAY = datetime.date(2025, 8, 15)


def _load_questions() -> list[dict[str, Any]]:
    lines = EVAL_PATH.read_text().splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def _run_one(q: dict[str, Any], execute: bool = False) -> dict[str, Any]:
    """Run a single question through intent parsing and the copilot pipeline."""
    from src.copilot.planner import parse_question
    from src.copilot.service import ask

    question = q["question"]
    try:
        intent = parse_question(question, today=EVAL_TODAY)
        response = ask(question, mode="mock", execute=execute, today=EVAL_TODAY)
    except Exception as exc:
        return {"question": question, "error": str(exc), "latency_ms": 0.0,
                "type_ok": False, "entities_ok": False, "dimension_ok": False,
                "error_ok": False, "success": False, "rows": 0}

    type_ok = intent.type.value == q["expected_type"]

    entities_ok = True
    if "expected_programs" in q:
        entities_ok &= sorted(intent.programs) == sorted(q["expected_programs"])
    if "expected_region" in q:
        entities_ok &= intent.region == q["expected_region"]
    if "expected_quarter" in q:
        entities_ok &= intent.time_filter is not None and intent.time_filter.quarter == q["expected_quarter"]

    dimension_ok = True
    if "expected_dimension" in q:
        dimension_ok = list(intent.breakdown_dimensions[:1]) == [q["expected_dimension"]]

    actual_error = response.error_kind.value if response.error_kind else None
    if "expected_error" in q:
        error_ok = actual_error == q["expected_error"]
    else:
        # Empty results are a data property, not a parser failure.
        error_ok = actual_error in (None, "empty_result")

    return {
        "question": question,
        "error": None,
        "latency_ms": response.latency_ms,
        "type": intent.type.value,
        "type_ok": type_ok,
        "entities_ok": entities_ok,
        "dimension_ok": dimension_ok,
        "error_ok": error_ok,
        "error_kind": actual_error,
        "success": type_ok and entities_ok and dimension_ok and error_ok,
        "rows": response.row_count,
        "sql": "\n\n".join(response.plan.statements().values()) if response.plan else "",
    }


def _rate(results: list[dict[str, Any]], key: str) -> tuple[int, float]:
    hits = sum(1 for r in results if r[key])
    return hits, (hits / len(results) * 100) if results else 0.0


def _generate_report(results: list[dict[str, Any]], execute: bool) -> str:
    """Generate the Markdown eval report."""
    total = len(results)
    now = datetime.datetime.now().strftime("%Y-%m-%d %H:%M")
    latencies = sorted(r["latency_ms"] for r in results)
    avg_lat = sum(latencies) / total if total else 0
    p95_lat = latencies[min(int(total * 0.95), total - 1)] if latencies else 0

    lines: list[str] = []
    lines.append("# Evaluation Report")
    lines.append("")
    lines.append(f"> Generated: {now}  |  Questions: **{total}**  |  "
                 f"Mode: `mock`  |  {'executed' if execute else 'dry run'}")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append("| Check | Value |")
    lines.append("|-------|-------|")
    for label, key in [("Overall", "success"), ("Intent type", "type_ok"), ("Entities", "entities_ok"),
                       ("Dimension", "dimension_ok"), ("Error kind", "error_ok")]:
        hits, rate = _rate(results, key)
        lines.append(f"| {label} | **{rate:.0f}%** ({hits}/{total}) |")
    lines.append(f"| Mean latency | {avg_lat:.0f} ms |")
    lines.append(f"| p95 latency | {p95_lat:.0f} ms |")
    lines.append("")

    example = next((r for r in results if r.get("sql")), None)
    if example:
        lines.append("## Example SQL")
        lines.append("")
        lines.append(f"**Question:** *\"{example['question']}\"*")
        lines.append("")
        lines.append("```sql")
        lines.append(example["sql"])
        lines.append("```")
        lines.append("")

    lines.append("## Per-Question Results")
    lines.append("")
    lines.append("| # | Question | Type | Entities | Dimension | Error | Rows | Pass |")
    lines.append("|---|----------|------|----------|-----------|-------|------|------|")
    for i, r in enumerate(results, 1):
        qtext = r["question"][:55] + ("..." if len(r["question"]) > 55 else "")
        mark = lambda ok: "OK" if ok else "ERROR"  # noqa: E731
        lines.append(
            f"| {i} | {qtext} | {r.get('type', '--')} {mark(r['type_ok'])} | {mark(r['entities_ok'])} | "
            f"{mark(r['dimension_ok'])} | {r.get('error_kind') or '--'} | {r['rows'] or '--'} | {mark(r['success'])} |"
        )
    lines.append("")

    failures = [r for r in results if not r["success"]]
    lines.append("## Failures")
    lines.append("")
    if not failures:
        lines.append("None -- all questions handled correctly.")
    for r in failures:
        lines.append(f"- {r['question']}" + (f" (`{r['error']}`)" if r.get("error") else ""))
    lines.append("")
    return "\n".join(lines)


def run(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Intent classification evaluation")
    parser.add_argument("--execute", action="store_true", help="also run every question against the executor")
    args = parser.parse_args(argv)

    if sys.platform == "win32":
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[attr-defined]

    questions = _load_questions()
    print(f"Loaded {len(questions)} eval questions.")

    results = []
    for i, q in enumerate(questions, 1):
        r = _run_one(q, execute=args.execute)
        status = "PASS" if r["success"] else "FAIL"
        print(f"  [{i:2d}/{len(questions)}] {status}  {r['question'][:60]:<60}  {r['latency_ms']:>6.0f}ms")
        results.append(r)

    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(_generate_report(results, args.execute), encoding="utf-8")
    print(f"\nReport written to {REPORT_PATH}")

    successes = sum(1 for r in results if r["success"])
    print(f"\n{'='*50}")
    print(f"  Success: {successes}/{len(results)} ({successes/len(results)*100:.0f}%)")
    print(f"{'='*50}")
    return 0 if successes == len(results) else 1


if __name__ == "__main__":
    sys.exit(run())
