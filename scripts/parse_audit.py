#!/usr/bin/env python3

"""
Run the natural-language task parser over a file of sample inputs and report
how each one was understood. Outputs a JSON file and an optional CSV with
per-item results and a summary.

Input is JSON of the form {"items": [{"id": ..., "text": ...}, ...]} or a
plain list of strings.

Usage:
  python scripts/parse_audit.py \
    --input scripts/parse_samples.json \
    --out data/parse_results.json \
    --csv data/parse_results.csv
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List


def _ensure_project_on_path():
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


_ensure_project_on_path()

from quicktodo.parser import NaturalLanguageParser  # noqa: E402
from quicktodo.utils import to_iso  # noqa: E402

KINDS = ["total", "recurrence+date", "recurrence-only", "date+time", "date-only", "none"]


def classify(parsed) -> str:
    if parsed.recurrence_rule is not None:
        return "recurrence+date" if parsed.scheduled_date is not None else "recurrence-only"
    if parsed.scheduled_date is not None:
        return "date+time" if parsed.has_specific_time else "date-only"
    return "none"


def run_one(parser: NaturalLanguageParser, text: str) -> Dict[str, Any]:
    parsed = parser.parse(text)
    rule = parsed.recurrence_rule
    return {
        "title": parsed.title,
        "scheduled_date": to_iso(parsed.scheduled_date),
        "has_specific_time": parsed.has_specific_time,
        "recurrence": rule.display_name if rule else None,
        "rrule": rule.to_rrule_string() if rule else "",
        "kind": classify(parsed),
    }


def load_items(src: Path) -> List[Dict[str, Any]]:
    data = json.loads(src.read_text(encoding="utf-8"))
    items = data.get("items") if isinstance(data, dict) else data
    out = []
    for i, it in enumerate(items or []):
        if isinstance(it, str):
            out.append({"id": i, "text": it})
        else:
            out.append({"id": it.get("id", i), "text": it.get("text", "")})
    return out


def main():
    ap = argparse.ArgumentParser(description="Audit natural-language parsing on sample inputs")
    ap.add_argument("--input", default="scripts/parse_samples.json", help="input JSON file")
    ap.add_argument("--out", default="data/parse_results.json", help="output JSON file")
    ap.add_argument("--csv", default="", help="optional CSV output path")
    ap.add_argument("--limit", type=int, default=0, help="limit number of items (0=all)")
    args = ap.parse_args()

    src = Path(args.input)
    items = load_items(src)
    if args.limit and args.limit > 0:
        items = items[: args.limit]

    parser = NaturalLanguageParser()
    results: List[Dict[str, Any]] = []
    counts = {k: 0 for k in KINDS}

    for it in items:
        parsed = run_one(parser, it["text"])
        results.append({"id": it["id"], "text": it["text"], **parsed})
        counts["total"] += 1
        counts[parsed["kind"]] += 1

    out_json = {
        "input": str(src),
        "count": len(results),
        "summary": counts,
        "items": results,
    }

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(out_json, ensure_ascii=False, indent=2), encoding="utf-8")

    if args.csv:
        import csv

        csv_path = Path(args.csv)
        csv_path.parent.mkdir(parents=True, exist_ok=True)
        fields = ["id", "kind", "title", "scheduled_date", "recurrence", "rrule", "text"]
        with csv_path.open("w", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=fields)
            w.writeheader()
            for r in results:
                w.writerow({k: r.get(k, "") for k in fields})

    print("Summary:")
    for k in KINDS:
        print(f"  {k}: {counts[k]}")
    print(f"Wrote JSON: {out_path}")
    if args.csv:
        print(f"Wrote CSV: {args.csv}")


if __name__ == "__main__":
    main()
