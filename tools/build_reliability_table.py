#!/usr/bin/env python
import argparse
import sys
from pathlib import Path

from services.reliability import DEFAULT_TABLE_PATH, build_reliability_table_from_store, write_reliability_table


def main() -> int:
    parser = argparse.ArgumentParser(description="Build the verifier reliability table from the pseudo-label store.")
    parser.add_argument("--in", dest="in_path", default=None, help="Pseudo-label store directory.")
    parser.add_argument("--out", default=str(DEFAULT_TABLE_PATH), help="Output file (or directory for reliability.json).")
    parser.add_argument("--date", default="", help="Date prefix: YYYYMMDD or YYYY-MM-DD.")
    parser.add_argument("--gold-labels", default=None, help="Gold labels file (defaults to <store>/gold_labels.ndjson).")
    args = parser.parse_args()

    try:
        table = build_reliability_table_from_store(args.in_path, gold_labels_path=args.gold_labels, date_prefix=args.date)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print(write_reliability_table(table, Path(args.out).resolve()))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
