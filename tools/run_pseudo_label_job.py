#!/usr/bin/env python
import argparse
import json
import sys

from services.pseudo_label_job import resolve_job_options, run_pseudo_label_job


def main() -> int:
    parser = argparse.ArgumentParser(description="Emit daily pseudo-labels and hard cases from the artifact store.")
    parser.add_argument("--store-dir", default=None, help="Pseudo-label store directory.")
    parser.add_argument("--out-dir", default=None, help="Report root; a YYYYMMDD subdirectory is created.")
    parser.add_argument("--date", default=None, help="Day to process: YYYYMMDD or YYYY-MM-DD (default today, UTC).")
    parser.add_argument("--min-agreement", type=float, default=None, help="Minimum overall agreement for a pseudo-label.")
    parser.add_argument("--region-iou-threshold", type=float, default=None, help="Minimum region IoU for a matched pair.")
    parser.add_argument("--allow-roi", default=None, help="Include roi_uri in hard cases (true/false).")
    args = parser.parse_args()

    try:
        options = resolve_job_options(
            store_dir=args.store_dir,
            out_dir=args.out_dir,
            date=args.date,
            min_agreement=args.min_agreement,
            region_iou_threshold=args.region_iou_threshold,
            allow_roi=args.allow_roi,
        )
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    print(json.dumps(run_pseudo_label_job(options), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
