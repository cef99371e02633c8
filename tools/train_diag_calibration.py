#!/usr/bin/env python
import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from services.calibration import compute_grouped_ece, default_model_path, train_calibration_model, write_calibration_model
from services.pseudo_labels import DEFAULT_STORE_SUBDIR
from utils.io import _read_json_rows
from utils.parsing import _round3

GROUP_FIELDS = ("provider", "quality_grade")


def main() -> int:
    parser = argparse.ArgumentParser(description="Train the diagnosis confidence calibration model.")
    parser.add_argument("--model-outputs", default=str(DEFAULT_STORE_SUBDIR / "model_outputs.ndjson"), help="Model output records (NDJSON or JSON).")
    parser.add_argument("--gold-labels", default=str(DEFAULT_STORE_SUBDIR / "gold_labels.ndjson"), help="Gold label records (NDJSON or JSON).")
    parser.add_argument("--out-dir", default="model_registry", help="Directory for the versioned calibrator file.")
    parser.add_argument("--alias-path", default=None, help="Stable model path (defaults to the runtime model path).")
    parser.add_argument("--iou-threshold", type=float, default=0.3, help="Match IoU threshold.")
    parser.add_argument("--min-group-samples", type=int, default=24, help="Minimum samples per calibration bucket.")
    parser.add_argument("--no-alias", action="store_true", help="Skip writing the stable alias path.")
    args = parser.parse_args()

    model_outputs_path = Path(args.model_outputs).resolve()
    gold_labels_path = Path(args.gold_labels).resolve()
    model_outputs = _read_json_rows(model_outputs_path)
    gold_labels = _read_json_rows(gold_labels_path)
    if not model_outputs:
        print(f"no model outputs found: {model_outputs_path}", file=sys.stderr)
        return 2
    if not gold_labels:
        print(f"no gold labels found: {gold_labels_path}", file=sys.stderr)
        return 2

    trained = train_calibration_model(
        model_outputs,
        gold_labels,
        iou_threshold=min(0.95, max(0.05, args.iou_threshold)),
        min_group_samples=max(8, args.min_group_samples),
    )
    model = trained["model"]
    model["model_version"] = f"calibrator_v{datetime.now(timezone.utc).strftime('%Y%m%d')}"
    version_path = write_calibration_model(model, Path(args.out_dir).resolve() / f"{model['model_version']}.json")
    alias_path = None
    if not args.no_alias:
        alias_path = write_calibration_model(model, Path(args.alias_path).resolve() if args.alias_path else default_model_path())

    baseline = model["training"]["baseline_metrics"]
    calibrated = model["training"]["calibrated_metrics"]
    summary = {
        "schema_version": model["schema_version"],
        "model_version": model["model_version"],
        "model_outputs_path": str(model_outputs_path),
        "gold_labels_path": str(gold_labels_path),
        "written_model_path": str(version_path),
        "alias_model_path": str(alias_path) if alias_path else None,
        "samples_total": len(trained["rows"]),
        "perf_rows_total": len(trained["perf_rows"]),
        "metrics": {
            "baseline": baseline,
            "calibrated": calibrated,
            "delta": {
                "ece": _round3(baseline["ece"] - calibrated["ece"]),
                "brier": _round3(baseline["brier"] - calibrated["brier"]),
            },
            "by_provider_quality": {
                "baseline": compute_grouped_ece(trained["rows"], lambda row: row["raw_confidence"], GROUP_FIELDS),
                "calibrated": compute_grouped_ece(
                    trained["calibrated_rows"], lambda row: row["calibrated_confidence"], GROUP_FIELDS
                ),
            },
        },
    }
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
