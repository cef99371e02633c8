import json

import pytest

from services.pseudo_label_job import JobOptions, normalize_date_key, resolve_job_options, run_pseudo_label_job
from utils.io import _append_ndjson

CREATED_AT = "2026-02-09T01:00:00.000Z"


def _record(inference_id, provider, concern_type, box, *, quality="pass", created_at=CREATED_AT, **extra):
    x0, y0, x1, y1 = box
    return {
        "inference_id": inference_id,
        "provider": provider,
        "model_name": f"{provider}-model",
        "created_at": created_at,
        "quality_grade": quality,
        "skin_tone_bucket": "medium",
        "lighting_bucket": "daylight",
        "output_json": {
            "ok": True,
            "concerns": [
                {
                    "type": concern_type,
                    "severity": 2,
                    "confidence": 0.8,
                    "evidence_text": f"{concern_type} signal",
                    "region_hint_bbox": {"x0": x0, "y0": y0, "x1": x1, "y1": y1},
                }
            ],
            **extra,
        },
    }


def _sample(inference_id, overall):
    return {"inference_id": inference_id, "created_at": CREATED_AT, "metrics": {"overall": overall, "by_type": []}}


def _seed_store(store_dir):
    _append_ndjson(
        store_dir / "model_outputs.ndjson",
        [
            _record("inf_hi", "gemini_provider", "acne", (0.1, 0.1, 0.3, 0.3)),
            _record("inf_hi", "gpt_provider", "acne", (0.12, 0.12, 0.31, 0.31)),
            _record("inf_mid", "gemini_provider", "redness", (0.2, 0.2, 0.42, 0.42)),
            _record("inf_mid", "gpt_provider", "redness", (0.21, 0.21, 0.41, 0.41)),
            _record("inf_next_day", "gemini_provider", "acne", (0.1, 0.1, 0.3, 0.3), created_at="2026-02-10T01:00:00.000Z"),
        ],
    )
    _append_ndjson(store_dir / "agreement_samples.ndjson", [_sample("inf_hi", 0.92), _sample("inf_mid", 0.62)])


def _options(tmp_path, min_agreement, **overrides):
    base = dict(
        store_dir=tmp_path / "store",
        out_dir=tmp_path / "out" / "20260209",
        date_key="20260209",
        min_agreement=min_agreement,
        region_iou_threshold=0.3,
        allow_roi=False,
    )
    base.update(overrides)
    return JobOptions(**base)


def _read_lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_agreement_threshold_controls_pseudo_label_count(tmp_path):
    _seed_store(tmp_path / "store")

    strict = run_pseudo_label_job(_options(tmp_path, 0.75))
    assert strict["counters"]["inferences_total"] == 2
    assert strict["counters"]["pseudo_labels_written"] == 1
    assert strict["counters"]["skipped_low_agreement"] == 1
    pseudo = _read_lines(tmp_path / "out" / "20260209" / "pseudo_labels_daily.ndjson")
    assert [row["inference_id"] for row in pseudo] == ["inf_hi"]
    assert pseudo[0]["pseudo_label_id"].startswith("pld_")
    assert pseudo[0]["agreement_overall"] == pytest.approx(0.92)
    hard = _read_lines(tmp_path / "out" / "20260209" / "hard_cases_daily.jsonl")
    assert [row["disagreement_reason"] for row in hard] == ["LOW_AGREEMENT"]
    assert hard[0]["issue_type"] == "redness"

    relaxed = run_pseudo_label_job(_options(tmp_path, 0.55, out_dir=tmp_path / "relaxed"))
    assert relaxed["counters"]["pseudo_labels_written"] == 2
    assert relaxed["counters"]["hard_cases_written"] == 0
    assert len(_read_lines(tmp_path / "relaxed" / "pseudo_labels_daily.ndjson")) == 2


def test_pseudo_label_ids_are_stable_across_runs(tmp_path):
    _seed_store(tmp_path / "store")
    run_pseudo_label_job(_options(tmp_path, 0.75, out_dir=tmp_path / "a"))
    run_pseudo_label_job(_options(tmp_path, 0.75, out_dir=tmp_path / "b"))
    first = _read_lines(tmp_path / "a" / "pseudo_labels_daily.ndjson")
    second = _read_lines(tmp_path / "b" / "pseudo_labels_daily.ndjson")
    assert first[0]["pseudo_label_id"] == second[0]["pseudo_label_id"]


def test_failed_quality_becomes_hard_case(tmp_path):
    store_dir = tmp_path / "store"
    _append_ndjson(
        store_dir / "model_outputs.ndjson",
        [
            _record("inf_bad", "gemini_provider", "acne", (0.1, 0.1, 0.3, 0.3), quality="fail", asset_id="asset_9"),
            _record("inf_bad", "gpt_provider", "acne", (0.1, 0.1, 0.3, 0.3), quality="fail"),
        ],
    )
    summary = run_pseudo_label_job(_options(tmp_path, 0.5))
    assert summary["counters"]["skipped_quality"] == 1
    hard = _read_lines(tmp_path / "out" / "20260209" / "hard_cases_daily.jsonl")
    assert hard[0]["disagreement_reason"] == "QUALITY_NOT_ELIGIBLE"
    assert hard[0]["quality_summary"]["quality_grade"] == "fail"
    assert hard[0]["asset_id_hash"] is not None
    assert hard[0]["asset_id_hash"] != "asset_9"
    assert hard[0]["providers"] == ["gemini_provider", "gpt_provider"]
    assert "roi_uri" not in hard[0]


def test_single_provider_is_insufficient(tmp_path):
    _append_ndjson(
        tmp_path / "store" / "model_outputs.ndjson",
        [_record("inf_solo", "cv_provider", "tone", (0.1, 0.1, 0.3, 0.3))],
    )
    summary = run_pseudo_label_job(_options(tmp_path, 0.75))
    assert summary["counters"]["skipped_insufficient_providers"] == 1
    hard = _read_lines(tmp_path / "out" / "20260209" / "hard_cases_daily.jsonl")
    assert hard[0]["disagreement_reason"] == "INSUFFICIENT_PROVIDER_OUTPUTS"


def test_summary_file_matches_return_value(tmp_path):
    _seed_store(tmp_path / "store")
    summary = run_pseudo_label_job(_options(tmp_path, 0.75))
    on_disk = json.loads((tmp_path / "out" / "20260209" / "job_summary.json").read_text(encoding="utf-8"))
    assert on_disk == summary
    assert summary["source"]["model_outputs_total"] == 4
    assert summary["config"] == {"min_agreement": 0.75, "region_iou_threshold": 0.3, "allow_roi": False}


def test_date_key_normalization():
    assert normalize_date_key("2026-02-09") == "20260209"
    assert normalize_date_key("20260209") == "20260209"
    assert len(normalize_date_key(None)) == 8
    with pytest.raises(ValueError):
        normalize_date_key("02/09/2026")


def test_resolve_job_options_clamps_and_nests_out_dir(tmp_path, monkeypatch):
    monkeypatch.delenv("AURORA_PSEUDO_LABEL_ALLOW_ROI", raising=False)
    options = resolve_job_options(
        store_dir=str(tmp_path / "store"),
        out_dir=str(tmp_path / "reports"),
        date="2026-02-09",
        min_agreement=5,
        region_iou_threshold=0.01,
        allow_roi="yes",
    )
    assert options.date_key == "20260209"
    assert options.out_dir == (tmp_path / "reports").resolve() / "20260209"
    assert options.min_agreement == 1.0
    assert options.region_iou_threshold == 0.05
    assert options.allow_roi is True
