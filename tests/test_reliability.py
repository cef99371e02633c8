import json
import os

import pytest

from services.pseudo_labels import PseudoLabelStore
from services.reliability import (
    ReliabilityTableCache,
    build_reliability_table,
    build_reliability_table_from_store,
    bucket_key,
    extract_verify_rows,
    normalize_date_prefix,
    should_use_verifier_in_vote,
    write_reliability_table,
)

DIMS = {"quality_grade": "pass", "lighting_bucket": "indoor", "skin_tone_bucket": "mk3"}
GATE = {
    "vote_enabled": True,
    "max_fail_rate": 0.4,
    "min_agreement": 0.7,
    "min_agreement_samples": 3,
    "max_agreement_stddev": 0.2,
    "min_gold_samples": 1,
}


def _verify_output(output_json, *, provider="gemini_provider", created_at="2026-02-09T10:00:00.000Z"):
    return {"provider": provider, "created_at": created_at, **DIMS, "output_json": output_json}


def _sample(overall, *, issue_type="acne", created_at="2026-02-09T10:00:00.000Z"):
    return {"created_at": created_at, **DIMS, "metrics": {"overall": overall, "by_type": [{"type": issue_type}]}}


def _model_outputs():
    return [
        _verify_output({"ok": True, "decision": "verify", "final_reason": "OK", "latency_ms": 100}),
        _verify_output({"ok": True, "decision": "verify", "final_reason": "OK", "latency_ms": 300}),
        _verify_output(
            {"ok": False, "failure_reason": "VISION_UPSTREAM_5XX", "provider_status_code": 503, "latency_ms": 200}
        ),
        _verify_output({"ok": False, "decision": "skip", "final_reason": "VERIFY_BUDGET_GUARD"}),
        _verify_output({"ok": True, "latency_ms": 5}, provider="cv_provider"),
        _verify_output({"ok": False, "failure_reason": "VISION_TIMEOUT"}, created_at="2026-02-10T00:00:00.000Z"),
    ]


def _agreement_samples():
    return [_sample(0.8), _sample(0.9), _sample(0.7), _sample(0.1, created_at="2026-02-10T00:00:00.000Z")]


def test_bucket_key_prefers_skin_tone_bucket():
    assert bucket_key({"issue_type": "Acne", **DIMS}) == "acne|pass|indoor|mk3"
    assert bucket_key({}) == "other|unknown|unknown|unknown"


def test_normalize_date_prefix():
    assert normalize_date_prefix("20260209") == "2026-02-09"
    assert normalize_date_prefix("2026-02") == "2026-02"
    assert normalize_date_prefix(None) == ""
    with pytest.raises(ValueError):
        normalize_date_prefix("2026/02")


def test_guard_skips_are_neither_calls_nor_failures():
    rows = extract_verify_rows(_model_outputs(), date_prefix="2026-02-09")
    assert len(rows) == 4
    assert [row["is_guard"] for row in rows] == [False, False, False, True]
    assert [row["is_failure"] for row in rows] == [False, False, True, False]
    assert rows[2]["fail_reason"] == "UPSTREAM_5XX"


def test_reliability_table_aggregates_bucket_stats():
    table = build_reliability_table(
        model_outputs=_model_outputs(),
        agreement_samples=_agreement_samples(),
        gold_labels=[{**DIMS, "concerns": [{"type": "acne"}, {"type": "acne"}]}],
        date_prefix="2026-02-09",
        gate_overrides=GATE,
    )

    assert table["schema_version"] == "aurora.diag.reliability.v1"
    assert table["date_prefix"] == "2026-02-09"
    assert [bucket["bucket_key"] for bucket in table["buckets"]] == ["acne|pass|indoor|mk3"]
    bucket = table["buckets"][0]
    assert bucket["verify_calls_total"] == 3
    assert bucket["verify_fail_total"] == 1
    assert bucket["verify_guard_total"] == 1
    assert bucket["verify_fail_rate"] == 0.333
    assert bucket["latency_p50_ms"] == 200.0
    assert bucket["latency_p95_ms"] == 290.0
    assert bucket["agreement_samples"] == 3
    assert bucket["agreement_mean"] == 0.8
    assert bucket["agreement_p50"] == 0.8
    assert bucket["agreement_p90"] == 0.88
    assert bucket["agreement_stddev"] == 0.082
    assert bucket["gold_samples"] == 1
    assert bucket["eligible_for_vote"] is True
    assert bucket["ineligible_reasons"] == []
    assert table["summary"]["verify_guard_total"] == 1
    assert table["summary"]["eligible_bucket_count"] == 1


def test_ineligible_bucket_lists_every_failed_condition(monkeypatch):
    monkeypatch.delenv("DIAG_VERIFY_ENABLE_VOTE", raising=False)
    monkeypatch.delenv("DIAG_VERIFY_VOTE_MIN_AGREEMENT_SAMPLES", raising=False)
    table = build_reliability_table(agreement_samples=[_sample(0.2)])
    bucket = table["buckets"][0]
    assert bucket["eligible_for_vote"] is False
    assert bucket["ineligible_reasons"] == [
        "VOTE_DISABLED",
        "NO_VERIFY_CALLS",
        "VERIFY_FAIL_RATE_HIGH",
        "AGREEMENT_SAMPLES_LOW",
        "AGREEMENT_LOW",
        "AGREEMENT_UNSTABLE",
    ]


def test_gold_support_applies_once_any_gold_exists():
    table = build_reliability_table(
        model_outputs=_model_outputs()[:2],
        agreement_samples=_agreement_samples()[:3] + [_sample(0.85, issue_type="redness")] * 3,
        gold_labels=[{**DIMS, "concerns": [{"type": "acne"}]}],
        date_prefix="2026-02-09",
        gate_overrides=GATE,
    )
    by_key = {bucket["bucket_key"]: bucket for bucket in table["buckets"]}
    assert by_key["acne|pass|indoor|mk3"]["eligible_for_vote"] is True
    assert by_key["redness|pass|indoor|mk3"]["ineligible_reasons"] == ["GOLD_SUPPORT_LOW"]


def test_vote_decision(tmp_path):
    table = build_reliability_table(
        model_outputs=_model_outputs(),
        agreement_samples=_agreement_samples(),
        date_prefix="2026-02-09",
        gate_overrides=GATE,
    )
    dims = {"issue_type": "acne", "quality_grade": "pass", "lighting_bucket": "indoor", "tone_bucket": "mk3"}

    decision = should_use_verifier_in_vote(dims, table=table, gate_overrides=GATE)
    assert decision["use_in_vote"] is True
    assert decision["reason"] == "ELIGIBLE"

    disabled = should_use_verifier_in_vote(dims, table=table, gate_overrides={**GATE, "vote_enabled": False})
    assert disabled["use_in_vote"] is False
    assert disabled["reason"] == "VOTE_DISABLED"

    unknown = should_use_verifier_in_vote({**dims, "issue_type": "wrinkles"}, table=table, gate_overrides=GATE)
    assert unknown == {"use_in_vote": False, "reason": "BUCKET_NOT_FOUND", "bucket_key": "wrinkles|pass|indoor|mk3"}

    missing = should_use_verifier_in_vote(dims, table_path=str(tmp_path / "absent.json"))
    assert missing["reason"] == "RELIABILITY_TABLE_MISSING"


def test_table_cache_rereads_on_mtime_change(tmp_path):
    path = write_reliability_table({"buckets": [], "marker": 1}, tmp_path / "reliability.json")
    cache = ReliabilityTableCache()
    first = cache.load(str(path))
    assert first["marker"] == 1
    assert cache.load(str(path)) is first

    path.write_text(json.dumps({"buckets": [], "marker": 2}), encoding="utf-8")
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    assert cache.load(str(path))["marker"] == 2

    path.write_text("not json", encoding="utf-8")
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 2_000_000_000))
    assert cache.load(str(path)) is None


def test_write_reliability_table_accepts_directory(tmp_path):
    path = write_reliability_table({"buckets": []}, tmp_path / "reports")
    assert path == tmp_path / "reports" / "reliability.json"
    assert json.loads(path.read_text(encoding="utf-8")) == {"buckets": []}


def test_build_from_store_forces_vote_gate_on(tmp_path, monkeypatch):
    monkeypatch.delenv("DIAG_VERIFY_ENABLE_VOTE", raising=False)
    store = PseudoLabelStore(tmp_path / "store")
    store.append_model_outputs(_model_outputs())
    store.append_agreement_samples(_agreement_samples())
    (tmp_path / "store" / "gold_labels.ndjson").write_text(
        json.dumps({**DIMS, "concerns": [{"type": "acne"}]}) + "\n", encoding="utf-8"
    )

    table = build_reliability_table_from_store(str(tmp_path / "store"), date_prefix="20260209")
    assert table["date_prefix"] == "2026-02-09"
    assert table["gate_config"]["vote_enabled"] is True
    assert table["inputs"]["runtime_vote_enabled"] is False
    assert table["inputs"]["model_outputs_total"] == 6
    assert table["inputs"]["agreement_samples_total"] == 4
    assert table["inputs"]["gold_labels_total"] == 1
    assert table["summary"]["has_gold_data"] is True

    with pytest.raises(ValueError):
        build_reliability_table_from_store(str(tmp_path / "store"), date_prefix="Feb 9")
