import json
from dataclasses import replace

import pytest

import services.shadow_verify as shadow_verify
from services.pseudo_labels import PseudoLabelSettings, PseudoLabelStore
from services.shadow_verify import (
    VERIFY_SAMPLE_SKIP_REASON,
    ShadowVerifier,
    VerifierConfig,
    build_global_notes,
    build_issue_comparisons,
    collect_disagreement_reasons,
    compute_verify_agreement_score,
    stable_shadow_sampling,
)
from services.verify_guards import (
    VERIFY_CIRCUIT_REASON,
    VERIFY_GUARD_REASON,
    VERIFY_INFLIGHT_GUARD_REASON,
    BudgetGuard,
    UpstreamCircuit,
    VerifyGuards,
)
from utils.errors import ProviderCallError
from utils.hashing import _stable_unit_interval

T0 = 1_770_000_000_000
BOX = {"x0": 0.2, "y0": 0.2, "x1": 0.5, "y1": 0.5}


def _concern(concern_type, box=BOX, *, severity=2.0, confidence=0.7, evidence=""):
    return {
        "type": concern_type,
        "regions": [{"kind": "bbox", "bbox_norm": box}],
        "severity": severity,
        "confidence": confidence,
        "evidence_text": evidence,
    }


def _config(tmp_path, **overrides):
    base = VerifierConfig(
        enabled=True,
        shadow_mode=False,
        sample_rate=1.0,
        iou_threshold=0.3,
        timeout_ms=5000,
        retries=0,
        hard_case_threshold=0.55,
        max_calls_per_min=0,
        max_calls_per_day=0,
        model="gemini-test",
        circuit_enabled=True,
        circuit_threshold=3,
        circuit_cooldown_ms=90_000,
        auth_circuit_enabled=True,
        auth_fail_rate_threshold=0.01,
        auth_cooldown_ms=600_000,
        auth_window_ms=600_000,
        auth_min_samples=20,
        max_inflight=0,
        hard_case_path=tmp_path / "hard_cases.ndjson",
    )
    return replace(base, **overrides)


def _verifier(tmp_path, *, adapter=None, guards=None, **overrides):
    settings = PseudoLabelSettings(
        enabled=True, base_dir=tmp_path / "store", allow_roi=False, region_iou_threshold=0.3, agreement_threshold=0.75
    )
    return ShadowVerifier(
        verifier_adapter=adapter,
        guards=guards or VerifyGuards(upstream_circuit=UpstreamCircuit(clock=lambda: T0)),
        config=_config(tmp_path, **overrides),
        pseudo_label_settings=settings,
        pseudo_label_store=PseudoLabelStore(tmp_path / "store"),
        sleep_fn=lambda _seconds: None,
    )


_DIAGNOSIS = {"photo_findings": [{"issue_type": "acne", "confidence": 0.6, "severity": 2, "geometry": {"bbox_norm": BOX}}]}


def _agreeing_adapter(_image, _context):
    return {"concerns": [{"type": "acne", "regions": [{"kind": "bbox", "bbox_norm": BOX}], "confidence": 0.8, "severity": 2}]}


def _failing_adapter(_image, _context):
    raise ProviderCallError("service unavailable", status_code=503)


def _run(verifier, **kwargs):
    params = {
        "image": b"jpeg-bytes",
        "photo_quality": {"grade": "pass"},
        "diagnosis": _DIAGNOSIS,
        "inference_id": "inf_1",
        "asset_id": "asset_1",
    }
    params.update(kwargs)
    return verifier.run(**params)


def _read_ndjson(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_sampling_is_deterministic():
    assert stable_shadow_sampling(1.0, trace_id="t") == {"selected": True, "bucket": 0.0}
    assert stable_shadow_sampling(0.0, trace_id="t") == {"selected": False, "bucket": 1.0}
    first = stable_shadow_sampling(0.5, trace_id="t", inference_id="i", asset_id="a")
    second = stable_shadow_sampling(0.5, trace_id="t", inference_id="i", asset_id="a")
    assert first == second
    bucket = _stable_unit_interval("t|i|a")
    assert first["bucket"] == pytest.approx(round(bucket, 3))
    assert first["selected"] is (bucket < 0.5)


def test_issue_comparisons_cover_every_verdict():
    cv = [
        _concern("acne", severity=2.0),
        _concern("pores"),
        _concern("redness", severity=1.0),
        _concern("texture", {"x0": 0.0, "y0": 0.0, "x1": 0.1, "y1": 0.1}),
        _concern("dark_spots", severity=0.5),
    ]
    verifier = [
        _concern("acne", severity=2.5, evidence="clustered papules"),
        _concern("redness", severity=2.2),
        _concern("texture", {"x0": 0.6, "y0": 0.6, "x1": 0.9, "y1": 0.9}),
        _concern("dark_spots", severity=3.0),
        _concern("wrinkles"),
    ]
    rows = {row["type"]: row for row in build_issue_comparisons(cv, verifier, iou_threshold=0.3)}

    assert list(rows) == sorted(rows)
    assert rows["acne"]["verdict"] == "agree"
    assert rows["acne"]["reason"] == "consistent"
    assert rows["acne"]["iou"] == 1.0
    assert rows["acne"]["severity_delta"] == 0.5
    assert rows["acne"]["evidence"] == "clustered papules"
    assert rows["acne"]["suggested_fix"] == {"confidence_adjust": 0}
    assert rows["redness"]["reason"] == "severity_uncertain"
    assert rows["redness"]["verdict"] == "uncertain"
    assert rows["dark_spots"]["reason"] == "severity_mismatch"
    assert rows["texture"]["reason"] == "region_mismatch"
    assert rows["texture"]["suggested_fix"]["region_hint"] == {"x0": 0.6, "y0": 0.6, "x1": 0.9, "y1": 0.9}
    assert rows["pores"]["reason"] == "missing_in_gemini"
    assert rows["pores"]["suggested_fix"]["type_change"] == "gemini_missing:pores"
    assert rows["wrinkles"]["reason"] == "missing_in_cv"


def test_agreement_score_and_reasons():
    rows = [
        {"type": "acne", "verdict": "agree", "reason": "consistent"},
        {"type": "pores", "verdict": "uncertain", "reason": "severity_uncertain"},
        {"type": "redness", "verdict": "disagree", "reason": "severity_uncertain"},
        {"type": "texture", "verdict": "disagree", "reason": "region_mismatch"},
    ]
    assert compute_verify_agreement_score(rows) == 0.375
    assert compute_verify_agreement_score([]) == 1.0
    assert collect_disagreement_reasons(rows) == ["severity_uncertain", "region_mismatch"]


def test_global_notes_follow_bias_flags():
    notes = build_global_notes(["POSSIBLE_MAKEUP_BIAS", "possible_lighting_bias", "other"])
    assert notes == [
        "Lighting may affect confidence for this run.",
        "Makeup coverage may mask underlying skin texture/tone.",
    ]


@pytest.mark.parametrize(
    "overrides, kwargs, reason",
    [
        ({"enabled": False}, {}, "DISABLED_BY_FLAG"),
        ({}, {"used_photos": False}, "PHOTO_NOT_USED"),
        ({}, {"photo_quality": {"grade": "fail"}}, "QUALITY_FAIL"),
        ({}, {"image": None}, "MISSING_IMAGE_BUFFER"),
        ({"shadow_mode": True, "sample_rate": 0.0}, {}, VERIFY_SAMPLE_SKIP_REASON),
    ],
)
def test_precondition_skips_do_not_call_provider(tmp_path, overrides, kwargs, reason):
    calls = []

    def adapter(image, context):
        calls.append(context)
        return _agreeing_adapter(image, context)

    verifier = _verifier(tmp_path, adapter=adapter, **overrides)
    result = _run(verifier, **kwargs)
    assert result["decision"] == "skip"
    assert result["called"] is False
    assert result["final_reason"] == reason
    assert calls == []
    assert not (tmp_path / "store").exists()


def test_agreeing_verification_writes_no_hard_case(tmp_path):
    verifier = _verifier(tmp_path, adapter=_agreeing_adapter)
    result = _run(verifier)

    assert result["ok"] is True
    assert result["called"] is True
    assert result["final_reason"] == "OK"
    assert result["agreement_score"] == 1.0
    assert result["disagreement_reasons"] == []
    assert result["hard_case_written"] is False
    assert [stat["provider"] for stat in result["provider_stats"]] == ["cv_provider", "gemini_provider"]
    assert result["verifier"]["per_issue"][0]["verdict"] == "agree"
    assert result["persistence"]["model_outputs_written"] == 2
    assert not (tmp_path / "hard_cases.ndjson").exists()


def test_provider_failure_writes_hard_case(tmp_path):
    verifier = _verifier(tmp_path, adapter=_failing_adapter)
    result = _run(verifier)

    assert result["ok"] is False
    assert result["final_reason"] == "UPSTREAM_5XX"
    assert result["raw_final_reason"] == "VISION_UPSTREAM_5XX"
    assert result["provider_status_code"] == 503
    assert result["hard_case_written"] is True
    records = _read_ndjson(tmp_path / "hard_cases.ndjson")
    assert len(records) == 1
    record = records[0]
    assert record["schema_version"] == "aurora.diag.verify_hard_case.v1"
    assert record["issue_type"] == "acne"
    assert record["disagreement_reason"] == "missing_in_gemini"
    assert record["final_reason"] == "UPSTREAM_5XX"
    assert record["request_id_hash"] and record["request_id_hash"] != "inf_1"
    assert record["asset_id_hash"] and record["asset_id_hash"] != "asset_1"


def test_unserializable_hard_case_is_logged_not_raised(tmp_path, monkeypatch):
    def refuse(_record, _path):
        raise TypeError("Object of type bytes is not JSON serializable")

    monkeypatch.setattr(shadow_verify, "append_hard_case_record", refuse)
    verifier = _verifier(tmp_path, adapter=_failing_adapter)
    result = _run(verifier)

    assert result["ok"] is False
    assert result["final_reason"] == "UPSTREAM_5XX"
    assert result["hard_case_written"] is False
    assert result["hard_case_path"] is None


def test_consecutive_5xx_open_circuit_and_skip_is_persisted(tmp_path):
    verifier = _verifier(tmp_path, adapter=_failing_adapter, circuit_threshold=2)
    _run(verifier, inference_id="inf_1")
    second = _run(verifier, inference_id="inf_2")
    assert second["circuit_breaker"]["is_open"] is True

    skipped = _run(verifier, inference_id="inf_3")
    assert skipped["decision"] == "skip"
    assert skipped["final_reason"] == VERIFY_CIRCUIT_REASON
    assert skipped["provider_status_code"] == 503
    assert skipped["circuit_breaker"]["is_open"] is True

    store = PseudoLabelStore(tmp_path / "store")
    skip_records = [record for record in store.read_model_outputs() if record["inference_id"] == "inf_3"]
    assert len(skip_records) == 1
    assert skip_records[0]["provider"] == "gemini_provider"
    assert skip_records[0]["output_json"]["decision"] == "skip"
    assert skip_records[0]["output_json"]["final_reason"] == VERIFY_CIRCUIT_REASON


def test_budget_guard_skips_second_call(tmp_path):
    guards = VerifyGuards(budget=BudgetGuard(clock=lambda: T0))
    verifier = _verifier(tmp_path, adapter=_agreeing_adapter, guards=guards, max_calls_per_min=1)
    assert _run(verifier)["called"] is True
    skipped = _run(verifier)
    assert skipped["final_reason"] == VERIFY_GUARD_REASON
    assert skipped["budget_guard"]["minute_count"] == 1
    assert skipped["budget_guard"]["minute_limit"] == 1


def test_inflight_guard_skips_when_slots_are_taken(tmp_path):
    guards = VerifyGuards()
    verifier = _verifier(tmp_path, adapter=_agreeing_adapter, guards=guards, max_inflight=1)
    assert guards.inflight.acquire(1) is True
    skipped = _run(verifier)
    assert skipped["final_reason"] == VERIFY_INFLIGHT_GUARD_REASON
    guards.inflight.release()

    result = _run(verifier)
    assert result["called"] is True
    assert guards.inflight.count == 0


def test_per_call_adapter_overrides_instance_adapter(tmp_path):
    verifier = _verifier(tmp_path, adapter=None)
    missing = _run(verifier)
    assert missing["final_reason"] == "UPSTREAM_4XX"
    assert missing["raw_final_reason"] == "VISION_MISSING_KEY"

    result = _run(verifier, verifier_adapter=_agreeing_adapter)
    assert result["ok"] is True
    assert verifier.verifier_adapter is None
