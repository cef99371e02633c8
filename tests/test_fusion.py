import json
from types import SimpleNamespace

import pytest

import services.fusion as fusion
from models.schemas import CanonicalResultSchema
from services.calibration import CalibrationRuntime
from services.fusion import FusionConfig, build_canonical, compute_agreement_score, run_diagnosis_ensemble
from services.pseudo_labels import PseudoLabelSettings, PseudoLabelStore
from utils.errors import ProviderCallError


def _box(x0, y0, x1, y1):
    return {"kind": "bbox", "bbox_norm": {"x0": x0, "y0": y0, "x1": x1, "y1": y1}}


def _concern(concern_type, box, *, confidence=0.7, severity=2.0):
    return {"type": concern_type, "regions": [box], "confidence": confidence, "severity": severity}


def _output(provider, concerns, *, ok=True, **extra):
    return {"provider": provider, "ok": ok, "concerns": concerns, "latency_ms": 12, **extra}


def test_agreeing_providers_fuse_into_one_concern():
    built = build_canonical(
        [
            _output("cv_provider", [_concern("acne", _box(0.2, 0.2, 0.5, 0.5), confidence=0.6, severity=2)]),
            _output("gemini_provider", [_concern("pimple", _box(0.22, 0.2, 0.5, 0.52), confidence=0.8, severity=2.5)]),
        ],
        quality_grade="pass",
    )
    assert built["ok"] is True
    canonical = built["canonical"]
    assert canonical["schema_version"] == "aurora.diagnosis_canonical.v1"
    assert canonical["conflicts"] == []
    assert canonical["agreement_score"] == pytest.approx(1.0)
    assert len(canonical["concerns"]) == 1
    fused = canonical["concerns"][0]
    assert fused["type"] == "acne"
    assert fused["provenance"]["providers"] == ["cv_provider", "gemini_provider"]
    assert fused["source_model"] == "ensemble(cv_provider+gemini_provider)"
    assert 0.6 <= fused["confidence"] <= 0.8
    assert 2.0 <= fused["severity"] <= 2.5
    assert "uncertain" not in fused
    assert [stat["provider"] for stat in canonical["provider_stats"]] == ["cv_provider", "gemini_provider"]


def test_severity_spread_raises_conflict_and_marks_uncertain():
    built = build_canonical(
        [
            _output("cv_provider", [_concern("redness", _box(0.2, 0.2, 0.5, 0.5), severity=0.5)]),
            _output("gpt_provider", [_concern("redness", _box(0.2, 0.2, 0.5, 0.5), severity=3.5)]),
        ],
        quality_grade="pass",
    )
    conflicts = built["canonical"]["conflicts"]
    assert [conflict["kind"] for conflict in conflicts] == ["severity_disagreement"]
    assert conflicts[0]["severity"] == pytest.approx(0.75)
    assert conflicts[0]["providers"] == ["cv_provider", "gpt_provider"]
    assert built["canonical"]["concerns"][0]["uncertain"] is True


def test_low_overlap_within_cluster_raises_region_conflict():
    built = build_canonical(
        [
            _output("gemini_provider", [_concern("texture", _box(0.1, 0.1, 0.5, 0.5))]),
            _output("gpt_provider", [_concern("texture", _box(0.3, 0.3, 0.7, 0.7))]),
        ],
        quality_grade="pass",
        iou_threshold=0.05,
    )
    conflicts = built["canonical"]["conflicts"]
    assert [conflict["kind"] for conflict in conflicts] == ["region_disagreement"]
    assert conflicts[0]["severity"] == pytest.approx(0.857)


def test_overlapping_types_raise_type_conflict():
    built = build_canonical(
        [
            _output("cv_provider", [_concern("acne", _box(0.2, 0.2, 0.5, 0.5), severity=3)]),
            _output("gemini_provider", [_concern("redness", _box(0.2, 0.2, 0.5, 0.5), severity=1)]),
        ],
        quality_grade="pass",
    )
    canonical = built["canonical"]
    assert [concern["type"] for concern in canonical["concerns"]] == ["acne", "redness"]
    assert all(concern["uncertain"] for concern in canonical["concerns"])
    conflict = canonical["conflicts"][0]
    assert conflict["kind"] == "type_disagreement"
    assert conflict["conflict_id"] == "conf_type_1_2"
    assert conflict["providers"] == ["cv_provider", "gemini_provider"]


def test_failed_provider_contributes_no_concerns():
    built = build_canonical(
        [
            _output("cv_provider", [_concern("acne", _box(0.2, 0.2, 0.5, 0.5))]),
            _output(
                "gemini_provider",
                [_concern("tone", _box(0.6, 0.6, 0.9, 0.9))],
                ok=False,
                failure_reason="VISION_TIMEOUT",
            ),
        ],
        quality_grade="degraded",
    )
    canonical = built["canonical"]
    assert [concern["type"] for concern in canonical["concerns"]] == ["acne"]
    gemini_stat = canonical["provider_stats"][1]
    assert gemini_stat["ok"] is False
    assert gemini_stat["failure_reason"] == "VISION_TIMEOUT"


def _mixed_outputs():
    return [
        _output("gemini_provider", [_concern("redness", _box(0.2, 0.2, 0.5, 0.5), severity=3.5, confidence=0.9)]),
        _output("cv_provider", [_concern("redness", _box(0.21, 0.2, 0.5, 0.5), severity=0.5, confidence=0.6)]),
        _output(
            "gpt_provider",
            [
                _concern("acne", _box(0.6, 0.6, 0.9, 0.9), severity=2.0, confidence=0.7),
                _concern("redness", _box(0.2, 0.22, 0.52, 0.5), severity=2.0, confidence=0.8),
            ],
        ),
    ]


def test_fusion_is_deterministic():
    first = build_canonical(_mixed_outputs(), quality_grade="pass")
    second = build_canonical(_mixed_outputs(), quality_grade="pass")
    assert json.dumps(first, sort_keys=True) == json.dumps(second, sort_keys=True)


def test_fusion_ignores_caller_provider_order():
    forward = build_canonical(_mixed_outputs(), quality_grade="pass")
    reversed_ = build_canonical(list(reversed(_mixed_outputs())), quality_grade="pass")
    assert json.dumps(forward, sort_keys=True) == json.dumps(reversed_, sort_keys=True)
    canonical = forward["canonical"]
    assert [stat["provider"] for stat in canonical["provider_stats"]] == ["cv_provider", "gemini_provider", "gpt_provider"]
    redness = next(concern for concern in canonical["concerns"] if concern["type"] == "redness")
    assert redness["source_model"] == "ensemble(cv_provider+gemini_provider+gpt_provider)"


def test_invalid_canonical_degrades_to_empty_result(monkeypatch):
    monkeypatch.setattr(
        fusion,
        "CanonicalResultSchema",
        SimpleNamespace(model_validate=lambda _payload: CanonicalResultSchema.model_validate({})),
    )
    built = build_canonical([_output("cv_provider", [_concern("acne", _box(0.2, 0.2, 0.5, 0.5))])], quality_grade="pass")
    assert built["ok"] is False
    assert built["failure_reason"] == "CANONICAL_SCHEMA_INVALID"
    assert built["canonical"]["concerns"] == []
    assert built["canonical"]["agreement_score"] == 0.0


def test_agreement_score_is_mean_pairwise_match_fraction():
    score = compute_agreement_score(
        [
            _output("cv_provider", [_concern("acne", _box(0.2, 0.2, 0.5, 0.5)), _concern("redness", _box(0.6, 0.1, 0.9, 0.4))]),
            _output("gemini_provider", [_concern("acne", _box(0.2, 0.2, 0.5, 0.5))]),
            _output("gpt_provider", [], ok=False),
        ]
    )
    assert score == pytest.approx(0.5)
    assert compute_agreement_score([_output("cv_provider", [])]) == 1.0


def _config(**overrides):
    base = dict(
        enabled=True,
        iou_threshold=0.28,
        timeout_ms=2000,
        retries=0,
        gemini_enabled=True,
        gemini_model="gemini-test",
        gpt_enabled=True,
        gpt_model="gpt-test",
        cv_model_version="v1",
    )
    base.update(overrides)
    return FusionConfig(**base)


def test_ensemble_disabled_by_flag():
    result = run_diagnosis_ensemble(config=_config(enabled=False))
    assert result["ok"] is False
    assert result["failure_reason"] == "DISABLED_BY_FLAG"
    assert result["canonical"] is None


def test_ensemble_runs_providers_and_persists_artifacts(tmp_path, monkeypatch):
    monkeypatch.delenv("DIAG_CALIBRATION_ENABLED", raising=False)
    box = {"x0": 0.2, "y0": 0.2, "x1": 0.5, "y1": 0.5}
    gpt_contexts = []

    def gemini_adapter(_image, _context):
        return {"concerns": [{"type": "acne", "regions": [{"kind": "bbox", "bbox_norm": box}], "confidence": 0.8, "severity": 2}]}

    def gpt_adapter(_image, context):
        gpt_contexts.append(context)
        raise ProviderCallError("upstream unavailable", status_code=503)

    settings = PseudoLabelSettings(
        enabled=True, base_dir=tmp_path / "store", allow_roi=False, region_iou_threshold=0.3, agreement_threshold=0.75
    )
    store = PseudoLabelStore(tmp_path / "store")
    result = run_diagnosis_ensemble(
        image=b"jpeg-bytes",
        photo_quality={"grade": "pass"},
        diagnosis={"photo_findings": [{"issue_type": "acne", "confidence": 0.6, "severity": 2, "geometry": {"bbox_norm": box}}]},
        inference_id="inf_test",
        gemini_adapter=gemini_adapter,
        gpt_adapter=gpt_adapter,
        config=_config(),
        calibration_runtime=CalibrationRuntime(tmp_path),
        pseudo_label_settings=settings,
        pseudo_label_store=store,
        sleep_fn=lambda _seconds: None,
    )

    assert result["ok"] is True
    assert result["calibration"]["enabled"] is False
    assert [stat["provider"] for stat in result["provider_stats"]] == ["cv_provider", "gemini_provider", "gpt_provider"]
    assert result["provider_stats"][2]["failure_reason"] == "VISION_UPSTREAM_5XX"
    assert "gemini_draft" in gpt_contexts[0]
    concerns = result["canonical"]["concerns"]
    assert len(concerns) == 1
    assert concerns[0]["provenance"]["providers"] == ["cv_provider", "gemini_provider"]
    assert result["pseudo_label_summary"]["model_outputs_written"] == 3
    assert len(store.read_model_outputs()) == 3
    assert store.read_pseudo_labels() == []
