import pytest

from services.pseudo_labels import (
    PseudoLabelSettings,
    PseudoLabelStore,
    build_model_output_record,
    compute_agreement_for_pair,
    generate_pseudo_labels_for_pair,
    persist_pseudo_label_artifacts,
    pseudo_label_decision,
    sanitize_concern_for_storage,
    select_agreement_pair,
)


def _box(x0, y0, x1, y1):
    return {"kind": "bbox", "bbox_norm": {"x0": x0, "y0": y0, "x1": x1, "y1": y1}}


def _output(provider, concerns, **extra):
    return {"provider": provider, "ok": True, "concerns": concerns, **extra}


def _acne(box, *, confidence=0.8, severity=2.0, evidence="papules on cheek"):
    return {"type": "acne", "regions": [box], "confidence": confidence, "severity": severity, "evidence_text": evidence}


def _settings(tmp_path, **overrides):
    base = dict(enabled=True, base_dir=tmp_path, allow_roi=False, region_iou_threshold=0.3, agreement_threshold=0.75)
    base.update(overrides)
    return PseudoLabelSettings(**base)


def test_identical_outputs_agree_on_every_level():
    output = _output("gemini_provider", [_acne(_box(0.2, 0.2, 0.5, 0.5))])
    agreement = compute_agreement_for_pair(output, output)
    assert agreement["type_level"]["weighted_f1"] == pytest.approx(1.0)
    assert agreement["type_level"]["jaccard"] == pytest.approx(1.0)
    # No heatmaps: correlation and KL components sit at their neutral 0.5.
    assert agreement["region_level"]["score"] == pytest.approx(0.8)
    assert agreement["severity_level"]["score"] == pytest.approx(1.0)
    assert agreement["overall"] == pytest.approx(0.93)
    assert agreement["by_type"] == [
        {
            "type": "acne",
            "iou": 1.0,
            "heatmap_correlation": None,
            "heatmap_kl": None,
            "severity_mae": 0.0,
            "interval_overlap": 1.0,
        }
    ]


def test_disjoint_types_have_zero_agreement():
    left = _output("gemini_provider", [_acne(_box(0.2, 0.2, 0.5, 0.5))])
    right = _output("gpt_provider", [{"type": "tone", "regions": [_box(0.2, 0.2, 0.5, 0.5)], "confidence": 0.7}])
    agreement = compute_agreement_for_pair(left, right)
    assert agreement["type_level"]["jaccard"] == 0.0
    assert agreement["region_level"]["common_types"] == 0
    assert agreement["severity_level"]["mae"] == 4
    assert agreement["overall"] == 0.0
    assert agreement["by_type"] == []


def test_pseudo_labels_match_same_type_above_iou():
    left = _output("gemini_provider", [_acne(_box(0.1, 0.1, 0.3, 0.3))])
    right = _output("gpt_provider", [_acne(_box(0.12, 0.12, 0.31, 0.31), evidence="inflamed papules")])
    generated = generate_pseudo_labels_for_pair(left, right, quality_grade="pass", region_iou_threshold=0.3)

    assert generated["quality_eligible"] is True
    assert generated["matches"] == [{"type": "acne", "gemini_idx": 0, "gpt_idx": 0, "region_iou": 0.741}]
    concern = generated["concerns"][0]
    assert concern["source_model"] == "pseudo_label_factory"
    assert concern["evidence_text"] == "papules on cheek | inflamed papules"
    assert concern["provenance"]["source_ids"] == ["gemini_provider:0", "gpt_provider:0"]
    assert "matched_type:acne" in concern["provenance"]["notes"]


def test_pseudo_labels_skip_low_overlap_and_failed_quality():
    left = _output("gemini_provider", [_acne(_box(0.1, 0.1, 0.3, 0.3))])
    right = _output("gpt_provider", [_acne(_box(0.6, 0.6, 0.9, 0.9))])
    generated = generate_pseudo_labels_for_pair(left, right, quality_grade="fail")
    assert generated["matches"] == []
    assert generated["concerns"] == []
    assert generated["quality_eligible"] is False


def test_pseudo_label_decision():
    assert pseudo_label_decision({"quality_eligible": True, "agreement": {"overall": 0.8}, "concerns": [{}]}, 0.75) == {
        "eligible": True,
        "emit": True,
    }
    assert pseudo_label_decision({"quality_eligible": True, "agreement": {"overall": 0.8}, "concerns": []}, 0.75) == {
        "eligible": True,
        "emit": False,
    }
    assert pseudo_label_decision({"quality_eligible": False, "agreement": {"overall": 0.99}, "concerns": [{}]}, 0.75)[
        "eligible"
    ] is False


def test_storage_keeps_region_hints_unless_roi_allowed():
    concern = {
        "type": "redness",
        "regions": [_box(0.2, 0.2, 0.6, 0.6), {"kind": "heatmap", "rows": 1, "cols": 2, "values": [0.2, 0.6]}],
        "confidence": 0.5,
        "severity": 1,
        "evidence_text": "x" * 400,
    }
    stored = sanitize_concern_for_storage(concern, allow_roi=False)
    assert "regions" not in stored
    assert stored["region_hint_bbox"] == {"x0": 0.2, "y0": 0.2, "x1": 0.6, "y1": 0.6}
    assert stored["region_hint_heatmap"] == {"rows": 1, "cols": 2, "signature": [0.25, 0.75]}
    assert len(stored["evidence_text"]) == 280

    with_roi = sanitize_concern_for_storage(concern, allow_roi=True)
    assert with_roi["regions"] == concern["regions"]


def test_select_agreement_pair_preference():
    cv, gemini, gpt = _output("cv_provider", []), _output("gemini_provider", []), _output("gpt_provider", [])
    assert select_agreement_pair([cv, gemini, gpt])["provider_pair"] == ["gemini_provider", "gpt_provider"]
    cv_pair = select_agreement_pair([cv, gemini])
    assert cv_pair["provider_pair"] == ["cv_provider", "gemini_provider"]
    assert cv_pair["supports_pseudo_labels"] is False
    assert select_agreement_pair([cv]) is None


def test_model_output_record_fields():
    record = build_model_output_record(
        {"provider": "gpt_provider", "ok": False, "concerns": [], "failure_reason": "VISION_TIMEOUT", "latency_ms": 12.34567},
        inference_id="inf_1",
        quality_grade="PASS",
        skin_tone_bucket=None,
        lighting_bucket="indoor",
        allow_roi=False,
    )
    assert record["record_id"].startswith("mo_")
    assert record["quality_grade"] == "pass"
    assert record["skin_tone_bucket"] == "unknown"
    assert record["output_json"]["decision"] == "unknown"
    assert record["output_json"]["final_reason"] == "VISION_TIMEOUT"
    assert record["output_json"]["latency_ms"] == pytest.approx(12.346)
    assert record["derived_features"]["concern_count"] == 0


def test_persist_writes_artifacts_and_accumulates_manifest(tmp_path):
    settings = _settings(tmp_path)
    store = PseudoLabelStore(tmp_path)
    outputs = [
        _output("gemini_provider", [_acne(_box(0.2, 0.2, 0.5, 0.5))]),
        _output("gpt_provider", [_acne(_box(0.2, 0.2, 0.5, 0.5))]),
    ]
    summary = persist_pseudo_label_artifacts(
        outputs, inference_id="inf_a", quality_grade="pass", settings=settings, store=store
    )
    assert summary["pseudo_label_written"] is True
    assert summary["manifest_counts"] == {"model_outputs": 2, "pseudo_labels": 1, "agreement_samples": 1}

    summary = persist_pseudo_label_artifacts(
        outputs, inference_id="inf_b", quality_grade="fail", settings=settings, store=store
    )
    assert summary["pseudo_label_written"] is False
    assert summary["manifest_counts"] == {"model_outputs": 4, "pseudo_labels": 1, "agreement_samples": 2}

    samples = store.read_agreement_samples()
    assert [sample["pseudo_label_eligible"] for sample in samples] == [True, False]
    assert store.read_pseudo_labels()[0]["inference_id"] == "inf_a"
    assert {record["inference_id"] for record in store.read_model_outputs()} == {"inf_a", "inf_b"}


def test_persist_respects_disabled_flag(tmp_path):
    summary = persist_pseudo_label_artifacts(
        [_output("gemini_provider", [])], settings=_settings(tmp_path, enabled=False), store=PseudoLabelStore(tmp_path)
    )
    assert summary == {"ok": True, "enabled": False, "reason": "DISABLED_BY_FLAG"}
    assert not (tmp_path / "model_outputs.ndjson").exists()


def test_manifest_survives_failed_replace(tmp_path, monkeypatch):
    settings = _settings(tmp_path)
    store = PseudoLabelStore(tmp_path)
    store.update_manifest(settings, {"model_outputs": 3})

    def _crash(_src, _dst):
        raise OSError("disk full")

    monkeypatch.setattr("utils.io.os.replace", _crash)
    with pytest.raises(OSError):
        store.update_manifest(settings, {"model_outputs": 5})
    monkeypatch.undo()

    assert store.read_manifest()["counts"]["model_outputs"] == 3
    assert list(tmp_path.glob("*.tmp")) == []
