"""FastAPI backend for diagnosis fusion, calibration, shadow verification and vote gating."""

from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from api.calibration import build_calibration_router
from api.diagnosis import build_diagnosis_router
from api.reliability import build_reliability_router
from models.schemas import CalibrationTrainRequest, FuseRequest, ReliabilityTableRequest, ShadowVerifyRequest
from services.calibration import CalibrationRuntime, load_calibration_runtime, train_calibration_model, write_calibration_model
from services.concerns import _normalize_quality_grade
from services.fusion import _load_fusion_config, build_canonical, build_evidence_regions_from_canonical
from services.pseudo_labels import persist_pseudo_label_artifacts
from services.reliability import (
    build_reliability_table_from_store,
    reset_reliability_cache,
    should_use_verifier_in_vote,
    write_reliability_table,
)
from services.shadow_verify import ShadowVerifier

app = FastAPI(title="Diagnosis Fusion API")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("diagnosisapi")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)
logger.propagate = False

calibration_runtime = CalibrationRuntime()
shadow_verifier = ShadowVerifier()


def _calibration_summary(runtime: Dict[str, Any]) -> Dict[str, Any]:
    model = runtime.get("model") if runtime.get("enabled") else None
    return {
        "enabled": bool(runtime.get("enabled")),
        "source": runtime.get("source"),
        "error": runtime.get("error"),
        "model_version": (model or {}).get("model_version"),
    }


def _decode_image_base64(data: Optional[str]) -> Optional[bytes]:
    if not data:
        return None
    text = data.split(",", 1)[1] if data.startswith("data:") and "," in data else data
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="image_base64_invalid") from exc


def fuse_diagnosis(payload: FuseRequest) -> Dict[str, Any]:
    if not payload.provider_outputs:
        raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="provider_outputs_required")
    grade = _normalize_quality_grade(payload.photo_quality.get("grade"))
    runtime = load_calibration_runtime(runtime=calibration_runtime)
    model = runtime.get("model") if runtime.get("enabled") else None
    built = build_canonical(
        payload.provider_outputs,
        quality_grade=grade,
        iou_threshold=_load_fusion_config().iou_threshold,
        calibration_model=model,
        tone_bucket=payload.skin_tone_bucket,
        lighting_bucket=payload.lighting_bucket,
    )
    pseudo_label_summary = None
    if payload.persist_artifacts:
        try:
            pseudo_label_summary = persist_pseudo_label_artifacts(
                payload.provider_outputs,
                inference_id=payload.inference_id,
                quality_grade=grade,
                skin_tone_bucket=payload.skin_tone_bucket,
                lighting_bucket=payload.lighting_bucket,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Pseudo-label persistence failed for %s: %s", payload.inference_id, exc)
            pseudo_label_summary = {"ok": False, "enabled": True, "reason": "PERSIST_FAILED"}
    result = {
        "ok": built["ok"],
        "canonical": built["canonical"],
        "evidence_regions": build_evidence_regions_from_canonical(built["canonical"]),
        "pseudo_label_summary": pseudo_label_summary,
        "calibration": _calibration_summary(runtime),
    }
    if built.get("failure_reason"):
        result["failure_reason"] = built["failure_reason"]
    return result


def verify_diagnosis(payload: ShadowVerifyRequest) -> Dict[str, Any]:
    image = _decode_image_base64(payload.image_base64)
    verifier_output = dict(payload.verifier_output or {})
    adapter = (lambda _image, _context: verifier_output) if verifier_output else None
    return shadow_verifier.run(
        image=image,
        photo_quality=payload.photo_quality,
        used_photos=payload.used_photos,
        diagnosis=payload.diagnosis,
        diagnosis_internal=payload.diagnosis_internal,
        inference_id=payload.inference_id,
        trace_id=payload.trace_id,
        asset_id=payload.asset_id,
        skin_tone_bucket=payload.skin_tone_bucket,
        lighting_bucket=payload.lighting_bucket,
        verifier_adapter=adapter,
    )


def train_calibration(payload: CalibrationTrainRequest) -> Dict[str, Any]:
    result = train_calibration_model(
        payload.model_outputs,
        payload.gold_labels,
        iou_threshold=payload.iou_threshold,
        min_group_samples=payload.min_group_samples,
    )
    if not result["rows"]:
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE_ENTITY, detail="calibration_rows_empty")
    model = result["model"]
    written: Optional[str] = None
    if payload.output_path:
        try:
            written = str(write_calibration_model(model, Path(payload.output_path)))
        except OSError as exc:
            raise HTTPException(status_code=HTTP_500_INTERNAL_SERVER_ERROR, detail=f"calibration_write_failed:{exc}") from exc
        calibration_runtime.reset()
    return {
        "model": model,
        "model_version": model["model_version"],
        "samples_total": model["training"]["samples_total"],
        "baseline_metrics": model["training"]["baseline_metrics"],
        "calibrated_metrics": model["training"]["calibrated_metrics"],
        "output_path": written,
    }


def get_calibration_runtime(reload: bool = False) -> Dict[str, Any]:
    return _calibration_summary(load_calibration_runtime(force_reload=reload, runtime=calibration_runtime))


def build_reliability(payload: ReliabilityTableRequest) -> Dict[str, Any]:
    try:
        table = build_reliability_table_from_store(
            payload.store_dir,
            gold_labels_path=payload.gold_labels_path,
            date_prefix=payload.date_prefix or "",
            gate_overrides=payload.gate_overrides,
        )
    except ValueError as exc:
        raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="date_prefix_invalid") from exc
    if payload.output_path:
        try:
            table["output_path"] = str(write_reliability_table(table, Path(payload.output_path)))
        except OSError as exc:
            raise HTTPException(status_code=HTTP_500_INTERNAL_SERVER_ERROR, detail=f"reliability_write_failed:{exc}") from exc
        reset_reliability_cache()
    return table


def get_vote_decision(
    *,
    issue_type: str,
    quality_grade: str,
    lighting_bucket: str,
    tone_bucket: str,
    table_path: Optional[str] = None,
) -> Dict[str, Any]:
    decision = should_use_verifier_in_vote(
        {
            "issue_type": issue_type,
            "quality_grade": quality_grade,
            "lighting_bucket": lighting_bucket,
            "tone_bucket": tone_bucket,
        },
        table_path=table_path,
    )
    if decision["reason"] == "RELIABILITY_TABLE_MISSING":
        raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="reliability_table_missing")
    return decision


app.include_router(
    build_diagnosis_router(
        fuse_fn=fuse_diagnosis,
        verify_fn=verify_diagnosis,
        fuse_request_cls=FuseRequest,
        verify_request_cls=ShadowVerifyRequest,
    )
)
app.include_router(
    build_calibration_router(
        train_fn=train_calibration,
        runtime_fn=get_calibration_runtime,
        request_cls=CalibrationTrainRequest,
    )
)
app.include_router(
    build_reliability_router(
        build_table_fn=build_reliability,
        vote_fn=get_vote_decision,
        request_cls=ReliabilityTableRequest,
    )
)
