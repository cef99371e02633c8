"""Shared Pydantic schemas (canonical payloads and API requests)."""

from __future__ import annotations

import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, root_validator

CANONICAL_SCHEMA_VERSION = "aurora.diagnosis_canonical.v1"

ConcernType = Literal["redness", "acne", "shine", "texture", "tone", "dryness", "barrier", "other"]
QualitySensitivity = Literal["low", "medium", "high"]

_DATE_PREFIX_RE = re.compile(r"^(\d{8}|\d{4}(-\d{2}(-\d{2})?)?)$")


class BBoxNorm(BaseModel):
    x0: float = Field(..., ge=0.0, le=1.0)
    y0: float = Field(..., ge=0.0, le=1.0)
    x1: float = Field(..., ge=0.0, le=1.0)
    y1: float = Field(..., ge=0.0, le=1.0)


class PolygonPoint(BaseModel):
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)


class BBoxRegion(BaseModel):
    kind: Literal["bbox"]
    bbox_norm: BBoxNorm


class PolygonRegion(BaseModel):
    kind: Literal["polygon"]
    points: List[PolygonPoint] = Field(..., min_length=3, max_length=96)


class HeatmapRegion(BaseModel):
    kind: Literal["heatmap"]
    rows: int = Field(..., ge=1, le=64)
    cols: int = Field(..., ge=1, le=64)
    values: List[Annotated[float, Field(ge=0.0, le=1.0)]] = Field(..., max_length=4096)


RegionSchema = Annotated[Union[BBoxRegion, PolygonRegion, HeatmapRegion], Field(discriminator="kind")]


class ConcernProvenance(BaseModel):
    model_config = ConfigDict(extra="allow")

    provider: Optional[str] = Field(None, min_length=1)
    source_ids: Optional[List[str]] = Field(None, max_length=12)
    reviewer: Optional[str] = Field(None, min_length=1)
    weak_match: Optional[bool] = None
    notes: Optional[List[str]] = Field(None, max_length=10)


class CanonicalConcern(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: ConcernType
    regions: List[RegionSchema] = Field(..., min_length=1, max_length=6)
    severity: float = Field(..., ge=0.0, le=4.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    evidence_text: str = Field(..., max_length=500)
    quality_sensitivity: QualitySensitivity
    source_model: str
    provenance: ConcernProvenance
    uncertain: Optional[bool] = None

    @root_validator(skip_on_failure=True)
    def _ensure_text_fields(cls, values):  # noqa: N805
        if not str(values.get("evidence_text") or "").strip():
            raise ValueError("evidence_text_empty")
        if not str(values.get("source_model") or "").strip():
            raise ValueError("source_model_empty")
        return values


class CanonicalConflict(BaseModel):
    conflict_id: str = Field(..., min_length=1)
    kind: Literal["type_disagreement", "region_disagreement", "severity_disagreement"]
    type: Optional[ConcernType] = None
    severity: float = Field(..., ge=0.0, le=1.0)
    message: str = Field(..., min_length=1, max_length=280)
    providers: List[str] = Field(default_factory=list, max_length=6)


class CanonicalProviderStat(BaseModel):
    model_config = ConfigDict(extra="allow")

    provider: str = Field(..., min_length=1)
    ok: bool
    latency_ms: float = Field(..., ge=0.0)
    concern_count: int = Field(..., ge=0)
    schema_failed: Optional[bool] = None
    failure_reason: Optional[str] = Field(None, min_length=1)


class CanonicalResultSchema(BaseModel):
    schema_version: Literal["aurora.diagnosis_canonical.v1"]
    concerns: List[CanonicalConcern] = Field(default_factory=list, max_length=64)
    conflicts: List[CanonicalConflict] = Field(default_factory=list, max_length=32)
    provider_stats: Optional[List[CanonicalProviderStat]] = Field(None, max_length=8)
    agreement_score: Optional[float] = Field(None, ge=0.0, le=1.0)


class ProviderConcernPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(..., min_length=1)
    regions: List[RegionSchema] = Field(..., min_length=1, max_length=6)
    severity: Optional[float] = Field(None, ge=0.0, le=4.0)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    evidence_text: Optional[str] = Field(None, min_length=1, max_length=500)
    quality_sensitivity: Optional[str] = None
    source_model: Optional[str] = None
    provenance: Optional[Dict[str, Any]] = None
    uncertain: Optional[bool] = None


class ProviderPayload(BaseModel):
    """What a vision-language adapter must return from one successful call."""

    concerns: List[ProviderConcernPayload] = Field(..., max_length=64)
    flags: Optional[List[str]] = Field(None, max_length=20)
    review: Optional[str] = Field(None, min_length=1)


class FuseRequest(BaseModel):
    inference_id: Optional[str] = None
    photo_quality: Dict[str, Any] = Field(default_factory=dict)
    provider_outputs: List[Dict[str, Any]] = Field(default_factory=list, max_length=8)
    skin_tone_bucket: str = "unknown"
    lighting_bucket: str = "unknown"
    persist_artifacts: bool = True

    @root_validator(skip_on_failure=True)
    def _ensure_provider_names(cls, values):  # noqa: N805
        for output in values.get("provider_outputs") or []:
            if not str(output.get("provider") or "").strip():
                raise ValueError("provider_name_missing")
        return values


class ShadowVerifyRequest(BaseModel):
    inference_id: Optional[str] = None
    trace_id: Optional[str] = None
    asset_id: Optional[str] = None
    photo_quality: Dict[str, Any] = Field(default_factory=dict)
    used_photos: bool = True
    image_base64: Optional[str] = None
    diagnosis: Dict[str, Any] = Field(default_factory=dict)
    diagnosis_internal: Dict[str, Any] = Field(default_factory=dict)
    verifier_output: Dict[str, Any] = Field(default_factory=dict)
    skin_tone_bucket: str = "unknown"
    lighting_bucket: str = "unknown"


class CalibrationTrainRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_outputs: List[Dict[str, Any]] = Field(default_factory=list)
    gold_labels: List[Dict[str, Any]] = Field(default_factory=list)
    iou_threshold: float = Field(0.3, ge=0.05, le=0.95)
    min_group_samples: int = Field(24, ge=1)
    output_path: Optional[str] = None

    @root_validator(skip_on_failure=True)
    def _ensure_training_inputs(cls, values):  # noqa: N805
        if not values.get("model_outputs"):
            raise ValueError("calibration_model_outputs_required")
        if not values.get("gold_labels"):
            raise ValueError("calibration_gold_labels_required")
        return values


class ReliabilityTableRequest(BaseModel):
    date_prefix: Optional[str] = None
    store_dir: Optional[str] = None
    gold_labels_path: Optional[str] = None
    output_path: Optional[str] = None
    gate_overrides: Dict[str, Any] = Field(default_factory=dict)

    @root_validator(skip_on_failure=True)
    def _ensure_date_prefix(cls, values):  # noqa: N805
        prefix = values.get("date_prefix")
        if prefix and not _DATE_PREFIX_RE.match(str(prefix).strip()):
            raise ValueError("date_prefix_invalid")
        return values
