import threading

import pytest

import services.providers as providers
from services.providers import CV_PROVIDER, GEMINI_PROVIDER, run_cv_provider, run_vision_provider
from utils.errors import (
    VERIFY_IMAGE_FETCH_FAILED,
    VERIFY_QUOTA,
    VERIFY_RATE_LIMIT,
    VERIFY_TIMEOUT,
    VERIFY_UNKNOWN,
    VERIFY_UPSTREAM_4XX,
    VERIFY_UPSTREAM_5XX,
    VISION_IMAGE_INVALID,
    VISION_MISSING_KEY,
    VISION_NETWORK_ERROR,
    VISION_QUOTA_EXCEEDED,
    VISION_RATE_LIMITED,
    VISION_SCHEMA_INVALID,
    VISION_TIMEOUT,
    VISION_UPSTREAM_4XX,
    VISION_UPSTREAM_5XX,
    ProviderCallError,
    _classify_provider_failure,
    _normalize_http_status_class,
    _normalize_verify_fail_reason,
)

_BBOX = {"kind": "bbox", "bbox_norm": {"x0": 0.1, "y0": 0.1, "x1": 0.4, "y1": 0.4}}


@pytest.mark.parametrize(
    "exc, reason, status_class",
    [
        (ProviderCallError("boom", status_code=429, response_body="insufficient_quota"), VISION_QUOTA_EXCEEDED, "4xx"),
        (ProviderCallError("slow down", status_code=429), VISION_RATE_LIMITED, "4xx"),
        (TimeoutError(), VISION_TIMEOUT, "timeout"),
        (ProviderCallError("reset", code="ECONNRESET"), VISION_NETWORK_ERROR, "unknown"),
        (ProviderCallError("permission denied", status_code=403), VISION_MISSING_KEY, "4xx"),
        (ProviderCallError("blocked", status_code=403), VISION_UPSTREAM_4XX, "4xx"),
        (ProviderCallError("bad gateway", status_code=502), VISION_UPSTREAM_5XX, "5xx"),
        (ProviderCallError("image too large", status_code=400), VISION_IMAGE_INVALID, "4xx"),
    ],
)
def test_classify_provider_failure(exc, reason, status_class):
    failure = _classify_provider_failure(exc)
    assert failure.reason == reason
    assert failure.status_class == status_class


def test_classify_reports_body_length_and_error_class():
    failure = _classify_provider_failure(ProviderCallError("x", status_code=500, code="INTERNAL", response_body="oops"))
    assert failure.error_class == "INTERNAL"
    assert failure.response_bytes_len == 4
    assert failure.status_code == 500


@pytest.mark.parametrize(
    "reason, kwargs, expected",
    [
        ("VISION_TIMEOUT", {}, VERIFY_TIMEOUT),
        ("VISION_QUOTA_EXCEEDED", {}, VERIFY_QUOTA),
        ("VISION_RATE_LIMITED", {}, VERIFY_RATE_LIMIT),
        ("VISION_MISSING_KEY", {}, VERIFY_UPSTREAM_4XX),
        ("VISION_UPSTREAM_5XX", {}, VERIFY_UPSTREAM_5XX),
        ("VISION_IMAGE_INVALID", {}, VERIFY_IMAGE_FETCH_FAILED),
        (None, {"provider_status_code": 429}, VERIFY_RATE_LIMIT),
        (None, {"provider_status_code": 503}, VERIFY_UPSTREAM_5XX),
        ("weird", {"error_class": "DEADLINE_EXCEEDED"}, VERIFY_TIMEOUT),
        ("weird", {"http_status_class": "5xx"}, VERIFY_UPSTREAM_5XX),
        ("weird", {}, VERIFY_UNKNOWN),
    ],
)
def test_verify_fail_reason_is_bounded(reason, kwargs, expected):
    assert _normalize_verify_fail_reason(reason, **kwargs) == expected


def test_http_status_class_normalization():
    assert _normalize_http_status_class("503") == "5xx"
    assert _normalize_http_status_class("4XX") == "4xx"
    assert _normalize_http_status_class(None, "VISION_TIMEOUT") == "timeout"
    assert _normalize_http_status_class("garbage") == "unknown"


def test_vision_provider_without_adapter_reports_missing_key():
    out = run_vision_provider(None, provider=GEMINI_PROVIDER, model_name="gemini", image=b"img")
    assert out["ok"] is False
    assert out["failure_reason"] == VISION_MISSING_KEY
    assert out["provider_status_code"] == 401
    assert out["attempts"] == 0


def test_vision_provider_without_image_reports_invalid_image():
    out = run_vision_provider(lambda _img, _ctx: {"concerns": []}, provider=GEMINI_PROVIDER, model_name="g", image=None)
    assert out["failure_reason"] == VISION_IMAGE_INVALID
    assert out["provider_status_code"] == 400


def test_vision_provider_schema_failure_is_not_retried():
    calls = []

    def adapter(_image, _context):
        calls.append(1)
        return "no json here"

    out = run_vision_provider(adapter, provider=GEMINI_PROVIDER, model_name="g", image=b"img", retries=3)
    assert len(calls) == 1
    assert out["failure_reason"] == VISION_SCHEMA_INVALID
    assert out["schema_failed"] is True
    assert out["provider_status_code"] == 200


def test_vision_provider_retries_with_backoff_then_classifies():
    sleeps = []

    def adapter(_image, _context):
        raise ProviderCallError("service unavailable", status_code=503)

    out = run_vision_provider(
        adapter, provider=GEMINI_PROVIDER, model_name="g", image=b"img", retries=2, sleep_fn=sleeps.append
    )
    assert out["ok"] is False
    assert out["attempts"] == 3
    assert out["failure_reason"] == VISION_UPSTREAM_5XX
    assert out["provider_status_code"] == 503
    assert sleeps == pytest.approx([0.2, 0.4])


def test_hung_adapter_times_out_on_a_bounded_pool(monkeypatch):
    monkeypatch.setenv("DIAG_PROVIDER_MAX_WORKERS", "1")
    monkeypatch.setattr(providers, "_PROVIDER_EXECUTOR", None)
    release = threading.Event()
    calls = []

    def adapter(_image, _context):
        calls.append(1)
        release.wait(5)
        return {"concerns": []}

    try:
        out = run_vision_provider(
            adapter, provider=GEMINI_PROVIDER, model_name="g", image=b"img", retries=2, timeout_ms=20, sleep_fn=lambda _s: None
        )
        assert out["ok"] is False
        assert out["attempts"] == 3
        assert out["failure_reason"] == VISION_TIMEOUT
        executor = providers._PROVIDER_EXECUTOR
        assert len(executor._threads) == 1
    finally:
        release.set()
        providers._PROVIDER_EXECUTOR.shutdown(wait=True)
    assert len(calls) == 1


def test_vision_provider_success_normalizes_concerns():
    seen = {}

    def adapter(image, context):
        seen.update(context)
        return 'Result: {"concerns": [{"type": "pimple", "regions": [%s], "confidence": 0.8, "severity": 2}]}' % (
            '{"kind": "bbox", "bbox_norm": {"x0": 0.1, "y0": 0.1, "x1": 0.4, "y1": 0.4}}'
        )

    out = run_vision_provider(
        adapter,
        provider=GEMINI_PROVIDER,
        model_name="g",
        image=b"img",
        photo_quality={"grade": "pass"},
        sleep_fn=lambda _s: None,
    )
    assert out["ok"] is True
    assert out["attempts"] == 1
    assert seen["quality_grade"] == "pass"
    assert [concern["type"] for concern in out["concerns"]] == ["acne"]
    assert out["concerns"][0]["regions"] == [_BBOX]


def test_cv_provider_without_findings():
    out = run_cv_provider(diagnosis={}, photo_quality={"grade": "pass"})
    assert out["provider"] == CV_PROVIDER
    assert out["ok"] is False
    assert out["failure_reason"] == "NO_FINDINGS"
    assert out["provider_status_code"] == 204


def test_cv_provider_maps_findings():
    out = run_cv_provider(
        diagnosis={"photo_findings": [{"issue_type": "redness", "confidence": 0.7, "severity": 1.5}, "junk"]},
        photo_quality={"grade": "degraded"},
    )
    assert out["ok"] is True
    assert len(out["concerns"]) == 1
    assert out["concerns"][0]["quality_sensitivity"] == "medium"
