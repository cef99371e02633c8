"""APIRouter for calibration training and runtime endpoints."""

from typing import Any, Callable, Optional, Type

from fastapi import APIRouter, Body, Query


def build_calibration_router(
    *,
    train_fn: Callable[[Any], Any],
    runtime_fn: Callable[[bool], Any],
    request_cls: Type[Any],
) -> APIRouter:
    router = APIRouter()

    @router.post("/calibration/train")
    def train_calibration(payload: request_cls = Body(...)):  # type: ignore[valid-type]
        return train_fn(payload)

    @router.get("/calibration/runtime")
    def get_calibration_runtime(reload: Optional[bool] = Query(False)):
        return runtime_fn(bool(reload))

    return router
