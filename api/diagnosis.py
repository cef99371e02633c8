"""APIRouter for fusion and shadow verification endpoints."""

from typing import Any, Callable, Type

from fastapi import APIRouter, Body


def build_diagnosis_router(
    *,
    fuse_fn: Callable[[Any], Any],
    verify_fn: Callable[[Any], Any],
    fuse_request_cls: Type[Any],
    verify_request_cls: Type[Any],
) -> APIRouter:
    router = APIRouter()

    @router.post("/diagnosis/fuse")
    def fuse_diagnosis(payload: fuse_request_cls = Body(...)):  # type: ignore[valid-type]
        return fuse_fn(payload)

    @router.post("/diagnosis/verify")
    def verify_diagnosis(payload: verify_request_cls = Body(...)):  # type: ignore[valid-type]
        return verify_fn(payload)

    return router
