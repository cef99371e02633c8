"""APIRouter for reliability table and vote-gate endpoints."""

from typing import Any, Callable, Optional, Type

from fastapi import APIRouter, Body, Query


def build_reliability_router(
    *,
    build_table_fn: Callable[[Any], Any],
    vote_fn: Callable[..., Any],
    request_cls: Type[Any],
) -> APIRouter:
    router = APIRouter()

    @router.post("/reliability/table")
    def build_reliability_table(payload: request_cls = Body(...)):  # type: ignore[valid-type]
        return build_table_fn(payload)

    @router.get("/reliability/vote")
    def get_vote_decision(
        issue_type: str = Query("other"),
        quality_grade: str = Query("unknown"),
        lighting_bucket: str = Query("unknown"),
        tone_bucket: str = Query("unknown"),
        table_path: Optional[str] = Query(None),
    ):
        return vote_fn(
            issue_type=issue_type,
            quality_grade=quality_grade,
            lighting_bucket=lighting_bucket,
            tone_bucket=tone_bucket,
            table_path=table_path,
        )

    return router
