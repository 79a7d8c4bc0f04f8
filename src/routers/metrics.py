"""Prometheus scrape endpoint. Answers from the store; never calls Fitbit."""

from __future__ import annotations

from fastapi import APIRouter, Response

from src.dependencies import Runtime
from src.exporter.exposition import CONTENT_TYPE_LATEST

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def scrape(runtime: Runtime) -> Response:
    return Response(content=runtime.render_metrics(), media_type=CONTENT_TYPE_LATEST)
