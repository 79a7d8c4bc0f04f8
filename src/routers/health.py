"""Health check endpoint: poll scheduler status plus the last cycle summary."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from src.dependencies import Runtime
from src.models.exporter import CycleSummary, HealthRead

router = APIRouter(tags=["system"])
logger = logging.getLogger("fitbit_exporter.health")


@router.get("/health", response_model=HealthRead)
async def health_check(runtime: Runtime) -> JSONResponse:
    """Returns 200 while polling works and 503 once the scheduler halted.

    Metrics stay scrapeable either way; 503 means they are no longer fresh.
    """
    scheduler = runtime.scheduler
    last = scheduler.last_result
    body = HealthRead(
        status="healthy" if scheduler.healthy else "unhealthy",
        version=runtime.settings.app_version,
        scheduler_state=scheduler.state.value,
        halt_reason=scheduler.halt_reason,
        series=len(runtime.store),
        skipped_ticks=scheduler.skipped_ticks,
        token_refreshes=runtime.credentials.refresh_count,
        last_cycle=CycleSummary(**last.to_json()) if last else None,
        backfill_running=runtime.backfill_running,
    )
    if not scheduler.healthy:
        logger.warning("Health check failing: %s", scheduler.halt_reason)
    return JSONResponse(
        status_code=200 if scheduler.healthy else 503,
        content=body.model_dump(mode="json"),
    )
