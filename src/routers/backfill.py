"""On-demand historical backfill."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.config import yesterday
from src.dependencies import Runtime
from src.exporter.errors import BackfillInProgressError
from src.models.base import ErrorDetail
from src.models.exporter import BackfillAccepted, BackfillReportRead

router = APIRouter(prefix="/backfill", tags=["backfill"])
logger = logging.getLogger("fitbit_exporter.backfill_api")


@router.post(
    "",
    response_model=BackfillAccepted,
    status_code=202,
    responses={400: {"model": ErrorDetail}, 409: {"model": ErrorDetail}},
)
async def start_backfill(
    runtime: Runtime,
    start_date: date = Query(...),
    end_date: date | None = Query(default=None),
) -> Any:
    end = end_date or yesterday()
    try:
        runtime.start_backfill(start_date, end)
    except BackfillInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info("Backfill requested: %s → %s", start_date, end)
    return BackfillAccepted(start_date=start_date, end_date=end)


@router.get("", response_model=BackfillReportRead, responses={404: {"model": ErrorDetail}})
async def last_backfill(runtime: Runtime) -> Any:
    report = runtime.last_backfill_report
    if report is None:
        raise HTTPException(status_code=404, detail="No backfill has run yet")
    return report.to_json()
