"""Fitbit exporter — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --port 8080
or:
    python -m src.cli serve
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import get_settings
from src.exporter.runtime import ExporterRuntime
from src.routers import backfill, health, metrics

logger = logging.getLogger("fitbit_exporter")


# ---------- Logging ----------

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    A runtime passed to ``create_app`` is used as-is; otherwise one is built
    from the environment.
    """
    runtime: ExporterRuntime | None = app.state.runtime
    if runtime is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        runtime = ExporterRuntime.from_settings(settings)
        app.state.runtime = runtime

    logger.info(
        "Starting Fitbit exporter v%s (%d resources, poll every %ss, units=%s)",
        runtime.settings.app_version,
        len(runtime.config.resources),
        runtime.settings.poll_interval_seconds,
        runtime.settings.unit_system,
    )
    await runtime.start()
    yield
    await runtime.shutdown()
    logger.info("Fitbit exporter shut down")


# ---------- App factory ----------

def create_app(runtime: ExporterRuntime | None = None) -> FastAPI:
    app = FastAPI(
        title="Fitbit Exporter",
        description=(
            "Polls the Fitbit Web API and exposes the results as Prometheus "
            "metrics, with on-demand historical backfill."
        ),
        docs_url="/docs",
        redoc_url=None,
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.include_router(metrics.router)
    app.include_router(health.router)
    app.include_router(backfill.router)

    return app


app = create_app()
