"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.exporter.runtime import ExporterRuntime


async def get_runtime(request: Request) -> ExporterRuntime:
    """Return the runtime the lifespan attached to ``app.state``."""
    runtime: ExporterRuntime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Exporter is not running")
    return runtime


# Annotated shortcut for route signatures
Runtime = Annotated[ExporterRuntime, Depends(get_runtime)]
