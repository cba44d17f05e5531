"""System health endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from ...config import Settings, load_settings

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/healthz")
def healthcheck(settings: Settings = Depends(load_settings)) -> dict[str, Any]:
    """Return coarse-grained backend readiness information."""

    return {
        "status": "ok",
        "environment": settings.environment,
        "pipeline": {
            "runWorkers": settings.pipeline.run_workers,
            "maxAttempts": settings.pipeline.max_attempts,
            "retryDelaySeconds": settings.pipeline.retry_delay_seconds,
        },
        "storageBackend": settings.storage.backend,
    }
