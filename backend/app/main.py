"""FastAPI entrypoint for the DreamLog backend."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import get_pipeline_runtime
from .api.routers import entries, health
from .config import load_settings
from .infra.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    settings = load_settings()
    runtime = None
    if settings.pipeline.run_workers:
        runtime = get_pipeline_runtime()
        runtime.start()
        logger.info(
            "pipeline_workers_started",
            extra={"worker_count": settings.pipeline.worker_count},
        )
    try:
        yield
    finally:
        if runtime is not None:
            runtime.stop()


def create_app() -> FastAPI:
    """Instantiate the FastAPI app and register routers."""

    settings = load_settings()
    configure_logging(settings.logging)
    application = FastAPI(title="DreamLog API", version="0.1.0", lifespan=lifespan)
    allowed_origins = {
        "http://localhost:4200",
        "http://127.0.0.1:4200",
    }
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(allowed_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    for router in (health.router, entries.router):
        application.include_router(router)
    return application


app = create_app()
