"""Database connection helpers."""

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from ...config import load_settings
from .schema import (
    ENTRY_ANALYSES,
    ENTRY_PROCESSING,
    METADATA,
    PIPELINE_OUTBOX,
    SCHEDULED_TASKS,
)

__all__ = [
    "ENTRY_ANALYSES",
    "ENTRY_PROCESSING",
    "METADATA",
    "PIPELINE_OUTBOX",
    "SCHEDULED_TASKS",
    "get_engine",
]


@lru_cache()
def get_engine() -> Engine:
    """Return the process-wide engine built from the active settings profile."""

    settings = load_settings()
    return create_engine(
        settings.database_url, echo=False, future=True, pool_pre_ping=True
    )
