"""Shared API dependencies."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Request

from ..domain.entries.gateway import PipelineStoreGateway
from ..domain.entries.intake import OutboxRelay
from ..domain.entries.rate_limit import RateLimiter
from ..jobs.runtime import PipelineRuntime, build_pipeline_runtime

__all__ = [
    "ActorContext",
    "get_actor_context",
    "get_outbox_relay",
    "get_pipeline_runtime",
    "get_pipeline_store",
    "get_rate_limiter",
]

ACTOR_ID_HEADER = "x-actor-id"
ACTOR_SOURCE_HEADER = "x-actor-source"
DEFAULT_ACTOR_ID = os.getenv("DEFAULT_ACTOR_ID", "anonymous")
DEFAULT_ACTOR_SOURCE = os.getenv("DEFAULT_ACTOR_SOURCE", "dreamlog_api")


@dataclass(frozen=True)
class ActorContext:
    """Represents the user initiating an API call."""

    actor_id: str
    actor_source: str


@lru_cache()
def _runtime_singleton() -> PipelineRuntime:
    return build_pipeline_runtime()


def get_pipeline_runtime() -> PipelineRuntime:
    """Return the process-wide pipeline runtime."""

    return _runtime_singleton()


def get_pipeline_store() -> PipelineStoreGateway:
    return get_pipeline_runtime().store


def get_rate_limiter() -> Optional[RateLimiter]:
    return get_pipeline_runtime().rate_limiter


def get_outbox_relay() -> Optional[OutboxRelay]:
    return get_pipeline_runtime().dispatcher


def get_actor_context(request: Request) -> ActorContext:
    """Extract actor metadata from request headers (defaults when missing)."""

    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip() or DEFAULT_ACTOR_ID
    actor_source = (
        request.headers.get(ACTOR_SOURCE_HEADER) or ""
    ).strip() or DEFAULT_ACTOR_SOURCE
    return ActorContext(actor_id=actor_id, actor_source=actor_source)
