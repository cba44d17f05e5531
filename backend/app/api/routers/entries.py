"""Entry submission and processing-status endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, status
from pydantic import BaseModel, Field

from ...api.dependencies import (
    ActorContext,
    get_actor_context,
    get_outbox_relay,
    get_pipeline_store,
    get_rate_limiter,
)
from ...domain.entries.gateway import EntryNotFoundError, PipelineStoreGateway
from ...domain.entries.intake import MAX_CONTENT_CHARS, OutboxRelay, submit_entry
from ...domain.entries.models import AnalysisRecord, EntryProcessingRecord
from ...domain.entries.rate_limit import RateLimiter, RateLimitExceededError
from ...infra.logging import get_logger
from ...infra.metrics import get_metrics_client

router = APIRouter(prefix="/api/entries", tags=["entries"])
logger = get_logger(__name__)
metrics = get_metrics_client()

EntryId = Annotated[str, Path(..., min_length=3, max_length=64)]


class EntryCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=MAX_CONTENT_CHARS)


class AnalysisPayload(BaseModel):
    summary: str
    tags: List[str] = Field(default_factory=list)
    entities: List[str] = Field(default_factory=list)
    emotions: Dict[str, float] = Field(default_factory=dict)
    interpretation: Optional[str] = None
    model_version: Optional[str] = None
    primary_emotion: str = "neutral"


class ProcessingStatusResponse(BaseModel):
    entry_id: str
    state: str
    attempt_count: int
    failure_reason: Optional[str] = None
    image_uri: Optional[str] = None
    image_generated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    analysis: Optional[AnalysisPayload] = None


def _to_response(
    record: EntryProcessingRecord, analysis: Optional[AnalysisRecord]
) -> ProcessingStatusResponse:
    analysis_payload = None
    if analysis is not None:
        analysis_payload = AnalysisPayload(
            summary=analysis.summary,
            tags=list(analysis.tags),
            entities=list(analysis.entities),
            emotions=dict(analysis.emotions),
            interpretation=analysis.interpretation,
            model_version=analysis.model_version,
            primary_emotion=analysis.primary_emotion(),
        )
    return ProcessingStatusResponse(
        entry_id=record.entry_id,
        state=record.state,
        attempt_count=record.attempt_count,
        failure_reason=record.failure_reason,
        image_uri=record.image_uri,
        image_generated_at=record.image_generated_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
        analysis=analysis_payload,
    )


@router.post(
    "",
    response_model=ProcessingStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def create_entry(
    payload: EntryCreateRequest,
    actor: ActorContext = Depends(get_actor_context),
    store: PipelineStoreGateway = Depends(get_pipeline_store),
    rate_limiter: Optional[RateLimiter] = Depends(get_rate_limiter),
    relay: Optional[OutboxRelay] = Depends(get_outbox_relay),
) -> ProcessingStatusResponse:
    try:
        record = submit_entry(
            payload.content,
            user_id=actor.actor_id,
            store=store,
            rate_limiter=rate_limiter,
            relay=relay,
        )
    except RateLimitExceededError as exc:
        metrics.increment("entries.rate_limited")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Entry creation limit reached. Try again later.",
            headers={"Retry-After": str(int(exc.retry_after_seconds) + 1)},
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    metrics.increment("entries.created")
    return _to_response(record, None)


@router.get("/{entry_id}/processing", response_model=ProcessingStatusResponse)
def get_processing_status(
    entry_id: EntryId,
    store: PipelineStoreGateway = Depends(get_pipeline_store),
) -> ProcessingStatusResponse:
    try:
        record = store.get_entry(entry_id)
    except EntryNotFoundError as exc:
        logger.info("processing_status_entry_missing", extra={"entry_id": entry_id})
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Entry not found"
        ) from exc
    return _to_response(record, store.get_analysis(entry_id))
