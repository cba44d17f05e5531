"""Analyze stage: turn dream text into a persisted analysis."""

from __future__ import annotations

import time
from typing import Any, Optional, Protocol

from backend.app.domain.entries.gateway import (
    EntryNotFoundError,
    PipelineStoreGateway,
    build_pipeline_store,
)
from backend.app.domain.entries.models import AnalysisRecord
from backend.app.domain.entries.pipeline_states import (
    PROCESSING_STATE,
    StaleStateError,
    is_at_or_beyond,
    is_terminal,
)
from backend.app.domain.pipeline.failures import FailureTerminalHandler
from backend.app.domain.pipeline.idempotency import STAGE, evaluate_stage_idempotency
from backend.app.infra import ai_gateway
from backend.app.infra.logging import get_logger
from backend.app.infra.metrics import MetricsClient, get_metrics_client
from backend.app.jobs.stage_support import (
    STAGE_OUTCOME,
    owns_attempt_outcome,
    record_attempt_failure,
    resolve_max_attempts,
    walk_forward,
)

logger = get_logger(__name__)

STAGE_NAME = "analyze"


class AnalysisClient(Protocol):  # pragma: no cover - interface definition
    def analyze_text(self, text: str) -> Any: ...


_STORE: Optional[PipelineStoreGateway] = None


def _get_default_store() -> PipelineStoreGateway:
    global _STORE
    if _STORE is None:
        _STORE = build_pipeline_store()
    return _STORE


def handle(
    payload: dict,
    *,
    store: Optional[PipelineStoreGateway] = None,
    ai_client: Optional[AnalysisClient] = None,
    failure_handler: Optional[FailureTerminalHandler] = None,
    max_attempts: Optional[int] = None,
    metrics: Optional[MetricsClient] = None,
) -> str:
    """Run one attempt of the analysis stage for ``payload["entry_id"]``."""

    gateway = store or _get_default_store()
    client = ai_client or ai_gateway
    metrics = metrics or get_metrics_client()
    attempts_allowed = resolve_max_attempts(max_attempts)

    entry_id = payload.get("entry_id")
    if not entry_id:
        raise ValueError("analysis payload missing entry_id")
    log_extra = {
        "entry_id": entry_id,
        "stage": STAGE_NAME,
        "attempt_number": payload.get("attempt_number"),
    }

    try:
        record = gateway.get_entry(entry_id)
        decision = evaluate_stage_idempotency(gateway, STAGE.ANALYZE, entry_id)
        if not decision.should_run:
            walk_forward(gateway, entry_id, target=PROCESSING_STATE.TEXT_ANALYZED)
            logger.info(
                "analysis_already_recorded",
                extra={**log_extra, "reason": decision.reason},
            )
            return STAGE_OUTCOME.SKIPPED

        if is_terminal(record.state) or is_at_or_beyond(
            record.state, PROCESSING_STATE.TEXT_ANALYZED
        ):
            logger.info(
                "analysis_not_needed", extra={**log_extra, "state": record.state}
            )
            return STAGE_OUTCOME.SKIPPED

        if record.state == PROCESSING_STATE.CREATED:
            record = gateway.transition(
                entry_id,
                from_state=PROCESSING_STATE.CREATED,
                to_state=PROCESSING_STATE.ANALYZING_TEXT,
            )
        logger.info(
            "analysis_job_started",
            extra={**log_extra, "attempt_count": record.attempt_count},
        )

        start_clock = time.perf_counter()
        result = client.analyze_text(record.content)
        analysis = AnalysisRecord.new(
            entry_id=entry_id,
            summary=result.summary,
            tags=list(result.tags),
            entities=list(result.entities),
            emotions=dict(result.emotions),
            interpretation=result.interpretation,
            model_version=result.model_version,
        )
        if not owns_attempt_outcome(entry_id, stage=STAGE_NAME):
            return STAGE_OUTCOME.STALE
        gateway.record_analysis(
            entry_id, analysis, from_state=PROCESSING_STATE.ANALYZING_TEXT
        )
    except StaleStateError as exc:
        logger.info(
            "analysis_state_stale",
            extra={**log_extra, "actual_state": exc.actual_state},
        )
        return STAGE_OUTCOME.STALE
    except EntryNotFoundError:
        logger.warning("analysis_entry_missing", extra=log_extra)
        return STAGE_OUTCOME.DROPPED
    except Exception as exc:
        return record_attempt_failure(
            gateway,
            entry_id,
            stage=STAGE_NAME,
            error=exc,
            max_attempts=attempts_allowed,
            failure_handler=failure_handler,
            metrics=metrics,
        )

    processing_ms = int((time.perf_counter() - start_clock) * 1000)
    metrics.increment("pipeline.stage.completed")
    metrics.timing(f"pipeline.stage.{STAGE_NAME}.duration_ms", processing_ms)
    logger.info(
        "analysis_job_completed",
        extra={
            **log_extra,
            "analysis_id": analysis.analysis_id,
            "model_version": analysis.model_version,
            "tags": analysis.tags,
            "processing_ms": processing_ms,
        },
    )
    return STAGE_OUTCOME.COMPLETED
