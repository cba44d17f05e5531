"""Generate-image stage: render, store and attach the dream image."""

from __future__ import annotations

import time
from typing import Any, Optional, Protocol

from backend.app.config import load_settings
from backend.app.domain.entries.gateway import (
    EntryNotFoundError,
    PipelineStoreGateway,
    build_pipeline_store,
)
from backend.app.domain.entries.pipeline_states import (
    PROCESSING_STATE,
    StaleStateError,
    is_at_or_beyond,
    is_terminal,
)
from backend.app.domain.pipeline.failures import FailureTerminalHandler
from backend.app.domain.pipeline.idempotency import STAGE, evaluate_stage_idempotency
from backend.app.infra import ai_gateway
from backend.app.infra.ai_gateway import build_image_prompt
from backend.app.infra.logging import get_logger
from backend.app.infra.metrics import MetricsClient, get_metrics_client
from backend.app.infra.storage import (
    ObjectStorageService,
    StorageError,
    build_object_storage,
)
from backend.app.jobs.stage_support import (
    STAGE_OUTCOME,
    owns_attempt_outcome,
    record_attempt_failure,
    resolve_max_attempts,
    walk_forward,
)

logger = get_logger(__name__)

STAGE_NAME = "generate_image"


class ImageClient(Protocol):  # pragma: no cover - interface definition
    def generate_image(self, prompt: str) -> Any: ...


class AnalysisMissingError(RuntimeError):
    code = "analysis_missing"
    retryable = True


_STORE: Optional[PipelineStoreGateway] = None
_STORAGE: Optional[ObjectStorageService] = None


def _get_default_store() -> PipelineStoreGateway:
    global _STORE
    if _STORE is None:
        _STORE = build_pipeline_store()
    return _STORE


def _get_default_storage() -> ObjectStorageService:
    global _STORAGE
    if _STORAGE is None:
        _STORAGE = build_object_storage(load_settings().storage)
    return _STORAGE


def handle(
    payload: dict,
    *,
    store: Optional[PipelineStoreGateway] = None,
    ai_client: Optional[ImageClient] = None,
    storage: Optional[ObjectStorageService] = None,
    failure_handler: Optional[FailureTerminalHandler] = None,
    max_attempts: Optional[int] = None,
    metrics: Optional[MetricsClient] = None,
) -> str:
    """Run one attempt of the image stage for ``payload["entry_id"]``."""

    gateway = store or _get_default_store()
    client = ai_client or ai_gateway
    object_storage = storage or _get_default_storage()
    metrics = metrics or get_metrics_client()
    attempts_allowed = resolve_max_attempts(max_attempts)

    entry_id = payload.get("entry_id")
    if not entry_id:
        raise ValueError("image payload missing entry_id")
    log_extra = {
        "entry_id": entry_id,
        "stage": STAGE_NAME,
        "attempt_number": payload.get("attempt_number"),
    }

    stored_key: Optional[str] = None
    try:
        record = gateway.get_entry(entry_id)
        decision = evaluate_stage_idempotency(gateway, STAGE.GENERATE_IMAGE, entry_id)
        if not decision.should_run:
            walk_forward(gateway, entry_id, target=PROCESSING_STATE.COMPLETED)
            logger.info(
                "image_already_recorded",
                extra={**log_extra, "reason": decision.reason},
            )
            return STAGE_OUTCOME.SKIPPED

        if is_terminal(record.state):
            logger.info("image_not_needed", extra={**log_extra, "state": record.state})
            return STAGE_OUTCOME.SKIPPED
        if not is_at_or_beyond(record.state, PROCESSING_STATE.TEXT_ANALYZED):
            logger.warning(
                "image_stage_before_analysis",
                extra={**log_extra, "state": record.state},
            )
            return STAGE_OUTCOME.SKIPPED

        if record.state == PROCESSING_STATE.TEXT_ANALYZED:
            record = gateway.transition(
                entry_id,
                from_state=PROCESSING_STATE.TEXT_ANALYZED,
                to_state=PROCESSING_STATE.GENERATING_IMAGE,
            )
        logger.info(
            "image_job_started",
            extra={**log_extra, "attempt_count": record.attempt_count},
        )

        analysis = gateway.get_analysis(entry_id)
        if analysis is None:
            raise AnalysisMissingError(f"analysis for entry {entry_id} not found")
        prompt = build_image_prompt(analysis.summary, analysis.primary_emotion())
        start_clock = time.perf_counter()
        result = client.generate_image(prompt)
        if not owns_attempt_outcome(entry_id, stage=STAGE_NAME):
            return STAGE_OUTCOME.STALE

        filename = result.suggest_filename(f"dream-{entry_id[:8]}")
        stored = object_storage.store(
            result.image_data, filename=filename, content_type=result.mime_type
        )
        stored_key = stored.storage_key
        gateway.record_image(
            entry_id,
            storage_key=stored.storage_key,
            image_uri=stored.access_url,
            from_state=PROCESSING_STATE.GENERATING_IMAGE,
        )
    except StaleStateError as exc:
        _discard_stored_image(object_storage, stored_key, log_extra)
        logger.info(
            "image_state_stale",
            extra={**log_extra, "actual_state": exc.actual_state},
        )
        return STAGE_OUTCOME.STALE
    except EntryNotFoundError:
        _discard_stored_image(object_storage, stored_key, log_extra)
        logger.warning("image_entry_missing", extra=log_extra)
        return STAGE_OUTCOME.DROPPED
    except Exception as exc:
        _discard_stored_image(object_storage, stored_key, log_extra)
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
        "image_job_completed",
        extra={
            **log_extra,
            "processing_ms": processing_ms,
            "storage_key": stored.storage_key,
            "size_bytes": stored.size_bytes,
            "model_version": result.model_version,
        },
    )
    return STAGE_OUTCOME.COMPLETED


def _discard_stored_image(
    storage: ObjectStorageService, storage_key: Optional[str], log_extra: dict
) -> None:
    """Delete an object that was stored for an attempt whose commit did not land."""

    if not storage_key:
        return
    try:
        storage.delete(storage_key)
    except StorageError:
        logger.warning(
            "image_orphan_cleanup_failed",
            extra={**log_extra, "storage_key": storage_key},
            exc_info=True,
        )
        return
    logger.info(
        "image_orphan_deleted", extra={**log_extra, "storage_key": storage_key}
    )
