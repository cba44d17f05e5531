"""Shared attempt bookkeeping for the analysis and image stage executors."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from backend.app.config import load_settings
from backend.app.domain.entries.gateway import EntryNotFoundError, PipelineStoreGateway
from backend.app.domain.entries.pipeline_states import (
    FORWARD_FLOW,
    StaleStateError,
    is_at_or_beyond,
    is_terminal,
)
from backend.app.domain.pipeline.failures import FailureTerminalHandler
from backend.app.infra.jobqueue import TASK_RESULT, RetryableTaskError, current_attempt
from backend.app.infra.logging import get_logger
from backend.app.infra.metrics import MetricsClient, get_metrics_client

__all__ = [
    "RetryableStageError",
    "STAGE_OUTCOME",
    "owns_attempt_outcome",
    "record_attempt_failure",
    "resolve_max_attempts",
    "timeout_handler",
    "walk_forward",
]

logger = get_logger(__name__)

STAGE_OUTCOME = TASK_RESULT


class RetryableStageError(RetryableTaskError):
    """The attempt failed but the entry still has attempts left."""

    def __init__(
        self, message: str, *, code: str, entry_id: str, attempt_count: int
    ) -> None:
        super().__init__(message, code=code)
        self.entry_id = entry_id
        self.attempt_count = attempt_count


def resolve_max_attempts(max_attempts: Optional[int]) -> int:
    if max_attempts is not None:
        return max(1, int(max_attempts))
    return load_settings().pipeline.max_attempts


def record_attempt_failure(
    store: PipelineStoreGateway,
    entry_id: str,
    *,
    stage: str,
    error: BaseException,
    max_attempts: int,
    failure_handler: Optional[FailureTerminalHandler] = None,
    metrics: Optional[MetricsClient] = None,
) -> str:
    """Count a failed attempt on the entry and decide between retry and failure.

    Returns ``FAILED_TERMINAL`` once the persisted count reaches
    ``max_attempts``; otherwise raises ``RetryableStageError``.
    """

    metrics = metrics or get_metrics_client()
    error_code = getattr(error, "code", type(error).__name__)
    if not owns_attempt_outcome(entry_id, stage=stage):
        return STAGE_OUTCOME.STALE
    try:
        record = store.increment_attempts(entry_id)
    except EntryNotFoundError:
        logger.warning(
            "stage_failure_entry_missing",
            extra={"entry_id": entry_id, "stage": stage, "error_code": error_code},
        )
        return STAGE_OUTCOME.DROPPED

    if is_terminal(record.state):
        logger.info(
            "stage_failure_entry_already_terminal",
            extra={"entry_id": entry_id, "stage": stage, "state": record.state},
        )
        return STAGE_OUTCOME.STALE

    if record.attempt_count >= max_attempts:
        handler = failure_handler or FailureTerminalHandler(store, metrics=metrics)
        reason = f"{stage} failed after {record.attempt_count} attempts: {error}"
        handler.mark_failed(entry_id, reason, attempts=record.attempt_count)
        return STAGE_OUTCOME.FAILED_TERMINAL

    metrics.increment("pipeline.stage.retry")
    logger.warning(
        "stage_attempt_failed",
        extra={
            "entry_id": entry_id,
            "stage": stage,
            "attempt_count": record.attempt_count,
            "max_attempts": max_attempts,
            "error_code": error_code,
            "error": str(error),
        },
    )
    raise RetryableStageError(
        f"{stage} attempt {record.attempt_count} failed: {error}",
        code=str(error_code),
        entry_id=entry_id,
        attempt_count=record.attempt_count,
    )


def owns_attempt_outcome(entry_id: str, *, stage: str) -> bool:
    """Settle the running attempt before it commits or counts anything.

    False means the scheduler timed this attempt out and already counted it,
    so the late result must be discarded.
    """

    token = current_attempt()
    if token is None or token.settle():
        return True
    logger.info(
        "stage_attempt_abandoned",
        extra={
            "entry_id": entry_id,
            "stage": stage,
            "task_id": token.task_id,
            "attempt_number": token.attempt_number,
        },
    )
    return False


def walk_forward(store: PipelineStoreGateway, entry_id: str, *, target: str) -> None:
    """Advance the entry one legal step at a time until ``target`` is reached.

    Used when an artifact already exists but the state lags behind it. Losing
    a compare-and-swap means another execution moved the entry, so the walk
    stops there.
    """

    record = store.get_entry(entry_id)
    while not is_terminal(record.state) and not is_at_or_beyond(record.state, target):
        next_state = FORWARD_FLOW[FORWARD_FLOW.index(record.state) + 1]
        try:
            record = store.transition(
                entry_id, from_state=record.state, to_state=next_state
            )
        except StaleStateError:
            return


def timeout_handler(
    stage: str,
    *,
    store_factory: Callable[[], PipelineStoreGateway],
    failure_handler: Optional[FailureTerminalHandler] = None,
    max_attempts: Optional[int] = None,
    metrics: Optional[MetricsClient] = None,
) -> Callable[[Dict[str, Any], float], str]:
    """Build the scheduler hook that counts a timed-out attempt as a failure."""

    def _on_timeout(payload: Dict[str, Any], timeout_seconds: float) -> str:
        return record_attempt_failure(
            store_factory(),
            str(payload["entry_id"]),
            stage=stage,
            error=TimeoutError(f"{stage} attempt exceeded {timeout_seconds}s"),
            max_attempts=resolve_max_attempts(max_attempts),
            failure_handler=failure_handler,
            metrics=metrics,
        )

    return _on_timeout
