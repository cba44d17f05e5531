"""Terminal failure handling for entries that exhausted their attempts."""

from __future__ import annotations

from typing import Any, Optional, Protocol, Tuple

from ...infra.logging import get_logger
from ...infra.metrics import MetricsClient, get_metrics_client
from ..entries.gateway import EntryNotFoundError

__all__ = ["FailureTerminalHandler"]

logger = get_logger(__name__)


class FailureStore(Protocol):  # pragma: no cover - interface only
    def mark_failed(self, entry_id: str, *, reason: str) -> Tuple[Any, bool]: ...


class FailureTerminalHandler:
    """Moves an entry to ``failed`` exactly once.

    The ``failure_terminal`` outbox event is written by the store in the same
    transaction, so the alert fires only for a committed failure.
    """

    def __init__(
        self, store: FailureStore, *, metrics: Optional[MetricsClient] = None
    ) -> None:
        self._store = store
        self._metrics = metrics or get_metrics_client()

    def mark_failed(
        self, entry_id: str, reason: str, *, attempts: Optional[int] = None
    ) -> bool:
        try:
            record, changed = self._store.mark_failed(entry_id, reason=reason)
        except EntryNotFoundError:
            logger.warning(
                "pipeline_failure_entry_missing",
                extra={"entry_id": entry_id, "reason": reason},
            )
            return False

        if not changed:
            logger.info(
                "pipeline_failure_already_terminal",
                extra={"entry_id": entry_id, "state": record.state},
            )
            return False

        self._metrics.increment("pipeline.failure_terminal")
        logger.error(
            "pipeline_entry_failed",
            extra={
                "entry_id": entry_id,
                "reason": reason,
                "attempts": attempts if attempts is not None else record.attempt_count,
            },
        )
        return True
