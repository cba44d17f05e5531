"""After-commit delivery of pipeline signals.

Signals are read from the transactional outbox, so only committed state
changes ever trigger follow-up work. Delivery is at-least-once; scheduling is
idempotent per ``(task_kind, entry_id)`` which makes redelivery harmless.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

from ...infra.events import EventEmitter, get_event_emitter
from ...infra.jobqueue import TASK_KIND
from ...infra.logging import get_logger
from ...infra.metrics import MetricsClient, get_metrics_client
from ...infra.notifications import LoggingNotificationChannel, NotificationChannel
from ..entries.models import OUTBOX_EVENT, OutboxEvent
from ..entries.pipeline_states import PROCESSING_STATE

__all__ = ["PipelineEventDispatcher"]

logger = get_logger(__name__)


class TaskScheduler(Protocol):  # pragma: no cover - interface only
    def schedule(
        self, task_kind: str, entry_id: str, not_before: Optional[datetime] = None
    ) -> Any: ...


class OutboxReader(Protocol):  # pragma: no cover - interface only
    def fetch_undispatched_events(self, limit: int = 100) -> list: ...

    def mark_event_dispatched(self, event_id: int) -> None: ...

    def purge_dispatched_events(self, *, older_than: datetime) -> int: ...


class PipelineEventDispatcher:
    """Routes committed pipeline events to scheduling, notifications and alerts."""

    def __init__(
        self,
        outbox: OutboxReader,
        scheduler: TaskScheduler,
        *,
        notifier: Optional[NotificationChannel] = None,
        emitter: Optional[EventEmitter] = None,
        metrics: Optional[MetricsClient] = None,
        retention_seconds: float = 86400,
        purge_interval_seconds: float = 3600,
    ) -> None:
        self._outbox = outbox
        self._scheduler = scheduler
        self._notifier = notifier or LoggingNotificationChannel()
        self._emitter = emitter or get_event_emitter()
        self._metrics = metrics or get_metrics_client()
        self._relay_lock = threading.Lock()
        self._retention = timedelta(seconds=retention_seconds)
        self._purge_interval = timedelta(seconds=purge_interval_seconds)
        self._next_purge_at: Optional[datetime] = None

    def on_entry_created(self, entry_id: str, content: Optional[str] = None) -> None:
        self._scheduler.schedule(TASK_KIND.ANALYZE, entry_id)
        self._notify(entry_id, PROCESSING_STATE.CREATED, "Entry queued for analysis")

    def on_analysis_completed(self, entry_id: str) -> None:
        self._scheduler.schedule(TASK_KIND.GENERATE_IMAGE, entry_id)
        self._notify(entry_id, PROCESSING_STATE.TEXT_ANALYZED, "Text analysis completed")

    def on_image_completed(self, entry_id: str, image_uri: Optional[str] = None) -> None:
        self._notify(entry_id, PROCESSING_STATE.COMPLETED, image_uri or "Image ready")

    def on_failure_terminal(
        self, entry_id: str, reason: str, attempts: Optional[int] = None
    ) -> None:
        payload = {"entry_id": entry_id, "reason": reason, "attempts": attempts}
        try:
            self._emitter.emit("pipeline.failure_terminal", payload)
        except Exception:
            logger.exception("pipeline_alert_emit_failed", extra={"entry_id": entry_id})
        self._notify(entry_id, PROCESSING_STATE.FAILED, reason)

    def deliver(self, event: OutboxEvent) -> None:
        payload: Dict[str, Any] = dict(event.payload or {})
        if event.event_type == OUTBOX_EVENT.ENTRY_CREATED:
            self.on_entry_created(event.entry_id, payload.get("content"))
        elif event.event_type == OUTBOX_EVENT.ANALYSIS_COMPLETED:
            self.on_analysis_completed(event.entry_id)
        elif event.event_type == OUTBOX_EVENT.IMAGE_COMPLETED:
            self.on_image_completed(event.entry_id, payload.get("image_uri"))
        elif event.event_type == OUTBOX_EVENT.FAILURE_TERMINAL:
            self.on_failure_terminal(
                event.entry_id,
                str(payload.get("reason") or "unknown"),
                payload.get("attempts"),
            )
        else:
            logger.warning(
                "pipeline_event_unknown_type",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )

    def relay_outbox(self, limit: int = 100) -> int:
        """Deliver pending outbox events in order; returns how many were delivered.

        A failing delivery stops the relay and leaves that event pending so
        ordering is preserved for the next attempt.
        """

        if not self._relay_lock.acquire(blocking=False):
            return 0
        delivered = 0
        try:
            for event in self._outbox.fetch_undispatched_events(limit):
                try:
                    self.deliver(event)
                except Exception:
                    self._metrics.increment("pipeline.outbox.delivery_failed")
                    logger.exception(
                        "pipeline_event_delivery_failed",
                        extra={
                            "event_id": event.event_id,
                            "event_type": event.event_type,
                            "entry_id": event.entry_id,
                        },
                    )
                    break
                self._outbox.mark_event_dispatched(event.event_id)
                delivered += 1
        finally:
            self._relay_lock.release()
        if delivered:
            logger.debug("pipeline_outbox_relayed", extra={"delivered": delivered})
        return delivered

    def purge_dispatched(self, now: datetime) -> int:
        """Delete delivered events older than the retention, at most once per interval."""

        if self._next_purge_at is not None and now < self._next_purge_at:
            return 0
        self._next_purge_at = now + self._purge_interval
        purged = self._outbox.purge_dispatched_events(older_than=now - self._retention)
        if purged:
            logger.info(
                "pipeline_outbox_purged",
                extra={
                    "purged": purged,
                    "retention_seconds": self._retention.total_seconds(),
                },
            )
        return purged

    def _notify(self, entry_id: str, state: str, message: Optional[str]) -> None:
        try:
            self._notifier.notify(entry_id, state, message)
        except Exception:
            logger.warning(
                "pipeline_notification_failed",
                extra={"entry_id": entry_id, "state": state},
                exc_info=True,
            )
