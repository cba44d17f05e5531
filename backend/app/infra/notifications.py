"""Progress notifications pushed to clients watching an entry."""

from __future__ import annotations

import queue
import threading
from typing import Any, Dict, List, Optional, Protocol

from ..domain.entries.pipeline_states import TERMINAL_STATES
from .logging import get_logger

__all__ = [
    "LoggingNotificationChannel",
    "NotificationChannel",
    "ProgressBroadcaster",
]

logger = get_logger(__name__)


class NotificationChannel(Protocol):  # pragma: no cover - interface only
    def notify(self, entry_id: str, state: str, message: Optional[str] = None) -> None:
        """Deliver a progress update; callers treat delivery as best effort."""


class LoggingNotificationChannel(NotificationChannel):
    """Fallback channel that only writes progress updates to the log."""

    def notify(self, entry_id: str, state: str, message: Optional[str] = None) -> None:
        logger.info(
            "entry_progress_notification",
            extra={"entry_id": entry_id, "state": state, "detail": message or ""},
        )


class ProgressBroadcaster(NotificationChannel):
    """Fans progress events out to per-entry subscriber queues.

    A subscription is closed (``None`` is enqueued and the queue dropped) once
    the entry reaches a terminal state.
    """

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self._lock = threading.Lock()
        self._max_queue_size = max_queue_size
        self._subscribers: Dict[str, List["queue.Queue[Optional[Dict[str, Any]]]"]] = {}

    def subscribe(self, entry_id: str) -> "queue.Queue[Optional[Dict[str, Any]]]":
        subscription: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue(
            maxsize=self._max_queue_size
        )
        with self._lock:
            self._subscribers.setdefault(entry_id, []).append(subscription)
        logger.debug("progress_subscription_opened", extra={"entry_id": entry_id})
        return subscription

    def unsubscribe(
        self, entry_id: str, subscription: "queue.Queue[Optional[Dict[str, Any]]]"
    ) -> None:
        with self._lock:
            subscribers = self._subscribers.get(entry_id) or []
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(entry_id, None)

    def subscriber_count(self, entry_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(entry_id) or [])

    def notify(self, entry_id: str, state: str, message: Optional[str] = None) -> None:
        event = {"entry_id": entry_id, "state": state, "message": message or ""}
        terminal = state in TERMINAL_STATES
        with self._lock:
            if terminal:
                subscribers = self._subscribers.pop(entry_id, [])
            else:
                subscribers = list(self._subscribers.get(entry_id) or [])
        for subscription in subscribers:
            try:
                subscription.put_nowait(event)
                if terminal:
                    subscription.put_nowait(None)
            except queue.Full:
                logger.warning(
                    "progress_subscription_overflow",
                    extra={"entry_id": entry_id, "state": state},
                )
                self.unsubscribe(entry_id, subscription)
        logger.debug(
            "progress_notification_sent",
            extra={
                "entry_id": entry_id,
                "state": state,
                "subscribers": len(subscribers),
            },
        )
