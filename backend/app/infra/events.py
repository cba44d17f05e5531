"""Alert publishing for terminal pipeline failures."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .logging import get_logger
from .metrics import MetricsClient

logger = get_logger(__name__)


class EventEmitter(Protocol):  # pragma: no cover - interface only
    def emit(self, topic: str, payload: Dict[str, Any]) -> None:
        """Publish ``payload`` under ``topic``; callers treat this as best effort."""


@dataclass
class LoggingEventEmitter(EventEmitter):
    """Writes alerts to the log stream at warning level and counts them."""

    topic_prefix: str = "dreamlog"
    metrics: Optional[MetricsClient] = None

    def qualify(self, topic: str) -> str:
        if not self.topic_prefix or topic.startswith(f"{self.topic_prefix}."):
            return topic
        return f"{self.topic_prefix}.{topic}"

    def emit(self, topic: str, payload: Dict[str, Any]) -> None:
        qualified = self.qualify(topic)
        if self.metrics is not None:
            self.metrics.increment(f"alerts.{topic}")
        logger.warning(
            "pipeline_alert",
            extra={
                "topic": qualified,
                "entry_id": payload.get("entry_id"),
                "payload": dict(payload),
            },
        )


_singleton: LoggingEventEmitter | None = None


def get_event_emitter() -> EventEmitter:
    """Return the process-wide alert emitter."""

    global _singleton
    if _singleton is None:
        _singleton = LoggingEventEmitter()
    return _singleton
