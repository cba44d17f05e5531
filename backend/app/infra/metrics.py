"""Pipeline counters, gauges and stage timings."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import DefaultDict, Dict, List

from .logging import get_logger

logger = get_logger(__name__)


class MetricsClient:  # pragma: no cover - simple helper
    """Sink for pipeline counters (``pipeline.stage.retry``), gauges and timings."""

    def increment(self, metric: str, value: int = 1) -> None:
        raise NotImplementedError

    def gauge(self, metric: str, value: int) -> None:
        raise NotImplementedError

    def timing(self, metric: str, milliseconds: float) -> None:
        raise NotImplementedError


@dataclass
class InMemoryMetricsClient(MetricsClient):
    """Thread-safe process-local sink; workers and the API share one instance."""

    counters: DefaultDict[str, int] = field(default_factory=lambda: defaultdict(int))
    gauges: Dict[str, int] = field(default_factory=dict)
    timings: DefaultDict[str, List[float]] = field(
        default_factory=lambda: defaultdict(list)
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def increment(self, metric: str, value: int = 1) -> None:
        with self._lock:
            self.counters[metric] += value
            total = self.counters[metric]
        logger.debug(
            "metrics_increment", extra={"metric": metric, "value": value, "total": total}
        )

    def gauge(self, metric: str, value: int) -> None:
        with self._lock:
            self.gauges[metric] = value

    def timing(self, metric: str, milliseconds: float) -> None:
        with self._lock:
            self.timings[metric].append(float(milliseconds))

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        """Counters, gauges and mean timings, suitable for a health payload."""

        with self._lock:
            return {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "timings_ms": {
                    name: sum(values) / len(values)
                    for name, values in self.timings.items()
                    if values
                },
            }


_metrics_singleton: InMemoryMetricsClient | None = None


def get_metrics_client() -> MetricsClient:
    """Return the shared metrics client."""

    global _metrics_singleton
    if _metrics_singleton is None:
        _metrics_singleton = InMemoryMetricsClient()
    return _metrics_singleton
