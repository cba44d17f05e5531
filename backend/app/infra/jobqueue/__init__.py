"""Durable task queue used by the processing pipeline."""

from .scheduler import (
    TASK_RESULT,
    AttemptToken,
    DurableTaskScheduler,
    PollSummary,
    RetryableTaskError,
    TaskHandler,
    current_attempt,
)
from .store import (
    TASK_KIND,
    InMemoryTaskStore,
    ScheduledTask,
    SqlTaskStore,
    TaskStore,
)

__all__ = [
    "AttemptToken",
    "DurableTaskScheduler",
    "InMemoryTaskStore",
    "PollSummary",
    "RetryableTaskError",
    "ScheduledTask",
    "SqlTaskStore",
    "TASK_KIND",
    "TASK_RESULT",
    "TaskHandler",
    "TaskStore",
    "current_attempt",
]
