"""Polling scheduler that executes durable pipeline tasks."""

from __future__ import annotations

import signal
import socket
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterator,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
)
from uuid import uuid4

from ...config import PipelineConfig
from ..logging import get_logger
from ..metrics import MetricsClient, get_metrics_client
from .store import ScheduledTask, TaskStore

__all__ = [
    "AttemptToken",
    "DurableTaskScheduler",
    "PollSummary",
    "RetryableTaskError",
    "TASK_RESULT",
    "TaskHandler",
    "current_attempt",
]

logger = get_logger(__name__)

TASK_RESULT = SimpleNamespace(
    COMPLETED="completed",
    SKIPPED="skipped",
    STALE="stale",
    DROPPED="dropped",
    FAILED_TERMINAL="failed_terminal",
)

TaskHandler = Callable[[Dict[str, Any]], Optional[str]]
TimeoutHandler = Callable[[Dict[str, Any], float], Optional[str]]


class RetryableTaskError(RuntimeError):
    """Raised by a handler when the task should run again after the retry delay."""

    retryable = True

    def __init__(self, message: str, *, code: str = "retryable") -> None:
        super().__init__(message)
        self.code = code


class AttemptToken:
    """Ownership of the outcome of one timed attempt.

    The handler thread settles the attempt right before it commits a result
    or counts a failure; the scheduler abandons it when the timeout fires.
    Whichever side gets there first owns the outcome, so an attempt is never
    both counted by the timeout and committed or counted by its own thread.
    """

    _SETTLED = "settled"
    _ABANDONED = "abandoned"

    def __init__(self, task_id: str, attempt_number: int) -> None:
        self.task_id = task_id
        self.attempt_number = attempt_number
        self._lock = threading.Lock()
        self._outcome: Optional[str] = None

    def settle(self) -> bool:
        """Claim the outcome for the handler; False once the attempt was abandoned."""

        return self._take(self._SETTLED)

    def abandon(self) -> bool:
        """Claim the outcome for the scheduler; False if the handler already settled."""

        return self._take(self._ABANDONED)

    @property
    def abandoned(self) -> bool:
        return self._outcome == self._ABANDONED

    def _take(self, outcome: str) -> bool:
        with self._lock:
            if self._outcome is None:
                self._outcome = outcome
            return self._outcome == outcome


_ATTEMPT_CONTEXT = threading.local()


def current_attempt() -> Optional[AttemptToken]:
    """Token of the timed attempt running on this thread, if any."""

    return getattr(_ATTEMPT_CONTEXT, "token", None)


class EntryStateReader(Protocol):  # pragma: no cover - interface only
    def get_entry(self, entry_id: str) -> Any: ...


@dataclass
class PollSummary:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    dropped: int = 0
    failed: int = 0
    skipped_locked: int = 0
    relay_errors: int = 0

    def merge(self, other: "PollSummary") -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


@dataclass(frozen=True)
class _Registration:
    handler: TaskHandler
    on_timeout: Optional[TimeoutHandler]


class DurableTaskScheduler:
    """Runs registered handlers for due tasks stored in the task table.

    Each claimed task runs at most once concurrently: the table row is leased
    with ``claimed_by``/``claimed_at`` and this process additionally marks
    the ``(task_kind, entry_id)`` key busy while it runs. Leases older than
    the claim TTL are treated as abandoned and picked up again.

    Timed attempts run on their own thread, so the timeout only starts once
    the handler is actually running and a hung attempt never delays others.
    """

    def __init__(
        self,
        task_store: TaskStore,
        *,
        config: Optional[PipelineConfig] = None,
        entry_reader: Optional[EntryStateReader] = None,
        clock: Optional[Callable[[], datetime]] = None,
        worker_id: Optional[str] = None,
        metrics: Optional[MetricsClient] = None,
    ) -> None:
        self._store = task_store
        self._config = config or PipelineConfig()
        self._entry_reader = entry_reader
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.worker_id = worker_id or f"{socket.gethostname()}:{uuid4().hex[:8]}"
        self._metrics = metrics or get_metrics_client()
        self._handlers: Dict[str, _Registration] = {}
        self._before_poll: List[Callable[[], Any]] = []
        self._busy_keys: Set[Tuple[str, str]] = set()
        self._busy_keys_guard = threading.Lock()
        self._attempt_threads: List[threading.Thread] = []
        self._attempt_threads_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def busy_keys(self) -> FrozenSet[Tuple[str, str]]:
        with self._busy_keys_guard:
            return frozenset(self._busy_keys)

    def register(
        self,
        task_kind: str,
        handler: TaskHandler,
        *,
        on_timeout: Optional[TimeoutHandler] = None,
    ) -> None:
        self._handlers[task_kind] = _Registration(handler=handler, on_timeout=on_timeout)

    def add_before_poll(self, hook: Callable[[], Any]) -> None:
        """Run ``hook`` at the start of every poll cycle (e.g. outbox relay)."""

        self._before_poll.append(hook)

    def schedule(
        self, task_kind: str, entry_id: str, not_before: Optional[datetime] = None
    ) -> ScheduledTask:
        when = not_before or self._clock()
        task, created = self._store.schedule(task_kind, entry_id, not_before=when)
        logger.info(
            "pipeline_task_scheduled" if created else "pipeline_task_already_scheduled",
            extra={
                "task_kind": task_kind,
                "entry_id": entry_id,
                "task_id": task.task_id,
                "not_before": task.not_before.isoformat(),
            },
        )
        return task

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------
    def run_once(self) -> PollSummary:
        """Relay pending signals, then claim and execute every due task once."""

        summary = PollSummary()
        for hook in list(self._before_poll):
            try:
                hook()
            except Exception:
                summary.relay_errors += 1
                logger.exception(
                    "scheduler_before_poll_failed", extra={"worker_id": self.worker_id}
                )

        now = self._clock()
        due = self._store.fetch_due(
            now,
            limit=self._config.batch_size,
            claim_ttl_seconds=self._config.claim_ttl_seconds,
        )
        self._metrics.gauge("pipeline.task.due", len(due))
        for task in due:
            if self._stop_event.is_set():
                break
            try:
                self._run_task(task, summary)
            except Exception:
                logger.exception(
                    "scheduler_task_unhandled_error",
                    extra={
                        "task_id": task.task_id,
                        "task_kind": task.task_kind,
                        "entry_id": task.entry_id,
                    },
                )
        return summary

    def _run_task(self, task: ScheduledTask, summary: PollSummary) -> None:
        registration = self._handlers.get(task.task_kind)
        if registration is None:
            logger.warning(
                "scheduler_no_handler_registered",
                extra={"task_kind": task.task_kind, "task_id": task.task_id},
            )
            return

        if not self._mark_busy(task.key):
            summary.skipped_locked += 1
            return
        try:
            claimed = self._store.claim(
                task.task_id,
                worker_id=self.worker_id,
                now=self._clock(),
                claim_ttl_seconds=self._config.claim_ttl_seconds,
            )
            if claimed is None:
                summary.skipped_locked += 1
                return
            summary.claimed += 1
            self._metrics.increment("pipeline.task.claimed")
            logger.info(
                "pipeline_task_claimed",
                extra={
                    "task_id": claimed.task_id,
                    "task_kind": claimed.task_kind,
                    "entry_id": claimed.entry_id,
                    "attempt_number": claimed.attempt_number,
                    "worker_id": self.worker_id,
                },
            )
            self._execute_claimed(claimed, registration, summary)
        finally:
            self._clear_busy(task.key)

    def _execute_claimed(
        self,
        task: ScheduledTask,
        registration: _Registration,
        summary: PollSummary,
    ) -> None:
        timeout = self._config.attempt_timeout_seconds or None
        try:
            if timeout is None:
                result = registration.handler(task.payload)
            else:
                token = AttemptToken(task.task_id, task.attempt_number)
                future = self._start_attempt(task, registration.handler, token)
                try:
                    result = future.result(timeout=timeout)
                except FutureTimeoutError:
                    if token.abandon():
                        result = self._handle_timeout(task, registration, timeout)
                    else:
                        # The handler settled first and is finishing its commit.
                        result = future.result()
        except RetryableTaskError as exc:
            self._retry_or_finish(task, summary, error=exc)
            return
        except Exception as exc:
            logger.exception(
                "pipeline_task_handler_crashed",
                extra={
                    "task_id": task.task_id,
                    "task_kind": task.task_kind,
                    "entry_id": task.entry_id,
                },
            )
            self._retry_or_finish(task, summary, error=exc)
            return

        self._finish(task, summary, result or TASK_RESULT.COMPLETED)

    def _handle_timeout(
        self, task: ScheduledTask, registration: _Registration, timeout: float
    ) -> Optional[str]:
        logger.warning(
            "pipeline_task_attempt_timed_out",
            extra={
                "task_id": task.task_id,
                "task_kind": task.task_kind,
                "entry_id": task.entry_id,
                "timeout_seconds": timeout,
            },
        )
        self._metrics.increment("pipeline.task.timeout")
        if registration.on_timeout is None:
            raise RetryableTaskError(
                f"attempt exceeded {timeout}s", code="attempt_timeout"
            )
        return registration.on_timeout(task.payload, timeout)

    def _finish(self, task: ScheduledTask, summary: PollSummary, result: str) -> None:
        self._store.complete(task.task_id, worker_id=self.worker_id)
        if result == TASK_RESULT.DROPPED:
            summary.dropped += 1
        elif result == TASK_RESULT.FAILED_TERMINAL:
            summary.failed += 1
        else:
            summary.completed += 1
        logger.info(
            "pipeline_task_finished",
            extra={
                "task_id": task.task_id,
                "task_kind": task.task_kind,
                "entry_id": task.entry_id,
                "result": result,
            },
        )

    def _retry_or_finish(
        self, task: ScheduledTask, summary: PollSummary, *, error: Exception
    ) -> None:
        blocked_reason = self._retry_blocked_reason(task.entry_id)
        if blocked_reason is not None:
            self._finish(
                task,
                summary,
                TASK_RESULT.DROPPED
                if blocked_reason == "entry_missing"
                else TASK_RESULT.FAILED_TERMINAL,
            )
            return

        not_before = self._clock() + timedelta(
            seconds=self._config.retry_delay_seconds
        )
        self._store.reschedule(
            task.task_id, not_before=not_before, worker_id=self.worker_id
        )
        summary.retried += 1
        self._metrics.increment("pipeline.task.rescheduled")
        logger.warning(
            "pipeline_task_rescheduled",
            extra={
                "task_id": task.task_id,
                "task_kind": task.task_kind,
                "entry_id": task.entry_id,
                "attempt_number": task.attempt_number + 1,
                "not_before": not_before.isoformat(),
                "error_code": getattr(error, "code", type(error).__name__),
            },
        )

    def _retry_blocked_reason(self, entry_id: str) -> Optional[str]:
        """Check the entry's own attempt counter and state before re-enqueueing."""

        if self._entry_reader is None:
            return None
        try:
            entry = self._entry_reader.get_entry(entry_id)
        except KeyError:
            return "entry_missing"
        state = getattr(entry, "state", None)
        if state in ("completed", "failed"):
            return "entry_terminal"
        attempts = int(getattr(entry, "attempt_count", 0) or 0)
        if attempts >= self._config.max_attempts:
            return "attempts_exhausted"
        return None

    def _mark_busy(self, key: Tuple[str, str]) -> bool:
        with self._busy_keys_guard:
            if key in self._busy_keys:
                return False
            self._busy_keys.add(key)
            return True

    def _clear_busy(self, key: Tuple[str, str]) -> None:
        with self._busy_keys_guard:
            self._busy_keys.discard(key)

    def _start_attempt(
        self, task: ScheduledTask, handler: TaskHandler, token: AttemptToken
    ) -> Future:
        future: Future = Future()
        future.set_running_or_notify_cancel()

        def _run() -> None:
            _ATTEMPT_CONTEXT.token = token
            try:
                result = handler(task.payload)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)
            finally:
                _ATTEMPT_CONTEXT.token = None

        thread = threading.Thread(
            target=_run,
            name=f"pipeline-attempt-{task.task_kind}-{task.entry_id}",
            daemon=True,
        )
        with self._attempt_threads_guard:
            self._attempt_threads = [
                item for item in self._attempt_threads if item.is_alive()
            ]
            self._attempt_threads.append(thread)
        thread.start()
        return future

    def join_attempts(self, timeout: Optional[float] = None) -> int:
        """Wait for attempt threads, including abandoned ones; returns how many still run."""

        with self._attempt_threads_guard:
            threads = list(self._attempt_threads)
        for thread in threads:
            thread.join(timeout=timeout)
        with self._attempt_threads_guard:
            self._attempt_threads = [
                item for item in self._attempt_threads if item.is_alive()
            ]
            return len(self._attempt_threads)

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------
    def start(self, worker_count: Optional[int] = None) -> None:
        """Recover abandoned leases and start polling threads."""

        if self._threads:
            return
        self._stop_event.clear()
        released = self._store.release_expired_claims(
            self._clock(), self._config.claim_ttl_seconds
        )
        count = max(1, worker_count or self._config.worker_count)
        logger.info(
            "scheduler_starting",
            extra={
                "worker_id": self.worker_id,
                "worker_count": count,
                "released_claims": released,
            },
        )
        for index in range(count):
            thread = threading.Thread(
                target=self._poll_loop,
                name=f"pipeline-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        still_running = self.join_attempts(timeout=0)
        logger.info(
            "scheduler_stopped",
            extra={"worker_id": self.worker_id, "running_attempts": still_running},
        )

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stop_event.is_set()

    def run_forever(self) -> None:
        """Block until SIGINT/SIGTERM, polling with the configured workers."""

        with self._signal_handlers():
            self.start()
            try:
                while not self._stop_event.wait(0.5):
                    pass
            finally:
                self.stop()

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                summary = self.run_once()
            except Exception:
                logger.exception(
                    "scheduler_poll_failed", extra={"worker_id": self.worker_id}
                )
            else:
                if summary.claimed:
                    logger.debug(
                        "scheduler_poll_completed",
                        extra={"worker_id": self.worker_id, **vars(summary)},
                    )
            self._stop_event.wait(self._config.poll_interval_seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info(
                "scheduler_stop_requested",
                extra={"signal": signal.Signals(signum).name, "worker_id": self.worker_id},
            )
            self._stop_event.set()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Handlers can only be installed from the main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

