"""Tests for the durable polling scheduler."""

from __future__ import annotations

import threading
import time
from datetime import timedelta
from types import SimpleNamespace

import pytest

from backend.app.config import PipelineConfig
from backend.app.infra.jobqueue import (
    TASK_KIND,
    TASK_RESULT,
    AttemptToken,
    DurableTaskScheduler,
    InMemoryTaskStore,
    RetryableTaskError,
    SqlTaskStore,
    current_attempt,
)
from backend.app.infra.metrics import InMemoryMetricsClient
from tests.helpers.pipeline_harness import FakeClock, build_sqlite_engine

pytestmark = [pytest.mark.jobqueue]


class _EntryTable:
    """Entry reader stub keyed by entry id."""

    def __init__(self, **entries):
        self.entries = dict(entries)

    def get_entry(self, entry_id):
        return self.entries[entry_id]


def _entry(state="analyzing_text", attempt_count=1):
    return SimpleNamespace(state=state, attempt_count=attempt_count)


def _scheduler(task_store=None, *, entry_reader=None, **config_overrides):
    clock = FakeClock()
    config = PipelineConfig(**{"attempt_timeout_seconds": 5.0, **config_overrides})
    scheduler = DurableTaskScheduler(
        task_store or InMemoryTaskStore(),
        config=config,
        entry_reader=entry_reader,
        clock=clock,
        worker_id="worker-test",
        metrics=InMemoryMetricsClient(),
    )
    return scheduler, clock


@pytest.fixture(params=["memory", "sqlite"])
def task_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryTaskStore()
    return SqlTaskStore(build_sqlite_engine(tmp_path))


def test_due_task_runs_and_is_completed(task_store):
    scheduler, _ = _scheduler(task_store)
    seen = []
    scheduler.register(TASK_KIND.ANALYZE, lambda payload: seen.append(payload))
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    summary = scheduler.run_once()

    assert summary.claimed == 1
    assert summary.completed == 1
    assert seen == [{"entry_id": "entry-1", "attempt_number": 1}]
    assert task_store.list_tasks() == []


def test_duplicate_schedule_keeps_a_single_task(task_store):
    scheduler, _ = _scheduler(task_store)

    first = scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")
    second = scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    assert first.task_id == second.task_id
    assert len(task_store.list_tasks()) == 1


def test_retryable_error_reschedules_after_fixed_delay(task_store):
    scheduler, clock = _scheduler(
        task_store, entry_reader=_EntryTable(**{"entry-1": _entry()})
    )
    calls = []

    def _handler(payload):
        calls.append(payload["attempt_number"])
        if len(calls) == 1:
            raise RetryableTaskError("outage", code="network_error")
        return TASK_RESULT.COMPLETED

    scheduler.register(TASK_KIND.ANALYZE, _handler)
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    first = scheduler.run_once()
    assert first.retried == 1
    task = task_store.get(TASK_KIND.ANALYZE, "entry-1")
    assert task.not_before == clock() + timedelta(seconds=900)
    assert task.claimed_by is None

    clock.advance(899)
    assert scheduler.run_once().claimed == 0

    clock.advance(1)
    second = scheduler.run_once()
    assert second.completed == 1
    assert calls == [1, 2]


def test_unexpected_exception_is_contained_and_retried():
    scheduler, _ = _scheduler(entry_reader=_EntryTable(**{"entry-1": _entry()}))

    def _boom(payload):
        raise ZeroDivisionError("bug")

    scheduler.register(TASK_KIND.ANALYZE, _boom)
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    summary = scheduler.run_once()

    assert summary.retried == 1


@pytest.mark.parametrize(
    ("entries", "expected_field"),
    [
        ({}, "dropped"),
        ({"entry-1": _entry(state="failed", attempt_count=8)}, "failed"),
        ({"entry-1": _entry(attempt_count=8)}, "failed"),
    ],
    ids=["entry_missing", "entry_terminal", "attempts_exhausted"],
)
def test_retry_is_not_scheduled_when_entry_forbids_it(entries, expected_field):
    task_store = InMemoryTaskStore()
    scheduler, _ = _scheduler(task_store, entry_reader=_EntryTable(**entries))

    def _failing(payload):
        raise RetryableTaskError("still broken")

    scheduler.register(TASK_KIND.ANALYZE, _failing)
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    summary = scheduler.run_once()

    assert summary.retried == 0
    assert getattr(summary, expected_field) == 1
    assert task_store.list_tasks() == []


def test_handler_result_is_counted():
    scheduler, _ = _scheduler()
    scheduler.register(TASK_KIND.ANALYZE, lambda payload: TASK_RESULT.DROPPED)
    scheduler.register(
        TASK_KIND.GENERATE_IMAGE, lambda payload: TASK_RESULT.FAILED_TERMINAL
    )
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")
    scheduler.schedule(TASK_KIND.GENERATE_IMAGE, "entry-2")

    summary = scheduler.run_once()

    assert summary.dropped == 1
    assert summary.failed == 1


def test_before_poll_hook_failure_does_not_block_tasks():
    scheduler, _ = _scheduler()
    order = []

    def _broken_hook():
        order.append("hook")
        raise RuntimeError("relay down")

    scheduler.add_before_poll(_broken_hook)
    scheduler.register(TASK_KIND.ANALYZE, lambda payload: order.append("task"))
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    summary = scheduler.run_once()

    assert order == ["hook", "task"]
    assert summary.relay_errors == 1
    assert summary.completed == 1


def test_task_without_handler_stays_queued():
    task_store = InMemoryTaskStore()
    scheduler, _ = _scheduler(task_store)
    scheduler.schedule(TASK_KIND.GENERATE_IMAGE, "entry-1")

    summary = scheduler.run_once()

    assert summary.claimed == 0
    assert len(task_store.list_tasks()) == 1


def test_leased_task_is_not_run_twice_until_claim_expires():
    task_store = InMemoryTaskStore()
    scheduler, clock = _scheduler(task_store)
    runs = []
    scheduler.register(TASK_KIND.ANALYZE, lambda payload: runs.append(payload))
    task = scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")
    task_store.claim(
        task.task_id, worker_id="dead-worker", now=clock(), claim_ttl_seconds=600
    )

    assert scheduler.run_once().claimed == 0

    clock.advance(601)
    summary = scheduler.run_once()

    assert summary.completed == 1
    assert len(runs) == 1
    assert task_store.complete(task.task_id, worker_id="dead-worker") is False


def test_in_process_key_lock_skips_a_busy_key():
    scheduler, _ = _scheduler()
    scheduler.register(TASK_KIND.ANALYZE, lambda payload: None)
    task = scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    assert scheduler._mark_busy(task.key)
    try:
        summary = scheduler.run_once()
    finally:
        scheduler._clear_busy(task.key)

    assert summary.skipped_locked == 1
    assert summary.claimed == 0


def test_busy_keys_are_released_after_each_task():
    scheduler, _ = _scheduler()
    scheduler.register(TASK_KIND.ANALYZE, lambda payload: None)
    for index in range(25):
        scheduler.schedule(TASK_KIND.ANALYZE, f"entry-{index}")

    while scheduler.run_once().claimed:
        pass

    assert scheduler.busy_keys == frozenset()


def test_hung_handlers_do_not_starve_later_tasks():
    release = threading.Event()
    started = []
    timeouts = []
    scheduler, _ = _scheduler(attempt_timeout_seconds=0.1, worker_count=1)

    def _hang(payload):
        started.append(payload["entry_id"])
        release.wait(5)

    scheduler.register(
        TASK_KIND.ANALYZE,
        _hang,
        on_timeout=lambda payload, seconds: timeouts.append(payload["entry_id"]),
    )
    for index in range(4):
        scheduler.schedule(TASK_KIND.ANALYZE, f"entry-{index}")

    try:
        summary = scheduler.run_once()
    finally:
        release.set()
        assert scheduler.join_attempts(timeout=5) == 0

    assert summary.claimed == 4
    assert sorted(started) == sorted(timeouts)
    assert len(started) == 4


def test_settled_attempt_is_awaited_instead_of_timed_out():
    timeouts = []
    scheduler, _ = _scheduler(attempt_timeout_seconds=0.1)

    def _slow_commit(payload):
        assert current_attempt().settle()
        time.sleep(0.3)
        return TASK_RESULT.COMPLETED

    scheduler.register(
        TASK_KIND.ANALYZE,
        _slow_commit,
        on_timeout=lambda payload, seconds: timeouts.append(payload["entry_id"]),
    )
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    summary = scheduler.run_once()

    assert timeouts == []
    assert summary.completed == 1


def test_abandoned_attempt_cannot_settle_its_late_result():
    release = threading.Event()
    late_settles = []
    scheduler, _ = _scheduler(attempt_timeout_seconds=0.1)

    def _late(payload):
        release.wait(5)
        late_settles.append(current_attempt().settle())

    scheduler.register(
        TASK_KIND.ANALYZE,
        _late,
        on_timeout=lambda payload, seconds: TASK_RESULT.FAILED_TERMINAL,
    )
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    summary = scheduler.run_once()
    release.set()
    assert scheduler.join_attempts(timeout=5) == 0

    assert summary.failed == 1
    assert late_settles == [False]


def test_attempt_token_has_a_single_owner():
    token = AttemptToken("task-1", 1)

    assert token.settle() is True
    assert token.settle() is True
    assert token.abandon() is False
    assert token.abandoned is False

    other = AttemptToken("task-2", 1)
    assert other.abandon() is True
    assert other.settle() is False
    assert other.abandoned is True


def test_untimed_handlers_run_inline_without_a_token():
    tokens = []
    scheduler, _ = _scheduler(attempt_timeout_seconds=0)
    scheduler.register(
        TASK_KIND.ANALYZE, lambda payload: tokens.append(current_attempt())
    )
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    assert scheduler.run_once().completed == 1
    assert tokens == [None]


def test_timeout_invokes_hook_and_finishes_with_its_result():
    release = threading.Event()
    scheduler, _ = _scheduler(attempt_timeout_seconds=0.1)
    timeouts = []

    def _on_timeout(payload, seconds):
        timeouts.append((payload["entry_id"], seconds))
        return TASK_RESULT.FAILED_TERMINAL

    scheduler.register(
        TASK_KIND.ANALYZE, lambda payload: release.wait(5), on_timeout=_on_timeout
    )
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    try:
        summary = scheduler.run_once()
    finally:
        release.set()
        scheduler.stop()

    assert timeouts == [("entry-1", 0.1)]
    assert summary.failed == 1


def test_timeout_without_hook_is_retried():
    release = threading.Event()
    task_store = InMemoryTaskStore()
    scheduler, _ = _scheduler(
        task_store,
        attempt_timeout_seconds=0.1,
        entry_reader=_EntryTable(**{"entry-1": _entry()}),
    )
    scheduler.register(TASK_KIND.ANALYZE, lambda payload: release.wait(5))
    scheduler.schedule(TASK_KIND.ANALYZE, "entry-1")

    try:
        summary = scheduler.run_once()
    finally:
        release.set()
        scheduler.stop()

    assert summary.retried == 1
    assert task_store.get(TASK_KIND.ANALYZE, "entry-1").attempt_number == 2


def test_start_recovers_leases_and_polls_until_stopped():
    task_store = InMemoryTaskStore()
    scheduler, clock = _scheduler(task_store, poll_interval_seconds=0.01)
    done = threading.Event()
    scheduler.register(TASK_KIND.ANALYZE, lambda payload: done.set())
    task = scheduler.schedule(
        TASK_KIND.ANALYZE, "entry-1", not_before=clock() - timedelta(seconds=700)
    )
    task_store.claim(
        task.task_id,
        worker_id="dead-worker",
        now=clock() - timedelta(seconds=700),
        claim_ttl_seconds=600,
    )

    scheduler.start(worker_count=1)
    try:
        assert scheduler.running
        assert done.wait(5)
    finally:
        scheduler.stop()

    assert not scheduler.running
