"""Behaviour shared by the in-memory and SQL task tables."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.app.infra.jobqueue import (
    TASK_KIND,
    InMemoryTaskStore,
    SqlTaskStore,
)
from tests.helpers.pipeline_harness import build_sqlite_engine

pytestmark = [pytest.mark.jobqueue]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
TTL = 600


@pytest.fixture(params=["memory", "sqlite"])
def task_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryTaskStore()
    return SqlTaskStore(build_sqlite_engine(tmp_path))


def test_schedule_is_idempotent_per_kind_and_entry(task_store):
    first, created = task_store.schedule(TASK_KIND.ANALYZE, "entry-1", not_before=NOW)
    again, created_again = task_store.schedule(
        TASK_KIND.ANALYZE, "entry-1", not_before=NOW + timedelta(hours=1)
    )
    other, other_created = task_store.schedule(
        TASK_KIND.GENERATE_IMAGE, "entry-1", not_before=NOW
    )

    assert created is True
    assert created_again is False
    assert again.task_id == first.task_id
    assert again.not_before == NOW
    assert other_created is True
    assert len(task_store.list_tasks()) == 2


def test_fetch_due_respects_not_before(task_store):
    task_store.schedule(TASK_KIND.ANALYZE, "due", not_before=NOW)
    task_store.schedule(
        TASK_KIND.ANALYZE, "later", not_before=NOW + timedelta(minutes=15)
    )

    due = task_store.fetch_due(NOW, limit=10, claim_ttl_seconds=TTL)

    assert [task.entry_id for task in due] == ["due"]
    assert task_store.fetch_due(NOW, limit=0, claim_ttl_seconds=TTL) == []


def test_claim_is_exclusive_until_lease_expires(task_store):
    task, _ = task_store.schedule(TASK_KIND.ANALYZE, "entry-1", not_before=NOW)

    claimed = task_store.claim(
        task.task_id, worker_id="worker-a", now=NOW, claim_ttl_seconds=TTL
    )
    assert claimed is not None
    assert claimed.claimed_by == "worker-a"
    assert claimed.claimed_at == NOW

    assert (
        task_store.claim(
            task.task_id, worker_id="worker-b", now=NOW, claim_ttl_seconds=TTL
        )
        is None
    )
    assert task_store.fetch_due(NOW, limit=10, claim_ttl_seconds=TTL) == []

    later = NOW + timedelta(seconds=TTL + 1)
    reclaimed = task_store.claim(
        task.task_id, worker_id="worker-b", now=later, claim_ttl_seconds=TTL
    )
    assert reclaimed is not None
    assert reclaimed.claimed_by == "worker-b"


def test_ownership_guards_complete_and_reschedule(task_store):
    task, _ = task_store.schedule(TASK_KIND.ANALYZE, "entry-1", not_before=NOW)
    task_store.claim(task.task_id, worker_id="worker-a", now=NOW, claim_ttl_seconds=TTL)

    assert task_store.complete(task.task_id, worker_id="worker-b") is False
    assert (
        task_store.reschedule(
            task.task_id, not_before=NOW, worker_id="worker-b"
        )
        is False
    )

    retry_at = NOW + timedelta(seconds=900)
    assert (
        task_store.reschedule(task.task_id, not_before=retry_at, worker_id="worker-a")
        is True
    )
    rescheduled = task_store.get(TASK_KIND.ANALYZE, "entry-1")
    assert rescheduled.not_before == retry_at
    assert rescheduled.attempt_number == 2
    assert rescheduled.claimed_by is None

    # The old owner lost its lease when the task was rescheduled.
    assert task_store.complete(task.task_id, worker_id="worker-a") is False
    assert task_store.complete(task.task_id) is True
    assert task_store.get(TASK_KIND.ANALYZE, "entry-1") is None


def test_completed_key_can_be_scheduled_again(task_store):
    task, _ = task_store.schedule(TASK_KIND.ANALYZE, "entry-1", not_before=NOW)
    task_store.complete(task.task_id)

    fresh, created = task_store.schedule(TASK_KIND.ANALYZE, "entry-1", not_before=NOW)

    assert created is True
    assert fresh.task_id != task.task_id


def test_release_clears_claim_for_owner_only(task_store):
    task, _ = task_store.schedule(TASK_KIND.ANALYZE, "entry-1", not_before=NOW)
    task_store.claim(task.task_id, worker_id="worker-a", now=NOW, claim_ttl_seconds=TTL)

    assert task_store.release(task.task_id, worker_id="worker-b") is False
    assert task_store.release(task.task_id, worker_id="worker-a") is True
    assert task_store.get(TASK_KIND.ANALYZE, "entry-1").claimed_by is None


def test_release_expired_claims_only_touches_stale_leases(task_store):
    stale, _ = task_store.schedule(TASK_KIND.ANALYZE, "stale", not_before=NOW)
    fresh, _ = task_store.schedule(TASK_KIND.ANALYZE, "fresh", not_before=NOW)
    task_store.claim(stale.task_id, worker_id="dead", now=NOW, claim_ttl_seconds=TTL)
    later = NOW + timedelta(seconds=TTL + 5)
    task_store.claim(fresh.task_id, worker_id="alive", now=later, claim_ttl_seconds=TTL)

    released = task_store.release_expired_claims(later, TTL)

    assert released == 1
    assert task_store.get(TASK_KIND.ANALYZE, "stale").claimed_by is None
    assert task_store.get(TASK_KIND.ANALYZE, "fresh").claimed_by == "alive"


def test_payload_carries_entry_and_attempt_number(task_store):
    task, _ = task_store.schedule(TASK_KIND.GENERATE_IMAGE, "entry-9", not_before=NOW)

    assert task.payload == {"entry_id": "entry-9", "attempt_number": 1}
    assert task.key == (TASK_KIND.GENERATE_IMAGE, "entry-9")
