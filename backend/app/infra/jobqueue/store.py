"""Durable task table backing the pipeline scheduler."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple
from uuid import uuid4

from sqlalchemy import Table, and_, delete, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from ..db import SCHEDULED_TASKS, get_engine

__all__ = [
    "InMemoryTaskStore",
    "ScheduledTask",
    "SqlTaskStore",
    "TASK_KIND",
    "TaskStore",
]

TASK_KIND = SimpleNamespace(ANALYZE="analyze", GENERATE_IMAGE="generate_image")


@dataclass(frozen=True)
class ScheduledTask:
    task_id: str
    task_kind: str
    entry_id: str
    not_before: datetime
    attempt_number: int
    created_at: datetime
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.task_kind, self.entry_id)

    @property
    def payload(self) -> Dict[str, Any]:
        return {"entry_id": self.entry_id, "attempt_number": self.attempt_number}

    def is_claimable(self, now: datetime, claim_ttl_seconds: float) -> bool:
        if self.not_before > now:
            return False
        if self.claimed_at is None:
            return True
        return self.claimed_at <= now - timedelta(seconds=claim_ttl_seconds)


class TaskStore(Protocol):  # pragma: no cover - interface only
    def schedule(
        self, task_kind: str, entry_id: str, *, not_before: datetime
    ) -> Tuple[ScheduledTask, bool]: ...

    def get(self, task_kind: str, entry_id: str) -> Optional[ScheduledTask]: ...

    def list_tasks(self) -> List[ScheduledTask]: ...

    def fetch_due(
        self, now: datetime, *, limit: int, claim_ttl_seconds: float
    ) -> List[ScheduledTask]: ...

    def claim(
        self,
        task_id: str,
        *,
        worker_id: str,
        now: datetime,
        claim_ttl_seconds: float,
    ) -> Optional[ScheduledTask]: ...

    def reschedule(
        self, task_id: str, *, not_before: datetime, worker_id: Optional[str] = None
    ) -> bool: ...

    def release(self, task_id: str, *, worker_id: Optional[str] = None) -> bool: ...

    def complete(self, task_id: str, *, worker_id: Optional[str] = None) -> bool: ...

    def release_expired_claims(
        self, now: datetime, claim_ttl_seconds: float
    ) -> int: ...


def _new_task(task_kind: str, entry_id: str, not_before: datetime) -> ScheduledTask:
    return ScheduledTask(
        task_id=str(uuid4()),
        task_kind=task_kind,
        entry_id=entry_id,
        not_before=_as_utc(not_before),
        attempt_number=1,
        created_at=datetime.now(timezone.utc),
    )


class InMemoryTaskStore(TaskStore):
    """Lock-guarded task table for tests and single-process development."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: Dict[str, ScheduledTask] = {}
        self._keys: Dict[Tuple[str, str], str] = {}

    def schedule(
        self, task_kind: str, entry_id: str, *, not_before: datetime
    ) -> Tuple[ScheduledTask, bool]:
        with self._lock:
            existing_id = self._keys.get((task_kind, entry_id))
            if existing_id is not None:
                return self._tasks[existing_id], False
            task = _new_task(task_kind, entry_id, not_before)
            self._tasks[task.task_id] = task
            self._keys[task.key] = task.task_id
            return task, True

    def get(self, task_kind: str, entry_id: str) -> Optional[ScheduledTask]:
        with self._lock:
            task_id = self._keys.get((task_kind, entry_id))
            return self._tasks.get(task_id) if task_id else None

    def list_tasks(self) -> List[ScheduledTask]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda task: task.not_before)

    def fetch_due(
        self, now: datetime, *, limit: int, claim_ttl_seconds: float
    ) -> List[ScheduledTask]:
        now = _as_utc(now)
        with self._lock:
            due = [
                task
                for task in self._tasks.values()
                if task.is_claimable(now, claim_ttl_seconds)
            ]
        due.sort(key=lambda task: task.not_before)
        return due[: max(limit, 0)]

    def claim(
        self,
        task_id: str,
        *,
        worker_id: str,
        now: datetime,
        claim_ttl_seconds: float,
    ) -> Optional[ScheduledTask]:
        now = _as_utc(now)
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or not task.is_claimable(now, claim_ttl_seconds):
                return None
            claimed = replace(task, claimed_by=worker_id, claimed_at=now)
            self._tasks[task_id] = claimed
            return claimed

    def reschedule(
        self, task_id: str, *, not_before: datetime, worker_id: Optional[str] = None
    ) -> bool:
        with self._lock:
            task = self._owned(task_id, worker_id)
            if task is None:
                return False
            self._tasks[task_id] = replace(
                task,
                not_before=_as_utc(not_before),
                attempt_number=task.attempt_number + 1,
                claimed_by=None,
                claimed_at=None,
            )
            return True

    def release(self, task_id: str, *, worker_id: Optional[str] = None) -> bool:
        with self._lock:
            task = self._owned(task_id, worker_id)
            if task is None:
                return False
            self._tasks[task_id] = replace(task, claimed_by=None, claimed_at=None)
            return True

    def complete(self, task_id: str, *, worker_id: Optional[str] = None) -> bool:
        with self._lock:
            task = self._owned(task_id, worker_id)
            if task is None:
                return False
            del self._tasks[task_id]
            self._keys.pop(task.key, None)
            return True

    def release_expired_claims(self, now: datetime, claim_ttl_seconds: float) -> int:
        cutoff = _as_utc(now) - timedelta(seconds=claim_ttl_seconds)
        released = 0
        with self._lock:
            for task_id, task in list(self._tasks.items()):
                if task.claimed_at is not None and task.claimed_at <= cutoff:
                    self._tasks[task_id] = replace(
                        task, claimed_by=None, claimed_at=None
                    )
                    released += 1
        return released

    def _owned(self, task_id: str, worker_id: Optional[str]) -> Optional[ScheduledTask]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        if worker_id is not None and task.claimed_by != worker_id:
            return None
        return task


class SqlTaskStore(TaskStore):
    """SQLAlchemy Core task table; claims are compare-and-swap leases."""

    def __init__(
        self, engine: Optional[Engine] = None, *, table: Optional[Table] = None
    ) -> None:
        self._engine = engine or get_engine()
        self._table = table if table is not None else SCHEDULED_TASKS

    def schedule(
        self, task_kind: str, entry_id: str, *, not_before: datetime
    ) -> Tuple[ScheduledTask, bool]:
        existing = self.get(task_kind, entry_id)
        if existing is not None:
            return existing, False
        task = _new_task(task_kind, entry_id, not_before)
        stmt = insert(self._table).values(
            task_id=task.task_id,
            task_kind=task.task_kind,
            entry_id=task.entry_id,
            not_before=task.not_before,
            attempt_number=task.attempt_number,
            claimed_by=None,
            claimed_at=None,
            created_at=task.created_at,
        )
        try:
            with self._engine.begin() as conn:
                conn.execute(stmt)
        except IntegrityError:
            # Lost the race against another scheduler for the same key.
            existing = self.get(task_kind, entry_id)
            if existing is None:
                raise
            return existing, False
        return task, True

    def get(self, task_kind: str, entry_id: str) -> Optional[ScheduledTask]:
        stmt = select(self._table).where(
            self._table.c.task_kind == task_kind,
            self._table.c.entry_id == entry_id,
        )
        with self._engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        return _row_to_task(row) if row is not None else None

    def list_tasks(self) -> List[ScheduledTask]:
        stmt = select(self._table).order_by(self._table.c.not_before.asc())
        with self._engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_task(row) for row in rows]

    def fetch_due(
        self, now: datetime, *, limit: int, claim_ttl_seconds: float
    ) -> List[ScheduledTask]:
        now = _as_utc(now)
        stmt = (
            select(self._table)
            .where(self._claimable(now, claim_ttl_seconds))
            .order_by(self._table.c.not_before.asc())
            .limit(max(limit, 0))
        )
        with self._engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_task(row) for row in rows]

    def claim(
        self,
        task_id: str,
        *,
        worker_id: str,
        now: datetime,
        claim_ttl_seconds: float,
    ) -> Optional[ScheduledTask]:
        now = _as_utc(now)
        table = self._table
        stmt = (
            update(table)
            .where(table.c.task_id == task_id, self._claimable(now, claim_ttl_seconds))
            .values(claimed_by=worker_id, claimed_at=now)
        )
        with self._engine.begin() as conn:
            result = conn.execute(stmt)
            if result.rowcount != 1:
                return None
            row = (
                conn.execute(select(table).where(table.c.task_id == task_id))
                .mappings()
                .first()
            )
        return _row_to_task(row) if row is not None else None

    def reschedule(
        self, task_id: str, *, not_before: datetime, worker_id: Optional[str] = None
    ) -> bool:
        table = self._table
        stmt = (
            update(table)
            .where(*self._ownership(task_id, worker_id))
            .values(
                not_before=_as_utc(not_before),
                attempt_number=table.c.attempt_number + 1,
                claimed_by=None,
                claimed_at=None,
            )
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def release(self, task_id: str, *, worker_id: Optional[str] = None) -> bool:
        stmt = (
            update(self._table)
            .where(*self._ownership(task_id, worker_id))
            .values(claimed_by=None, claimed_at=None)
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def complete(self, task_id: str, *, worker_id: Optional[str] = None) -> bool:
        stmt = delete(self._table).where(*self._ownership(task_id, worker_id))
        with self._engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def release_expired_claims(self, now: datetime, claim_ttl_seconds: float) -> int:
        cutoff = _as_utc(now) - timedelta(seconds=claim_ttl_seconds)
        table = self._table
        stmt = (
            update(table)
            .where(table.c.claimed_at.is_not(None), table.c.claimed_at <= cutoff)
            .values(claimed_by=None, claimed_at=None)
        )
        with self._engine.begin() as conn:
            return int(conn.execute(stmt).rowcount or 0)

    def _claimable(self, now: datetime, claim_ttl_seconds: float):
        table = self._table
        cutoff = now - timedelta(seconds=claim_ttl_seconds)
        return and_(
            table.c.not_before <= now,
            or_(table.c.claimed_at.is_(None), table.c.claimed_at <= cutoff),
        )

    def _ownership(self, task_id: str, worker_id: Optional[str]) -> list:
        clauses = [self._table.c.task_id == task_id]
        if worker_id is not None:
            clauses.append(self._table.c.claimed_by == worker_id)
        return clauses


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    return _as_utc(value) if value is not None else None


def _row_to_task(row: Mapping[str, Any]) -> ScheduledTask:
    return ScheduledTask(
        task_id=row["task_id"],
        task_kind=row["task_kind"],
        entry_id=row["entry_id"],
        not_before=_as_utc(row["not_before"]),
        attempt_number=int(row["attempt_number"] or 1),
        created_at=_as_utc(row["created_at"]),
        claimed_by=row.get("claimed_by"),
        claimed_at=_optional_utc(row.get("claimed_at")),
    )
