"""Pipeline store gateway implementations.

The store owns the Entry Processing Record, the Analysis Result artifact and
the transactional outbox. Every state change that justifies a follow-up
action writes its outbox event inside the same transaction, so a rolled back
write can never produce a signal.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from ...infra.db import (
    ENTRY_ANALYSES,
    ENTRY_PROCESSING,
    PIPELINE_OUTBOX,
    get_engine,
)
from ...infra.logging import get_logger
from .models import (
    OUTBOX_EVENT,
    AnalysisRecord,
    EntryProcessingRecord,
    OutboxEvent,
    utcnow,
)
from .pipeline_states import (
    PROCESSING_STATE,
    TERMINAL_STATES,
    StaleStateError,
    resolve_transition,
)

__all__ = [
    "EntryNotFoundError",
    "InMemoryPipelineStore",
    "PipelineStoreGateway",
    "SqlPipelineStore",
    "build_pipeline_store",
]

logger = get_logger(__name__)


class _RowChanged(RuntimeError):
    """The entry row moved between the read and the conditional update."""


class EntryNotFoundError(KeyError):
    """Raised when the processing record for an entry does not exist."""

    code = "entry_not_found"
    retryable = False

    def __init__(self, entry_id: str) -> None:
        super().__init__(f"Entry {entry_id} not found")
        self.entry_id = entry_id


class PipelineStoreGateway(Protocol):  # pragma: no cover
    """Persistence operations the pipeline components rely on."""

    def create_entry(
        self,
        content: str,
        *,
        entry_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> EntryProcessingRecord: ...

    def get_entry(self, entry_id: str) -> EntryProcessingRecord: ...

    def transition(
        self, entry_id: str, *, from_state: str, to_state: str
    ) -> EntryProcessingRecord: ...

    def record_analysis(
        self, entry_id: str, analysis: AnalysisRecord, *, from_state: str
    ) -> EntryProcessingRecord: ...

    def record_image(
        self,
        entry_id: str,
        *,
        storage_key: str,
        image_uri: str,
        from_state: str,
    ) -> EntryProcessingRecord: ...

    def increment_attempts(self, entry_id: str) -> EntryProcessingRecord: ...

    def mark_failed(
        self, entry_id: str, *, reason: str
    ) -> Tuple[EntryProcessingRecord, bool]: ...

    def analysis_exists(self, entry_id: str) -> bool: ...

    def image_exists(self, entry_id: str) -> bool: ...

    def get_analysis(self, entry_id: str) -> Optional[AnalysisRecord]: ...

    def fetch_undispatched_events(self, limit: int = 100) -> List[OutboxEvent]: ...

    def mark_event_dispatched(self, event_id: int) -> None: ...

    def purge_dispatched_events(self, *, older_than: datetime) -> int: ...


class InMemoryPipelineStore(PipelineStoreGateway):
    """Lock-guarded in-memory store used for local development and tests."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: Dict[str, EntryProcessingRecord] = {}
        self._analyses: Dict[str, AnalysisRecord] = {}
        self._outbox: List[OutboxEvent] = []
        self._next_event_id = 1

    def create_entry(
        self,
        content: str,
        *,
        entry_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> EntryProcessingRecord:
        record = EntryProcessingRecord.new(
            content=content, entry_id=entry_id, user_id=user_id
        )
        with self._lock:
            if record.entry_id in self._entries:
                raise ValueError(f"Entry {record.entry_id} already exists")
            self._entries[record.entry_id] = record
            self._append_event(
                OUTBOX_EVENT.ENTRY_CREATED,
                record.entry_id,
                {"content": content, "user_id": user_id},
            )
        return record

    def get_entry(self, entry_id: str) -> EntryProcessingRecord:
        with self._lock:
            return self._require(entry_id)

    def transition(
        self, entry_id: str, *, from_state: str, to_state: str
    ) -> EntryProcessingRecord:
        resolve_transition(from_state, to_state)
        with self._lock:
            record = self._require_state(entry_id, from_state)
            updated = record.with_state(to_state)
            self._entries[entry_id] = updated
            return updated

    def record_analysis(
        self, entry_id: str, analysis: AnalysisRecord, *, from_state: str
    ) -> EntryProcessingRecord:
        resolve_transition(from_state, PROCESSING_STATE.TEXT_ANALYZED)
        with self._lock:
            record = self._require_state(entry_id, from_state)
            if entry_id in self._analyses:
                raise StaleStateError(
                    entry_id, expected_state=from_state, actual_state=record.state
                )
            updated = record.with_state(
                PROCESSING_STATE.TEXT_ANALYZED
            ).with_attempt_count(0)
            self._analyses[entry_id] = analysis
            self._entries[entry_id] = updated
            self._append_event(
                OUTBOX_EVENT.ANALYSIS_COMPLETED,
                entry_id,
                {"analysis_id": analysis.analysis_id, "summary": analysis.summary},
            )
            return updated

    def record_image(
        self,
        entry_id: str,
        *,
        storage_key: str,
        image_uri: str,
        from_state: str,
    ) -> EntryProcessingRecord:
        resolve_transition(from_state, PROCESSING_STATE.COMPLETED)
        with self._lock:
            record = self._require_state(entry_id, from_state)
            updated = (
                record.with_image(storage_key=storage_key, image_uri=image_uri)
                .with_state(PROCESSING_STATE.COMPLETED)
                .with_attempt_count(0)
            )
            self._entries[entry_id] = updated
            self._append_event(
                OUTBOX_EVENT.IMAGE_COMPLETED,
                entry_id,
                {"storage_key": storage_key, "image_uri": image_uri},
            )
            return updated

    def increment_attempts(self, entry_id: str) -> EntryProcessingRecord:
        with self._lock:
            record = self._require(entry_id)
            if record.state in TERMINAL_STATES:
                return record
            updated = record.with_attempt_count(record.attempt_count + 1)
            self._entries[entry_id] = updated
            return updated

    def mark_failed(
        self, entry_id: str, *, reason: str
    ) -> Tuple[EntryProcessingRecord, bool]:
        with self._lock:
            record = self._require(entry_id)
            if record.state in TERMINAL_STATES:
                return record, False
            updated = record.with_failure(reason)
            self._entries[entry_id] = updated
            self._append_event(
                OUTBOX_EVENT.FAILURE_TERMINAL,
                entry_id,
                {
                    "reason": reason,
                    "attempts": updated.attempt_count,
                    "failed_from_state": record.state,
                },
            )
            return updated, True

    def analysis_exists(self, entry_id: str) -> bool:
        with self._lock:
            return entry_id in self._analyses

    def image_exists(self, entry_id: str) -> bool:
        with self._lock:
            record = self._entries.get(entry_id)
            return bool(record and record.has_image)

    def get_analysis(self, entry_id: str) -> Optional[AnalysisRecord]:
        with self._lock:
            return self._analyses.get(entry_id)

    def fetch_undispatched_events(self, limit: int = 100) -> List[OutboxEvent]:
        with self._lock:
            pending = [event for event in self._outbox if event.dispatched_at is None]
            return pending[: max(limit, 0)]

    def mark_event_dispatched(self, event_id: int) -> None:
        with self._lock:
            for index, event in enumerate(self._outbox):
                if event.event_id == event_id and event.dispatched_at is None:
                    self._outbox[index] = replace(event, dispatched_at=utcnow())
                    return

    def purge_dispatched_events(self, *, older_than: datetime) -> int:
        with self._lock:
            kept = [
                event
                for event in self._outbox
                if event.dispatched_at is None or event.dispatched_at >= older_than
            ]
            purged = len(self._outbox) - len(kept)
            self._outbox = kept
        return purged

    def delete_entry(self, entry_id: str) -> None:
        """Drop an entry the way the external CRUD layer would."""

        with self._lock:
            self._entries.pop(entry_id, None)
            self._analyses.pop(entry_id, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require(self, entry_id: str) -> EntryProcessingRecord:
        record = self._entries.get(entry_id)
        if record is None:
            raise EntryNotFoundError(entry_id)
        return record

    def _require_state(self, entry_id: str, expected: str) -> EntryProcessingRecord:
        record = self._require(entry_id)
        if record.state != expected:
            raise StaleStateError(
                entry_id, expected_state=expected, actual_state=record.state
            )
        return record

    def _append_event(
        self, event_type: str, entry_id: str, payload: Dict[str, Any]
    ) -> None:
        self._outbox.append(
            OutboxEvent(
                event_id=self._next_event_id,
                event_type=event_type,
                entry_id=entry_id,
                payload=dict(payload),
                created_at=utcnow(),
            )
        )
        self._next_event_id += 1


class SqlPipelineStore(PipelineStoreGateway):
    """SQLAlchemy Core adapter (PostgreSQL in production, SQLite in tests)."""

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        entries_table: Optional[Table] = None,
        analyses_table: Optional[Table] = None,
        outbox_table: Optional[Table] = None,
    ) -> None:
        self._engine = engine or get_engine()
        self._entries = entries_table if entries_table is not None else ENTRY_PROCESSING
        self._analyses = (
            analyses_table if analyses_table is not None else ENTRY_ANALYSES
        )
        self._outbox = outbox_table if outbox_table is not None else PIPELINE_OUTBOX

    # ------------------------------------------------------------------
    # Entry creation + lookups
    # ------------------------------------------------------------------
    def create_entry(
        self,
        content: str,
        *,
        entry_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> EntryProcessingRecord:
        record = EntryProcessingRecord.new(
            content=content, entry_id=entry_id, user_id=user_id
        )
        insert_stmt = insert(self._entries).values(
            entry_id=record.entry_id,
            user_id=record.user_id,
            content=record.content,
            state=record.state,
            attempt_count=record.attempt_count,
            failure_reason=None,
            image_storage_key=None,
            image_uri=None,
            image_generated_at=None,
            metadata=record.metadata,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        with self._engine.begin() as conn:
            conn.execute(insert_stmt)
            self._insert_event(
                conn,
                OUTBOX_EVENT.ENTRY_CREATED,
                record.entry_id,
                {"content": content, "user_id": user_id},
            )
        return record

    def get_entry(self, entry_id: str) -> EntryProcessingRecord:
        with self._engine.begin() as conn:
            row = self._fetch_entry(conn, entry_id)
        return _row_to_record(row)

    def analysis_exists(self, entry_id: str) -> bool:
        stmt = (
            select(self._analyses.c.analysis_id)
            .where(self._analyses.c.entry_id == entry_id)
            .limit(1)
        )
        with self._engine.begin() as conn:
            return conn.execute(stmt).first() is not None

    def image_exists(self, entry_id: str) -> bool:
        stmt = select(self._entries.c.image_storage_key).where(
            self._entries.c.entry_id == entry_id
        )
        with self._engine.begin() as conn:
            value = conn.execute(stmt).scalar_one_or_none()
        return bool(value and str(value).strip())

    def get_analysis(self, entry_id: str) -> Optional[AnalysisRecord]:
        stmt = select(self._analyses).where(self._analyses.c.entry_id == entry_id)
        with self._engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if row is None:
            return None
        return _row_to_analysis(row)

    # ------------------------------------------------------------------
    # Compare-and-swap state changes
    # ------------------------------------------------------------------
    def transition(
        self, entry_id: str, *, from_state: str, to_state: str
    ) -> EntryProcessingRecord:
        resolve_transition(from_state, to_state)
        _, updated = self._swap(
            entry_id,
            expected_state=from_state,
            change=lambda current: current.with_state(to_state),
        )
        return updated

    def record_analysis(
        self, entry_id: str, analysis: AnalysisRecord, *, from_state: str
    ) -> EntryProcessingRecord:
        resolve_transition(from_state, PROCESSING_STATE.TEXT_ANALYZED)

        def _persist(conn: Connection, *_: EntryProcessingRecord) -> None:
            conn.execute(
                insert(self._analyses).values(
                    analysis_id=analysis.analysis_id,
                    entry_id=entry_id,
                    summary=analysis.summary,
                    tags=list(analysis.tags),
                    entities=list(analysis.entities),
                    emotions=dict(analysis.emotions),
                    interpretation=analysis.interpretation,
                    model_version=analysis.model_version,
                    created_at=analysis.created_at,
                )
            )
            self._insert_event(
                conn,
                OUTBOX_EVENT.ANALYSIS_COMPLETED,
                entry_id,
                {"analysis_id": analysis.analysis_id, "summary": analysis.summary},
            )

        try:
            _, updated = self._swap(
                entry_id,
                expected_state=from_state,
                change=lambda current: current.with_state(
                    PROCESSING_STATE.TEXT_ANALYZED
                ).with_attempt_count(0),
                within=_persist,
            )
        except IntegrityError as exc:
            # A concurrent execution already committed the analysis.
            raise StaleStateError(
                entry_id,
                expected_state=from_state,
                actual_state=self.get_entry(entry_id).state,
            ) from exc
        return updated

    def record_image(
        self,
        entry_id: str,
        *,
        storage_key: str,
        image_uri: str,
        from_state: str,
    ) -> EntryProcessingRecord:
        resolve_transition(from_state, PROCESSING_STATE.COMPLETED)

        def _signal(conn: Connection, *_: EntryProcessingRecord) -> None:
            self._insert_event(
                conn,
                OUTBOX_EVENT.IMAGE_COMPLETED,
                entry_id,
                {"storage_key": storage_key, "image_uri": image_uri},
            )

        _, updated = self._swap(
            entry_id,
            expected_state=from_state,
            change=lambda current: current.with_image(
                storage_key=storage_key, image_uri=image_uri
            )
            .with_state(PROCESSING_STATE.COMPLETED)
            .with_attempt_count(0),
            within=_signal,
        )
        return updated

    def increment_attempts(self, entry_id: str) -> EntryProcessingRecord:
        table = self._entries
        stmt = (
            update(table)
            .where(
                table.c.entry_id == entry_id,
                table.c.state.notin_(tuple(TERMINAL_STATES)),
            )
            .values(attempt_count=table.c.attempt_count + 1, updated_at=utcnow())
        )
        with self._engine.begin() as conn:
            conn.execute(stmt)
            row = self._fetch_entry(conn, entry_id)
        return _row_to_record(row)

    def mark_failed(
        self, entry_id: str, *, reason: str
    ) -> Tuple[EntryProcessingRecord, bool]:
        while True:
            try:
                with self._engine.begin() as conn:
                    current = _row_to_record(self._fetch_entry(conn, entry_id))
                    if current.state in TERMINAL_STATES:
                        return current, False
                    updated = current.with_failure(reason)
                    self._compare_and_swap(
                        conn, current, updated, expected_state=current.state
                    )
                    self._insert_event(
                        conn,
                        OUTBOX_EVENT.FAILURE_TERMINAL,
                        entry_id,
                        {
                            "reason": reason,
                            "attempts": updated.attempt_count,
                            "failed_from_state": current.state,
                        },
                    )
            except _RowChanged:
                continue
            return updated, True

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------
    def fetch_undispatched_events(self, limit: int = 100) -> List[OutboxEvent]:
        stmt = (
            select(self._outbox)
            .where(self._outbox.c.dispatched_at.is_(None))
            .order_by(self._outbox.c.event_id.asc())
            .limit(max(limit, 0))
        )
        with self._engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_event(row) for row in rows]

    def mark_event_dispatched(self, event_id: int) -> None:
        stmt = (
            update(self._outbox)
            .where(
                self._outbox.c.event_id == event_id,
                self._outbox.c.dispatched_at.is_(None),
            )
            .values(dispatched_at=utcnow())
        )
        with self._engine.begin() as conn:
            conn.execute(stmt)

    def purge_dispatched_events(self, *, older_than: datetime) -> int:
        stmt = delete(self._outbox).where(
            self._outbox.c.dispatched_at.is_not(None),
            self._outbox.c.dispatched_at < older_than,
        )
        with self._engine.begin() as conn:
            result = conn.execute(stmt)
        return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _fetch_entry(self, conn: Connection, entry_id: str) -> Mapping[str, Any]:
        stmt = select(self._entries).where(self._entries.c.entry_id == entry_id)
        row = conn.execute(stmt).mappings().first()
        if row is None:
            raise EntryNotFoundError(entry_id)
        return row

    def _compare_and_swap(
        self,
        conn: Connection,
        current: EntryProcessingRecord,
        updated: EntryProcessingRecord,
        *,
        expected_state: str,
    ) -> None:
        table = self._entries
        if current.state != expected_state:
            raise StaleStateError(
                current.entry_id,
                expected_state=expected_state,
                actual_state=current.state,
            )
        stmt = (
            update(table)
            .where(
                table.c.entry_id == current.entry_id,
                table.c.state == expected_state,
                table.c.attempt_count == current.attempt_count,
            )
            .values(
                state=updated.state,
                attempt_count=updated.attempt_count,
                failure_reason=updated.failure_reason,
                image_storage_key=updated.image_storage_key,
                image_uri=updated.image_uri,
                image_generated_at=updated.image_generated_at,
                metadata=updated.metadata,
                updated_at=updated.updated_at,
            )
        )
        result = conn.execute(stmt)
        if result.rowcount != 1:
            raise _RowChanged(current.entry_id)

    def _swap(
        self,
        entry_id: str,
        *,
        expected_state: str,
        change: Callable[[EntryProcessingRecord], EntryProcessingRecord],
        within: Optional[
            Callable[[Connection, EntryProcessingRecord, EntryProcessingRecord], None]
        ] = None,
    ) -> Tuple[EntryProcessingRecord, EntryProcessingRecord]:
        """Apply ``change`` under compare-and-swap, re-reading if the row moved.

        ``within`` runs in the same transaction after the row was updated.
        """

        while True:
            try:
                with self._engine.begin() as conn:
                    current = _row_to_record(self._fetch_entry(conn, entry_id))
                    updated = change(current)
                    self._compare_and_swap(
                        conn, current, updated, expected_state=expected_state
                    )
                    if within is not None:
                        within(conn, current, updated)
            except _RowChanged:
                continue
            return current, updated

    def _insert_event(
        self,
        conn: Connection,
        event_type: str,
        entry_id: str,
        payload: Dict[str, Any],
    ) -> None:
        conn.execute(
            insert(self._outbox).values(
                event_type=event_type,
                entry_id=entry_id,
                payload=payload,
                created_at=utcnow(),
                dispatched_at=None,
            )
        )


def build_pipeline_store(
    *,
    prefer_sql: bool = True,
    fallback_to_memory: bool = False,
) -> PipelineStoreGateway:
    """Factory that returns the desired pipeline store implementation."""

    if prefer_sql:
        try:
            return SqlPipelineStore()
        except Exception:
            if not fallback_to_memory:
                raise
            logger.warning(
                "sql_pipeline_store_unavailable_falling_back",
                exc_info=True,
            )
    return InMemoryPipelineStore()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_record(row: Mapping[str, Any]) -> EntryProcessingRecord:
    return EntryProcessingRecord(
        entry_id=row["entry_id"],
        content=row["content"],
        state=row["state"],
        attempt_count=int(row["attempt_count"] or 0),
        created_at=_as_utc(row["created_at"]),
        updated_at=_as_utc(row["updated_at"]),
        user_id=row.get("user_id"),
        failure_reason=row.get("failure_reason"),
        image_storage_key=row.get("image_storage_key"),
        image_uri=row.get("image_uri"),
        image_generated_at=_as_utc(row.get("image_generated_at")),
        metadata=dict(row.get("metadata") or {}),
    )


def _row_to_analysis(row: Mapping[str, Any]) -> AnalysisRecord:
    return AnalysisRecord(
        analysis_id=row["analysis_id"],
        entry_id=row["entry_id"],
        summary=row["summary"],
        created_at=_as_utc(row["created_at"]),
        tags=list(row.get("tags") or []),
        entities=list(row.get("entities") or []),
        emotions={
            str(key): float(value) for key, value in (row.get("emotions") or {}).items()
        },
        interpretation=row.get("interpretation"),
        model_version=row.get("model_version"),
    )


def _row_to_event(row: Mapping[str, Any]) -> OutboxEvent:
    return OutboxEvent(
        event_id=int(row["event_id"]),
        event_type=row["event_type"],
        entry_id=row["entry_id"],
        payload=dict(row.get("payload") or {}),
        created_at=_as_utc(row["created_at"]),
        dispatched_at=_as_utc(row.get("dispatched_at")),
    )
