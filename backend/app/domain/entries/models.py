"""Entry processing data models shared by the pipeline components."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .pipeline_states import PROCESSING_STATE

__all__ = [
    "AnalysisRecord",
    "EntryProcessingRecord",
    "OutboxEvent",
    "OUTBOX_EVENT",
    "utcnow",
]


OUTBOX_EVENT = SimpleNamespace(
    ENTRY_CREATED="entry_created",
    ANALYSIS_COMPLETED="analysis_completed",
    IMAGE_COMPLETED="image_completed",
    FAILURE_TERMINAL="failure_terminal",
)


def utcnow() -> datetime:
    """Return timezone-aware UTC timestamp."""

    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EntryProcessingRecord:
    """Processing status attached to a journal entry."""

    entry_id: str
    content: str
    state: str
    attempt_count: int
    created_at: datetime
    updated_at: datetime
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    image_storage_key: Optional[str] = None
    image_uri: Optional[str] = None
    image_generated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        *,
        content: str,
        entry_id: Optional[str] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "EntryProcessingRecord":
        """Factory that applies pipeline defaults and generates IDs/timestamps."""

        ts = timestamp or utcnow()
        transition = {
            "from_state": None,
            "to_state": PROCESSING_STATE.CREATED,
            "occurred_at": ts.isoformat(),
        }
        return cls(
            entry_id=entry_id or str(uuid4()),
            content=content,
            state=PROCESSING_STATE.CREATED,
            attempt_count=0,
            created_at=ts,
            updated_at=ts,
            user_id=user_id,
            metadata={"pipeline_history": [transition], "last_transition": transition},
        )

    @property
    def has_image(self) -> bool:
        return bool(self.image_storage_key and self.image_storage_key.strip())

    def with_state(
        self, state: str, *, timestamp: Optional[datetime] = None
    ) -> "EntryProcessingRecord":
        """Return a copy moved to ``state`` with the transition appended to history."""

        ts = timestamp or utcnow()
        transition = {
            "from_state": self.state,
            "to_state": state,
            "occurred_at": ts.isoformat(),
        }
        metadata = dict(self.metadata)
        history = list(metadata.get("pipeline_history") or [])
        history.append(transition)
        metadata["pipeline_history"] = history
        metadata["last_transition"] = transition
        return replace(self, state=state, metadata=metadata, updated_at=ts)

    def with_attempt_count(
        self, attempt_count: int, *, timestamp: Optional[datetime] = None
    ) -> "EntryProcessingRecord":
        return replace(
            self, attempt_count=attempt_count, updated_at=timestamp or utcnow()
        )

    def with_image(
        self,
        *,
        storage_key: str,
        image_uri: str,
        timestamp: Optional[datetime] = None,
    ) -> "EntryProcessingRecord":
        ts = timestamp or utcnow()
        return replace(
            self,
            image_storage_key=storage_key,
            image_uri=image_uri,
            image_generated_at=ts,
            updated_at=ts,
        )

    def with_failure(
        self, reason: str, *, timestamp: Optional[datetime] = None
    ) -> "EntryProcessingRecord":
        ts = timestamp or utcnow()
        failed = self.with_state(PROCESSING_STATE.FAILED, timestamp=ts)
        return replace(failed, failure_reason=reason, updated_at=ts)


@dataclass(frozen=True)
class AnalysisRecord:
    """Durable output of the text-analysis stage, one per entry."""

    analysis_id: str
    entry_id: str
    summary: str
    created_at: datetime
    tags: List[str] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)
    emotions: Dict[str, float] = field(default_factory=dict)
    interpretation: Optional[str] = None
    model_version: Optional[str] = None

    @classmethod
    def new(
        cls,
        *,
        entry_id: str,
        summary: str,
        tags: Optional[List[str]] = None,
        entities: Optional[List[str]] = None,
        emotions: Optional[Dict[str, float]] = None,
        interpretation: Optional[str] = None,
        model_version: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "AnalysisRecord":
        return cls(
            analysis_id=str(uuid4()),
            entry_id=entry_id,
            summary=summary,
            created_at=timestamp or utcnow(),
            tags=list(tags or []),
            entities=list(entities or []),
            emotions=dict(emotions or {}),
            interpretation=interpretation,
            model_version=model_version,
        )

    def primary_emotion(self) -> str:
        """Return the highest-scoring emotion, used to set the image mood."""

        if not self.emotions:
            return "neutral"
        return max(self.emotions.items(), key=lambda item: item[1])[0]


@dataclass(frozen=True)
class OutboxEvent:
    """Domain signal written in the same transaction as the state change."""

    event_id: int
    event_type: str
    entry_id: str
    payload: Dict[str, Any]
    created_at: datetime
    dispatched_at: Optional[datetime] = None
