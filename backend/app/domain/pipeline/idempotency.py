"""Stage idempotency checks backed by the durable pipeline store."""

from __future__ import annotations

from dataclasses import dataclass
from types import SimpleNamespace
from typing import Protocol

__all__ = [
    "ArtifactReader",
    "IdempotencyDecision",
    "IdempotencyGuard",
    "STAGE",
    "evaluate_stage_idempotency",
]


STAGE = SimpleNamespace(ANALYZE="analyze", GENERATE_IMAGE="generate_image")


class ArtifactReader(Protocol):
    """Minimal interface the guard needs from the pipeline store."""

    def analysis_exists(self, entry_id: str) -> bool:  # pragma: no cover
        ...

    def image_exists(self, entry_id: str) -> bool:  # pragma: no cover
        ...


@dataclass(frozen=True)
class IdempotencyDecision:
    """Represents the outcome of an artifact lookup for one stage."""

    should_run: bool
    reason: str


class IdempotencyGuard:
    """Answers "has this stage already produced its artifact?".

    Every answer comes from the durable store, so it survives restarts and is
    shared by all workers.
    """

    def __init__(self, reader: ArtifactReader) -> None:
        self._reader = reader

    def analysis_exists(self, entry_id: str) -> bool:
        return bool(self._reader.analysis_exists(entry_id))

    def image_exists(self, entry_id: str) -> bool:
        return bool(self._reader.image_exists(entry_id))

    def artifact_exists(self, stage: str, entry_id: str) -> bool:
        if stage == STAGE.ANALYZE:
            return self.analysis_exists(entry_id)
        if stage == STAGE.GENERATE_IMAGE:
            return self.image_exists(entry_id)
        raise ValueError(f"unknown pipeline stage '{stage}'")


def evaluate_stage_idempotency(
    reader: ArtifactReader, stage: str, entry_id: str
) -> IdempotencyDecision:
    """Decide whether ``stage`` still has to run for ``entry_id``."""

    if IdempotencyGuard(reader).artifact_exists(stage, entry_id):
        return IdempotencyDecision(False, "artifact_already_exists")
    return IdempotencyDecision(True, "artifact_missing")
