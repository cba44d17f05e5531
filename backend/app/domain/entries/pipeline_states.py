"""Canonical processing-state helpers for the AI pipeline.

Every entry walks ``created -> analyzing_text -> text_analyzed ->
generating_image -> completed`` or diverts to ``failed`` from any
non-terminal state. ``completed`` and ``failed`` never change again.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Dict, Optional, Tuple

__all__ = [
    "PROCESSING_STATE",
    "FORWARD_FLOW",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "InvalidTransitionError",
    "StaleStateError",
    "is_terminal",
    "is_at_or_beyond",
    "resolve_transition",
    "state_rank",
]


PROCESSING_STATE = SimpleNamespace(
    CREATED="created",
    ANALYZING_TEXT="analyzing_text",
    TEXT_ANALYZED="text_analyzed",
    GENERATING_IMAGE="generating_image",
    COMPLETED="completed",
    FAILED="failed",
)

FORWARD_FLOW: Tuple[str, ...] = (
    PROCESSING_STATE.CREATED,
    PROCESSING_STATE.ANALYZING_TEXT,
    PROCESSING_STATE.TEXT_ANALYZED,
    PROCESSING_STATE.GENERATING_IMAGE,
    PROCESSING_STATE.COMPLETED,
)

TERMINAL_STATES = frozenset({PROCESSING_STATE.COMPLETED, PROCESSING_STATE.FAILED})


def _build_valid_transitions() -> Dict[str, Tuple[str, ...]]:
    transitions: Dict[str, Tuple[str, ...]] = {}
    for index, state in enumerate(FORWARD_FLOW):
        if state in TERMINAL_STATES:
            transitions[state] = tuple()
            continue
        transitions[state] = (FORWARD_FLOW[index + 1], PROCESSING_STATE.FAILED)
    transitions[PROCESSING_STATE.FAILED] = tuple()
    return transitions


VALID_TRANSITIONS: Dict[str, Tuple[str, ...]] = _build_valid_transitions()


class InvalidTransitionError(ValueError):
    """Raised when a requested state change is not part of the state machine."""

    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(
            f"processing state '{to_state}' is not reachable from '{from_state}'"
        )
        self.from_state = from_state
        self.to_state = to_state


class StaleStateError(RuntimeError):
    """Compare-and-swap transition lost: the stored state was not the expected one."""

    code = "stale_state"
    retryable = False

    def __init__(
        self,
        entry_id: str,
        *,
        expected_state: str,
        actual_state: Optional[str],
    ) -> None:
        super().__init__(
            f"entry {entry_id} expected state '{expected_state}' "
            f"but found '{actual_state}'"
        )
        self.entry_id = entry_id
        self.expected_state = expected_state
        self.actual_state = actual_state


def resolve_transition(from_state: str, to_state: str) -> str:
    """Return ``to_state`` when the move is legal, otherwise raise."""

    if to_state in VALID_TRANSITIONS.get(from_state, tuple()):
        return to_state
    raise InvalidTransitionError(from_state, to_state)


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES


def state_rank(state: str) -> int:
    """Position along the forward flow; ``failed`` ranks after everything."""

    if state == PROCESSING_STATE.FAILED:
        return len(FORWARD_FLOW)
    try:
        return FORWARD_FLOW.index(state)
    except ValueError:
        raise ValueError(f"unknown processing state '{state}'") from None


def is_at_or_beyond(state: str, target: str) -> bool:
    """True when ``state`` has reached ``target`` along the forward flow."""

    return state_rank(state) >= state_rank(target)
