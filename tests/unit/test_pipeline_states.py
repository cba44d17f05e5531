"""Tests for the processing state machine helpers."""

from __future__ import annotations

import pytest

from backend.app.domain.entries.pipeline_states import (
    FORWARD_FLOW,
    PROCESSING_STATE,
    VALID_TRANSITIONS,
    InvalidTransitionError,
    is_at_or_beyond,
    is_terminal,
    resolve_transition,
    state_rank,
)

pytestmark = [pytest.mark.pipeline_states]


def test_forward_flow_matches_pipeline_order():
    assert FORWARD_FLOW == (
        "created",
        "analyzing_text",
        "text_analyzed",
        "generating_image",
        "completed",
    )


@pytest.mark.parametrize("state", [s for s in FORWARD_FLOW if s != "completed"])
def test_every_non_terminal_state_can_fail(state):
    assert resolve_transition(state, PROCESSING_STATE.FAILED) == "failed"


@pytest.mark.parametrize("state", ["completed", "failed"])
def test_terminal_states_have_no_outgoing_transitions(state):
    assert VALID_TRANSITIONS[state] == ()
    assert is_terminal(state)
    with pytest.raises(InvalidTransitionError):
        resolve_transition(state, PROCESSING_STATE.CREATED)


def test_skipping_a_stage_is_rejected():
    with pytest.raises(InvalidTransitionError) as excinfo:
        resolve_transition(PROCESSING_STATE.CREATED, PROCESSING_STATE.TEXT_ANALYZED)

    assert excinfo.value.from_state == "created"
    assert excinfo.value.to_state == "text_analyzed"


def test_backward_transition_is_rejected():
    with pytest.raises(InvalidTransitionError):
        resolve_transition(
            PROCESSING_STATE.GENERATING_IMAGE, PROCESSING_STATE.TEXT_ANALYZED
        )


def test_state_rank_orders_failed_last():
    assert state_rank("created") < state_rank("text_analyzed") < state_rank("completed")
    assert state_rank("failed") > state_rank("completed")
    assert is_at_or_beyond("generating_image", "text_analyzed")
    assert not is_at_or_beyond("analyzing_text", "text_analyzed")


def test_state_rank_rejects_unknown_state():
    with pytest.raises(ValueError):
        state_rank("queued")
