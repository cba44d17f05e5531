"""Tests for progress notifications."""

from __future__ import annotations

import queue

import pytest

from backend.app.domain.entries.pipeline_states import PROCESSING_STATE
from backend.app.infra.notifications import (
    LoggingNotificationChannel,
    ProgressBroadcaster,
)

pytestmark = [pytest.mark.collaborators]


def test_subscribers_receive_updates_for_their_entry_only():
    broadcaster = ProgressBroadcaster()
    mine = broadcaster.subscribe("entry-1")
    other = broadcaster.subscribe("entry-2")

    broadcaster.notify("entry-1", PROCESSING_STATE.TEXT_ANALYZED, "Text analysis completed")

    assert mine.get_nowait() == {
        "entry_id": "entry-1",
        "state": PROCESSING_STATE.TEXT_ANALYZED,
        "message": "Text analysis completed",
    }
    with pytest.raises(queue.Empty):
        other.get_nowait()


def test_terminal_state_closes_subscriptions():
    broadcaster = ProgressBroadcaster()
    subscription = broadcaster.subscribe("entry-1")

    broadcaster.notify("entry-1", PROCESSING_STATE.COMPLETED, "memory://image.png")

    assert subscription.get_nowait()["state"] == PROCESSING_STATE.COMPLETED
    assert subscription.get_nowait() is None
    assert broadcaster.subscriber_count("entry-1") == 0


def test_full_queue_drops_the_slow_subscriber():
    broadcaster = ProgressBroadcaster(max_queue_size=1)
    slow = broadcaster.subscribe("entry-1")

    broadcaster.notify("entry-1", PROCESSING_STATE.ANALYZING_TEXT)
    broadcaster.notify("entry-1", PROCESSING_STATE.TEXT_ANALYZED)

    assert slow.get_nowait()["state"] == PROCESSING_STATE.ANALYZING_TEXT
    assert broadcaster.subscriber_count("entry-1") == 0


def test_unsubscribe_stops_delivery():
    broadcaster = ProgressBroadcaster()
    subscription = broadcaster.subscribe("entry-1")
    broadcaster.unsubscribe("entry-1", subscription)

    broadcaster.notify("entry-1", PROCESSING_STATE.TEXT_ANALYZED)

    assert subscription.empty()


def test_logging_channel_accepts_updates_without_message():
    LoggingNotificationChannel().notify("entry-1", PROCESSING_STATE.CREATED)
