"""Tests for the image generation stage executor."""

from __future__ import annotations

import pytest

from backend.app.domain.entries.gateway import InMemoryPipelineStore
from backend.app.domain.entries.models import AnalysisRecord
from backend.app.domain.entries.pipeline_states import PROCESSING_STATE
from backend.app.infra.metrics import InMemoryMetricsClient
from backend.app.infra.storage import InMemoryObjectStorage
from backend.app.jobs import image_worker, stage_support
from backend.app.jobs.stage_support import STAGE_OUTCOME, RetryableStageError
from tests.helpers.logging import find_log, install_recording_logger
from tests.helpers.pipeline_harness import ScriptedAiClient

pytestmark = [pytest.mark.stage_workers]


@pytest.fixture()
def recorder(monkeypatch):
    return install_recording_logger(monkeypatch, image_worker, stage_support)


def _analyzed_entry(store: InMemoryPipelineStore) -> str:
    entry_id = store.create_entry("A storm over a glass city.").entry_id
    store.transition(
        entry_id,
        from_state=PROCESSING_STATE.CREATED,
        to_state=PROCESSING_STATE.ANALYZING_TEXT,
    )
    store.record_analysis(
        entry_id,
        AnalysisRecord.new(
            entry_id=entry_id,
            summary="A storm rolls over a city made of glass.",
            emotions={"fear": 0.6, "surprise": 0.4},
        ),
        from_state=PROCESSING_STATE.ANALYZING_TEXT,
    )
    return entry_id


def _run(store, client, storage, entry_id, **kwargs):
    kwargs.setdefault("max_attempts", 8)
    kwargs.setdefault("metrics", InMemoryMetricsClient())
    return image_worker.handle(
        {"entry_id": entry_id, "attempt_number": 1},
        store=store,
        ai_client=client,
        storage=storage,
        **kwargs,
    )


def test_image_success_stores_object_and_completes_entry(recorder):
    store = InMemoryPipelineStore()
    storage = InMemoryObjectStorage()
    client = ScriptedAiClient()
    entry_id = _analyzed_entry(store)

    outcome = _run(store, client, storage, entry_id)

    assert outcome == STAGE_OUTCOME.COMPLETED
    record = store.get_entry(entry_id)
    assert record.state == PROCESSING_STATE.COMPLETED
    assert record.attempt_count == 0
    assert storage.exists(record.image_storage_key)
    assert record.image_storage_key.endswith(".png")
    assert record.image_uri == storage.get_access_url(record.image_storage_key)
    assert "glass" in client.prompts[0]
    assert "Mood: fear" in client.prompts[0]
    find_log(recorder.records, level="info", message="image_job_completed")


def test_existing_image_skips_generation(recorder):
    store = InMemoryPipelineStore()
    storage = InMemoryObjectStorage()
    entry_id = _analyzed_entry(store)
    _run(store, ScriptedAiClient(), storage, entry_id)
    client = ScriptedAiClient()

    outcome = _run(store, client, storage, entry_id)

    assert outcome == STAGE_OUTCOME.SKIPPED
    assert client.image_calls == 0
    assert len(storage.objects) == 1


def test_entry_not_yet_analyzed_is_skipped(recorder):
    store = InMemoryPipelineStore()
    entry_id = store.create_entry("dream").entry_id
    client = ScriptedAiClient()

    assert _run(store, client, InMemoryObjectStorage(), entry_id) == STAGE_OUTCOME.SKIPPED
    assert client.image_calls == 0
    assert store.get_entry(entry_id).state == PROCESSING_STATE.CREATED


def test_generation_failure_counts_attempt(recorder):
    store = InMemoryPipelineStore()
    storage = InMemoryObjectStorage()
    entry_id = _analyzed_entry(store)

    with pytest.raises(RetryableStageError) as excinfo:
        _run(store, ScriptedAiClient(image_failures=1), storage, entry_id)

    assert excinfo.value.code == "rate_limited"
    record = store.get_entry(entry_id)
    assert record.state == PROCESSING_STATE.GENERATING_IMAGE
    assert record.attempt_count == 1
    assert storage.objects == {}


def test_failed_commit_deletes_the_stored_object(recorder):
    class _CommitFailingStore(InMemoryPipelineStore):
        def record_image(self, entry_id, **kwargs):
            raise RuntimeError("database unavailable")

    store = _CommitFailingStore()
    storage = InMemoryObjectStorage()
    entry_id = _analyzed_entry(store)

    with pytest.raises(RetryableStageError):
        _run(store, ScriptedAiClient(), storage, entry_id)

    assert storage.objects == {}
    assert len(storage.deleted) == 1
    assert store.get_entry(entry_id).image_storage_key is None
    find_log(recorder.records, level="info", message="image_orphan_deleted")


def test_stale_commit_deletes_object_and_reports_stale(recorder):
    store = InMemoryPipelineStore()
    storage = InMemoryObjectStorage()
    entry_id = _analyzed_entry(store)

    class _RacingClient(ScriptedAiClient):
        def generate_image(self, prompt):
            store.mark_failed(entry_id, reason="failed elsewhere")
            return super().generate_image(prompt)

    outcome = _run(store, _RacingClient(), storage, entry_id)

    assert outcome == STAGE_OUTCOME.STALE
    assert storage.objects == {}
    assert store.get_entry(entry_id).state == PROCESSING_STATE.FAILED


def test_missing_analysis_is_a_retryable_failure(recorder):
    store = InMemoryPipelineStore()
    entry_id = store.create_entry("dream").entry_id
    store.transition(
        entry_id,
        from_state=PROCESSING_STATE.CREATED,
        to_state=PROCESSING_STATE.ANALYZING_TEXT,
    )
    store.transition(
        entry_id,
        from_state=PROCESSING_STATE.ANALYZING_TEXT,
        to_state=PROCESSING_STATE.TEXT_ANALYZED,
    )
    client = ScriptedAiClient()

    with pytest.raises(RetryableStageError) as excinfo:
        _run(store, client, InMemoryObjectStorage(), entry_id)

    assert excinfo.value.code == "analysis_missing"
    assert client.image_calls == 0


def test_eighth_failure_fails_the_entry(recorder):
    store = InMemoryPipelineStore()
    entry_id = _analyzed_entry(store)
    client = ScriptedAiClient(image_failures=99)
    storage = InMemoryObjectStorage()

    outcomes = []
    for _ in range(8):
        try:
            outcomes.append(_run(store, client, storage, entry_id))
        except RetryableStageError:
            outcomes.append("retry")

    assert outcomes == ["retry"] * 7 + [STAGE_OUTCOME.FAILED_TERMINAL]
    record = store.get_entry(entry_id)
    assert record.state == PROCESSING_STATE.FAILED
    assert record.attempt_count == 8
    assert client.image_calls == 8


class _FlakyImageLookupStore(InMemoryPipelineStore):
    def __init__(self):
        super().__init__()
        self.lookup_failures = 1

    def image_exists(self, entry_id):
        if self.lookup_failures:
            self.lookup_failures -= 1
            raise RuntimeError("database connection reset")
        return super().image_exists(entry_id)


def test_store_error_before_generation_is_counted(recorder):
    store = _FlakyImageLookupStore()
    storage = InMemoryObjectStorage()
    client = ScriptedAiClient()
    entry_id = _analyzed_entry(store)

    with pytest.raises(RetryableStageError) as excinfo:
        _run(store, client, storage, entry_id)

    assert excinfo.value.attempt_count == 1
    assert client.image_calls == 0
    assert storage.objects == {}

    assert _run(store, client, storage, entry_id) == STAGE_OUTCOME.COMPLETED
