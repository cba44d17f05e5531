"""Wires the pipeline store, scheduler, dispatcher and stage executors together."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional

from sqlalchemy.engine import Engine

from backend.app.config import Settings, load_settings
from backend.app.domain.entries.gateway import PipelineStoreGateway, SqlPipelineStore
from backend.app.domain.entries.intake import submit_entry
from backend.app.domain.entries.models import EntryProcessingRecord
from backend.app.domain.entries.rate_limit import FixedWindowRateLimiter, RateLimiter
from backend.app.domain.pipeline.dispatcher import PipelineEventDispatcher
from backend.app.domain.pipeline.failures import FailureTerminalHandler
from backend.app.infra.db import get_engine
from backend.app.infra.events import EventEmitter, LoggingEventEmitter
from backend.app.infra.jobqueue import (
    TASK_KIND,
    DurableTaskScheduler,
    SqlTaskStore,
    TaskStore,
)
from backend.app.infra.logging import get_logger
from backend.app.infra.metrics import MetricsClient, get_metrics_client
from backend.app.infra.notifications import ProgressBroadcaster
from backend.app.infra.storage import ObjectStorageService, build_object_storage
from backend.app.jobs import analysis_worker, image_worker
from backend.app.jobs.stage_support import timeout_handler

__all__ = ["PipelineRuntime", "build_pipeline_runtime"]

logger = get_logger(__name__)


@dataclass
class PipelineRuntime:
    settings: Settings
    store: PipelineStoreGateway
    task_store: TaskStore
    scheduler: DurableTaskScheduler
    dispatcher: PipelineEventDispatcher
    failure_handler: FailureTerminalHandler
    storage: ObjectStorageService
    progress: ProgressBroadcaster
    rate_limiter: RateLimiter

    def submit(self, content: str, *, user_id: str) -> EntryProcessingRecord:
        return submit_entry(
            content,
            user_id=user_id,
            store=self.store,
            rate_limiter=self.rate_limiter,
            relay=self.dispatcher,
        )

    def start(self, worker_count: Optional[int] = None) -> None:
        self.scheduler.start(worker_count)

    def stop(self) -> None:
        self.scheduler.stop()


def build_pipeline_runtime(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[Engine] = None,
    store: Optional[PipelineStoreGateway] = None,
    task_store: Optional[TaskStore] = None,
    storage: Optional[ObjectStorageService] = None,
    ai_client: Optional[Any] = None,
    emitter: Optional[EventEmitter] = None,
    metrics: Optional[MetricsClient] = None,
    clock: Optional[Callable[[], datetime]] = None,
    worker_id: Optional[str] = None,
) -> PipelineRuntime:
    """Assemble a runtime; unspecified collaborators come from ``settings``."""

    settings = settings or load_settings()
    metrics = metrics or get_metrics_client()
    if store is None or task_store is None:
        engine = engine or get_engine()
    store = store or SqlPipelineStore(engine)
    task_store = task_store or SqlTaskStore(engine)
    storage = storage or build_object_storage(settings.storage)
    pipeline_cfg = settings.pipeline

    failure_handler = FailureTerminalHandler(store, metrics=metrics)
    scheduler = DurableTaskScheduler(
        task_store,
        config=pipeline_cfg,
        entry_reader=store,
        clock=clock,
        worker_id=worker_id,
        metrics=metrics,
    )
    progress = ProgressBroadcaster()
    emitter = emitter or LoggingEventEmitter(metrics=metrics)
    dispatcher = PipelineEventDispatcher(
        store,
        scheduler,
        notifier=progress,
        emitter=emitter,
        metrics=metrics,
        retention_seconds=pipeline_cfg.outbox_retention_seconds,
    )
    now = clock or (lambda: datetime.now(timezone.utc))
    scheduler.add_before_poll(dispatcher.relay_outbox)
    scheduler.add_before_poll(lambda: dispatcher.purge_dispatched(now()))

    shared = {
        "store": store,
        "ai_client": ai_client,
        "failure_handler": failure_handler,
        "max_attempts": pipeline_cfg.max_attempts,
        "metrics": metrics,
    }
    scheduler.register(
        TASK_KIND.ANALYZE,
        partial(analysis_worker.handle, **shared),
        on_timeout=timeout_handler(
            analysis_worker.STAGE_NAME,
            store_factory=lambda: store,
            failure_handler=failure_handler,
            max_attempts=pipeline_cfg.max_attempts,
            metrics=metrics,
        ),
    )
    scheduler.register(
        TASK_KIND.GENERATE_IMAGE,
        partial(image_worker.handle, storage=storage, **shared),
        on_timeout=timeout_handler(
            image_worker.STAGE_NAME,
            store_factory=lambda: store,
            failure_handler=failure_handler,
            max_attempts=pipeline_cfg.max_attempts,
            metrics=metrics,
        ),
    )

    rate_limiter = FixedWindowRateLimiter(
        limit=settings.rate_limit.creations_per_period,
        period_seconds=settings.rate_limit.period_seconds,
    )
    logger.info(
        "pipeline_runtime_built",
        extra={
            "worker_id": scheduler.worker_id,
            "max_attempts": pipeline_cfg.max_attempts,
            "retry_delay_seconds": pipeline_cfg.retry_delay_seconds,
            "storage_backend": settings.storage.backend,
        },
    )
    return PipelineRuntime(
        settings=settings,
        store=store,
        task_store=task_store,
        scheduler=scheduler,
        dispatcher=dispatcher,
        failure_handler=failure_handler,
        storage=storage,
        progress=progress,
        rate_limiter=rate_limiter,
    )
