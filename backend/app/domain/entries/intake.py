"""Entry submission: rate limit, persist, then hand off to the pipeline."""

from __future__ import annotations

from typing import Optional, Protocol

from ...infra.logging import get_logger
from .gateway import PipelineStoreGateway
from .models import EntryProcessingRecord
from .rate_limit import RateLimiter, RateLimitExceededError

__all__ = ["submit_entry"]

logger = get_logger(__name__)

MAX_CONTENT_CHARS = 10_000


class OutboxRelay(Protocol):  # pragma: no cover - interface only
    def relay_outbox(self, limit: int = 100) -> int: ...


def submit_entry(
    content: str,
    *,
    user_id: str,
    store: PipelineStoreGateway,
    rate_limiter: Optional[RateLimiter] = None,
    relay: Optional[OutboxRelay] = None,
) -> EntryProcessingRecord:
    """Create an entry in ``created`` and relay its ``entry_created`` signal.

    The signal is relayed only after the insert committed; if the relay is
    unavailable the scheduler's next poll picks the event up.
    """

    text = (content or "").strip()
    if not text:
        raise ValueError("entry content must not be empty")
    if len(text) > MAX_CONTENT_CHARS:
        raise ValueError(f"entry content exceeds {MAX_CONTENT_CHARS} characters")

    if rate_limiter is not None and not rate_limiter.acquire(user_id):
        raise RateLimitExceededError(
            user_id, retry_after_seconds=rate_limiter.retry_after(user_id)
        )

    record = store.create_entry(text, user_id=user_id)
    logger.info(
        "entry_submitted",
        extra={"entry_id": record.entry_id, "user_id": user_id, "chars": len(text)},
    )
    if relay is not None:
        try:
            relay.relay_outbox()
        except Exception:
            logger.warning(
                "entry_relay_deferred",
                extra={"entry_id": record.entry_id},
                exc_info=True,
            )
    return record
