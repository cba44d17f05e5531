from types import SimpleNamespace

from starlette.requests import Request

from backend.app.api import dependencies
from backend.app.api.dependencies import (
    DEFAULT_ACTOR_ID,
    DEFAULT_ACTOR_SOURCE,
    ActorContext,
    get_actor_context,
)


def _make_request(headers: dict[str, str] | None = None) -> Request:
    header_list = [
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/entries",
        "query_string": b"",
        "headers": header_list,
        "client": ("test", 1234),
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope)


def test_actor_context_defaults_to_anonymous() -> None:
    context = get_actor_context(_make_request())

    assert isinstance(context, ActorContext)
    assert context.actor_id == DEFAULT_ACTOR_ID
    assert context.actor_source == DEFAULT_ACTOR_SOURCE


def test_actor_context_strips_header_values() -> None:
    context = get_actor_context(
        _make_request({"X-Actor-Id": "  dreamer-3 ", "X-Actor-Source": " mobile "})
    )

    assert context.actor_id == "dreamer-3"
    assert context.actor_source == "mobile"


def test_blank_actor_header_falls_back_to_default() -> None:
    context = get_actor_context(_make_request({"X-Actor-Id": "   "}))

    assert context.actor_id == DEFAULT_ACTOR_ID


def test_store_limiter_and_relay_come_from_the_shared_runtime(monkeypatch) -> None:
    runtime = SimpleNamespace(
        store=object(), rate_limiter=object(), dispatcher=object()
    )
    monkeypatch.setattr(dependencies, "get_pipeline_runtime", lambda: runtime)

    assert dependencies.get_pipeline_store() is runtime.store
    assert dependencies.get_rate_limiter() is runtime.rate_limiter
    assert dependencies.get_outbox_relay() is runtime.dispatcher
