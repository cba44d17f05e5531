"""Structured logging helpers shared by the API, workers and scheduler."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

__all__ = ["KeyValueFormatter", "configure_logging", "get_logger"]

_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}
_CONFIGURED = False


class KeyValueFormatter(logging.Formatter):
    """Render the event name followed by any ``extra=`` fields as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = _extra_fields(record)
        if not fields:
            return base
        rendered = " ".join(
            f"{key}={_render_value(value)}" for key, value in sorted(fields.items())
        )
        return f"{base} {rendered}"


def configure_logging(config: Optional[Dict[str, Any]] = None) -> None:
    """Install the key=value handler on the root logger once per process."""

    global _CONFIGURED
    if _CONFIGURED:
        return
    config = config or {}
    level_name = str(config.get("level", "INFO")).upper()
    handler = logging.StreamHandler()
    handler.setFormatter(
        KeyValueFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; call sites pass structured context via ``extra``."""

    return logging.getLogger(name)


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value if value and " " not in value else json.dumps(value)
    try:
        return json.dumps(value, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(value)
