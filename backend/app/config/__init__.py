"""Config package exporting loader helpers."""

from .loader import (
    PipelineConfig,
    RateLimitConfig,
    Settings,
    StorageConfig,
    load_settings,
)

__all__ = [
    "Settings",
    "PipelineConfig",
    "StorageConfig",
    "RateLimitConfig",
    "load_settings",
]
