"""Utilities package."""
from backend.utils.logging import (
    bind_correlation_id,
    configure_logging,
    get_correlation_id,
    log_performance,
    redact_sensitive_data,
)

__all__ = [
    "bind_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "log_performance",
    "redact_sensitive_data",
]
