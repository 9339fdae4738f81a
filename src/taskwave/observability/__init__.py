"""Observability exports for structured logging."""

from taskwave.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    correlation_scope,
    get_active_logging_handle,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "LoggingHandle",
    "correlation_scope",
    "get_active_logging_handle",
    "setup_logging",
    "shutdown_logging",
]
