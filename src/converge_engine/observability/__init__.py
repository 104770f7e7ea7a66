"""Public observability primitives: structured logging and run metrics."""

from converge_engine.observability.logging import (
    LoggingConfig,
    LogRedactor,
    StructuredLoggingHandle,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    parse_log_level,
    setup_structured_logging,
    shutdown_logging,
)
from converge_engine.observability.metrics import (
    IN_FLIGHT,
    PROVIDER_CALL_SECONDS,
    RESOURCES_TOTAL,
    RUNS_TOTAL,
    MetricsRegistry,
)

__all__ = [
    "IN_FLIGHT",
    "PROVIDER_CALL_SECONDS",
    "RESOURCES_TOTAL",
    "RUNS_TOTAL",
    "LogRedactor",
    "LoggingConfig",
    "MetricsRegistry",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "parse_log_level",
    "setup_structured_logging",
    "shutdown_logging",
]
