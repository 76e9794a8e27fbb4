"""
Monitoring for AKIRA

Structured logging configuration, secret redaction and operation timing.
"""

from akira.monitoring.logging import (
    JSONFormatter,
    OperationLogger,
    configure_from_config,
    configure_logging,
    get_logger,
    redact_sensitive,
)

__all__ = [
    "JSONFormatter",
    "OperationLogger",
    "configure_from_config",
    "configure_logging",
    "get_logger",
    "redact_sensitive",
]
