"""
Structured Logging for AKIRA

structlog on top of the stdlib logging tree: JSON lines in production,
console rendering in development. Every event passes through
redact_sensitive before it is rendered, so a plaintext key, one-time code
or password handed to a logger by mistake is masked rather than written out.
"""

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, TextIO

import structlog

REDACTED = "[redacted]"

SENSITIVE_KEYS = frozenset((
    "password",
    "old_password",
    "new_password",
    "credential_hash",
    "code",
    "secret",
    "plaintext_key_once",
    "presented_secret",
    "session_token",
    "token",
    "master_key",
    "signing_key",
    "cipher_text",
))

# LogRecord attributes that are not user-supplied `extra` fields
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _mask(event: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in event:
        if key in SENSITIVE_KEYS and event[key] is not None:
            event[key] = REDACTED
    return event


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor masking SENSITIVE_KEYS."""
    return _mask(event_dict)


class JSONFormatter(logging.Formatter):
    """One JSON object per stdlib record, `extra` fields included and masked."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update({k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(_mask(payload), default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure stdlib logging and structlog for the process.

    Args:
        level: Log level name; unknown names fall back to INFO
        json_format: JSON lines (production) instead of console output
        log_file: Also append JSON lines to this file
        stream: Console stream, stdout by default. The CLI passes stderr so
            command output stays machine-readable.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    console = logging.StreamHandler(stream or sys.stdout)
    console.setLevel(log_level)
    console.setFormatter(
        JSONFormatter() if json_format
        else logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    root_logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_sensitive,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_from_config(config: Any, stream: Optional[TextIO] = None) -> None:
    """Apply AkiraConfig.log_level and AkiraConfig.log_json."""
    configure_logging(level=config.log_level, json_format=config.log_json, stream=stream)


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


class OperationLogger:
    """
    Times one gateway operation.

    Logs operation_completed at INFO, or operation_failed at WARNING with the
    error code of an AkiraError (the class name otherwise). The exception is
    never suppressed.
    """

    def __init__(self, logger: Any, operation: str, **context: Any):
        self.logger = logger
        self.operation = operation
        self.context = context
        self._started = 0.0

    def __enter__(self) -> "OperationLogger":
        self._started = time.monotonic()
        self.logger.debug("operation_started", operation=self.operation, **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        duration_ms = round((time.monotonic() - self._started) * 1000, 2)
        if exc_type is None:
            self.logger.info("operation_completed", operation=self.operation, duration_ms=duration_ms, **self.context)
        else:
            self.logger.warning(
                "operation_failed",
                operation=self.operation,
                duration_ms=duration_ms,
                error=getattr(exc_val, "code", exc_type.__name__),
                **self.context,
            )
        return False
