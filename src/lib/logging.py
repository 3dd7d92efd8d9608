"""
Structured logging configuration for EatLock.

Configures structlog to work alongside stdlib logging so that both
`logging.getLogger()` and `structlog.get_logger()` produce consistent,
structured JSON output in production and human-readable output in dev.

A redaction processor runs before rendering: values stored under
sensitive keys (content, feedback, plaintext, key material, ciphertext)
are replaced so that no user text or secret can reach a log sink, even
if a caller passes one by mistake.

Usage:
    from src.lib.logging import setup_logging

    setup_logging()  # Call once at application startup
"""

import logging
import os
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

REDACTED = "[redacted]"

# Event-dict keys whose values are never rendered
SENSITIVE_KEYS = frozenset({
    "content",
    "feedback",
    "plaintext",
    "key",
    "key_bytes",
    "material",
    "ciphertext",
    "secret",
})


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Replace values of sensitive keys with a fixed marker."""
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(dev_mode: bool | None = None, log_level: str | None = None) -> None:
    """
    Configure structlog and stdlib logging for the application.

    In development (EATLOCK_DEV_MODE=1): human-readable colored console output.
    In production: JSON-formatted structured logs.
    """
    if dev_mode is None:
        dev_mode = os.environ.get("EATLOCK_DEV_MODE") == "1"
    level = (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    # Shared processors for both structlog and stdlib
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if dev_mode:
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # stdlib records (e.g. from sqlalchemy) go through the same pipeline
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    # SQL echo would print bound parameters, i.e. ciphertext
    for noisy_logger in ("sqlalchemy.engine", "aiosqlite", "keyring"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


__all__ = ["REDACTED", "SENSITIVE_KEYS", "redact_sensitive_fields", "setup_logging"]
