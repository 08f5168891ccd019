"""
Structured logging configuration using structlog.

Grant tokens are bearer credentials and appear in request paths, so every
event passes through a redaction step before it is rendered. Exceptions are
rendered to text first so that their messages are redacted too.
"""

import logging
import re
import sys
from collections.abc import MutableMapping
from typing import Any, cast

import structlog
from structlog.tracebacks import ExceptionDictTransformer
from structlog.types import Processor

from datashare.core.config import get_settings

# Grant tokens are long hex runs; document links are compact JWTs.
_TOKEN_PATTERN = re.compile(r"\b[0-9a-fA-F]{32,}\b|\beyJ[\w-]+\.[\w-]+\.[\w-]+")
_SECRET_KEYS = frozenset({"token", "link_token", "download_token", "authorization"})
REDACTED = "[redacted]"


def redact_value(value: str) -> str:
    return _TOKEN_PATTERN.sub(REDACTED, value)


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        return redact_value(value)
    if isinstance(value, dict):
        return {
            key: REDACTED if key in _SECRET_KEYS and item is not None else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def redact_tokens(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking bearer material in keys and values, at any depth."""
    for key, value in list(event_dict.items()):
        if key in _SECRET_KEYS and value is not None:
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _redact(value)
    return event_dict


class _RedactingFilter(logging.Filter):
    """Mask tokens in stdlib records such as uvicorn's access log lines."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.args = tuple(
                redact_value(arg) if isinstance(arg, str) else arg
                for arg in cast(tuple[Any, ...], record.args)
            )
        if isinstance(record.msg, str):
            record.msg = redact_value(record.msg)
        if record.exc_info and not record.exc_text:
            # Formatters reuse exc_text instead of formatting exc_info again.
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = redact_value(record.exc_text)
        return True


def build_processors(environment: str) -> list[Processor]:
    """The structlog processor chain for *environment*, renderer included."""
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if environment == "development":
        return shared_processors + [
            structlog.processors.format_exc_info,
            redact_tokens,
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]
    return shared_processors + [
        structlog.processors.ExceptionRenderer(ExceptionDictTransformer(show_locals=False)),
        redact_tokens,
        structlog.processors.JSONRenderer(),
    ]


def configure_logging() -> None:
    """
    Configure structured logging for the gateway.

    Development renders colored console lines; every other environment emits
    JSON so that denial events can be shipped to log aggregation.
    """
    settings = get_settings()

    structlog.configure(
        processors=build_processors(settings.environment),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )
    for name in ("uvicorn.access", "uvicorn.error"):
        stdlib_logger = logging.getLogger(name)
        if not any(isinstance(f, _RedactingFilter) for f in stdlib_logger.filters):
            stdlib_logger.addFilter(_RedactingFilter())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
