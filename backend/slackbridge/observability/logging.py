from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from .context import get_tool_call_id

# Event keys whose values must never reach a log stream.
_SECRET_KEYS = frozenset(
    {
        "token",
        "access_token",
        "refresh_token",
        "client_secret",
        "authorization",
        "code",
    }
)

_REDACTED = "[redacted]"


def _add_tool_call_id(_: logging.Logger, __: str, event_dict: dict) -> dict:
    cid = get_tool_call_id()
    if cid:
        event_dict["tool_call_id"] = cid
    return event_dict


def _redact_secrets(_: logging.Logger, __: str, event_dict: dict) -> dict:
    for k in list(event_dict.keys()):
        if str(k).lower() in _SECRET_KEYS and event_dict[k] is not None:
            event_dict[k] = _REDACTED
    return event_dict


_CONFIGURED = False


def configure_logging(*, level: str | int = "INFO") -> None:
    """
    Configure stdlib logging + structlog to output structured JSON to stderr.

    stdout carries the stdio tool transport, so nothing may be logged there.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    pre_chain: list[Any] = [
        _add_tool_call_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_secrets,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=pre_chain,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # The OAuth listener runs uvicorn; route its loggers through root.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx"):
        log = logging.getLogger(name)
        log.handlers = []
        log.propagate = True
    # httpx logs full request URLs at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            _add_tool_call_id,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None):
    return structlog.get_logger(name)
