# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Logging setup.

Modules log through ``structlog.get_logger()`` with event names and
key/value context. configure_logging() is called once by the CLI; it adds
timestamps, log levels and redaction of credentials before rendering to
stderr.
"""

import logging
import re
import sys
from typing import Any

import structlog

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
REDACTED = "***"

_SECRET_KEY_PARTS = ("password", "secret", "access_key", "token")
_URL_PASSWORD_RE = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://[^:/@\s]+):[^@\s]+@")


def _mask_password(value: str) -> str:
    """Mask the password part of a connection URL."""
    return _URL_PASSWORD_RE.sub(r"\g<scheme>:" + REDACTED + "@", value)


def redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor masking credential values."""
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if any(part in lowered for part in _SECRET_KEY_PARTS):
            if value:
                event_dict[key] = REDACTED
        elif isinstance(value, str):
            event_dict[key] = _mask_password(value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog for command line use.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines instead of console output
    """
    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt=TIMESTAMP_FORMAT, utc=False),
            redact_secrets,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
