# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackup Logging - structlog setup for the command line.
"""

import logging
import sys
from urllib.parse import urlparse

import structlog

_SECRET_KEYS = frozenset({"password", "passphrase", "encryption_key", "secret", "connection_string"})


def _mask_password(url: str) -> str:
    """Mask password in connection URL for logging."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":***@")
    return url


def _redact_secrets(logger, method_name, event_dict):
    for key in list(event_dict):
        value = event_dict[key]
        if key in _SECRET_KEYS and value:
            event_dict[key] = "***"
        elif isinstance(value, str) and "://" in value:
            event_dict[key] = _mask_password(value)
    return event_dict


def configure_logging(debug: bool = False, json: bool = False) -> None:
    """
    Configure structlog for CLI output on stderr.

    Args:
        debug: Emit debug events
        json: Render one JSON object per line instead of console output
    """
    level = logging.DEBUG if debug else logging.INFO
    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if json:
        processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
