"""structlog configuration module."""

import logging
import re
import sys
from typing import Any

import structlog

# Stripe secret/restricted keys and webhook signing secrets
_SECRET_PATTERN = re.compile(r"\b(sk|rk|whsec)_(live|test)?_?[A-Za-z0-9]+")
_EMAIL_KEYS = frozenset({"email", "recipient_email", "user_email", "to_email"})


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def redact_sensitive(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """Mask email addresses and Stripe secrets before rendering."""
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if key in _EMAIL_KEYS:
            event_dict[key] = _mask_email(value)
        elif _SECRET_PATTERN.search(value):
            event_dict[key] = _SECRET_PATTERN.sub("[REDACTED]", value)
    return event_dict


def setup_logging(debug: bool = False, level: str | None = None) -> None:
    """
    Configure structlog and stdlib logging.

    Debug mode renders coloured console lines; otherwise one JSON object per
    line so webhook traces can be searched by stripe_event_id or user_id.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
        level: Optional level name overriding the debug-derived default.
    """
    log_level = logging.getLevelName(level.upper()) if level else None
    if not isinstance(log_level, int):
        log_level = logging.DEBUG if debug else logging.INFO

    processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, stripe_event_id
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # uvicorn, httpx and the stripe SDK log through stdlib logging.
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for noisy in ("httpx", "stripe"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))
