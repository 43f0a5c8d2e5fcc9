"""structlog setup for tokenvault.

Configured once on import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Log lines are written to stderr so that anything a script
prints on stdout (token JSON, for instance) stays machine readable.
"""

from __future__ import annotations

import hashlib
import logging
import os
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional, TextIO

import structlog

# Ties together the log lines of one CLI invocation or caller request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_PII_KEYS = ("password", "secret", "token", "email")


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Redact bearer credentials and identities from log entries.

    Keys ending in ``_hash`` are already one-way and pass through untouched.
    """
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key == "event" or lower_key.endswith("_hash"):
            continue
        if any(pii in lower_key for pii in _PII_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """(Re)configure structlog; unset arguments fall back to the environment.

    ``stream`` defaults to whatever ``sys.stderr`` is when a logger is first used.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", "false")

    processors = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=lambda *args: structlog.PrintLogger(stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)


def hash_identity(value: Optional[str]) -> Optional[str]:
    """One-way digest of an email or token for log correlation."""
    if not value:
        return None
    return hashlib.sha256(value.encode()).hexdigest()
