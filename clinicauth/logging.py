"""structlog setup for the auth core.

Every event passes through a redaction step so credentials, tokens and email
addresses never reach a sink in clear text. ``log_context`` binds per-call
fields (account id, email) together with a correlation id that ties the
events of one login, refresh or admin run together.
"""
from __future__ import annotations

import contextlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# substrings of event keys whose values are masked
_SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "email")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or generate) the correlation id for the current context."""
    cid = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(cid)
    return cid


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[str]:
    """Bind ``fields`` to every event logged inside the block.

    A correlation id is generated for the block unless the caller already
    set one; both the id and the fields are restored on exit.
    """
    reset_token = None
    if correlation_id_var.get() is None:
        reset_token = correlation_id_var.set(uuid.uuid4().hex)
    try:
        with structlog.contextvars.bound_contextvars(**fields):
            yield correlation_id_var.get()
    finally:
        if reset_token is not None:
            correlation_id_var.reset(reset_token)


def mask_value(value: str) -> str:
    """Keep the first and last two characters so events stay correlatable."""
    if len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
            event_dict[key] = mask_value(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _renderer_chain(pretty: bool) -> List[Any]:
    if pretty:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(level: str = "INFO", *, pretty: bool = False) -> None:
    """(Re)configure structlog; called once on import from LOG_* variables."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_correlation_id,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            # after merge_contextvars so bound emails are masked as well
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            *_renderer_chain(pretty),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    pretty=_env_flag("LOG_DEV_MODE", False) or not _env_flag("LOG_JSON", True),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
