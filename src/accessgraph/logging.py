"""Logging utilities for the access-control engine.

This module provides:
- Logging configuration from AccessControlConfig
- Safe previews of id sets for log lines
- Structured (JSON or plain) formatting with principal/node context
- The audit lines emitted on denied checks and unknown permissions
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Iterable, Optional

from .config import AccessControlConfig, LogLevel

if TYPE_CHECKING:
    from .context import AuthContext


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "exc_info", "exc_text", "stack_info",
        "taskName", "principal_ids", "trusted",
    }
)

_audit_logger = logging.getLogger("accessgraph.audit")
logger = logging.getLogger(__name__)


def safe_preview(value: Any, limit: int = 240) -> str:
    """Create a length-bounded, single-line preview of a value for logging.

    Sets are rendered sorted so the same ids always log the same way.

    Args:
        value: The value to preview (any type)
        limit: Maximum length of the preview (default: 240)

    Returns:
        A truncated string representation
    """
    if value is None:
        return ""

    if isinstance(value, str):
        s = value
    elif isinstance(value, (set, frozenset)):
        s = json.dumps(sorted(value, key=str), default=str, ensure_ascii=False)
    elif isinstance(value, (dict, list, tuple)):
        try:
            s = json.dumps(value, default=str, ensure_ascii=False)
        except (TypeError, ValueError):
            s = str(value)
    else:
        s = str(value)

    s = " ".join(s.split())

    if len(s) > limit:
        return s[: limit - 1] + "…"

    return s


class AccessLogFormatter(logging.Formatter):
    """Formatter that surfaces acting principals and extra fields.

    Outputs one JSON object per record, or a plain line with the
    principals appended when ``json_format`` is False.
    """

    def __init__(self, json_format: bool = True, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.json_format = json_format

    def format(self, record: logging.LogRecord) -> str:
        principal_ids = getattr(record, "principal_ids", None)
        trusted = getattr(record, "trusted", False)

        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if principal_ids:
            log_data["principal_ids"] = sorted(principal_ids)
        if trusted:
            log_data["trusted"] = True

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = safe_preview(value)

        if self.json_format:
            return json.dumps(log_data, default=str, ensure_ascii=False)

        parts = [
            f"[{log_data['timestamp']}]",
            log_data["level"],
            log_data["logger"],
        ]
        if principal_ids:
            parts.append(f"principals={safe_preview(frozenset(principal_ids))}")
        if trusted:
            parts.append("trusted")
        parts.append(f": {log_data['message']}")
        return " ".join(parts)


class AccessLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that tags records with an ``AuthContext``.

    Usage:
        logger = get_access_logger(__name__, ctx)
        logger.info("Granted role", extra={"node_id": 3})
    """

    def __init__(self, logger: logging.Logger, context: Optional["AuthContext"] = None):
        super().__init__(logger, {})
        self.context = context

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", self.context)
        extra = kwargs.get("extra", {})
        if context is not None:
            extra["principal_ids"] = context.principal_ids
            extra["trusted"] = context.is_trusted
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(config: Optional[AccessControlConfig] = None) -> None:
    """Configure the root logger from ``config``.

    Args:
        config: AccessControlConfig instance (if None, loads from environment)
    """
    if config is None:
        from .config import load_config_from_env

        config = load_config_from_env()

    level_map = {
        LogLevel.DEBUG: logging.DEBUG,
        LogLevel.INFO: logging.INFO,
        LogLevel.WARNING: logging.WARNING,
        LogLevel.ERROR: logging.ERROR,
        LogLevel.CRITICAL: logging.CRITICAL,
    }
    log_level = level_map.get(config.log_level, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(AccessLogFormatter(json_format=config.log_json))
    root_logger.addHandler(console_handler)


def get_access_logger(name: str, context: Optional["AuthContext"] = None) -> AccessLoggerAdapter:
    """Get a logger adapter bound to ``context``.

    Args:
        name: Logger name (typically __name__)
        context: Optional AuthContext whose principals tag every record

    Returns:
        AccessLoggerAdapter instance
    """
    return AccessLoggerAdapter(logging.getLogger(name), context)


def log_unauthorized(
    missing: Iterable[str],
    roles: Iterable[str],
    nodes: Iterable[Any],
    principals: Iterable[int],
) -> None:
    """Audit line for a failed permission check."""
    _audit_logger.warning(
        "Access denied: missing %s; current roles %s; nodes %s; principals %s",
        safe_preview(frozenset(missing)),
        safe_preview(frozenset(roles)),
        safe_preview(list(nodes)),
        safe_preview(frozenset(principals)),
    )


def log_unregistered_permission(name: str) -> None:
    _audit_logger.info("Permission %r is not registered", name)


__all__ = [
    "AccessLogFormatter",
    "AccessLoggerAdapter",
    "get_access_logger",
    "log_unauthorized",
    "log_unregistered_permission",
    "safe_preview",
    "setup_logging",
]
