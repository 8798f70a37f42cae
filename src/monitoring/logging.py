"""Structured logging configuration."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Any

import structlog

from src.config.settings import MonitoringConfig

REDACTED = "***"

# Lowercased; matched against event keys and nested header names.
SECRET_KEYS = frozenset(
    {
        "ok-access-key",
        "ok-access-sign",
        "ok-access-passphrase",
        "api_key",
        "api_secret",
        "secret",
        "secret_key",
        "passphrase",
        "okx_api_key",
        "okx_secret_key",
        "okx_passphrase",
        "authorization",
    }
)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if str(k).lower() in SECRET_KEYS else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor that masks credentials anywhere in the event."""
    return _scrub(event_dict)


def _error_file_handler(logs_path: str, monitoring: MonitoringConfig | None) -> RotatingFileHandler:
    monitoring = monitoring or MonitoringConfig()
    log_dir = Path(logs_path)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / "errors.log",
        maxBytes=monitoring.error_log_max_bytes,
        backupCount=monitoring.error_log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.ERROR)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(
    log_level: str = "INFO",
    logs_path: str | None = None,
    monitoring: MonitoringConfig | None = None,
) -> None:
    """
    JSON logs to stdout, plus a rotating `errors.log` under `logs_path`.

    Request-scoped fields bound with `structlog.contextvars` (the webhook binds
    `request_id`) are merged into every line logged while handling that request.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level, force=True)
    if logs_path:
        logging.getLogger().addHandler(_error_file_handler(logs_path, monitoring))

    # httpx logs request lines with signed headers at DEBUG; the client logs its own.
    for name in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
