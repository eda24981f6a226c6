"""structlog setup for the relay.

Every module takes a logger from ``get_logger(__name__-ish dotted name)`` and logs dotted
events (``queue.submit.retry``) with key/value context. Output goes to the console (colored)
and to ``output/logs/app.jsonl`` (one JSON object per line). Credential-looking keys are masked
and oversized values (vendor response bodies) are clipped before they reach either sink.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import structlog

from listrelay.config import LOG_FILE, LOG_LEVEL, VERBOSE_LOGGING

BoundLogger = structlog.stdlib.BoundLogger

SERVICE_NAME = "listrelay"
MAX_VALUE_LENGTH = 2000
QUIET_LOGGERS = ("httpx", "httpcore", "msal", "urllib3", "uvicorn.access")

_SECRET_KEYS = frozenset(
    {"access_token", "client_secret", "authorization", "token", "password", "secret"}
)

_state = {"configured": False}


def _resolve_level(value: str | int | None = None) -> int:
    if VERBOSE_LOGGING and value is None:
        return logging.DEBUG
    value = LOG_LEVEL if value is None else value
    if isinstance(value, int):
        return value
    if value.isdigit():
        return int(value)
    resolved = logging.getLevelName(value.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _mask_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in event_dict:
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = "***"
    return event_dict


def _clip_values(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) > MAX_VALUE_LENGTH:
            event_dict[key] = f"{value[:MAX_VALUE_LENGTH]}...(+{len(value) - MAX_VALUE_LENGTH} chars)"
    return event_dict


def _stdlib_handler(handler: logging.Handler, renderer: Any, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                _add_service,
            ],
        )
    )
    return handler


def configure_logging(level: str | int | None = None, log_file: Path | None = LOG_FILE) -> None:
    """Install console and JSONL handlers on the root logger and configure structlog. Idempotent."""
    if _state["configured"]:
        return
    effective = _resolve_level(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(effective)
    root.addHandler(_stdlib_handler(logging.StreamHandler(), structlog.dev.ConsoleRenderer(colors=True), effective))
    if log_file is not None:
        root.addHandler(
            _stdlib_handler(
                logging.FileHandler(log_file, encoding="utf-8"),
                structlog.processors.JSONRenderer(),
                effective,
            )
        )
    logging.captureWarnings(True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_service,
            _mask_secrets,
            _clip_values,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(effective),
        cache_logger_on_first_use=True,
    )
    _state["configured"] = True


def get_logger(name: str = SERVICE_NAME, **bindings: Any) -> BoundLogger:
    configure_logging()
    logger = structlog.get_logger(name)
    return logger.bind(**bindings) if bindings else logger


def bind_context(**context: Any) -> None:
    """Attach context (batch size, subscription id) to every event in the current task."""
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
