from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .config import LogConfig

_MAX_VALUE_CHARS = 500
_REDACTED_KEYS = {"token", "bot_token", "authorization"}
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def sanitize_log_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [sanitize_log_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): sanitize_log_value(item) for key, item in value.items()}
    text = str(value)
    if len(text) > _MAX_VALUE_CHARS:
        return text[:_MAX_VALUE_CHARS] + "..."
    return text


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit one structured log line: a JSON object keyed by ``event``."""
    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        if key.lower() in _REDACTED_KEYS:
            payload[key] = "***"
            continue
        payload[key] = sanitize_log_value(value)
    if exc is not None:
        payload["error"] = sanitize_log_value(str(exc))
        payload["error_type"] = type(exc).__name__
    try:
        message = json.dumps(payload, ensure_ascii=False, sort_keys=False)
    except (TypeError, ValueError):
        message = repr(payload)
    logger.log(
        level,
        message,
        exc_info=(type(exc), exc, exc.__traceback__)
        if exc is not None and level >= logging.ERROR
        else None,
    )


def setup_rotating_logger(
    name: str, log_config: "LogConfig", *, stderr: bool = True
) -> logging.Logger:
    logger = logging.getLogger(name)
    level = logging.getLevelName(log_config.level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(_LOG_FORMAT)
    log_config.path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_config.path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    if stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    return logger


__all__ = ["log_event", "sanitize_log_value", "setup_rotating_logger"]
