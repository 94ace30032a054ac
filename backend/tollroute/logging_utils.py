from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from .settings import settings

LOGGER_NAME = "tollroute"
LOG_FILE_NAME = "engine.log.jsonl"

# LogRecord attributes that `extra` may not overwrite.
_RESERVED_FIELDS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


def _engine_formatter() -> JsonFormatter:
    return JsonFormatter(
        "%(levelname)s %(message)s",
        rename_fields={"levelname": "level"},
        timestamp=True,
    )


def configure_logger(out_dir: str | Path | None = None, name: str = LOGGER_NAME) -> logging.Logger:
    """JSON lines to stderr and to ``<out_dir>/logs/engine.log.jsonl``; configured once."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = logging.getLevelName(settings.log_level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    logger.propagate = False

    stream = logging.StreamHandler()
    stream.setFormatter(_engine_formatter())
    logger.addHandler(stream)

    log_dir = Path(out_dir if out_dir is not None else settings.out_dir) / "logs"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
    except OSError as exc:
        logger.warning("log_file_unavailable", extra={"event": "log_file_unavailable", "log_dir": str(log_dir), "error": str(exc)})
    else:
        file_handler.setFormatter(_engine_formatter())
        logger.addHandler(file_handler)
    return logger


def _record_fields(event: str, fields: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        out[f"field_{key}" if key in _RESERVED_FIELDS else key] = value
    return out


def _emit(level: int, event: str, fields: dict[str, Any]) -> None:
    configure_logger().log(level, event, extra=_record_fields(event, fields))


def log_event(event: str, **fields: Any) -> None:
    _emit(logging.INFO, event, fields)


def log_warning(event: str, **fields: Any) -> None:
    _emit(logging.WARNING, event, fields)
