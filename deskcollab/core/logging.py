from __future__ import annotations

import sys
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} | {level} | {message}\n{exception}"


def configure_logging() -> None:
    """Route loguru output to stdout and, when ``LOG_PATH`` is set, to a file."""

    from deskcollab.core.config import get_settings

    settings = get_settings()
    logger.remove()
    logger.add(sys.stdout, format=LOG_FORMAT, level=settings.log_level)

    log_path = settings.log_path
    if not log_path:
        return
    log_path = log_path.expanduser()
    if not _ensure_log_path(log_path):
        return
    try:
        logger.add(
            str(log_path),
            format=LOG_FORMAT,
            level=settings.log_level,
            encoding="utf-8",
            enqueue=True,
        )
    except Exception as exc:  # pragma: no cover - log sink setup
        logger.warning(f"LOG FILE DISABLED - unable to open file path={log_path} error={exc}")


def _format_value(value: Any) -> str:
    text = str(value.value if isinstance(value, Enum) else value)
    return f'"{text}"' if " " in text else text


def _format_meta(meta: dict[str, Any]) -> str:
    return " ".join(f"{key}={_format_value(meta[key])}" for key in sorted(meta))


def _emit(level: str, message: str, meta: dict[str, Any]) -> None:
    # Unset identifiers (no connection yet, unassigned ticket) are left out.
    meta = {key: value for key, value in meta.items() if value is not None}
    if meta:
        logger.bind(**meta).log(level, f"{message} | {_format_meta(meta)}")
    else:
        logger.log(level, message)


def log_error(message: str, **meta) -> None:
    _emit("ERROR", message, meta)


def log_info(message: str, **meta) -> None:
    _emit("INFO", message, meta)


def log_warning(message: str, **meta) -> None:
    _emit("WARNING", message, meta)


def log_debug(message: str, **meta) -> None:
    _emit("DEBUG", message, meta)


def _ensure_log_path(path: Path) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning(
            f"LOG FILE DISABLED - unable to create directory path={path.parent} error={exc}"
        )
        return False
    return True
