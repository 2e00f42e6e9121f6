"""Logging configuration helpers for the dashcam exporter."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

DEFAULT_LOGGER_NAME = "dashcam_export"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _open_file_handler(log_file: Union[str, Path]) -> Tuple[Optional[logging.Handler], Optional[str]]:
    """File handler for ``log_file``, falling back to the working directory."""
    log_path = Path(log_file)
    if not log_path.is_absolute():
        log_path = Path.cwd() / log_path

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path, encoding="utf-8"), None
    except OSError as exc:
        fallback_path = Path.cwd() / log_path.name
        try:
            handler = logging.FileHandler(fallback_path, encoding="utf-8")
        except OSError as fallback_exc:
            return None, (
                f"Failed to open log file at '{log_path}' "
                f"and fallback '{fallback_path}'. Reason: {fallback_exc}"
            )
        return handler, (
            f"Failed to open log file at '{log_path}'. Falling back to '{fallback_path}'. "
            f"Reason: {exc}"
        )


def configure_logging(
    logger_name: Optional[str] = None,
    *,
    level: int = logging.INFO,
    log_file: Union[str, Path, None] = None,
    include_stream: bool = True,
) -> logging.Logger:
    """Configure root handlers and return the exporter logger.

    ``log_file`` is optional; exports usually run attached to a terminal or
    a parent application that already collects stderr.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    handlers: List[logging.Handler] = []
    pending_warning: Optional[str] = None
    if log_file:
        file_handler, pending_warning = _open_file_handler(log_file)
        if file_handler:
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

    if include_stream:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        handlers.append(stream_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    logger = logging.getLogger(logger_name or DEFAULT_LOGGER_NAME)
    logger.setLevel(level)

    if pending_warning:
        logger.warning(pending_warning)

    return logger


__all__ = ["DEFAULT_LOGGER_NAME", "configure_logging"]
