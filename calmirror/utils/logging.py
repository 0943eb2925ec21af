"""Logging setup shared by the API server and the CLI.

Records emitted on the sync paths carry a ``log_category`` extra (see
:func:`category`). ``general.log_overrides`` maps a category to the severity
its records are re-levelled to, which lets an operator demote a chatty path
(``{"polling": "DEBUG"}``) out of the console while the log file keeps it.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Mapping

from rich.logging import RichHandler

from calmirror.core.config import AppConfig

CATEGORY_WEBHOOK = "webhook"
CATEGORY_RECONCILE = "reconcile"
CATEGORY_CHANNELS = "channels"
CATEGORY_POLLING = "polling"

_LEVELS: Mapping[str, int] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

# Libraries whose own handlers are dropped so they flow through ours
_PROPAGATED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "apscheduler")

_FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def parse_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    name = str(value).upper()
    if name not in _LEVELS:
        raise ValueError(f"Unsupported log level: {value}")
    return _LEVELS[name]


def category(name: str, force_level: str | None = None) -> dict[str, str]:
    """Build the ``extra`` mapping that tags a record with a category."""
    extra = {"log_category": name}
    if force_level:
        extra["force_level"] = force_level
    return extra


class SeverityOverrideFilter(logging.Filter):
    """
    Re-level records by ``force_level`` or by category, then apply a threshold.

    The threshold is checked after re-levelling, so a demoted record is
    dropped by a handler whose level it no longer reaches.
    """

    def __init__(self, category_levels: Mapping[str, str], threshold: int = logging.NOTSET):
        super().__init__()
        self.category_levels = {name: parse_level(level) for name, level in category_levels.items()}
        self.threshold = threshold

    def filter(self, record: logging.LogRecord) -> bool:
        forced = getattr(record, "force_level", None)
        if forced:
            levelno = parse_level(forced)
        else:
            levelno = self.category_levels.get(getattr(record, "log_category", None), record.levelno)

        if levelno != record.levelno:
            record.levelno = levelno
            record.levelname = logging.getLevelName(levelno)
        return record.levelno >= self.threshold


def log_file_path(config: AppConfig) -> Path:
    return config.general.data_dir / "logs" / config.general.log_file_name


def _console_handler(levelno: int, overrides: Mapping[str, str]) -> logging.Handler:
    handler = RichHandler(rich_tracebacks=True, show_time=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.addFilter(SeverityOverrideFilter(overrides, threshold=levelno))
    return handler


def _file_handler(config: AppConfig) -> logging.Handler:
    path = log_file_path(config)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=config.general.log_file_max_bytes,
        backupCount=config.general.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(SeverityOverrideFilter(config.general.log_overrides))
    return handler


def setup_logging(config: AppConfig, *, level_name: str | None = None) -> Path:
    """
    Replace the root handlers with a console handler and a rotating log file.

    The file records everything down to DEBUG; the console follows
    ``level_name`` (or ``general.log_level``).

    Returns:
        Path of the log file
    """
    levelno = parse_level((level_name or config.general.log_level).upper())

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.DEBUG)
    root.addHandler(_console_handler(levelno, config.general.log_overrides))
    root.addHandler(_file_handler(config))

    logging.captureWarnings(True)
    for name in _PROPAGATED_LOGGERS:
        library_logger = logging.getLogger(name)
        library_logger.handlers.clear()
        library_logger.propagate = True
    # aiosqlite logs every statement at DEBUG
    logging.getLogger("aiosqlite").setLevel(logging.INFO)

    return log_file_path(config)
