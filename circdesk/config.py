"""Configuration for the circulation engine.

Every setting can be overridden through a ``CIRCDESK_*`` environment
variable. Borrowing rules (caps, loan period, fine rate) are not configured
here: they live in the ``system_settings`` table and are read through
``PolicyService`` so that admins can change them at runtime.
"""
from __future__ import annotations

import logging
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    try:
        return int(raw) if raw is not None else default
    except ValueError:
        return default


class Config:
    """Base configuration for a ``LibrarySystem``.

    Attributes:
        DATABASE_URL (str): SQLAlchemy URL of the ledger store.
        SQL_ECHO (bool): Log every SQL statement.
        RECONCILE_INTERVAL_MS (int): Default period of the fine reconciliation loop.
        STUDENT_ID_PATTERN (str): Regular expression a student id number must match.
        LOG_LEVEL (str): Level passed to ``configure_logging``.
        LOG_FORMAT (str): Format of the stream handler.
    """

    DATABASE_URL: str = os.environ.get("CIRCDESK_DATABASE_URL") or "sqlite:///circdesk.db"
    SQL_ECHO: bool = _env_bool("CIRCDESK_SQL_ECHO", False)

    RECONCILE_INTERVAL_MS: int = _env_int("CIRCDESK_RECONCILE_INTERVAL_MS", 5000)

    # e.g. C22-0044
    STUDENT_ID_PATTERN: str = os.environ.get("CIRCDESK_STUDENT_ID_PATTERN") or r"^[A-Z]\d{2}-\d{4}$"

    LOG_LEVEL: str = os.environ.get("CIRCDESK_LOG_LEVEL") or "INFO"
    LOG_FORMAT: str = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach a single stream handler to the package logger."""
    logger = logging.getLogger("circdesk")
    logger.setLevel(level or Config.LOG_LEVEL)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(Config.LOG_FORMAT))
        logger.addHandler(handler)
    return logger
