"""
Structured logging for the engagement copilot.

Every pipeline stage logs through ``get_logger(__name__)``.  ``kv`` renders
keyword fields as a stable ``key=value`` tail so log lines stay grep-able::

    logger.info("Planner[%s] %s", mode, kv(type=intent.type, programs=programs))
"""
from __future__ import annotations

import logging
import sys
from typing import Any

from src.core.config import get_settings

_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str) -> logging.Logger:
    settings = get_settings()
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger


def kv(**fields: Any) -> str:
    """Render ``fields`` as ``k1=v1 k2=v2`` (None values skipped)."""
    parts = []
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            value = ",".join(str(v) for v in value) or "-"
        parts.append(f"{key}={value}")
    return " ".join(parts)
