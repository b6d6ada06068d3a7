from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.settings import SYNC_LOG_PATH


ROOT_LOGGER = "tillbook.sync"


def _ensure_logger(log_path: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        path = Path(log_path or SYNC_LOG_PATH)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        except OSError:
            # read-only data dir: fall back to whatever the root logger does
            return logger
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def get_sync_logger(component: Optional[str] = None, *, log_path: Optional[Path] = None) -> logging.Logger:
    """Child of ``tillbook.sync``; the rotating file handler is attached once, on the parent."""

    parent = _ensure_logger(log_path)
    if not component:
        return parent
    return parent.getChild(component)


__all__ = ["ROOT_LOGGER", "get_sync_logger"]
