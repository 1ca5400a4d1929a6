"""Retail POS: sale commits, stock reconciliation and sales analytics.

Importing the package sets up the shared ``retail_pos`` logger used by every
layer. Records go to a rotating file under ``.logs/`` at the project root and
to stderr. ``RETAIL_POS_LOG_DIR`` moves the log directory and
``RETAIL_POS_LOG_LEVEL`` (a level name such as ``DEBUG``) changes the
threshold for both handlers.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("RETAIL_POS_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "retail_pos.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def resolve_log_level(raw: str | None, default: int = logging.INFO) -> int:
    """Map a level name like ``"debug"`` to its ``logging`` constant.

    Unknown or empty names fall back to ``default``.
    """

    if not raw:
        return default
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else default


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = resolve_log_level(os.environ.get("RETAIL_POS_LOG_LEVEL"))
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handlers.insert(
            0,
            RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8"),
        )
    except OSError as exc:
        print(f"retail_pos: logging to stderr only, cannot write '{LOG_FILE}': {exc}", file=sys.stderr)

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


log = _configure_logging()
log.debug("retail_pos logging ready (level=%s, file=%s)", logging.getLevelName(log.level), LOG_FILE)
