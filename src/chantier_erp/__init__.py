"""Financial-document core for construction back-office records.

Importing the package configures the shared ``log`` object used by every
module: console output on stderr plus a rotating file under ``.logs``. The
level and the log directory can be changed through ``CHANTIER_LOG_LEVEL`` and
``CHANTIER_LOG_DIR``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_LEVEL_ENV = "CHANTIER_LOG_LEVEL"
LOG_DIR_ENV = "CHANTIER_LOG_DIR"
LOG_FILE_NAME = "chantier_erp.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def resolve_log_level(raw: Optional[str]) -> int:
    """Map a level name such as ``"debug"`` to its numeric value, INFO if unknown."""

    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def log_file_path() -> Path:
    return Path(os.environ.get(LOG_DIR_ENV) or PROJECT_ROOT / ".logs") / LOG_FILE_NAME


def _file_handler(path: Path, formatter: logging.Formatter) -> Optional[logging.Handler]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{path}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(resolve_log_level(os.environ.get(LOG_LEVEL_ENV)))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(log_file_path(), formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger


log = _configure_logging()
log.debug("Logger ready for chantier_erp %s", __version__)
