"""Cold-storage lot settlement ledger.

Importing the package configures the ``coldstore_erp`` logger once: a rotating
settlement log on disk plus a stderr handler. Set ``COLDSTORE_LOG_DIR`` to keep
the settlement log somewhere other than ``<project>/.logs``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "COLDSTORE_LOG_DIR"
LOG_FILENAME = "settlement.log"


def _resolve_log_dir() -> Path:
    override = os.environ.get(LOG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return PROJECT_ROOT / ".logs"


LOG_DIR = _resolve_log_dir()
LOG_FILE = LOG_DIR / LOG_FILENAME


def _configure_logging() -> logging.Logger:
    """Attach the settlement log and console handlers to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    # Thread name distinguishes concurrent sales settled against one workbook.
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(threadName)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=2_000_000,
            backupCount=10,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: settlement log unavailable at '{LOG_FILE}' ({exc}); "
            f"set {LOG_DIR_ENV} to a writable directory",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Cold-storage ledger logging started; settlement log at %s", LOG_FILE)
