import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("STANDKASSE_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE_NAME = "standkasse.log"

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _file_handler(directory: Path) -> Optional[RotatingFileHandler]:
    target = directory / LOG_FILE_NAME
    try:
        directory.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(target, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{target}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(logging.INFO)
    handler.setFormatter(_FORMATTER)
    return handler


def use_log_directory(directory: Path) -> Path:
    """Move the till log next to the data it describes.

    Each stall keeps its log beside its store workbook. ``STANDKASSE_LOG_DIR``
    pins the directory and wins over ``directory``. Returns the directory in use.
    """

    directory = Path(os.environ.get("STANDKASSE_LOG_DIR", directory))
    for handler in list(log.handlers):
        if isinstance(handler, RotatingFileHandler):
            if Path(handler.baseFilename).parent == directory.resolve():
                return directory
            log.removeHandler(handler)
            handler.close()
    handler = _file_handler(directory)
    if handler is not None:
        log.addHandler(handler)
    return directory


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    handler = _file_handler(LOG_DIR)
    if handler is not None:
        logger.addHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)
    return logger


log = _configure_logging()
