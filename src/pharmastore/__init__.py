import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE_NAME = "pharmastore.log"
LOG_FILE = LOG_DIR / LOG_FILE_NAME
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 5

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _open_log_file(directory: Path) -> Optional[RotatingFileHandler]:
    """Create the rotating file handler for ``directory``, or ``None`` if it cannot be opened."""

    log_file = directory / LOG_FILE_NAME
    try:
        directory.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: unable to initialize log file at '{log_file}': {exc}",
            file=sys.stderr,
        )
        return None
    handler.setLevel(logging.INFO)
    handler.setFormatter(_FORMATTER)
    return handler


def _configure_logging() -> logging.Logger:
    """Configure the package logger: rotating file at INFO, stderr at WARNING."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    file_handler = _open_log_file(LOG_DIR)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)

    return logger


def current_log_file() -> Optional[Path]:
    """Return the file the package logger currently writes to."""

    for handler in log.handlers:
        if isinstance(handler, RotatingFileHandler):
            return Path(handler.baseFilename)
    return None


def set_log_directory(directory: Path) -> Optional[Path]:
    """Move the package log file into ``directory``.

    The previous file handler is closed only once the new one is open, so a
    directory that cannot be created leaves logging where it was.

    Args:
        directory (Path): Directory that should hold ``pharmastore.log``.

    Returns:
        Path | None: The active log file, or ``None`` when no file handler
            could be opened at all.
    """

    target = Path(directory).expanduser().resolve() / LOG_FILE_NAME
    active = current_log_file()
    if active == target:
        return active

    handler = _open_log_file(target.parent)
    if handler is None:
        return active
    for existing in list(log.handlers):
        if isinstance(existing, RotatingFileHandler):
            log.removeHandler(existing)
            existing.close()
    log.addHandler(handler)
    log.info("Log file moved to '%s' (previously '%s')", target, active)
    return target


log = _configure_logging()
log.info("Logger initialized for the 'pharmastore' package.")
