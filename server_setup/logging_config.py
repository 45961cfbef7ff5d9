"""Console and file logging for a provisioning run."""

import datetime
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "server_setup"
FILE_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _log_file_name() -> str:
    return f"setup-{datetime.datetime.now().strftime('%Y%m%d-%H%M%S')}.log"


def _open_log_file(log_dir: Path) -> Path:
    """Create the run's log file, falling back to the temp dir when log_dir is not writable."""
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(log_dir, 0o750)
        log_file = log_dir / _log_file_name()
        log_file.touch()
    except OSError:
        log_file = Path(tempfile.gettempdir()) / _log_file_name()
        log_file.touch()
    os.chmod(log_file, 0o640)
    return log_file


def setup_logging(
    log_dir: Path,
    level: str = "INFO",
    console: Optional[Console] = None,
) -> logging.Logger:
    """
    Configure the ``server_setup`` logger.

    The console gets a Rich handler filtered at ``level``; the log file
    always records DEBUG and above.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(
        console=console, rich_tracebacks=True, show_path=False, markup=False
    )
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(console_handler)

    log_file = _open_log_file(Path(log_dir))
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))
    logger.addHandler(file_handler)

    logger.debug(f"Logging initialized: {log_file}")
    return logger


def get_log_file(logger: Optional[logging.Logger] = None) -> Optional[Path]:
    logger = logger or logging.getLogger(LOGGER_NAME)
    for h in logger.handlers:
        if isinstance(h, logging.FileHandler):
            return Path(h.baseFilename)
    return None


def cleanup_old_logs(log_dir: Path, retention_days: int, now: Optional[float] = None) -> int:
    """Delete ``*.log`` files older than ``retention_days``; return how many went."""
    cutoff = (now or time.time()) - retention_days * 86400
    removed = 0
    log_dir = Path(log_dir)
    if not log_dir.is_dir():
        return 0
    for path in log_dir.glob("*.log"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logging.getLogger(LOGGER_NAME).warning(f"Could not remove old log {path}: {e}")
    if removed:
        logging.getLogger(LOGGER_NAME).debug(f"Removed {removed} log file(s) older than {retention_days} days")
    return removed


def log_section(title: str, console: Optional[Console] = None) -> None:
    if console is not None:
        console.rule(f"[header]{title}", style="rule.line")
    logging.getLogger(LOGGER_NAME).info(f"--- {title} ---")
