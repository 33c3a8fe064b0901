"""Logging for cluster-deployer runs.

The terminal belongs to rich progress output, so records only reach stderr
at WARNING unless ``--verbose`` is given. A log file, when requested, always
captures the full DEBUG trace of every command sent to every node.
"""

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# transport and client libraries that log every request or channel open
QUIET_LIBRARIES = ("paramiko", "paramiko.transport", "urllib3", "kubernetes")


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _open_log_file(log_file: Path) -> logging.Handler | None:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Cannot write log file {log_file}: {e}")
        return None


def setup_logging(level: str = "INFO", log_file: Path | None = None, verbose: bool = False) -> None:
    """Install the console and optional file handlers on the root logger.

    Args:
        level: Root level name; forced to DEBUG by ``verbose``
        log_file: File that receives every record at DEBUG
        verbose: Echo debug output to stderr as well
    """
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if verbose else getattr(logging, level.upper()))
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), logging.DEBUG if verbose else logging.WARNING))

    if log_file:
        file_handler = _open_log_file(Path(log_file))
        if file_handler is not None:
            root.addHandler(_handler(file_handler, logging.DEBUG))

    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
