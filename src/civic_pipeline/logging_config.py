"""Logging setup for civic_pipeline.

Component loggers live under ``civic_pipeline.<component>``. Run metrics are
emitted on ``civic_pipeline.metrics`` as one JSON object per line and can be
routed to their own file.
"""

import logging
import sys
from pathlib import Path
from typing import Optional


PACKAGE_LOGGER = "civic_pipeline"
METRICS_LOGGER = f"{PACKAGE_LOGGER}.metrics"
LOG_DIR = Path("logs")
LOG_FILE_NAME = "civic_pipeline.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


def _attach(logger: logging.Logger, handler: logging.Handler, level: int, formatter: logging.Formatter) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _resolve(path: Path, log_dir: Path) -> Path:
    if not path.is_absolute():
        path = log_dir / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def setup_logging(
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    level: int = logging.INFO,
    console: bool = True,
    metrics_file: Optional[Path] = None,
) -> Path:
    """Install file and console handlers on the package logger.

    Relative ``log_file`` and ``metrics_file`` paths are placed under
    ``log_dir`` (``logs/`` by default). When ``metrics_file`` is set, metric
    lines are written there as bare JSON and kept out of the main log.
    Calling this again replaces the previous handlers.

    Returns the path of the main log file.
    """
    log_dir = log_dir or LOG_DIR
    log_path = _resolve(log_file or Path(LOG_FILE_NAME), log_dir)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    package_logger.handlers.clear()
    package_logger.propagate = False
    _attach(package_logger, logging.FileHandler(log_path, encoding="utf-8"), level, formatter)
    if console:
        _attach(package_logger, logging.StreamHandler(sys.stdout), level, formatter)

    metrics_logger = logging.getLogger(METRICS_LOGGER)
    metrics_logger.handlers.clear()
    metrics_logger.propagate = metrics_file is None
    if metrics_file is not None:
        metrics_path = _resolve(metrics_file, log_dir)
        metrics_logger.setLevel(logging.INFO)
        _attach(
            metrics_logger,
            logging.FileHandler(metrics_path, encoding="utf-8"),
            logging.INFO,
            logging.Formatter("%(message)s"),
        )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    package_logger.info(f"Logging to {log_path}")
    return log_path


def get_logger(name: str) -> logging.Logger:
    """Return the ``civic_pipeline.<name>`` logger."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
