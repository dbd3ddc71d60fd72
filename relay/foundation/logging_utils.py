"""Operational logging for relay runs."""

from __future__ import annotations

import logging
import os
from datetime import datetime

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def setup_operational_logger(
    log_dir: str | None,
    pipeline_name: str,
    *,
    level: str = "INFO",
) -> tuple[logging.Logger, str | None]:
    """
    Configure a logger that writes an operational log for traceability.

    Logs go to stderr at `level` and, when `log_dir` is given, to a UTF-8 file at
    DEBUG under that directory. Returns the logger and the log file path.
    """

    logger = logging.getLogger(f"relay.{pipeline_name}")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    log_file: str | None = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(log_dir, f"{pipeline_name}_{stamp}_oplog.log")
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False

    logger.debug("Operational logging initialized for pipeline %s", pipeline_name)
    if log_file:
        logger.debug("Operational log file: %s", log_file)
    return logger, log_file
