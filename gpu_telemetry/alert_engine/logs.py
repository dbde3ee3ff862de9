"""Rotating file + console logging for the telemetry services."""
from __future__ import annotations

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from .config import EngineConfig

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(cfg: EngineConfig, service: str) -> logging.Logger:
    """Attach a daily-rotated file handler and a stdout handler to the package logger."""
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("gpu_telemetry")
    root.setLevel(cfg.log_level)
    root.handlers.clear()

    # One file per day, keep N days
    fh = TimedRotatingFileHandler(
        log_dir / f"{service}.log",
        when="midnight",
        backupCount=cfg.log_retention_days,
        utc=True,
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(LOG_FORMAT))

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(cfg.log_level)
    ch.setFormatter(logging.Formatter(LOG_FORMAT))

    root.addHandler(fh)
    root.addHandler(ch)
    return logging.getLogger(f"gpu_telemetry.{service}")
