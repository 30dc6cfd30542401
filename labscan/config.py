"""
Configuration
=============
Scan settings and logging setup shared by the CLI, the HTTP service and
library callers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class ScanConfig:
    """Configuration for scan sessions."""

    # Rendering (linear upscale applied to PDF pages before OCR)
    render_scale: float = 2.0

    # OCR
    ocr_language: str = "eng"
    tesseract_config: str = "--psm 6"

    # How often a session re-checks cancellation while OCR runs (seconds)
    poll_interval: float = 0.05

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None


def setup_logging(config: ScanConfig):
    """Configure the ``labscan`` logger from ``config``."""
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    package_logger = logging.getLogger("labscan")
    package_logger.setLevel(log_level)

    # Console handler
    if not package_logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(log_level)
        console.setFormatter(
            logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
        )
        package_logger.addHandler(console)
    else:
        for handler in package_logger.handlers:
            handler.setLevel(log_level)

    # File handler
    if config.log_file:
        log_dir = Path(config.log_file).parent
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
        )
        package_logger.addHandler(file_handler)
