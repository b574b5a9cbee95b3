"""Logging Configuration - Centralized logging setup.

Defaults to INFO so payloads and headers logged at DEBUG never reach
production logs by accident.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union


def setup_logging(
    log_level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = "carehooks.log",
    log_dir: str = "logs",
) -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level or level name (default: INFO)
        log_file: Log file name inside log_dir; None logs to stdout only
        log_dir: Directory for the log file
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path / log_file, encoding="utf-8"))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )

    # Quiet down noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging initialized ({logging.getLevelName(log_level)} level)")
