"""Logging setup shared by the CLI and the daemon process."""

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_log_level(level: Optional[str] = None) -> int:
    """Map a level name (or $STYRBY_LOG_LEVEL) to a logging constant."""
    name = (level or os.environ.get("STYRBY_LOG_LEVEL") or "info").strip().upper()
    if name == "WARN":
        name = "WARNING"
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger for Styrby processes."""
    logging.basicConfig(
        level=resolve_log_level(level),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )
