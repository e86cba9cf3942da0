"""Logging setup for the service."""

import logging
import sys

from src.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Attach a single stderr handler to the root logger."""
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    if not any(getattr(h, "_anexos_handler", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._anexos_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # SQL echo is controlled by the engine, keep the library logger quiet otherwise
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
