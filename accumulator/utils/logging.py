"""Logging setup shared by the API process and the CLI."""

import logging
from pathlib import Path

from accumulator.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str | None = None, log_file: str | None = None):
    """Configure the root logger once; safe to call repeatedly."""
    level_name = (level or settings.log_level).upper()
    log_file = settings.log_file if log_file is None else log_file

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(level=level_name, format=LOG_FORMAT, handlers=handlers, force=True)

    # Quiet chatty libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
