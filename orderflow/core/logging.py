from __future__ import annotations

import logging

from orderflow.core.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logging.getLogger("orderflow").setLevel(resolved)
    # Per-statement engine logging is far too noisy for webhook traffic.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
