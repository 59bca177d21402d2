from __future__ import annotations

import logging

from maintdesk.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure root logging once per process; workers and the API share the format.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # SQL echo is noisy at INFO; keep engine logs for explicit debugging only.
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
