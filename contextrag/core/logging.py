from __future__ import annotations

import logging

from contextrag.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once per process; API and worker share the format.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # arq logs every job start/finish at INFO; keep it at WARNING unless debugging.
    if level > logging.DEBUG:
        logging.getLogger("arq").setLevel(logging.WARNING)
