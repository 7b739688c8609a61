from __future__ import annotations

import logging

from genflow.core.config import Settings, get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    # Idempotent so both the API factory and worker startup can call it.
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_FORMAT)
    root.setLevel(level)
    # httpx logs full request URLs at INFO; keep provider endpoints out of default logs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
