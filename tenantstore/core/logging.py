from __future__ import annotations

import logging

from tenantstore.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure root logging once per process from settings.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # Keep per-request transport chatter out of operator logs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
