from __future__ import annotations

import logging
import sys

from platformcore.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Install a single stream handler once; app factory and worker both call this.
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)
    # httpx logs full request URLs at INFO, which include OAuth codes.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    _configured = True
