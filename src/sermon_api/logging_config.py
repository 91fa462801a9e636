from __future__ import annotations

import logging
import sys
from typing import Optional

from src.sermon_api.config import settings

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_HANDLER_NAME = "sermon-api-console"


def configure_logging(log_level: Optional[str] = None) -> None:
    """Attach a single console handler to the root logger and apply LOG_LEVEL.

    Safe to call more than once; the handler is only added the first time.
    The "audit" logger propagates to the root, so audit JSON lines share the
    same sink.
    """

    level_name = (log_level or settings.log_level or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    if any(handler.get_name() == _HANDLER_NAME for handler in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
