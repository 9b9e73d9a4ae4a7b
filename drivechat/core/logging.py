"""Root logger setup.

LOG_LEVEL (env or settings) picks the level; output is one JSON object per
line so it can be shipped as-is.
"""

import logging
import os

from pythonjsonlogger.json import JsonFormatter

from drivechat.core.config import settings


def setup_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    level_name = (os.getenv("LOG_LEVEL") or settings.LOG_LEVEL).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
