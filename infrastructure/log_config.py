"""Logging setup for the sync server process.

All diagnostic output goes to stderr through one handler on the root
logger. Module code only ever does ``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import sys

_LOG_FORMAT = "%(asctime)s.%(msecs)03d " "[%(name)s] %(levelname)s " "%(message)s"
_LOG_DATE_FORMAT = "%H:%M:%S"


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure the root logger to write structured output to stderr.

    Safe to call more than once: existing root handlers are replaced.

    Args:
        level: Python logging level (default: INFO)
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Per-request access lines drown out the mutation log
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
