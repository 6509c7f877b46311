# services/api/logging_config.py
from __future__ import annotations

import logging
import os
import sys

_CONFIGURED = False

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install a single stream handler on the `veilpay` root logger."""
    global _CONFIGURED
    if _CONFIGURED:
        if level:
            logging.getLogger("veilpay").setLevel(level.upper())
        return
    root = logging.getLogger("veilpay")
    root.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(f"veilpay.{name}")
