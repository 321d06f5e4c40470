"""Stdout logging for the API, services and maintenance scripts."""

from __future__ import annotations

import logging
import sys
from threading import Lock
from typing import Optional

from backend.utils.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_configured_roots: set[str] = set()
_configure_lock = Lock()


def _stdout_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def configure_logging(name: str, level: Optional[str] = None) -> logging.Logger:
    """Attach the stdout handler to the top-level logger owning `name`.

    Only our own hierarchies (`backend`, `app`, ...) are configured, so the
    root logger stays under uvicorn's control. Repeated calls are no-ops.
    """
    root_name = name.split(".", 1)[0]
    owner = logging.getLogger(root_name)
    with _configure_lock:
        if root_name in _configured_roots:
            return owner
        owner.addHandler(_stdout_handler())
        owner.setLevel((level or get_settings().log_level).upper())
        owner.propagate = False
        _configured_roots.add(root_name)
    return owner


def get_logger(name: str) -> logging.Logger:
    configure_logging(name)
    return logging.getLogger(name)
