# spatialvb_jax/core/log.py
from __future__ import annotations

import logging
import threading

_WARNED: set = set()
_LOCK = threading.Lock()


def warn_once(logger: logging.Logger, message: str) -> bool:
    """
    Log `message` as a warning the first time it is seen in this process.

    Returns True if the warning was emitted.
    """
    with _LOCK:
        if message in _WARNED:
            return False
        _WARNED.add(message)
    logger.warning(message)
    return True


def reset_warnings() -> None:
    """Forget which one-time warnings were already emitted (used by tests)."""
    with _LOCK:
        _WARNED.clear()
