from __future__ import annotations

"""Debug logging for the FLIP core.

Quiet by default.  ``enable()`` (or ``FLIP_DEBUG=1`` in the environment)
attaches one timestamped stream handler to the ``flip`` logger; every module
asks for a child logger with ``dbg("<area>")`` and guards costly messages
with ``is_enabled()``.

- dbg(name): logger ``flip.<name>``
- enable(flag, level): switch output on/off
- is_enabled(): global flag
- field_stats(a): min/max/mean of an array as a short string
- stage(name, log): context manager that logs the wall time of a pipeline stage
"""

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

_ENABLED = os.getenv("FLIP_DEBUG", "0").strip().lower() in ("1", "true", "yes", "on")
_LOCK = threading.Lock()
_ROOT = "flip"
_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _handler() -> Optional[logging.Handler]:
    for h in logging.getLogger(_ROOT).handlers:
        if getattr(h, "_flip_debug", False):
            return h
    return None


def enable(flag: bool = True, *, level: int = logging.DEBUG) -> None:
    global _ENABLED
    with _LOCK:
        _ENABLED = bool(flag)
        root = logging.getLogger(_ROOT)
        root.propagate = False
        if not _ENABLED:
            root.setLevel(logging.CRITICAL)
            return
        if _handler() is None:
            h = logging.StreamHandler()
            h.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%H:%M:%S"))
            h._flip_debug = True
            root.addHandler(h)
        root.setLevel(level)


def is_enabled() -> bool:
    return _ENABLED


def dbg(name: str) -> logging.Logger:
    root = logging.getLogger(_ROOT)
    if _ENABLED and _handler() is None:
        enable(True)
    elif not _ENABLED and root.level == logging.NOTSET:
        root.setLevel(logging.CRITICAL)
    return logging.getLogger(f"{_ROOT}.{name}")


def field_stats(a: Any) -> str:
    import numpy as np

    arr = np.asarray(a)
    if arr.size == 0:
        return "empty"
    return f"min={float(arr.min()):.3e} max={float(arr.max()):.3e} mean={float(arr.mean()):.3e}"


@contextmanager
def stage(name: str, log: Optional[logging.Logger] = None) -> Iterator[None]:
    """Log ``name`` and its duration at DEBUG when debugging is on."""
    if not _ENABLED:
        yield
        return
    log = log or dbg("stage")
    t0 = time.perf_counter()
    yield
    log.debug(f"{name}: {1e3 * (time.perf_counter() - t0):.2f} ms")


__all__ = ["enable", "is_enabled", "dbg", "field_stats", "stage"]
