# -*- coding: utf-8 -*-
"""Shared infrastructure: debug logging, step hooks and the worker pool.

Only the entry points are re-exported; import the modules directly for the
rest.
"""

from .debug import dbg, enable, is_enabled
from .parallel import WorkerPool, default_pool, parallel_for
from .sim_hooks import SimHooks, every

__all__ = [
    "dbg",
    "enable",
    "is_enabled",
    "WorkerPool",
    "default_pool",
    "parallel_for",
    "SimHooks",
    "every",
]
