# common/parallel.py
"""Thread pool for the data-parallel loops of the simulation core.

Work is handed out as contiguous index ranges.  Callers either write disjoint
slices of a shared output or return partial results that are reduced with an
associative, commutative operation; no ordering between chunks is promised.
NumPy releases the GIL inside its kernels, so chunked array work overlaps.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import os
import threading
from typing import Callable, List, Optional, Tuple, TypeVar

from .debug import dbg, is_enabled

T = TypeVar("T")


def chunk_ranges(n_items: int, n_chunks: int) -> List[Tuple[int, int]]:
    """Split ``range(n_items)`` into at most ``n_chunks`` contiguous spans."""
    if n_items <= 0:
        return []
    n_chunks = max(1, min(int(n_chunks), n_items))
    bounds = [(n_items * c) // n_chunks for c in range(n_chunks + 1)]
    return [(bounds[c], bounds[c + 1]) for c in range(n_chunks) if bounds[c + 1] > bounds[c]]


class WorkerPool:
    """Lazily started pool of worker threads.

    ``num_workers=1`` runs every chunk inline on the calling thread, which
    keeps tests deterministic and tracebacks short.
    """

    def __init__(self, num_workers: Optional[int] = None) -> None:
        if num_workers is None:
            num_workers = os.cpu_count() or 1
        if num_workers <= 0:
            raise ValueError("num_workers must be positive")
        self.num_workers = int(num_workers)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.num_workers, thread_name_prefix="flip-worker"
                )
            return self._executor

    def map_ranges(
        self,
        fn: Callable[[int, int], T],
        n_items: int,
        chunks: Optional[int] = None,
    ) -> List[T]:
        """Call ``fn(start, stop)`` for each chunk and return results in chunk order."""
        spans = chunk_ranges(n_items, chunks or 4 * self.num_workers)
        if not spans:
            return []
        if is_enabled():
            dbg("pool").debug(f"map_ranges: items={n_items} chunks={len(spans)} workers={self.num_workers}")
        if self.num_workers == 1 or len(spans) == 1:
            return [fn(a, b) for a, b in spans]
        ex = self._get_executor()
        futures = [ex.submit(fn, a, b) for a, b in spans]
        # result() re-raises the first worker exception on the caller
        return [f.result() for f in futures]

    def parallel_for(self, fn: Callable[[int, int], None], n_items: int, chunks: Optional[int] = None) -> None:
        self.map_ranges(fn, n_items, chunks)

    def shutdown(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None


_DEFAULT: Optional[WorkerPool] = None
_DEFAULT_LOCK = threading.Lock()


def default_pool() -> WorkerPool:
    """Process-wide pool sized by ``FLIP_NUM_THREADS`` or the CPU count."""
    global _DEFAULT
    with _DEFAULT_LOCK:
        if _DEFAULT is None:
            env = os.getenv("FLIP_NUM_THREADS")
            _DEFAULT = WorkerPool(int(env) if env else None)
        return _DEFAULT


def parallel_for(fn: Callable[[int, int], None], n_items: int, *, pool: Optional[WorkerPool] = None,
                 chunks: Optional[int] = None) -> None:
    (pool or default_pool()).parallel_for(fn, n_items, chunks)


__all__ = ["WorkerPool", "chunk_ranges", "default_pool", "parallel_for"]
