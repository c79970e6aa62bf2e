import os
import sys
import numpy as np
import pytest

# Ensure src is importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../..')))

from src.common.parallel import WorkerPool, chunk_ranges, parallel_for
from src.common.sim_hooks import SimHooks, every


def test_chunk_ranges_cover_items_once():
    assert chunk_ranges(0, 4) == []
    assert chunk_ranges(3, 8) == [(0, 1), (1, 2), (2, 3)]
    spans = chunk_ranges(103, 7)
    assert spans[0][0] == 0 and spans[-1][1] == 103
    assert all(a[1] == b[0] for a, b in zip(spans, spans[1:]))


def test_map_ranges_returns_results_in_chunk_order(num_workers):
    pool = WorkerPool(num_workers)
    out = pool.map_ranges(lambda a, b: list(range(a, b)), 50, chunks=6)
    assert [x for part in out for x in part] == list(range(50))
    pool.shutdown()


def test_parallel_for_writes_disjoint_slices(num_workers):
    pool = WorkerPool(num_workers)
    data = np.zeros(1000)

    def fill(a, b):
        data[a:b] = np.arange(a, b) * 2.0

    parallel_for(fill, data.size, pool=pool)
    assert np.array_equal(data, np.arange(1000) * 2.0)
    pool.shutdown()


def test_worker_exception_reaches_caller():
    pool = WorkerPool(3)

    def bad(a, b):
        if a > 0:
            raise ValueError("bad chunk")

    with pytest.raises(ValueError):
        pool.parallel_for(bad, 30, chunks=3)
    pool.shutdown()

    with pytest.raises(ValueError):
        WorkerPool(0)


def test_sim_hooks_order():
    seen = []
    hooks = SimHooks(pre=lambda e, dt: seen.append(("pre", dt)), post=lambda e, dt: seen.append(("post", dt)))
    hooks.run_pre(None, 0.1)
    hooks.run_post(None, 0.1)
    SimHooks().run_pre(None, 0.1)
    assert seen == [("pre", 0.1), ("post", 0.1)]


def test_every_fires_on_multiples_and_bad_hook_is_contained():
    class Clock:
        timestep = 0

    fired = []
    hooks = SimHooks()
    hooks.add_post(every(3, lambda s, dt: fired.append(s.timestep)))
    hooks.add_post(lambda s, dt: 1 / 0)
    clock = Clock()
    for t in range(1, 10):
        clock.timestep = t
        hooks.run_post(clock, 0.01)
    assert fired == [3, 6, 9]

    with pytest.raises(ValueError):
        every(0, print)
