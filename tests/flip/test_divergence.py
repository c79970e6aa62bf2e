import os
import sys
import numpy as np

# Ensure src is importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../..')))

from src.common.parallel import WorkerPool
from src.flip.mac_grid import MacGrid
from src.flip.solver import compute_divergence


def test_uniform_velocity_has_exactly_zero_divergence():
    for res in [(4, 4, 4), (5, 3, 7)]:
        grid = MacGrid(res)
        grid.u_x.fill(1.3)
        grid.u_y.fill(-0.7)
        grid.u_z.fill(2.25)
        D = compute_divergence(grid, pool=WorkerPool(1))
        assert D.shape == res
        assert np.all(D == 0.0)


def test_divergence_matches_hand_computed_differences():
    grid = MacGrid((4, 4, 4))
    h = 0.25
    I, J, K = np.meshgrid(np.arange(5), np.arange(4), np.arange(4), indexing='ij')
    grid.u_x[...] = I ** 2 + 0.5 * J
    I, J, K = np.meshgrid(np.arange(4), np.arange(5), np.arange(4), indexing='ij')
    grid.u_y[...] = J * K - I
    I, J, K = np.meshgrid(np.arange(4), np.arange(4), np.arange(5), indexing='ij')
    grid.u_z[...] = K ** 3 + I * J

    compute_divergence(grid, pool=WorkerPool(1))

    expect = np.zeros((4, 4, 4))
    for i in range(4):
        for j in range(4):
            for k in range(4):
                dux = ((i + 1) ** 2 + 0.5 * j) - (i ** 2 + 0.5 * j)
                duy = ((j + 1) * k - i) - (j * k - i)
                duz = ((k + 1) ** 3 + i * j) - (k ** 3 + i * j)
                expect[i, j, k] = (dux + duy + duz) / h
    assert np.allclose(grid.D, expect)
    assert grid.D[1, 2, 3] == (3 + 3 + 37) / h


def test_divergence_same_across_worker_counts():
    rng = np.random.default_rng(3)
    grid = MacGrid((9, 5, 6))
    for F in grid.faces:
        F[...] = rng.normal(size=F.shape)
    serial = compute_divergence(grid, pool=WorkerPool(1)).copy()
    threaded = compute_divergence(grid, pool=WorkerPool(4)).copy()
    assert np.array_equal(serial, threaded)
