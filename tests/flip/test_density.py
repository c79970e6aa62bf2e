import os
import sys
import numpy as np
import pytest

# Ensure src is importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../..')))

from src.common.parallel import WorkerPool
from src.flip.density import (
    CALIBRATION_LATTICE,
    calibrate_max_density,
    calibration_lattice,
    compute_density,
    smoothing_radius,
)
from src.flip.kernels import sharp, smooth
from src.flip.particle_grid import SpatialGridIndex
from src.flip.particles import CellType, ParticleStore


def test_kernels():
    assert smooth(0.0, 2.0) == 1.0
    assert smooth(4.0, 2.0) == 0.0
    assert smooth(9.0, 2.0) == 0.0
    assert smooth(1.0, 2.0) == pytest.approx(0.75)
    assert sharp(1.0, 2.0) == pytest.approx(3.0)
    assert sharp(0.0, 1.0) == pytest.approx(1e5 - 1.0)
    assert sharp(2.0, 1.0) == 0.0


def test_calibration_is_order_independent():
    res = (16, 16, 16)
    lattice = calibration_lattice(res, 0.5)
    assert len(lattice) == CALIBRATION_LATTICE ** 3

    rng = np.random.default_rng(5)
    perm = rng.permutation(len(lattice))
    m1 = calibrate_max_density(res, 0.5, pool=WorkerPool(1), lattice=lattice)
    m2 = calibrate_max_density(res, 0.5, pool=WorkerPool(4), lattice=lattice.take(perm))
    m3 = calibrate_max_density(res, 0.5, pool=WorkerPool(2))
    assert m1 > 1.0
    assert m1 == pytest.approx(m2, rel=1e-12)
    assert m1 == pytest.approx(m3, rel=1e-12)


def test_density_of_solid_isolated_and_paired_particles():
    res = (8, 8, 8)
    density = 0.5
    h = smoothing_radius(res, density)
    assert h == pytest.approx(0.25)

    pos = np.array([
        [0.1, 0.1, 0.1],      # isolated fluid
        [0.9, 0.9, 0.9],      # solid
        [0.5, 0.5, 0.5],      # fluid pair ...
        [0.55, 0.5, 0.5],     # ... one tenth of h^2 apart squared
    ])
    types = np.array([CellType.FLUID, CellType.SOLID, CellType.FLUID, CellType.FLUID], dtype=np.int8)
    parts = ParticleStore(pos, mass=np.array([2.0, 1.0, 1.0, 3.0]), types=types)
    index = SpatialGridIndex(res)
    index.sort(parts)
    compute_density(parts, index, density, 4.0, pool=WorkerPool(1))

    w = 1.0 - 0.05 ** 2 / h ** 2
    assert parts.density[0] == pytest.approx(2.0 / 4.0)
    assert parts.density[1] == 1.0
    assert parts.density[2] == pytest.approx((1.0 + 3.0 * w) / 4.0)
    assert parts.density[3] == pytest.approx((3.0 + 1.0 * w) / 4.0)


def test_solid_neighbors_do_not_contribute():
    pos = np.array([[0.5, 0.5, 0.5], [0.52, 0.5, 0.5]])
    types = np.array([CellType.FLUID, CellType.SOLID], dtype=np.int8)
    parts = ParticleStore(pos, types=types)
    index = SpatialGridIndex((8, 8, 8))
    index.sort(parts)
    compute_density(parts, index, 0.5, 1.0)
    assert parts.density.tolist() == [1.0, 1.0]

    empty = ParticleStore()
    index.sort(empty)
    compute_density(empty, index, 0.5, 1.0)
    assert empty.density.size == 0
