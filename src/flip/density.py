"""Per-particle density estimation and its one-time calibration.

Density of a non-solid particle is the mass-weighted ``smooth`` kernel sum
over the non-solid particles of its own and the 26 surrounding cells,
divided by the reference ``max_density``.  Solid particles are pinned at 1.

Particles sharing a cell share a neighbor set, so the work is done one
occupied cell at a time: a (members x neighbors) distance block per cell.
Cells are split across the worker pool; each chunk writes only the density
entries of its own cells' members.
"""

from __future__ import annotations

from typing import Iterable, Optional

import numpy as np

from src.common.debug import dbg, is_enabled
from src.common.parallel import WorkerPool, default_pool
from .kernels import smooth
from .particle_grid import SpatialGridIndex
from .particles import CellType, ParticleStore

CALIBRATION_LATTICE = 10


def smoothing_radius(resolution: Iterable[int], density: float) -> float:
    return 4.0 * float(density) / float(max(resolution))


def compute_density(
    particles: ParticleStore,
    index: SpatialGridIndex,
    density: float,
    max_density: float,
    pool: Optional[WorkerPool] = None,
) -> None:
    """Write ``particles.density``; ``index`` must have been sorted on ``particles``."""
    n = len(particles)
    out = np.zeros(n, dtype=np.float64)
    if n == 0:
        particles.density = out
        return
    h = smoothing_radius(index.resolution, density)
    pos = particles.pos
    mass = particles.mass
    solid = particles.type == CellType.SOLID
    keys = index.occupied_keys

    def run(a: int, b: int) -> None:
        for key in keys[a:b]:
            members = index.particles_in_key(int(key))
            members = members[~solid[members]]
            if members.size == 0:
                continue
            nbrs = index.get_cell_neighbors(index.cell_from_key(int(key)), 1)
            nbrs = nbrs[~solid[nbrs]]
            if nbrs.size == 0:
                continue
            d = pos[members][:, None, :] - pos[nbrs][None, :, :]
            r2 = np.einsum('ijk,ijk->ij', d, d)
            out[members] = (smooth(r2, h) * mass[nbrs][None, :]).sum(axis=1)

    (pool or default_pool()).parallel_for(run, keys.size)
    out /= max_density
    out[solid] = 1.0
    particles.density = out
    if is_enabled():
        dbg("density").debug(
            f"compute_density: N={n} h={h:.4g} max={float(out.max()):.4g} mean={float(out.mean()):.4g}"
        )


def calibration_lattice(resolution: Iterable[int], density: float) -> ParticleStore:
    """Dense 10^3 lattice of unit-mass FLUID particles spaced ``density`` cells apart."""
    h = float(density) / float(max(resolution))
    n = CALIBRATION_LATTICE
    I, J, K = np.meshgrid(np.arange(n), np.arange(n), np.arange(n), indexing='ij')
    pos = (np.stack([I, J, K], axis=-1).reshape(-1, 3) + 0.5) * h
    return ParticleStore(pos, mass=1.0, types=CellType.FLUID)


def calibrate_max_density(
    resolution: Iterable[int],
    density: float,
    pool: Optional[WorkerPool] = None,
    lattice: Optional[ParticleStore] = None,
) -> float:
    """Maximum raw density over the calibration lattice (the lattice is discarded)."""
    resolution = tuple(int(r) for r in resolution)
    if lattice is None:
        lattice = calibration_lattice(resolution, density)
    index = SpatialGridIndex(resolution)
    index.sort(lattice)
    compute_density(lattice, index, density, 1.0, pool=pool)
    max_density = float(lattice.density.max()) if len(lattice) else 1.0
    if is_enabled():
        dbg("density").debug(f"calibrate_max_density: N={len(lattice)} max_density={max_density:.6g}")
    return max_density


__all__ = [
    "CALIBRATION_LATTICE",
    "smoothing_radius",
    "compute_density",
    "calibration_lattice",
    "calibrate_max_density",
]
