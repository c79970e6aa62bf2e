"""Spatial grid index: buckets particles into grid cells for neighbor queries.

The index is rebuilt from scratch by :meth:`SpatialGridIndex.sort` every
step.  Particles are ordered by linear cell key with a stable sort, and
per-cell ``[start, end)`` offsets into that order are kept in two dense arrays,
so a cell lookup is two array reads and a row of cells along z is one
contiguous slice.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np

from src.common.debug import dbg, is_enabled
from src.common.parallel import WorkerPool
from .errors import IndexOutOfBounds, InvalidConfiguration
from .levelset import LevelSet
from .mac_grid import MacGrid
from .particles import CellType, ParticleStore


class SpatialGridIndex:
    def __init__(self, resolution: Iterable[int]):
        self.resolution = tuple(int(r) for r in resolution)
        nx, ny, nz = self.resolution
        self.max_dim = max(self.resolution)
        self.n_cells = nx * ny * nz

        self._order = np.zeros(0, dtype=np.int64)       # particle indices sorted by cell
        self._cells = np.zeros((0, 3), dtype=np.int64)  # per-particle cell (unsorted)
        self._starts = np.zeros(self.n_cells, dtype=np.int64)
        self._ends = np.zeros(self.n_cells, dtype=np.int64)
        self._occupied = np.zeros(0, dtype=np.int64)    # occupied cell keys, ascending

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------
    def cell_of(self, positions: np.ndarray) -> np.ndarray:
        """Integer cell of unit-domain positions, clamped per axis into the grid."""
        p = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        idx = np.floor(p * self.max_dim)
        upper = np.array(self.resolution, dtype=np.float64) - 1.0
        # clamp before the int cast so NaN/inf land on the border instead of wrapping
        idx = np.clip(np.nan_to_num(idx, nan=0.0, posinf=upper.max(), neginf=0.0), 0.0, upper)
        return idx.astype(np.int64)

    def key_of(self, cells: np.ndarray) -> np.ndarray:
        _, ny, nz = self.resolution
        cells = np.asarray(cells, dtype=np.int64).reshape(-1, 3)
        return (cells[:, 0] * ny + cells[:, 1]) * nz + cells[:, 2]

    def sort(self, particles: ParticleStore) -> None:
        """Rebuild the cell -> particles mapping for the current positions."""
        cells = self.cell_of(particles.pos)
        key = self.key_of(cells)
        order = np.argsort(key, kind='mergesort')
        counts = np.bincount(key, minlength=self.n_cells)
        ends = np.cumsum(counts)

        self._cells = cells
        self._order = order.astype(np.int64)
        self._ends = ends.astype(np.int64)
        self._starts = self._ends - counts
        self._occupied = np.nonzero(counts)[0]
        if is_enabled():
            dbg("pgrid").debug(f"sort: N={len(particles)} occupied={self._occupied.size}/{self.n_cells}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def particle_cells(self) -> np.ndarray:
        """Cell of every particle as of the last sort, in particle order."""
        return self._cells

    @property
    def occupied_keys(self) -> np.ndarray:
        return self._occupied

    def cell_from_key(self, key: int) -> Tuple[int, int, int]:
        _, ny, nz = self.resolution
        k = int(key) % nz
        j = (int(key) // nz) % ny
        i = int(key) // (ny * nz)
        return (i, j, k)

    def particles_in_key(self, key: int) -> np.ndarray:
        return self._order[self._starts[key]:self._ends[key]]

    def get_cell(self, i: int, j: int, k: int) -> np.ndarray:
        """Particle indices located in cell (i,j,k)."""
        i, j, k = int(i), int(j), int(k)
        nx, ny, nz = self.resolution
        if not (0 <= i < nx and 0 <= j < ny and 0 <= k < nz):
            raise IndexOutOfBounds(f"cell ({i}, {j}, {k}) outside grid of resolution {self.resolution}")
        key = self.key_of(np.array([[i, j, k]]))[0]
        return self.particles_in_key(int(key))

    def get_cell_neighbors(self, cell, radius=1) -> np.ndarray:
        """Particles whose cell lies within ``cell +/- radius`` (box, clipped to the grid).

        ``radius`` is an int or a per-axis triple.  Indices are unique and
        returned in ascending order.
        """
        if self._order.size == 0:
            return np.zeros(0, dtype=np.int64)
        c = np.asarray(cell, dtype=np.int64).reshape(3)
        r = np.broadcast_to(np.asarray(radius, dtype=np.int64), (3,))
        nx, ny, nz = self.resolution
        lo = np.maximum(c - r, 0)
        hi = np.minimum(c + r, [nx-1, ny-1, nz-1])
        if np.any(hi < lo):
            return np.zeros(0, dtype=np.int64)
        chunks = []
        for i in range(lo[0], hi[0]+1):
            for j in range(lo[1], hi[1]+1):
                # the z-run of one (i,j) column is contiguous in sorted order
                k0 = (i * ny + j) * nz + lo[2]
                k1 = (i * ny + j) * nz + hi[2]
                a, b = self._starts[k0], self._ends[k1]
                if b > a:
                    chunks.append(self._order[a:b])
        if not chunks:
            return np.zeros(0, dtype=np.int64)
        return np.sort(np.concatenate(chunks))

    # ------------------------------------------------------------------
    # Grid classification
    # ------------------------------------------------------------------
    def mark_cell_types(
        self,
        particles: ParticleStore,
        grid: MacGrid,
        density: float,
        solid_levelset: Optional[LevelSet] = None,
    ) -> None:
        """Classify every cell of ``grid.A`` as SOLID, FLUID or EMPTY.

        ``density`` is accepted for parity with the other passes; occupancy
        is decided by the containing cell alone.
        """
        if grid.resolution != self.resolution:
            raise InvalidConfiguration(
                f"grid resolution {grid.resolution} does not match index resolution {self.resolution}"
            )
        A = np.full(self.resolution, CellType.EMPTY, dtype=np.int8)
        if len(particles):
            cells = self.cell_of(particles.pos)
            live = ~particles.invalid
            fl = live & (particles.type == CellType.FLUID)
            so = live & (particles.type == CellType.SOLID)
            A[cells[fl, 0], cells[fl, 1], cells[fl, 2]] = CellType.FLUID
            A[cells[so, 0], cells[so, 1], cells[so, 2]] = CellType.SOLID
        if solid_levelset is not None:
            phi = solid_levelset.to_dense()
            A[phi < 0.0] = CellType.SOLID
        grid.A[...] = A
        if is_enabled():
            n_f = int(np.count_nonzero(A == CellType.FLUID))
            n_s = int(np.count_nonzero(A == CellType.SOLID))
            dbg("pgrid").debug(f"mark_cell_types: fluid={n_f} solid={n_s} empty={A.size - n_f - n_s}")

    def build_sdf(
        self,
        particles: ParticleStore,
        grid: MacGrid,
        density: float,
        *,
        radius: float = 0.5,
        half_width: int = 3,
        pool: Optional[WorkerPool] = None,
    ) -> LevelSet:
        """Build the liquid level set from the fluid particles and store it in ``grid.L``."""
        fluid = particles.type == CellType.FLUID
        # index space of the level set: sample (i,j,k) sits on cell center (i,j,k)
        pos = particles.pos[fluid] * self.max_dim - 0.5
        radii = np.where(particles.invalid[fluid], 0.0, float(radius))
        ls = LevelSet.from_particles(
            pos,
            radii,
            self.resolution,
            half_width=half_width,
            velocities=particles.vel[fluid],
            pool=pool,
        )
        grid.L[...] = ls.to_dense()
        return ls


__all__ = ["SpatialGridIndex"]
