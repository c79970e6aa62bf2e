"""Scene collaborator: initial particles plus the liquid and solid level sets.

The driver only needs the :class:`SceneLike` protocol.  :class:`Scene` is a
small reference implementation that builds both level sets from closed
triangle meshes given in the unit domain and seeds jittered particles from
them.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, Tuple, runtime_checkable

import numpy as np

from src.common.debug import dbg, is_enabled
from .levelset import LevelSet
from .mesh import box_mesh, load_mesh
from .particle_grid import SpatialGridIndex
from .particles import CellType, ParticleStore


@runtime_checkable
class SceneLike(Protocol):
    def generate_particles(
        self, resolution: Tuple[int, int, int], density: float, index: SpatialGridIndex
    ) -> ParticleStore:
        ...

    def get_liquid_level_set(self) -> LevelSet:
        ...

    def get_solid_level_set(self) -> LevelSet:
        ...


class Scene:
    """Mesh-built scene.

    Meshes are given in unit-domain coordinates and converted to level-set
    index space (``world * max_dim - 0.5``).  Several meshes of the same kind
    are merged into one level set by union.
    """

    def __init__(self, resolution: Iterable[int], half_width: int = 3, seed: Optional[int] = 0):
        self.resolution = tuple(int(r) for r in resolution)
        self.max_dim = max(self.resolution)
        self.half_width = int(half_width)
        self.seed = seed
        self._liquid = LevelSet(self.resolution, float(half_width))
        self._solid = LevelSet(self.resolution, float(half_width))

    def _to_index(self, vertices: np.ndarray) -> np.ndarray:
        return np.asarray(vertices, dtype=np.float64) * self.max_dim - 0.5

    def add_liquid_mesh(self, vertices: np.ndarray, faces: np.ndarray) -> LevelSet:
        ls = LevelSet.from_mesh(self._to_index(vertices), faces, self.resolution, self.half_width)
        return self._liquid.merge(ls)

    def add_solid_mesh(self, vertices: np.ndarray, faces: np.ndarray) -> LevelSet:
        ls = LevelSet.from_mesh(self._to_index(vertices), faces, self.resolution, self.half_width)
        return self._solid.merge(ls)

    def add_liquid_mesh_file(self, path: str) -> LevelSet:
        """Load a closed mesh file (OBJ, STL, PLY, ...) in unit-domain coordinates as liquid."""
        return self.add_liquid_mesh(*load_mesh(path))

    def add_solid_mesh_file(self, path: str) -> LevelSet:
        return self.add_solid_mesh(*load_mesh(path))

    def add_liquid_box(self, lo, hi) -> LevelSet:
        return self.add_liquid_mesh(*box_mesh(lo, hi))

    def add_solid_box(self, lo, hi) -> LevelSet:
        return self.add_solid_mesh(*box_mesh(lo, hi))

    def get_liquid_level_set(self) -> LevelSet:
        return self._liquid

    def get_solid_level_set(self) -> LevelSet:
        return self._solid

    def generate_particles(
        self, resolution: Tuple[int, int, int], density: float, index: SpatialGridIndex
    ) -> ParticleStore:
        """Seed ``n^3`` jittered particles per cell, ``n = round(1/density)``.

        Only cells within one cell of either region are seeded.  A particle
        inside the solid level set becomes SOLID, one inside the liquid (and
        outside the solid) becomes FLUID, the rest are dropped.  The returned
        store is already sorted into ``index``.
        """
        resolution = tuple(int(r) for r in resolution)
        if resolution != self.resolution:
            raise ValueError(f"scene built for {self.resolution}, asked for {resolution}")
        max_dim = max(resolution)
        h = 1.0 / max_dim
        n = max(1, int(round(1.0 / float(density))))

        near = np.minimum(self._liquid.to_dense(), self._solid.to_dense()) < 1.0
        cells = np.argwhere(near).astype(np.float64)
        if cells.shape[0] == 0:
            store = ParticleStore()
            index.sort(store)
            return store

        sub = (np.arange(n) + 0.5) / n
        S = np.stack(np.meshgrid(sub, sub, sub, indexing='ij'), axis=-1).reshape(-1, 3)
        rng = np.random.default_rng(self.seed)
        X = (cells[:, None, :] + S[None, :, :]).reshape(-1, 3)
        X += rng.uniform(-0.25, 0.25, size=X.shape) / n
        pos = np.clip(X, 0.0, resolution) * h

        phi_s = self._solid.sample(pos, h)
        phi_l = self._liquid.sample(pos, h)
        solid = phi_s < 0.0
        fluid = (phi_l < 0.0) & ~solid
        keep = solid | fluid

        types = np.where(solid[keep], CellType.SOLID, CellType.FLUID).astype(np.int8)
        store = ParticleStore(pos[keep], mass=1.0, types=types)
        index.sort(store)
        if is_enabled():
            dbg("scene").debug(
                f"generate_particles: per_cell={n ** 3} fluid={int(fluid.sum())} solid={int(solid.sum())}"
            )
        return store


__all__ = ["SceneLike", "Scene"]
