"""FLIP simulation driver.

Owns the particle store, the spatial index and the MAC grid, and holds a
non-owning reference to the scene (which owns the level sets and must
outlive the simulation).

Per step:
  sort -> density -> cell types -> gravity -> splat -> boundary
  -> project (divergence, liquid level set, pressure, velocity correction)
  -> gather -> advect          (last two only with ``params.advect``)
"""

from __future__ import annotations

from enum import IntEnum
from typing import Optional, Tuple

import numpy as np

from src.common.debug import dbg, field_stats, is_enabled, stage
from src.common.parallel import WorkerPool
from src.common.sim_hooks import SimHooks
from .density import calibrate_max_density, compute_density
from .levelset import LevelSet
from .mac_grid import MacGrid
from .params import FlipParams
from .particle_grid import SpatialGridIndex
from .particles import CellType, ParticleStore
from .scene import SceneLike
from .solver import PressureSolveResult, project
from .transfer import (
    advect_particles,
    enforce_boundary_velocity,
    gather_particle_velocities,
    splat_particles_to_mac_grid,
)


class SimState(IntEnum):
    UNINITIALIZED = 0
    INITIALIZED = 1
    STEPPING = 2


class FlipSim:
    def __init__(
        self,
        scene: SceneLike,
        params: Optional[FlipParams] = None,
        hooks: Optional[SimHooks] = None,
    ) -> None:
        self.params = (params or FlipParams()).validate()
        self._scene = scene
        self.hooks = hooks or SimHooks()
        self.pool = WorkerPool(self.params.num_workers)

        res = self.params.resolution
        self._particles = ParticleStore()
        self._index = SpatialGridIndex(res)
        self._grid = MacGrid(res)
        self._max_density: Optional[float] = None
        self._liquid: Optional[LevelSet] = None

        self.timestep = 0
        self.state = SimState.UNINITIALIZED
        self.last_solve: Optional[PressureSolveResult] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def particles(self) -> ParticleStore:
        return self._particles

    @property
    def dimensions(self) -> Tuple[int, int, int]:
        return self.params.resolution

    @property
    def scene(self) -> SceneLike:
        return self._scene

    @property
    def grid(self) -> MacGrid:
        return self._grid

    @property
    def index(self) -> SpatialGridIndex:
        return self._index

    @property
    def max_density(self) -> Optional[float]:
        return self._max_density

    @property
    def liquid_level_set(self) -> LevelSet:
        """Liquid level set of the last step, or the scene's before the first one."""
        if self._liquid is not None:
            return self._liquid
        return self._scene.get_liquid_level_set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def init(self) -> int:
        """Calibrate, seed and drop fluid particles inside solid cells.

        Returns the number of particles removed.
        """
        log = dbg("sim")
        p = self.params
        self._max_density = calibrate_max_density(p.resolution, p.density, pool=self.pool)

        self._particles = self._scene.generate_particles(p.resolution, p.density, self._index)
        self._index.sort(self._particles)
        self._index.mark_cell_types(self._particles, self._grid, p.density, self._scene.get_solid_level_set())

        parts = self._particles
        removed = 0
        if len(parts):
            cells = self._index.particle_cells
            in_solid = self._grid.A[cells[:, 0], cells[:, 1], cells[:, 2]] == CellType.SOLID
            parts.invalid |= in_solid & (parts.type != CellType.SOLID)
            removed = parts.remove_invalid()
            if removed:
                self._index.sort(parts)

        self.timestep = 0
        self._liquid = None
        self.state = SimState.INITIALIZED
        if is_enabled():
            log.debug(
                f"init: max_density={self._max_density:.6g} particles={len(parts)} removed={removed}"
            )
        return removed

    def step(self) -> None:
        if self.state == SimState.UNINITIALIZED:
            raise RuntimeError("FlipSim.step() called before init()")
        p = self.params
        dt = float(p.stepsize)
        log = dbg("sim")
        self.hooks.run_pre(self, dt)

        self.timestep += 1
        self.state = SimState.STEPPING
        parts = self._particles
        grid = self._grid
        solid_ls = self._scene.get_solid_level_set()

        with stage("sort+density", log):
            self._index.sort(parts)
            compute_density(parts, self._index, p.density, self._max_density, pool=self.pool)
            self._index.mark_cell_types(parts, grid, p.density, solid_ls)

        fluid = parts.type == CellType.FLUID
        parts.vel[fluid] += np.asarray(p.gravity, dtype=np.float64) * dt

        with stage("splat", log):
            splat_particles_to_mac_grid(parts, grid, p.splat_radius)
            enforce_boundary_velocity(grid)
            old_faces = grid.copy_velocity()

        with stage("project", log):
            self._liquid, self.last_solve = project(
                grid,
                self._index,
                parts,
                p.density,
                subcell=p.subcell,
                tol=p.pressure_tol,
                max_iter=p.pressure_maxiter,
                radius=p.particle_radius,
                half_width=p.levelset_half_width,
                pool=self.pool,
            )

        if p.advect:
            with stage("gather+advect", log):
                gather_particle_velocities(parts, grid, old_faces, p.flip_ratio)
                advect_particles(parts, grid, dt, solid_ls)

        if is_enabled():
            log.debug(
                f"step {self.timestep}: N={len(parts)} iters={self.last_solve.iterations} "
                f"resid={self.last_solve.residual:.3e} vel[{field_stats(parts.vel)}]"
            )
        self.hooks.run_post(self, dt)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_cell_fluid(self, i: int, j: int, k: int) -> bool:
        """Inside the liquid and outside every solid."""
        liquid = self.liquid_level_set.get_cell(i, j, k)
        solid = self._scene.get_solid_level_set().get_cell(i, j, k)
        return liquid < 0.0 and solid >= 0.0

    def close(self) -> None:
        self.pool.shutdown()


__all__ = ["SimState", "FlipSim"]
