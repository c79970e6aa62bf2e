# -*- coding: utf-8 -*-
"""
Particle <-> MAC grid transfers.

- ``splat_particles_to_mac_grid``: P2G.  Every face takes the mass and
  ``sharp``-kernel weighted average of the FLUID particle velocity component
  within ``radius`` cells of the face center.  Done as a particle-centric
  scatter with ``np.add.at``; the accumulation is a plain sum, so the result
  does not depend on particle order beyond float rounding.
- ``enforce_boundary_velocity``: no-penetration on solid cells and domain walls.
- ``gather_particle_velocities``: G2P with PIC/FLIP blending,
  ``v <- r*(v + u_new(x) - u_old(x)) + (1-r)*u_new(x)``.
- ``advect_particles``: midpoint (RK2) advection through the grid velocity.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from src.common.debug import dbg, is_enabled
from .kernels import sharp
from .levelset import LevelSet
from .mac_grid import MacGrid
from .particles import CellType, ParticleStore


def splat_particles_to_mac_grid(particles: ParticleStore, grid: MacGrid, radius: float = 1.4) -> None:
    fluid = (particles.type == CellType.FLUID) & ~particles.invalid
    X = particles.pos[fluid] * grid.max_dim    # index space
    V = particles.vel[fluid]
    m = particles.mass[fluid]

    R = int(math.ceil(radius))
    rng = np.arange(-R + 1, R + 1)
    offsets = np.stack(np.meshgrid(rng, rng, rng, indexing='ij'), axis=-1).reshape(-1, 3)

    for axis in range(3):
        F = grid.face_array(axis)
        if X.shape[0] == 0:
            F.fill(0.0)
            continue
        shift = np.full(3, 0.5); shift[axis] = 0.0
        base = np.floor(X - shift).astype(np.int64)
        shape = np.array(F.shape)
        wsum = np.zeros(F.size, dtype=np.float64)
        vsum = np.zeros(F.size, dtype=np.float64)
        for off in offsets:
            face = base + off
            ok = np.all((face >= 0) & (face < shape), axis=1)
            if not np.any(ok):
                continue
            f = face[ok]
            d = (f + shift) - X[ok]
            w = m[ok] * sharp(np.sum(d * d, axis=1), radius)
            key = (f[:, 0] * shape[1] + f[:, 1]) * shape[2] + f[:, 2]
            np.add.at(wsum, key, w)
            np.add.at(vsum, key, w * V[ok, axis])
        out = np.zeros(F.size, dtype=np.float64)
        nz = wsum > 0.0
        out[nz] = vsum[nz] / wsum[nz]
        F[...] = out.reshape(F.shape)

    if is_enabled():
        dbg("transfer").debug(
            f"splat: N={X.shape[0]} |u|max={max(float(np.abs(F).max()) for F in grid.faces):.4g}"
        )


def enforce_boundary_velocity(grid: MacGrid) -> None:
    """Zero every face on the domain boundary or touching a SOLID cell."""
    solid = grid.A == CellType.SOLID
    grid.u_x[0, :, :] = 0.0; grid.u_x[-1, :, :] = 0.0
    grid.u_y[:, 0, :] = 0.0; grid.u_y[:, -1, :] = 0.0
    grid.u_z[:, :, 0] = 0.0; grid.u_z[:, :, -1] = 0.0
    grid.u_x[1:-1, :, :][solid[:-1, :, :] | solid[1:, :, :]] = 0.0
    grid.u_y[:, 1:-1, :][solid[:, :-1, :] | solid[:, 1:, :]] = 0.0
    grid.u_z[:, :, 1:-1][solid[:, :, :-1] | solid[:, :, 1:]] = 0.0


def gather_particle_velocities(
    particles: ParticleStore,
    grid: MacGrid,
    old_faces: Sequence[np.ndarray],
    flip_ratio: float = 0.95,
) -> None:
    fluid = (particles.type == CellType.FLUID) & ~particles.invalid
    if not np.any(fluid):
        return
    X = particles.pos[fluid]
    u_new = grid.sample_velocity(X)
    u_old = grid.sample_velocity(X, faces=old_faces)
    r = float(np.clip(flip_ratio, 0.0, 1.0))
    particles.vel[fluid] = r * (particles.vel[fluid] + (u_new - u_old)) + (1.0 - r) * u_new


def advect_particles(
    particles: ParticleStore,
    grid: MacGrid,
    dt: float,
    solid_levelset: Optional[LevelSet] = None,
) -> None:
    """Move FLUID particles through the grid velocity and keep them in the domain.

    Particles that end up inside the solid level set are projected back onto
    its surface.
    """
    fluid = (particles.type == CellType.FLUID) & ~particles.invalid
    if not np.any(fluid):
        return
    X = particles.pos[fluid]
    v1 = grid.sample_velocity(X)
    v2 = grid.sample_velocity(X + 0.5 * dt * v1)
    X = X + dt * v2

    eps = 0.01 * grid.h
    X = np.clip(X, eps, grid.extent() - eps)

    if solid_levelset is not None:
        phi = solid_levelset.sample(X, grid.h)
        inside = phi < 0.0
        if np.any(inside):
            Xi = X[inside] / grid.h - 0.5
            Xi = solid_levelset.project_points_to_surface(Xi)
            X[inside] = np.clip((Xi + 0.5) * grid.h, eps, grid.extent() - eps)
            if is_enabled():
                dbg("transfer").debug(f"advect: pushed {int(np.count_nonzero(inside))} particles out of solids")
    particles.pos[fluid] = X


__all__ = [
    "splat_particles_to_mac_grid",
    "enforce_boundary_velocity",
    "gather_particle_velocities",
    "advect_particles",
]
