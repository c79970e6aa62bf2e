# -*- coding: utf-8 -*-
"""
Pressure projection for the FLIP core.

Steps
-----
1. Divergence at cell centers from face velocities,
   ``D = (du_x + du_y + du_z) / h`` (exact differences; a uniform field
   gives exactly zero).
2. Liquid level set rebuilt from the particles (stored in ``grid.L``).
3. Poisson solve on FLUID cells with a 7-point stencil:
     - FLUID neighbor:  coupled unknown,
     - EMPTY neighbor:  Dirichlet p = 0; with ``subcell`` the ghost-fluid
       coefficient 1/theta, theta = phi_i / (phi_i - phi_n) in [0.01, 1],
       places the free surface where the liquid level set crosses zero,
     - SOLID neighbor or domain wall: Neumann (no coupling).
   Jacobi-preconditioned conjugate gradient on ``M p = -h^2 D``.
4. Velocity correction ``u -= grad(p) / theta`` on faces touching a FLUID
   cell and no SOLID cell, which zeroes the divergence of every FLUID cell
   up to the solver tolerance.

Pressure is scaled so the correction needs no ``dt/rho`` factor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy import ndimage

from src.common.debug import dbg, field_stats, is_enabled
from src.common.parallel import WorkerPool, default_pool
from .levelset import LevelSet
from .mac_grid import MacGrid
from .particle_grid import SpatialGridIndex
from .particles import CellType, ParticleStore

THETA_MIN = 0.01


@dataclass
class PressureSolveResult:
    iterations: int
    residual: float
    converged: bool


def compute_divergence(grid: MacGrid, pool: Optional[WorkerPool] = None) -> np.ndarray:
    """Fill ``grid.D``; x-slabs are independent and split across the pool."""
    inv_h = 1.0 / grid.h
    u, v, w = grid.u_x, grid.u_y, grid.u_z
    D = grid.D

    def run(a: int, b: int) -> None:
        D[a:b] = ((u[a+1:b+1] - u[a:b])
                  + (v[a:b, 1:, :] - v[a:b, :-1, :])
                  + (w[a:b, :, 1:] - w[a:b, :, :-1])) * inv_h

    (pool or default_pool()).parallel_for(run, grid.nx)
    return D


def _lower(A: np.ndarray, axis: int) -> np.ndarray:
    sl = [slice(None)] * 3; sl[axis] = slice(None, -1)
    return A[tuple(sl)]


def _upper(A: np.ndarray, axis: int) -> np.ndarray:
    sl = [slice(None)] * 3; sl[axis] = slice(1, None)
    return A[tuple(sl)]


def _interior(F: np.ndarray, axis: int) -> np.ndarray:
    sl = [slice(None)] * 3; sl[axis] = slice(1, -1)
    return F[tuple(sl)]


def face_theta(grid: MacGrid, subcell: bool) -> List[np.ndarray]:
    """Fraction of the center-to-center distance covered by liquid, per interior face.

    1 everywhere except FLUID/EMPTY faces with ``subcell`` on, where the
    liquid level set changes sign between the two cell centers.
    """
    fluid = grid.A == CellType.FLUID
    empty = grid.A == CellType.EMPTY
    L = grid.L
    thetas = []
    for axis in range(3):
        theta = np.ones(_lower(fluid, axis).shape, dtype=np.float64)
        if subcell:
            la, lb = _lower(L, axis), _upper(L, axis)
            fa, fb = _lower(fluid, axis), _upper(fluid, axis)
            ea, eb = _lower(empty, axis), _upper(empty, axis)
            finite = np.isfinite(la) & np.isfinite(lb)
            with np.errstate(divide="ignore", invalid="ignore"):
                # fluid below, air above
                m = fa & eb & finite & (la < 0.0) & (lb >= 0.0)
                theta[m] = la[m] / (la[m] - lb[m])
                # air below, fluid above
                m = ea & fb & finite & (lb < 0.0) & (la >= 0.0)
                theta[m] = lb[m] / (lb[m] - la[m])
            np.clip(theta, THETA_MIN, 1.0, out=theta)
        thetas.append(theta)
    return thetas


def _assemble(grid: MacGrid, thetas: List[np.ndarray]) -> Tuple[np.ndarray, List[np.ndarray], np.ndarray]:
    """Diagonal of M, per-axis fluid-fluid coupling masks, and the FLUID cells next to an EMPTY one."""
    fluid = grid.A == CellType.FLUID
    empty = grid.A == CellType.EMPTY
    diag = np.zeros(fluid.shape, dtype=np.float64)
    couple = []
    open_cells = np.zeros(fluid.shape, dtype=bool)
    for axis in range(3):
        fa, fb = _lower(fluid, axis), _upper(fluid, axis)
        ea, eb = _lower(empty, axis), _upper(empty, axis)
        inv_t = 1.0 / thetas[axis]
        ff = fa & fb
        fe = fa & eb
        ef = ea & fb
        _lower(diag, axis)[...] += ff + fe * inv_t
        _upper(diag, axis)[...] += ff + ef * inv_t
        _lower(open_cells, axis)[...] |= fe
        _upper(open_cells, axis)[...] |= ef
        couple.append(ff)
    return diag, couple, open_cells


def _apply(p: np.ndarray, diag: np.ndarray, couple: List[np.ndarray], fluid: np.ndarray) -> np.ndarray:
    Mp = diag * p
    for axis in range(3):
        ff = couple[axis]
        _lower(Mp, axis)[...] -= np.where(ff, _upper(p, axis), 0.0)
        _upper(Mp, axis)[...] -= np.where(ff, _lower(p, axis), 0.0)
    Mp[~fluid] = 0.0
    return Mp


def solve_pressure(
    grid: MacGrid,
    subcell: bool = True,
    tol: float = 1e-6,
    max_iter: int = 1000,
) -> PressureSolveResult:
    """Solve for ``grid.P`` from ``grid.D``, ``grid.A`` and ``grid.L``.

    ``tol`` is relative to the right-hand side norm.
    """
    fluid = grid.A == CellType.FLUID
    P = np.zeros(fluid.shape, dtype=np.float64)
    grid.P = P
    if not np.any(fluid):
        return PressureSolveResult(0, 0.0, True)

    thetas = face_theta(grid, subcell)
    diag, couple, open_cells = _assemble(grid, thetas)

    b = np.where(fluid, -(grid.h ** 2) * grid.D, 0.0)
    # enclosed liquid regions: pressure is defined up to a constant, keep b in the range of M
    labels, n_regions = ndimage.label(fluid)
    closed = np.setdiff1d(np.arange(1, n_regions + 1), np.unique(labels[open_cells]))
    for region in closed:
        m = labels == region
        b[m] -= float(b[m].mean())

    active = fluid & (diag > 0.0)
    inv_diag = np.zeros_like(diag)
    inv_diag[active] = 1.0 / diag[active]

    bnorm = float(np.linalg.norm(b))
    if bnorm == 0.0:
        return PressureSolveResult(0, 0.0, True)
    target = tol * bnorm

    x = np.zeros_like(b)
    r = b.copy()
    z = r * inv_diag
    p = z.copy()
    rz = float(np.sum(r * z))
    rnorm = bnorm
    it = 0
    for it in range(1, max_iter + 1):
        Ap = _apply(p, diag, couple, fluid)
        denom = float(np.sum(p * Ap))
        if not np.isfinite(denom) or abs(denom) < 1e-300:
            break
        alpha = rz / denom
        x += alpha * p
        r -= alpha * Ap
        rnorm = float(np.linalg.norm(r))
        if rnorm <= target:
            break
        z = r * inv_diag
        rz_new = float(np.sum(r * z))
        p = z + (rz_new / rz) * p
        rz = rz_new
    x[~fluid] = 0.0
    for region in closed:
        m = labels == region
        x[m] -= float(x[m].mean())
    grid.P = x
    result = PressureSolveResult(it, rnorm, rnorm <= target)
    if is_enabled():
        dbg("solver").debug(
            f"solve_pressure: fluid={int(fluid.sum())} iters={it} resid={rnorm:.3e} "
            f"converged={result.converged} P[{field_stats(x[fluid])}]"
        )
    return result


def subtract_pressure_gradient(grid: MacGrid, subcell: bool = True) -> None:
    """Correct face velocities with the pressure gradient stored in ``grid.P``."""
    fluid = grid.A == CellType.FLUID
    solid = grid.A == CellType.SOLID
    thetas = face_theta(grid, subcell)
    P = np.where(fluid, grid.P, 0.0)
    inv_h = 1.0 / grid.h
    for axis in range(3):
        F = _interior(grid.face_array(axis), axis)
        touch = (_lower(fluid, axis) | _upper(fluid, axis)) & ~(_lower(solid, axis) | _upper(solid, axis))
        grad = (_upper(P, axis) - _lower(P, axis)) * inv_h / thetas[axis]
        F -= np.where(touch, grad, 0.0)


def project(
    grid: MacGrid,
    index: SpatialGridIndex,
    particles: ParticleStore,
    density: float,
    *,
    subcell: bool = True,
    tol: float = 1e-6,
    max_iter: int = 1000,
    radius: float = 0.5,
    half_width: int = 3,
    pool: Optional[WorkerPool] = None,
) -> Tuple[LevelSet, PressureSolveResult]:
    """Divergence, liquid level set, pressure solve and velocity correction."""
    log = dbg("solver")
    if is_enabled():
        log.debug("Computing divergence...")
    compute_divergence(grid, pool=pool)
    if is_enabled():
        log.debug(f"divergence: {field_stats(grid.D)}")
        log.debug("Building liquid SDF...")
    liquid = index.build_sdf(particles, grid, density, radius=radius, half_width=half_width, pool=pool)
    if is_enabled():
        log.debug("Running solver...")
    result = solve_pressure(grid, subcell=subcell, tol=tol, max_iter=max_iter)
    subtract_pressure_gradient(grid, subcell=subcell)
    return liquid, result


__all__ = [
    "PressureSolveResult",
    "compute_divergence",
    "face_theta",
    "solve_pressure",
    "subtract_pressure_gradient",
    "project",
]
