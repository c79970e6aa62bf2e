# -*- coding: utf-8 -*-
"""
Staggered (MAC) grid storage for the FLIP core.

Staggering:
  - u_x: (nx+1, ny,   nz  ) at faces normal to x
  - u_y: (nx,   ny+1, nz  ) at faces normal to y
  - u_z: (nx,   ny,   nz+1) at faces normal to z
  - D, P, L, A: (nx, ny, nz) at cell centers

Coordinate frame:
  The domain is normalized so the longest axis spans [0, 1]; every cell has
  width h = 1/max(nx, ny, nz).  The center of cell (i,j,k) is at
  ((i+0.5)h, (j+0.5)h, (k+0.5)h).
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional, Sequence, Tuple

import numpy as np

from .errors import InvalidConfiguration
from .particles import CellType


class MacGrid:
    def __init__(self, resolution: Iterable[int]):
        res = tuple(int(r) for r in resolution)
        if len(res) != 3 or any(r <= 0 for r in res):
            raise InvalidConfiguration(f"grid resolution must be 3 positive ints, got {res!r}")
        nx, ny, nz = res
        self.nx, self.ny, self.nz = nx, ny, nz
        self.max_dim = max(res)
        self.h = 1.0 / self.max_dim

        # Staggered velocities
        self.u_x = np.zeros((nx+1, ny, nz), dtype=np.float64)
        self.u_y = np.zeros((nx, ny+1, nz), dtype=np.float64)
        self.u_z = np.zeros((nx, ny, nz+1), dtype=np.float64)

        # Cell-centered fields: divergence, pressure, liquid distance, type
        self.D = np.zeros((nx, ny, nz), dtype=np.float64)
        self.P = np.zeros((nx, ny, nz), dtype=np.float64)
        self.L = np.full((nx, ny, nz), np.inf, dtype=np.float64)
        self.A = np.full((nx, ny, nz), CellType.EMPTY, dtype=np.int8)

    @property
    def resolution(self) -> Tuple[int, int, int]:
        return (self.nx, self.ny, self.nz)

    @property
    def faces(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        return (self.u_x, self.u_y, self.u_z)

    def face_array(self, axis: int) -> np.ndarray:
        return self.faces[axis]

    def copy_velocity(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        return (self.u_x.copy(), self.u_y.copy(), self.u_z.copy())

    # ---------------------------------------------------------------------
    # Geometry
    # ---------------------------------------------------------------------
    def extent(self) -> np.ndarray:
        """Upper corner of the domain in unit coordinates."""
        return np.array(self.resolution, dtype=np.float64) * self.h

    # ---------------------------------------------------------------------
    # Sampling & interpolation
    # ---------------------------------------------------------------------
    def sample_velocity(
        self,
        points: np.ndarray,
        faces: Optional[Sequence[np.ndarray]] = None,
    ) -> np.ndarray:
        """Sample the MAC velocity (or the provided faces) at unit-domain points (N,3)."""
        faces = self.faces if faces is None else faces
        Xw = np.asarray(points, dtype=np.float64)
        return np.stack([self._sample_face(faces[a], Xw, a) for a in range(3)], axis=-1)

    def _sample_face(self, F: np.ndarray, Xw: np.ndarray, axis: int) -> np.ndarray:
        """Sample a face-centered component at unit-domain points (stagger-aware)."""
        X = Xw * self.max_dim  # index space
        for a in range(3):
            if a != axis:
                X[:, a] -= 0.5
        return trilinear(F, X)


def trilinear(F: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Trilinear interpolation of array ``F`` at index coords X (N,3), clamped to the border."""
    return trilinear_gather(lambda i, j, k: F[i, j, k], F.shape, X)


def trilinear_gather(
    gather: Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray],
    shape: Sequence[int],
    X: np.ndarray,
) -> np.ndarray:
    """Trilinear interpolation over a lattice of ``shape`` read through ``gather(i, j, k)``.

    ``gather`` receives in-bounds integer index arrays and returns the samples
    there; points outside the lattice clamp to the border.
    """
    nx, ny, nz = shape
    x = np.clip(X[:, 0], 0.0, max(nx-1, 0))
    y = np.clip(X[:, 1], 0.0, max(ny-1, 0))
    z = np.clip(X[:, 2], 0.0, max(nz-1, 0))
    i0 = np.minimum(np.floor(x).astype(np.int64), max(nx-2, 0))
    j0 = np.minimum(np.floor(y).astype(np.int64), max(ny-2, 0))
    k0 = np.minimum(np.floor(z).astype(np.int64), max(nz-2, 0))
    i1 = np.minimum(i0+1, nx-1); j1 = np.minimum(j0+1, ny-1); k1 = np.minimum(k0+1, nz-1)
    tx = x - i0; ty = y - j0; tz = z - k0
    c000 = gather(i0, j0, k0); c100 = gather(i1, j0, k0)
    c010 = gather(i0, j1, k0); c110 = gather(i1, j1, k0)
    c001 = gather(i0, j0, k1); c101 = gather(i1, j0, k1)
    c011 = gather(i0, j1, k1); c111 = gather(i1, j1, k1)
    c00 = c000*(1-tx) + c100*tx
    c01 = c001*(1-tx) + c101*tx
    c10 = c010*(1-tx) + c110*tx
    c11 = c011*(1-tx) + c111*tx
    c0 = c00*(1-ty) + c10*ty
    c1 = c01*(1-ty) + c11*ty
    return c0*(1-tz) + c1*tz


__all__ = ["MacGrid", "trilinear", "trilinear_gather"]
