"""Particle storage for the FLIP core.

Particles are held column-wise in NumPy arrays rather than as individual
objects; every pass works on whole columns or index arrays into them.

State arrays (N particles):
  pos     : (N,3) position in the unit domain cube
  vel     : (N,3) velocity
  mass    : (N,)  scalar mass
  density : (N,)  normalized density (written by the density estimator)
  type    : (N,)  CellType tag (int8)
  invalid : (N,)  pending-removal flag
"""

from __future__ import annotations

from enum import IntEnum
from typing import Optional

import numpy as np


class CellType(IntEnum):
    """Shared tag for particles and grid cells."""

    EMPTY = 0
    FLUID = 1
    SOLID = 2


class ParticleStore:
    def __init__(
        self,
        positions: Optional[np.ndarray] = None,
        velocities: Optional[np.ndarray] = None,
        mass: float | np.ndarray = 1.0,
        types: CellType | np.ndarray = CellType.FLUID,
    ) -> None:
        if positions is None:
            positions = np.zeros((0, 3), dtype=np.float64)
        positions = np.asarray(positions, dtype=np.float64)
        if positions.ndim != 2 or positions.shape[1] != 3:
            raise ValueError(f"positions must have shape (N, 3), got {positions.shape}")
        n = positions.shape[0]

        self.pos = positions.copy()
        self.vel = (np.asarray(velocities, dtype=np.float64).copy()
                    if velocities is not None else np.zeros_like(self.pos))
        self.mass = np.broadcast_to(np.asarray(mass, dtype=np.float64), (n,)).copy()
        self.density = np.zeros(n, dtype=np.float64)
        self.type = np.broadcast_to(np.asarray(types, dtype=np.int8), (n,)).copy()
        self.invalid = np.zeros(n, dtype=bool)

    def __len__(self) -> int:
        return int(self.pos.shape[0])

    def add(
        self,
        positions: np.ndarray,
        velocities: Optional[np.ndarray] = None,
        mass: float | np.ndarray = 1.0,
        types: CellType | np.ndarray = CellType.FLUID,
    ) -> np.ndarray:
        """Append particles; returns the indices they were given."""
        other = ParticleStore(positions, velocities, mass, types)
        start = len(self)
        self.extend(other)
        return np.arange(start, len(self))

    def extend(self, other: "ParticleStore") -> None:
        self.pos = np.concatenate([self.pos, other.pos])
        self.vel = np.concatenate([self.vel, other.vel])
        self.mass = np.concatenate([self.mass, other.mass])
        self.density = np.concatenate([self.density, other.density])
        self.type = np.concatenate([self.type, other.type])
        self.invalid = np.concatenate([self.invalid, other.invalid])

    def take(self, idx: np.ndarray) -> "ParticleStore":
        """Return a new store with the particles at ``idx`` (in that order)."""
        out = ParticleStore()
        out.pos = self.pos[idx].copy()
        out.vel = self.vel[idx].copy()
        out.mass = self.mass[idx].copy()
        out.density = self.density[idx].copy()
        out.type = self.type[idx].copy()
        out.invalid = self.invalid[idx].copy()
        return out

    def remove_invalid(self) -> int:
        """Discard every particle flagged invalid; returns how many were dropped."""
        keep = ~self.invalid
        dropped = int(len(self) - np.count_nonzero(keep))
        if dropped:
            self.pos = self.pos[keep]
            self.vel = self.vel[keep]
            self.mass = self.mass[keep]
            self.density = self.density[keep]
            self.type = self.type[keep]
            self.invalid = self.invalid[keep]
        return dropped


__all__ = ["CellType", "ParticleStore"]
