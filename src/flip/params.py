from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import InvalidConfiguration


@dataclass
class FlipParams:
    # Domain
    resolution: Tuple[int, int, int] = (32, 32, 32)
    density: float = 0.5                 # particle spacing factor, also sizes kernels

    # Time stepping
    stepsize: float = 0.005              # fixed dt (s)
    gravity: Tuple[float, float, float] = (0.0, -9.8, 0.0)

    # Pressure projection
    subcell: bool = True
    pressure_tol: float = 1e-6
    pressure_maxiter: int = 1000

    # Transfers
    splat_radius: float = 1.4            # in cell widths
    flip_ratio: float = 0.95             # 1 = pure FLIP, 0 = pure PIC
    advect: bool = True                  # run correction/gather/advect after the solve

    # Level sets
    levelset_half_width: int = 3
    particle_radius: float = 0.5         # in cell widths

    # Execution
    num_workers: Optional[int] = None    # None = CPU count

    def validate(self) -> "FlipParams":
        res = tuple(self.resolution)
        if len(res) != 3:
            raise InvalidConfiguration(f"resolution must have 3 axes, got {res!r}")
        if any(int(r) != r or r <= 0 for r in res):
            raise InvalidConfiguration(f"resolution must be positive integers, got {res!r}")
        self.resolution = tuple(int(r) for r in res)
        if not self.density > 0.0:
            raise InvalidConfiguration(f"density must be > 0, got {self.density!r}")
        if not self.stepsize > 0.0:
            raise InvalidConfiguration(f"stepsize must be > 0, got {self.stepsize!r}")
        if not 0.0 <= self.flip_ratio <= 1.0:
            raise InvalidConfiguration("flip_ratio must lie in [0, 1]")
        if self.num_workers is not None and self.num_workers <= 0:
            raise InvalidConfiguration("num_workers must be positive")
        return self

    @property
    def max_dim(self) -> int:
        return int(max(self.resolution))

    @property
    def h(self) -> float:
        """Uniform cell width in the unit domain."""
        return 1.0 / self.max_dim


__all__ = ["FlipParams"]
