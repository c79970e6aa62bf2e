"""FLIP fluid simulation core.

The driver :class:`~src.flip.sim.FlipSim` lives in :mod:`src.flip.sim`; the
particle, grid and level-set building blocks are re-exported here for
convenience.
"""

from .errors import DegenerateSurface, FlipError, IndexOutOfBounds, InvalidConfiguration
from .params import FlipParams
from .particles import CellType, ParticleStore
from .particle_grid import SpatialGridIndex
from .mac_grid import MacGrid
from .levelset import LevelSet
from .scene import Scene, SceneLike
from .sim import FlipSim, SimState
from .make_flip import make_flip, run_headless

__all__ = [
    "CellType",
    "DegenerateSurface",
    "FlipError",
    "FlipParams",
    "FlipSim",
    "IndexOutOfBounds",
    "InvalidConfiguration",
    "LevelSet",
    "MacGrid",
    "ParticleStore",
    "Scene",
    "SceneLike",
    "SimState",
    "SpatialGridIndex",
    "make_flip",
    "run_headless",
]
