import os
import sys
import numpy as np
import pytest

# Ensure src is importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../..')))

from src.common.sim_hooks import SimHooks
from src.flip.errors import InvalidConfiguration
from src.flip.make_flip import make_flip
from src.flip.params import FlipParams
from src.flip.particles import CellType, ParticleStore
from src.flip.scene import Scene, SceneLike
from src.flip.sim import FlipSim, SimState


class EverywhereScene(Scene):
    """One FLUID particle at every cell center, solids or not."""

    def generate_particles(self, resolution, density, index):
        I, J, K = np.meshgrid(*(np.arange(r) for r in resolution), indexing='ij')
        pos = (np.stack([I, J, K], axis=-1).reshape(-1, 3) + 0.5) / max(resolution)
        return ParticleStore(pos, types=CellType.FLUID)


@pytest.mark.parametrize("res,density", [((0, 4, 4), 0.5), ((4, -1, 4), 0.5), ((4, 4), 0.5),
                                         ((4, 4, 4), 0.0), ((4, 4, 4), -2.0)])
def test_invalid_configuration_is_fatal_at_construction(res, density):
    with pytest.raises(InvalidConfiguration):
        FlipSim(Scene((4, 4, 4)), FlipParams(resolution=res, density=density))


def test_step_before_init_raises():
    sim = FlipSim(Scene((4, 4, 4)), FlipParams(resolution=(4, 4, 4), num_workers=1))
    assert sim.state == SimState.UNINITIALIZED
    with pytest.raises(RuntimeError):
        sim.step()


def test_init_removes_fluid_particles_inside_solid_region():
    res = (8, 8, 8)
    scene = EverywhereScene(res)
    scene.add_solid_box((0.25, 0.0, 0.25), (0.75, 0.5, 0.75))
    assert isinstance(scene, SceneLike)
    sim = FlipSim(scene, FlipParams(resolution=res, num_workers=1))

    removed = sim.init()

    assert sim.state == SimState.INITIALIZED
    assert sim.max_density is not None and sim.max_density > 0.0
    assert removed == 4 * 4 * 4
    assert len(sim.particles) == 8 ** 3 - 64
    cells = np.floor(sim.particles.pos * 8).astype(int)
    in_box = (np.all((cells >= [2, 0, 2]) & (cells <= [5, 3, 5]), axis=1))
    assert not np.any(in_box)
    assert np.all(sim.grid.A[2:6, 0:4, 2:6] == CellType.SOLID)


@pytest.mark.slow
def test_dam_break_steps_and_queries():
    calls = []
    hooks = SimHooks(pre=lambda s, dt: calls.append(("pre", s.timestep)),
                     post=lambda s, dt: calls.append(("post", s.timestep)))
    demo = make_flip(resolution=8, num_workers=2, hooks=hooks)
    sim = demo.sim
    demo.init()

    parts = sim.particles
    fluid = parts.type == CellType.FLUID
    assert np.any(fluid)
    assert np.any(parts.type == CellType.SOLID)
    cells = sim.index.cell_of(parts.pos[fluid])
    assert not np.any(sim.grid.A[cells[:, 0], cells[:, 1], cells[:, 2]] == CellType.SOLID)
    assert sim.is_cell_fluid(1, 2, 3)
    assert not sim.is_cell_fluid(7, 7, 7)
    assert sim.dimensions == (8, 8, 8)
    assert sim.scene is demo.scene

    demo.step()
    demo.step()

    assert sim.timestep == 2
    assert sim.state == SimState.STEPPING
    assert calls == [("pre", 0), ("post", 1), ("pre", 1), ("post", 2)]
    assert sim.last_solve is not None and sim.last_solve.converged
    assert np.all(np.isfinite(sim.particles.pos))
    assert np.all(np.isfinite(sim.particles.vel))
    assert np.all(sim.particles.pos >= 0.0) and np.all(sim.particles.pos <= 1.0)
    moving = sim.particles.type == CellType.FLUID
    assert np.any(sim.particles.vel[moving] != 0.0)
    assert np.all(sim.particles.vel[~moving] == 0.0)
    assert sim.liquid_level_set.has_zero_crossing()
    sim.close()


@pytest.mark.slow
def test_failing_hook_does_not_abort_step():
    def boom(sim, dt):
        raise RuntimeError("hook failure")

    demo = make_flip(resolution=6, obstacle=False, num_workers=1, hooks=SimHooks(post=boom))
    demo.sim.params.advect = False
    demo.init()
    demo.step()
    assert demo.sim.timestep == 1
