import os
import sys
import meshio
import numpy as np
import pytest
import pyvista as pv
import trimesh

# Ensure src is importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../..')))

from src.flip.errors import DegenerateSurface
from src.flip.levelset import LevelSet
from src.flip.make_flip import make_flip, run_headless
from src.flip.mesh import box_mesh, load_mesh, signed_distance_band, write_obj
from src.flip.scene import Scene


def _sphere_levelset(n=16, radius=5.0):
    I, J, K = np.meshgrid(np.arange(n), np.arange(n), np.arange(n), indexing='ij')
    c = (n - 1) / 2.0
    phi = np.sqrt((I - c) ** 2 + (J - c) ** 2 + (K - c) ** 2) - radius
    return LevelSet.from_dense(np.clip(phi, -3.0, 3.0), background=3.0)


def test_obj_surface_of_sphere(tmp_path):
    ls = _sphere_levelset()
    path = tmp_path / "sphere.obj"
    ls.write_obj_to_file(str(path), voxel_size=1.0 / 16)
    mesh = meshio.read(str(path))
    verts, faces = mesh.points, mesh.cells_dict["triangle"]
    assert len(verts) > 0 and len(faces) > 0
    assert faces.min() >= 0 and faces.max() < len(verts)
    # unit-domain sphere of radius 5/16 around the domain center
    r = np.linalg.norm(verts - 0.5, axis=1)
    assert np.allclose(r, 5.0 / 16, atol=0.5 / 16)


def test_degenerate_surface_writes_empty_mesh(tmp_path):
    ls = LevelSet((8, 8, 8))
    path = tmp_path / "empty.obj"
    with pytest.warns(DegenerateSurface):
        ls.write_obj_to_file(str(path))
    assert path.exists()
    lines = path.read_text().splitlines()
    assert not [line for line in lines if line.startswith(("v ", "f "))]


def test_vtk_volume_layout(tmp_path):
    ls = LevelSet((3, 4, 5), background=2.0)
    ls.set_cell(1, 0, 0, -1.0)
    ls.set_cell(0, 1, 0, -2.0)
    path = tmp_path / "vol.vtk"
    ls.write_volume_to_file(str(path), voxel_size=0.25)
    image = pv.read(str(path))
    assert tuple(image.dimensions) == (3, 4, 5)
    assert np.allclose(image.spacing, (0.25, 0.25, 0.25))
    assert np.allclose(image.origin, (0.125, 0.125, 0.125))
    values = np.asarray(image.point_data["distance"])
    assert values.size == 3 * 4 * 5
    # x varies fastest
    assert values[0] == 2.0 and values[1] == -1.0 and values[3] == -2.0


def test_obj_round_trip_and_box_mesh(tmp_path):
    verts, faces = box_mesh((0, 0, 0), (1, 2, 3))
    assert np.allclose(verts.min(axis=0), [0, 0, 0]) and np.allclose(verts.max(axis=0), [1, 2, 3])
    path = tmp_path / "box.obj"
    write_obj(str(path), verts, faces)
    back = meshio.read(str(path))
    assert np.allclose(back.points, verts, atol=1e-6)
    assert np.array_equal(back.cells_dict["triangle"], faces)

    v2, f2 = load_mesh(str(path))
    assert trimesh.Trimesh(v2, f2).volume == pytest.approx(6.0)

    # outward winding: every normal points away from the center
    center = verts.mean(axis=0)
    a, b, c = verts[faces[:, 0]], verts[faces[:, 1]], verts[faces[:, 2]]
    n = np.cross(b - a, c - a)
    assert np.all(np.sum(n * ((a + b + c) / 3 - center), axis=1) > 0)


def test_signed_distance_band_of_box():
    verts, faces = box_mesh((2, 2, 2), (6, 6, 6))
    sdf = signed_distance_band(verts, faces, (10, 10, 10), 3.0)
    assert sdf[4, 4, 4] == pytest.approx(-2.0)
    assert sdf[4, 4, 8] == pytest.approx(2.0)
    assert sdf[4, 4, 2] == pytest.approx(0.0, abs=1e-9)
    assert sdf[0, 0, 0] == pytest.approx(3.0)
    assert sdf[9, 9, 9] == 3.0
    assert sdf.min() >= -3.0 and sdf.max() <= 3.0


def test_scene_loads_solid_from_mesh_file(tmp_path):
    path = tmp_path / "block.obj"
    write_obj(str(path), *box_mesh((0.25, 0.0, 0.25), (0.75, 0.5, 0.75)))
    scene = Scene((8, 8, 8))
    solid = scene.add_solid_mesh_file(str(path))
    assert solid is scene.get_solid_level_set()
    assert solid.get_cell(3, 1, 3) < 0.0
    assert solid.get_cell(3, 6, 3) > 0.0


@pytest.mark.slow
def test_run_headless_dumps_frames(tmp_path):
    demo = make_flip(resolution=6, obstacle=False, num_workers=1)
    written = run_headless(demo.sim, steps=2, dump_every=1, out_dir=str(tmp_path))
    assert len(written) == 4
    assert all(os.path.exists(p) for p in written)
    assert demo.sim.timestep == 2
    with pytest.raises(ValueError):
        run_headless(demo.sim, steps=1, dump_every=1)


@pytest.mark.slow
def test_factory_dump_hook_writes_on_cadence(tmp_path):
    demo = make_flip(resolution=6, obstacle=False, num_workers=1, dump_every=2, out_dir=str(tmp_path))
    demo.init()
    for _ in range(3):
        demo.step()
    names = sorted(os.listdir(tmp_path))
    assert names == ["liquid_00002.obj", "liquid_00002.vtk"]

    with pytest.raises(ValueError):
        make_flip(resolution=6, dump_every=1)
