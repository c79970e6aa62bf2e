"""Triangle-mesh helpers: construction, file I/O, and signed distance sampling.

Meshes are plain ``(vertices (V,3) float, faces (F,3) int)`` pairs at the
API boundary; geometry queries go through :mod:`trimesh` and OBJ output
through :mod:`meshio`.  Signed distance assumes a closed (watertight) mesh.
"""

from __future__ import annotations

from typing import Tuple

import meshio
import numpy as np
import trimesh

Mesh = Tuple[np.ndarray, np.ndarray]


def box_mesh(lo, hi) -> Mesh:
    """Axis-aligned box with outward-facing triangles."""
    lo = np.asarray(lo, dtype=np.float64)
    hi = np.asarray(hi, dtype=np.float64)
    box = trimesh.creation.box(
        extents=hi - lo,
        transform=trimesh.transformations.translation_matrix((lo + hi) / 2.0),
    )
    return np.asarray(box.vertices, dtype=np.float64), np.asarray(box.faces, dtype=np.int64)


def load_mesh(path: str) -> Mesh:
    """Read any triangle mesh trimesh understands; scenes are flattened into one mesh."""
    mesh = trimesh.load(path, force="mesh")
    return np.asarray(mesh.vertices, dtype=np.float64), np.asarray(mesh.faces, dtype=np.int64)


def write_obj(path: str, vertices: np.ndarray, faces: np.ndarray, normals: np.ndarray | None = None) -> None:
    """Write a triangle mesh as Wavefront OBJ."""
    vertices = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    point_data = {}
    if normals is not None:
        point_data["obj:vn"] = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
    mesh = meshio.Mesh(vertices, [("triangle", faces)], point_data=point_data)
    meshio.write(path, mesh, file_format="obj")


def signed_distance_band(vertices: np.ndarray, faces: np.ndarray, shape, band: float) -> np.ndarray:
    """Signed distance at every lattice point of ``shape``, negative inside, clamped to ``[-band, band]``.

    Lattice point (i,j,k) sits at index-space coordinate (i,j,k); vertices
    are given in the same space.  Only points inside the mesh bounds grown by
    ``band`` are queried; the rest read ``+band``.
    """
    shape = tuple(int(s) for s in shape)
    band = float(band)
    dist = np.full(shape, band, dtype=np.float64)
    V = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    F = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    if len(F) == 0:
        return dist

    mesh = trimesh.Trimesh(vertices=V, faces=F, process=False)
    upper = np.array(shape) - 1
    lo = np.maximum(np.floor(mesh.bounds[0] - band).astype(int), 0)
    hi = np.minimum(np.ceil(mesh.bounds[1] + band).astype(int), upper)
    if np.any(hi < lo):
        return dist

    I, J, K = np.meshgrid(np.arange(lo[0], hi[0] + 1), np.arange(lo[1], hi[1] + 1),
                          np.arange(lo[2], hi[2] + 1), indexing='ij')
    P = np.stack([I, J, K], axis=-1).reshape(-1, 3).astype(np.float64)
    # trimesh is positive inside
    sd = -trimesh.proximity.signed_distance(mesh, P)
    dist[lo[0]:hi[0] + 1, lo[1]:hi[1] + 1, lo[2]:hi[2] + 1] = np.clip(sd, -band, band).reshape(I.shape)
    return dist


__all__ = [
    "Mesh",
    "box_mesh",
    "load_mesh",
    "write_obj",
    "signed_distance_band",
]
