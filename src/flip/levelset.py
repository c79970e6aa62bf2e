# -*- coding: utf-8 -*-
"""
Sparse narrow-band signed distance volumes.

A :class:`LevelSet` stores a scalar field that is negative inside a region,
positive outside, and approximates the distance (in cell widths) to the zero
crossing within ``background`` cells of it.  Further away the field is
clamped to ``+/-background``.

Storage
-------
The index box ``shape`` is cut into 8^3 tiles:
  - leaf tiles hold a full (8,8,8) float64 block,
  - constant tiles hold a single value (used for deep interior, ``-background``),
  - every other tile reads as ``+background`` and costs nothing.

Sample (i,j,k) sits at index-space coordinate (i,j,k).  Callers that work in
the unit domain convert with ``index = world / voxel_size - 0.5`` so sample
(i,j,k) lands on the center of grid cell (i,j,k).

Concurrency
-----------
Bulk construction is build-then-freeze: worker chunks compute partial minima
over disjoint particle ranges, the partials are reduced with ``np.minimum``
(associative, commutative), and the result is frozen into tiles.  After that
``get_interpolated_cell`` reads under one lock and ``set_cell`` writes under a
second, separate lock.
"""

from __future__ import annotations

import threading
import warnings
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
from scipy import ndimage

from src.common.debug import dbg, is_enabled
from src.common.parallel import WorkerPool, default_pool
from .errors import DegenerateSurface, IndexOutOfBounds
from .mac_grid import trilinear, trilinear_gather
from .mesh import signed_distance_band, write_obj

TILE = 8

TileKey = Tuple[int, int, int]


class LevelSet:
    def __init__(self, shape: Iterable[int], background: float = 3.0):
        self.shape = tuple(int(s) for s in shape)
        if len(self.shape) != 3 or any(s <= 0 for s in self.shape):
            raise ValueError(f"level set shape must be 3 positive ints, got {self.shape!r}")
        self.background = float(background)
        self._leaves: Dict[TileKey, np.ndarray] = {}
        self._tiles: Dict[TileKey, float] = {}
        self.velocity: Optional[np.ndarray] = None   # optional (nx,ny,nz,3) attribute

        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_dense(cls, values: np.ndarray, background: Optional[float] = None) -> "LevelSet":
        values = np.asarray(values, dtype=np.float64)
        if background is None:
            background = float(np.max(np.abs(values))) if values.size else 3.0
        ls = cls(values.shape, background)
        ls._freeze(values)
        return ls

    @classmethod
    def from_mesh(
        cls,
        vertices: np.ndarray,
        faces: np.ndarray,
        shape: Iterable[int],
        half_width: int = 3,
    ) -> "LevelSet":
        """Narrow-band signed distance around a closed triangle mesh given in index space."""
        shape = tuple(int(s) for s in shape)
        bg = float(half_width)
        sdf = signed_distance_band(vertices, faces, shape, bg)
        ls = cls(shape, bg)
        ls._freeze(sdf)
        if is_enabled():
            dbg("levelset").debug(
                f"from_mesh: faces={len(faces)} leaves={len(ls._leaves)} tiles={len(ls._tiles)}"
            )
        return ls

    @classmethod
    def from_particles(
        cls,
        positions: np.ndarray,
        radii: np.ndarray | float,
        shape: Iterable[int],
        half_width: int = 3,
        velocities: Optional[np.ndarray] = None,
        pool: Optional[WorkerPool] = None,
        batch: int = 2048,
    ) -> "LevelSet":
        """Union of spheres around index-space particle positions.

        Particles with radius 0 (invalidated) do not contribute.  When
        ``velocities`` is given, a kernel-weighted cell velocity is attached
        as :attr:`velocity` for later :meth:`sample_velocity` queries.
        """
        shape = tuple(int(s) for s in shape)
        bg = float(half_width)
        P = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        R = np.broadcast_to(np.asarray(radii, dtype=np.float64), (P.shape[0],))
        live = R > 0.0
        P = P[live]; R = R[live]
        V = None
        if velocities is not None:
            V = np.asarray(velocities, dtype=np.float64).reshape(-1, 3)[live]

        ls = cls(shape, bg)
        n = P.shape[0]
        if n == 0:
            if V is not None:
                ls.velocity = np.zeros(shape + (3,), dtype=np.float64)
            return ls

        reach = int(np.ceil(float(R.max()) + bg))
        rng = np.arange(-reach, reach + 1)
        offsets = np.stack(np.meshgrid(rng, rng, rng, indexing='ij'), axis=-1).reshape(-1, 3)
        upper = np.array(shape) - 1
        n_cells = int(np.prod(shape))
        _, ny, nz = shape

        def build(a: int, b: int):
            dist = np.full(n_cells, bg, dtype=np.float64)
            vsum = np.zeros((n_cells, 3), dtype=np.float64) if V is not None else None
            wsum = np.zeros(n_cells, dtype=np.float64) if V is not None else None
            for s in range(a, b, batch):
                e = min(b, s + batch)
                base = np.floor(P[s:e]).astype(np.int64)
                cells = base[:, None, :] + offsets[None, :, :]          # (B,M,3)
                ok = np.all((cells >= 0) & (cells <= upper), axis=2)
                d = np.linalg.norm(cells - P[s:e, None, :], axis=2)    # (B,M)
                phi = np.minimum(d - R[s:e, None], bg)
                keys = (cells[..., 0] * ny + cells[..., 1]) * nz + cells[..., 2]
                np.minimum.at(dist, keys[ok], phi[ok])
                if V is not None:
                    support = R[s:e, None] + 1.0
                    w = np.maximum(1.0 - (d * d) / (support * support), 0.0)
                    w = np.where(ok, w, 0.0)
                    np.add.at(wsum, keys[ok], w[ok])
                    wv = w[..., None] * V[s:e, None, :]
                    np.add.at(vsum, keys[ok], wv[ok])
            return dist, vsum, wsum

        pool = pool or default_pool()
        parts = pool.map_ranges(build, n, chunks=pool.num_workers)
        dist = parts[0][0]
        for p in parts[1:]:
            np.minimum(dist, p[0], out=dist)
        dist = np.maximum(dist, -bg)
        ls._freeze(dist.reshape(shape))

        if V is not None:
            vsum = sum(p[1] for p in parts)
            wsum = sum(p[2] for p in parts)
            vel = np.zeros((n_cells, 3), dtype=np.float64)
            nz_w = wsum > 0.0
            vel[nz_w] = vsum[nz_w] / wsum[nz_w, None]
            ls.velocity = vel.reshape(shape + (3,))

        if is_enabled():
            dbg("levelset").debug(
                f"from_particles: N={n} reach={reach} leaves={len(ls._leaves)} tiles={len(ls._tiles)}"
            )
        return ls

    def _freeze(self, dense: np.ndarray) -> None:
        """Replace storage with the tiles of a dense block."""
        if dense.shape != self.shape:
            raise ValueError(f"dense block of shape {dense.shape} does not fit level set of shape {self.shape}")
        bg = self.background
        tx, ty, tz = (-(-s // TILE) for s in self.shape)
        padded = np.full((tx * TILE, ty * TILE, tz * TILE), bg, dtype=np.float64)
        padded[:self.shape[0], :self.shape[1], :self.shape[2]] = dense
        blocks = padded.reshape(tx, TILE, ty, TILE, tz, TILE).transpose(0, 2, 4, 1, 3, 5)
        all_out = np.all(blocks == bg, axis=(3, 4, 5))
        all_in = np.all(blocks == -bg, axis=(3, 4, 5))
        leaves: Dict[TileKey, np.ndarray] = {}
        tiles: Dict[TileKey, float] = {}
        for key in zip(*np.nonzero(~all_out)):
            key = tuple(int(v) for v in key)
            if all_in[key]:
                tiles[key] = -bg
            else:
                leaves[key] = blocks[key].copy()
        self._leaves = leaves
        self._tiles = tiles

    # ------------------------------------------------------------------
    # Cell access
    # ------------------------------------------------------------------
    def _check_index(self, i: int, j: int, k: int) -> None:
        if not (0 <= i < self.shape[0] and 0 <= j < self.shape[1] and 0 <= k < self.shape[2]):
            raise IndexOutOfBounds(f"cell ({i}, {j}, {k}) outside level set of shape {self.shape}")

    def get_cell(self, i: int, j: int, k: int) -> float:
        i, j, k = int(i), int(j), int(k)
        self._check_index(i, j, k)
        key = (i // TILE, j // TILE, k // TILE)
        leaf = self._leaves.get(key)
        if leaf is not None:
            return float(leaf[i % TILE, j % TILE, k % TILE])
        return float(self._tiles.get(key, self.background))

    def set_cell(self, i: int, j: int, k: int, value: float) -> None:
        i, j, k = int(i), int(j), int(k)
        self._check_index(i, j, k)
        key = (i // TILE, j // TILE, k // TILE)
        with self._write_lock:
            leaf = self._leaves.get(key)
            if leaf is None:
                fill = self._tiles.pop(key, self.background)
                leaf = np.full((TILE, TILE, TILE), fill, dtype=np.float64)
                self._leaves[key] = leaf
            leaf[i % TILE, j % TILE, k % TILE] = float(value)

    def _gather(self, i: np.ndarray, j: np.ndarray, k: np.ndarray) -> np.ndarray:
        """Values at in-bounds integer index arrays."""
        out = np.full(i.shape, self.background, dtype=np.float64)
        ti, tj, tk = i // TILE, j // TILE, k // TILE
        _, ty, tz = (-(-s // TILE) for s in self.shape)
        tkey = (ti * ty + tj) * tz + tk
        for t in np.unique(tkey):
            key = (int(t) // (ty * tz), (int(t) // tz) % ty, int(t) % tz)
            sel = tkey == t
            leaf = self._leaves.get(key)
            if leaf is not None:
                out[sel] = leaf[i[sel] % TILE, j[sel] % TILE, k[sel] % TILE]
            elif key in self._tiles:
                out[sel] = self._tiles[key]
        return out

    def to_dense(self) -> np.ndarray:
        tx, ty, tz = (-(-s // TILE) for s in self.shape)
        padded = np.full((tx * TILE, ty * TILE, tz * TILE), self.background, dtype=np.float64)
        for (a, b, c), v in list(self._tiles.items()):
            padded[a*TILE:(a+1)*TILE, b*TILE:(b+1)*TILE, c*TILE:(c+1)*TILE] = v
        for (a, b, c), leaf in list(self._leaves.items()):
            padded[a*TILE:(a+1)*TILE, b*TILE:(b+1)*TILE, c*TILE:(c+1)*TILE] = leaf
        return padded[:self.shape[0], :self.shape[1], :self.shape[2]].copy()

    @property
    def leaf_count(self) -> int:
        return len(self._leaves)

    # ------------------------------------------------------------------
    # Interpolation
    # ------------------------------------------------------------------
    def _interp(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64).reshape(-1, 3)
        return trilinear_gather(self._gather, self.shape, X)

    def get_interpolated_cell(self, point) -> float:
        """Trilinear sample at one index-space point; points outside clamp to the border."""
        with self._read_lock:
            return float(self._interp(np.asarray(point, dtype=np.float64).reshape(1, 3))[0])

    def get_interpolated_cells(self, points: np.ndarray) -> np.ndarray:
        with self._read_lock:
            return self._interp(points)

    def sample(self, points_world: np.ndarray, voxel_size: float) -> np.ndarray:
        """Trilinear sample at unit-domain points for a grid of cell width ``voxel_size``."""
        X = np.asarray(points_world, dtype=np.float64).reshape(-1, 3) / voxel_size - 0.5
        return self.get_interpolated_cells(X)

    def sample_velocity(self, points: np.ndarray) -> np.ndarray:
        """Attached particle velocity at index-space points (zeros if none was attached)."""
        X = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if self.velocity is None:
            return np.zeros_like(X)
        return np.stack([trilinear(self.velocity[..., a], X) for a in range(3)], axis=-1)

    def _gradient(self, X: np.ndarray, eps: float) -> np.ndarray:
        g = np.zeros_like(X)
        for a in range(3):
            e = np.zeros(3); e[a] = eps
            g[:, a] = (self._interp(X + e) - self._interp(X - e)) / (2.0 * eps)
        return g

    # ------------------------------------------------------------------
    # Boolean ops
    # ------------------------------------------------------------------
    def merge(self, other: "LevelSet") -> "LevelSet":
        """Union with ``other``: voxelwise minimum, in place."""
        if other.shape != self.shape:
            raise ValueError(f"cannot merge level sets of shape {self.shape} and {other.shape}")
        theirs = other.to_dense()
        with self._write_lock:
            merged = np.minimum(self.to_dense(), theirs)
            self.background = max(self.background, other.background)
            self._freeze(merged)
        return self

    def copy(self) -> "LevelSet":
        out = LevelSet(self.shape, self.background)
        out._leaves = {k: v.copy() for k, v in self._leaves.items()}
        out._tiles = dict(self._tiles)
        out.velocity = None if self.velocity is None else self.velocity.copy()
        return out

    # ------------------------------------------------------------------
    # Surface queries
    # ------------------------------------------------------------------
    def has_zero_crossing(self) -> bool:
        dense = self.to_dense()
        return bool(dense.min() < 0.0 < dense.max() or np.any(dense == 0.0))

    def project_points_to_surface(
        self,
        points: np.ndarray,
        tol: float = 1e-3,
        max_iter: int = 50,
    ) -> np.ndarray:
        """Move index-space points along the field gradient onto the zero crossing.

        Damped Newton iteration ``x <- x - phi * g / |g|^2`` with step halving
        while ``|phi|`` does not decrease.  Points outside the narrow band, where
        the stored field is flat, are first walked onto the band along a
        full-domain distance (Euclidean distance transform of the inside mask).
        A field without a zero crossing returns the input unchanged; both that
        and points that still miss the surface warn with :class:`DegenerateSurface`.
        """
        X = np.array(points, dtype=np.float64).reshape(-1, 3)
        if X.shape[0] == 0:
            return X
        if not self.has_zero_crossing():
            warnings.warn("level set has no zero crossing; points left unchanged", DegenerateSurface)
            return X
        upper = np.array(self.shape, dtype=np.float64) - 1.0
        with self._read_lock:
            phi = self._interp(X)
            far = np.abs(phi) >= self.background
            if np.any(far):
                X[far] = self._march_to_band(X[far])
                phi[far] = self._interp(X[far])
            active = np.abs(phi) >= tol
            for _ in range(max_iter):
                if not np.any(active):
                    break
                idx = np.nonzero(active)[0]
                g = self._gradient(X[idx], 1e-4)
                g2 = np.sum(g * g, axis=1)
                flat = g2 < 1e-12
                active[idx[flat]] = False
                idx = idx[~flat]; g = g[~flat]; g2 = g2[~flat]
                if idx.size == 0:
                    break
                step = (phi[idx] / g2)[:, None] * g
                scale = np.ones(idx.size)
                accepted = np.zeros(idx.size, dtype=bool)
                for _ in range(8):
                    todo = ~accepted
                    Xc = np.clip(X[idx[todo]] - scale[todo, None] * step[todo], 0.0, upper)
                    pc = self._interp(Xc)
                    better = np.abs(pc) < np.abs(phi[idx[todo]])
                    sel = np.nonzero(todo)[0][better]
                    X[idx[sel]] = Xc[better]
                    phi[idx[sel]] = pc[better]
                    accepted[sel] = True
                    scale[todo] *= 0.5
                    if np.all(accepted):
                        break
                # no descent direction left for these points
                active[idx[~accepted]] = False
                active[idx] &= np.abs(phi[idx]) >= tol
        missed = int(np.count_nonzero(np.abs(phi) >= tol))
        if missed:
            warnings.warn(f"{missed} of {len(X)} points did not reach the surface", DegenerateSurface)
        return X

    def _march_to_band(self, X: np.ndarray, steps: int = 4) -> np.ndarray:
        """Step flat-region points toward the zero crossing until they enter the band."""
        if min(self.shape) < 2:
            return X
        inside = self.to_dense() < 0.0
        dist = ndimage.distance_transform_edt(~inside) - ndimage.distance_transform_edt(inside)
        grads = np.gradient(dist)
        upper = np.array(self.shape, dtype=np.float64) - 1.0
        X = X.copy()
        for _ in range(steps):
            todo = np.abs(self._interp(X)) >= self.background
            if not np.any(todo):
                break
            Xt = X[todo]
            g = np.stack([trilinear(G, Xt) for G in grads], axis=-1)
            gn = np.linalg.norm(g, axis=1)
            ok = gn > 1e-12
            if not np.any(ok):
                break
            d = trilinear(dist, Xt)
            Xt[ok] -= (d[ok] / gn[ok])[:, None] * g[ok]
            X[todo] = np.clip(Xt, 0.0, upper)
        return X

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------
    def extract_surface(self, voxel_size: Optional[float] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Zero isosurface as ``(vertices, faces, normals)``; empty when degenerate.

        Vertices are index-space unless ``voxel_size`` is given, in which case
        they are mapped to the unit domain.
        """
        from skimage.measure import marching_cubes

        dense = self.to_dense()
        empty = (np.zeros((0, 3)), np.zeros((0, 3), dtype=np.int64), np.zeros((0, 3)))
        if min(self.shape) < 2 or not (dense.min() < 0.0 < dense.max()):
            warnings.warn("level set has no zero crossing; empty surface", DegenerateSurface)
            return empty
        verts, faces, normals, _ = marching_cubes(dense, level=0.0, gradient_direction="ascent")
        if voxel_size is not None:
            verts = (verts + 0.5) * voxel_size
        return verts, faces.astype(np.int64), normals

    def write_obj_to_file(self, filename: str, voxel_size: Optional[float] = None) -> None:
        verts, faces, normals = self.extract_surface(voxel_size)
        write_obj(filename, verts, faces, normals if len(faces) else None)
        if is_enabled():
            dbg("levelset").debug(f"write_obj: {filename} verts={len(verts)} faces={len(faces)}")

    def write_volume_to_file(self, filename: str, voxel_size: Optional[float] = None) -> None:
        """Save the signed distance as point data of a VTK image (``.vtk`` legacy or ``.vti``).

        The lattice is written in index space unless ``voxel_size`` places it
        on the cell centers of the unit domain.
        """
        import pyvista as pv

        spacing = 1.0 if voxel_size is None else float(voxel_size)
        origin = 0.0 if voxel_size is None else 0.5 * spacing
        image = pv.ImageData(
            dimensions=self.shape,
            spacing=(spacing, spacing, spacing),
            origin=(origin, origin, origin),
        )
        # VTK point order is x fastest
        image.point_data["distance"] = self.to_dense().ravel(order="F")
        image.save(filename)
        if is_enabled():
            dbg("levelset").debug(f"write_volume: {filename} shape={self.shape}")


__all__ = ["LevelSet", "TILE"]
