"""Smoothing kernels for particle/grid transfers.

Both take squared distances so the hot loops never call ``sqrt``.
"""
from __future__ import annotations

import numpy as np


def smooth(r2: np.ndarray, h: float) -> np.ndarray:
    """Compact quadratic falloff ``max(1 - r^2/h^2, 0)`` used for density."""
    return np.maximum(1.0 - np.asarray(r2) / (h * h), 0.0)


def sharp(r2: np.ndarray, h: float) -> np.ndarray:
    """Singular falloff ``max(h^2/r^2 - 1, 0)``; favours the closest particles on splat."""
    return np.maximum(h * h / np.maximum(np.asarray(r2), 1.0e-5) - 1.0, 0.0)


__all__ = ["smooth", "sharp"]
