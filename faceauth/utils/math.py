from __future__ import annotations

from typing import Sequence

import numpy as np


def l2_normalize(vec: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """L2-normalize a vector (or 2D array row-wise) safely."""
    arr = np.asarray(vec, dtype=np.float32)
    if arr.ndim == 1:
        denom = float(np.linalg.norm(arr))
        if denom < eps:
            return arr
        return arr / denom
    if arr.ndim == 2:
        norms = np.linalg.norm(arr, axis=1, keepdims=True)
        norms = np.maximum(norms, eps)
        return arr / norms
    raise ValueError(f"Unsupported ndim={arr.ndim}")


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Euclidean distance for 1D vectors of equal length."""
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    return float(np.linalg.norm(va - vb))


def mean_descriptor(descriptors: Sequence[np.ndarray]) -> np.ndarray:
    """Per-dimension arithmetic mean of equally sized descriptors.

    Accumulates in float64 so the result matches the exact mean to well within
    float32 resolution, then returns float32 like the inputs.
    """
    if len(descriptors) == 0:
        raise ValueError("Cannot average an empty descriptor list")
    mat = np.stack([np.asarray(d, dtype=np.float64).reshape(-1) for d in descriptors], axis=0)
    return np.mean(mat, axis=0).astype(np.float32)


def point_distance(p: np.ndarray, q: np.ndarray) -> float:
    return float(np.hypot(float(p[0]) - float(q[0]), float(p[1]) - float(q[1])))
