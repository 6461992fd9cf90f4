from __future__ import annotations

import numpy as np


def as_vector(vec) -> np.ndarray:
    """Coerce anything array-like into a flat float64 vector."""
    return np.asarray(vec, dtype=np.float64).reshape(-1)


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
    return float(np.linalg.norm(as_vector(a) - as_vector(b)))


def cosine_similarity(a: np.ndarray, b: np.ndarray, eps: float = 1e-12) -> float:
    """Cosine similarity for 1D vectors."""
    va = as_vector(a)
    vb = as_vector(b)
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na < eps or nb < eps:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))
