"""Similarity scorers.

All scorers follow one convention: higher score = more similar. Thresholds
are tuned per scorer; the Euclidean and cosine scores live on different scales.
"""
from __future__ import annotations

from typing import Dict, Type

import numpy as np

from facematch.face.errors import DimensionMismatchError
from facematch.utils.math import as_vector, cosine_similarity, euclidean_distance


def check_dims(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(expected=a.shape[0], actual=b.shape[0])


class Scorer:
    name = "base"

    def score(self, a, b) -> float:
        raise NotImplementedError

    def score_many(self, query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
        """Score `query` (D,) against every row of `matrix` (N, D)."""
        raise NotImplementedError

    def __call__(self, a, b) -> float:
        return self.score(a, b)

    def _prepare_many(self, query, matrix):
        q = as_vector(query)
        mat = np.asarray(matrix, dtype=np.float64)
        if mat.ndim == 1:
            mat = mat.reshape(1, -1) if mat.size else mat.reshape(0, q.shape[0])
        if mat.shape[0] and mat.shape[1] != q.shape[0]:
            raise DimensionMismatchError(expected=mat.shape[1], actual=q.shape[0], what="query")
        return q, mat


class EuclideanScorer(Scorer):
    """score = 1 - ||a - b||; identical vectors score 1.0, can go negative."""

    name = "euclidean"

    def score(self, a, b) -> float:
        va, vb = as_vector(a), as_vector(b)
        check_dims(va, vb)
        return 1.0 - euclidean_distance(va, vb)

    def score_many(self, query, matrix) -> np.ndarray:
        q, mat = self._prepare_many(query, matrix)
        if mat.shape[0] == 0:
            return np.zeros((0,), dtype=np.float64)
        return 1.0 - np.linalg.norm(mat - q, axis=1)


class CosineScorer(Scorer):
    """Cosine similarity in [-1, 1]. Zero vectors score 0.0."""

    name = "cosine"

    def score(self, a, b) -> float:
        va, vb = as_vector(a), as_vector(b)
        check_dims(va, vb)
        return cosine_similarity(va, vb)

    def score_many(self, query, matrix, eps: float = 1e-12) -> np.ndarray:
        q, mat = self._prepare_many(query, matrix)
        sims = np.zeros((mat.shape[0],), dtype=np.float64)
        qn = float(np.linalg.norm(q))
        if mat.shape[0] == 0 or qn < eps:
            return sims
        norms = np.linalg.norm(mat, axis=1)
        ok = norms >= eps
        sims[ok] = (mat[ok] @ q) / (norms[ok] * qn)
        return sims


_SCORERS: Dict[str, Type[Scorer]] = {
    EuclideanScorer.name: EuclideanScorer,
    CosineScorer.name: CosineScorer,
}


def get_scorer(name: str) -> Scorer:
    try:
        return _SCORERS[str(name).lower()]()
    except KeyError:
        raise ValueError(f"Unknown metric {name!r}, expected one of {sorted(_SCORERS)}") from None
