from __future__ import annotations

import logging

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from facematch.face.errors import DimensionMismatchError
from facematch.face.gallery import Gallery, GallerySnapshot
from facematch.face.scoring import Scorer, get_scorer
from facematch.utils.log import get_logger
from facematch.utils.math import as_vector

logger = get_logger(__name__)

GalleryLike = Union[Gallery, GallerySnapshot]

# 1 - L2 distance on L2-normalized ArcFace embeddings; about cosine 0.4.
DEFAULT_THRESHOLD = -0.1


@dataclass
class MatcherConfig:
    # Minimum aggregate score for a label to be reported (inclusive).
    threshold: float = DEFAULT_THRESHOLD
    # Average the K best reference samples of each label.
    top_k: int = 3
    # Scores are quantized to this many decimals before top-K selection.
    precision: int = 4
    # "euclidean" (1 - L2 distance) or "cosine"; thresholds are not portable between them.
    metric: str = "euclidean"


@dataclass(frozen=True)
class Prediction:
    label: str
    score: float
    # Opaque reference back to the face region (e.g. a FaceLocalization).
    location: Any = None


class Matcher:
    """Per-label top-K mean matcher.

    For a query embedding every gallery entry is scored, scores are grouped by
    label, each label keeps the mean of its K best (quantized) scores, labels
    below the threshold are dropped and the rest ranked by score descending,
    ties going to the lexically smaller label.
    """

    def __init__(self, config: Optional[MatcherConfig] = None, scorer: Optional[Scorer] = None):
        self.config = config or MatcherConfig()
        self.scorer = scorer if scorer is not None else get_scorer(self.config.metric)
        self._scale = 10 ** int(self.config.precision)

    def _params(self, threshold: Optional[float], top_k: Optional[int]) -> Tuple[float, int]:
        thr = float(self.config.threshold if threshold is None else threshold)
        k = int(self.config.top_k if top_k is None else top_k)
        if k < 1:
            raise ValueError(f"top_k must be >= 1, got {k}")
        return thr, k

    @staticmethod
    def _snapshot(gallery: GalleryLike) -> GallerySnapshot:
        if isinstance(gallery, GallerySnapshot):
            return gallery
        return gallery.snapshot()

    @staticmethod
    def _check_query(query, snap: GallerySnapshot) -> np.ndarray:
        q = as_vector(query)
        if snap.dim is not None and q.shape[0] != snap.dim:
            raise DimensionMismatchError(expected=snap.dim, actual=q.shape[0], what="query")
        if not np.all(np.isfinite(q)):
            raise ValueError("query embedding contains NaN or inf")
        return q

    def quantize(self, scores: np.ndarray) -> List[int]:
        """Round scores to the nearest 1/scale (half to even) as integer units."""
        # Python ints: int64 would saturate for scores far below -9e14.
        return [int(u) for u in np.rint(np.asarray(scores, dtype=np.float64) * self._scale)]

    def aggregate(self, labels: Sequence[str], scores: np.ndarray, top_k: int) -> Dict[str, float]:
        """Mean of the `top_k` best quantized scores per label."""
        # Pass 1: label -> quantized scores, labels in first-seen order.
        buckets: Dict[str, List[int]] = {}
        for label, units in zip(labels, self.quantize(scores)):
            buckets.setdefault(label, []).append(units)

        # Pass 2: reduce each bucket to one aggregate.
        out: Dict[str, float] = {}
        for label, units in buckets.items():
            best = sorted(units, reverse=True)[:top_k]
            out[label] = sum(best) / len(best) / self._scale
        return out

    def _rank_snapshot(
        self, q: np.ndarray, snap: GallerySnapshot, threshold: float, top_k: int, location: Any
    ) -> List[Prediction]:
        if len(snap) == 0:
            return []
        scores = self.scorer.score_many(q, snap.matrix)
        aggregates = self.aggregate(snap.labels, scores, top_k)
        candidates = [(label, score) for label, score in aggregates.items() if score >= threshold]
        candidates.sort(key=lambda item: (-item[1], item[0]))
        return [Prediction(label, float(score), location) for label, score in candidates]

    def rank(
        self,
        query,
        gallery: GalleryLike,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
        location: Any = None,
    ) -> List[Prediction]:
        """All labels passing the threshold, best first."""
        thr, k = self._params(threshold, top_k)
        snap = self._snapshot(gallery)
        q = self._check_query(query, snap)
        return self._rank_snapshot(q, snap, thr, k, location)

    def identify(
        self,
        query,
        gallery: GalleryLike,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
        location: Any = None,
    ) -> Optional[Prediction]:
        """Return the best label as a `Prediction`, or None when nothing passes the threshold."""
        ranked = self.rank(query, gallery, threshold=threshold, top_k=top_k, location=location)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"identify: candidates={[(p.label, p.score) for p in ranked[:5]]}")
        return ranked[0] if ranked else None

    def identify_all(
        self,
        queries: Iterable[Tuple[Any, Any]],
        gallery: GalleryLike,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[Optional[Prediction]]:
        """Identify each (embedding, location) pair independently, preserving order.

        All queries are validated against one gallery snapshot before any of
        them is scored; an invalid query fails the whole batch.
        """
        thr, k = self._params(threshold, top_k)
        snap = self._snapshot(gallery)
        checked = [(self._check_query(emb, snap), loc) for emb, loc in queries]

        results: List[Optional[Prediction]] = []
        for q, loc in checked:
            ranked = self._rank_snapshot(q, snap, thr, k, loc)
            results.append(ranked[0] if ranked else None)
        return results


def identify(
    query,
    gallery: GalleryLike,
    threshold: float,
    top_k: int,
    location: Any = None,
    scorer: Optional[Scorer] = None,
) -> Optional[Prediction]:
    return Matcher(MatcherConfig(threshold=threshold, top_k=top_k), scorer=scorer).identify(
        query, gallery, location=location
    )


def identify_all(
    queries: Iterable[Tuple[Any, Any]],
    gallery: GalleryLike,
    threshold: float,
    top_k: int,
    scorer: Optional[Scorer] = None,
) -> List[Optional[Prediction]]:
    return Matcher(MatcherConfig(threshold=threshold, top_k=top_k), scorer=scorer).identify_all(queries, gallery)
