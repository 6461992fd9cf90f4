from __future__ import annotations

import threading

from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from facematch.face.errors import DimensionMismatchError, EmbeddingExtractionError
from facematch.utils.log import get_logger
from facematch.utils.math import as_vector

logger = get_logger(__name__)


@dataclass
class GalleryConfig:
    # Fix the embedding dimensionality up front; None = take it from the first entry.
    dim: Optional[int] = None


@dataclass(frozen=True, eq=False)
class LabelledEmbedding:
    """One reference sample for one identity."""

    label: str
    embedding: np.ndarray

    @classmethod
    def create(cls, label, embedding) -> "LabelledEmbedding":
        vec = as_vector(embedding).copy()
        vec.flags.writeable = False
        return cls(str(label), vec)

    @property
    def dim(self) -> int:
        return int(self.embedding.shape[0])


@dataclass(frozen=True, eq=False)
class GallerySnapshot:
    """Immutable view of a gallery at one point in time.

    `matrix` stacks every embedding row-wise in insertion order, so row i
    belongs to `entries[i]`.
    """

    entries: Tuple[LabelledEmbedding, ...] = ()
    matrix: np.ndarray = field(default_factory=lambda: np.zeros((0, 0), dtype=np.float64))
    dim: Optional[int] = None

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(e.label for e in self.entries)

    def appended(self, new_entries: List[LabelledEmbedding]) -> "GallerySnapshot":
        if not new_entries:
            return self
        dim = self.dim if self.dim is not None else new_entries[0].dim
        rows = np.stack([e.embedding for e in new_entries], axis=0)
        matrix = rows if len(self.entries) == 0 else np.concatenate([self.matrix, rows], axis=0)
        matrix = np.ascontiguousarray(matrix, dtype=np.float64)
        matrix.flags.writeable = False
        return GallerySnapshot(self.entries + tuple(new_entries), matrix, dim)


class Gallery:
    """Append-only collection of labelled embeddings.

    Several entries may share a label (multiple reference samples per person).
    Appends are copy-on-write: a writer builds a new `GallerySnapshot` under a
    lock and swaps it in, so a reader holding `snapshot()` never observes a
    partially applied append.
    """

    def __init__(self, entries: Iterable[Tuple[str, np.ndarray]] = (), config: Optional[GalleryConfig] = None):
        self.config = config or GalleryConfig()
        self._lock = threading.Lock()
        self._snapshot = GallerySnapshot(dim=self.config.dim)
        pairs = list(entries)
        if pairs:
            self.extend(pairs)

    def snapshot(self) -> GallerySnapshot:
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)

    def __iter__(self) -> Iterator[LabelledEmbedding]:
        return iter(self._snapshot.entries)

    def __bool__(self) -> bool:
        return len(self._snapshot) > 0

    @property
    def dim(self) -> Optional[int]:
        return self._snapshot.dim

    @property
    def labels(self) -> List[str]:
        """Distinct labels in first-seen order."""
        return list(dict.fromkeys(self._snapshot.labels))

    @property
    def stats(self) -> Dict[str, dict]:
        counts = Counter(self._snapshot.labels)
        return {label: {"count": int(counts[label])} for label in self.labels}

    def append(self, label: str, embedding) -> LabelledEmbedding:
        return self.extend([(label, embedding)])[0]

    def extend(self, pairs: Iterable[Tuple[str, np.ndarray]]) -> List[LabelledEmbedding]:
        """Append several entries atomically: either all of them become visible or none."""
        new_entries = [LabelledEmbedding.create(label, emb) for label, emb in pairs]
        if not new_entries:
            return []
        with self._lock:
            current = self._snapshot
            dim = current.dim if current.dim is not None else new_entries[0].dim
            for entry in new_entries:
                if entry.dim != dim:
                    raise DimensionMismatchError(expected=dim, actual=entry.dim, what=f"embedding for {entry.label!r}")
                if not np.all(np.isfinite(entry.embedding)):
                    raise ValueError(f"embedding for {entry.label!r} contains NaN or inf")
            self._snapshot = current.appended(new_entries)
        return new_entries


def _embed_one(embed, label: str, image) -> np.ndarray:
    try:
        embedding = embed(image)
    except EmbeddingExtractionError:
        raise
    except Exception as e:
        raise EmbeddingExtractionError(f"embedding failed: {e}", label=label) from e
    if embedding is None:
        raise EmbeddingExtractionError("embedding provider returned nothing", label=label)
    return embedding


def build_gallery(
    reference_set: Iterable[Tuple[str, np.ndarray]],
    embed: Callable[[np.ndarray], np.ndarray],
    gallery: Optional[Gallery] = None,
    skip_failures: bool = False,
) -> Gallery:
    """Embed every (label, image) pair and append it to a gallery.

    A failing `embed` call surfaces as `EmbeddingExtractionError`. With
    `skip_failures=True` the failure is logged and that image left out;
    otherwise the error aborts the build. Nothing is retried.
    """
    gallery = gallery if gallery is not None else Gallery()

    total_images = 0
    added: Counter = Counter()

    for label, image in reference_set:
        label = str(label)
        total_images += 1
        try:
            embedding = _embed_one(embed, label, image)
        except EmbeddingExtractionError as e:
            if not skip_failures:
                logger.error(f"Gallery build aborted: {e}")
                raise
            logger.warning(f"Skipping reference image: {e}")
            continue

        entry = gallery.append(label, embedding)
        added[label] += 1
        logger.debug(f"  {label}: sample #{added[label]} (dim={entry.dim})")

    for label, count in added.items():
        logger.info(f"{label}: {count} reference embeddings")
    logger.info(
        f"Gallery built: {len(added)} labels, {sum(added.values())}/{total_images} images, {len(gallery)} entries total"
    )
    return gallery
