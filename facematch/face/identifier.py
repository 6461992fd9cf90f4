from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from facematch.face.embedder import Embedder
from facematch.face.gallery import Gallery, build_gallery
from facematch.face.matcher import DEFAULT_THRESHOLD, Matcher, MatcherConfig, Prediction
from facematch.face.preprocess import FaceLocalization, normalize_pixels, prepare_face, resize_face
from facematch.face.reference import iter_reference_images
from facematch.utils.log import get_logger

logger = get_logger(__name__)


@dataclass
class IdentifierConfig:
    threshold: float = DEFAULT_THRESHOLD
    top_k: int = 3
    metric: str = "euclidean"
    # Log and skip reference images the embedder fails on instead of aborting enrollment.
    skip_failed_references: bool = False


class FaceIdentifier:
    """Embedder + gallery + matcher wired together.

    The gallery is owned by the instance; enrolling appends to it, so
    identification running in other threads keeps seeing a consistent
    snapshot.
    """

    def __init__(self, embedder: Embedder, config: Optional[IdentifierConfig] = None, gallery: Optional[Gallery] = None):
        self.embedder = embedder
        self.config = config or IdentifierConfig()
        self.gallery = gallery if gallery is not None else Gallery()
        self.matcher = Matcher(
            MatcherConfig(threshold=self.config.threshold, top_k=self.config.top_k, metric=self.config.metric)
        )

    @property
    def input_size(self) -> Tuple[int, int]:
        return tuple(self.embedder.input_size)

    def enroll_images(self, pairs: Iterable[Tuple[str, np.ndarray]]) -> int:
        """Add (label, normalized image) reference samples; returns how many were added."""
        before = len(self.gallery)
        build_gallery(
            pairs,
            self.embedder.embed,
            gallery=self.gallery,
            skip_failures=self.config.skip_failed_references,
        )
        return len(self.gallery) - before

    def enroll(self, reference_dir) -> int:
        """Enroll every image of a one-directory-per-label tree."""
        logger.info(f"Building gallery from {reference_dir}")
        return self.enroll_images(iter_reference_images(reference_dir, self.input_size))

    def embed_face(self, image: np.ndarray, location: FaceLocalization) -> np.ndarray:
        return self.embedder.embed(prepare_face(image, location, self.input_size))

    def embed_faces(self, image: np.ndarray, locations: Iterable[FaceLocalization]) -> List[np.ndarray]:
        return [self.embed_face(image, loc) for loc in locations]

    def identify_face(
        self,
        face_image: np.ndarray,
        location=None,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> Optional[Prediction]:
        """Identify one already-cropped face image (raw 0..255 pixels)."""
        face = normalize_pixels(resize_face(face_image, self.input_size))
        embedding = self.embedder.embed(face)
        return self.matcher.identify(embedding, self.gallery, threshold=threshold, top_k=top_k, location=location)

    def identify_faces(
        self,
        image: np.ndarray,
        locations: Iterable[FaceLocalization],
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[Optional[Prediction]]:
        """One result per box, in box order; None where nobody matched."""
        locations = list(locations)
        embeddings = self.embed_faces(image, locations)
        return self.matcher.identify_all(
            zip(embeddings, locations), self.gallery, threshold=threshold, top_k=top_k
        )

    def gallery_info(self) -> Dict:
        """获取图库信息"""
        return {
            "total_labels": len(self.gallery.labels),
            "total_entries": len(self.gallery),
            "labels": self.gallery.labels,
            "dim": self.gallery.dim,
            "threshold": self.config.threshold,
            "top_k": self.config.top_k,
            "metric": self.config.metric,
            "stats": self.gallery.stats,
        }
