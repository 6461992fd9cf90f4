"""Glue between a detector's boxes and the embedding provider.

Detection itself happens elsewhere; this module only clamps the boxes it
hands over, crops, resizes to the model input size and scales pixels to [0, 1].
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np


@dataclass(frozen=True)
class FaceLocalization:
    """Face box in pixel coordinates (top-left / bottom-right corners)."""

    left_x: float
    left_y: float
    right_x: float
    right_y: float

    @classmethod
    def from_xywh(cls, x: float, y: float, width: float, height: float) -> "FaceLocalization":
        return cls(float(x), float(y), float(x) + float(width), float(y) + float(height))

    @property
    def width(self) -> float:
        return self.right_x - self.left_x

    @property
    def height(self) -> float:
        return self.right_y - self.left_y

    def valid_width(self, image_width: int) -> int:
        """Box width, cut so that the box does not run past the right image edge."""
        x = max(0, int(self.left_x))
        return max(0, min(int(self.right_x), int(image_width)) - x)

    def valid_height(self, image_height: int) -> int:
        y = max(0, int(self.left_y))
        return max(0, min(int(self.right_y), int(image_height)) - y)

    def clamped(self, image_shape: Tuple[int, ...]) -> Tuple[int, int, int, int]:
        """(x, y, w, h) clamped to an image of shape (h, w[, c])."""
        h, w = int(image_shape[0]), int(image_shape[1])
        x = min(max(0, int(self.left_x)), w)
        y = min(max(0, int(self.left_y)), h)
        return x, y, self.valid_width(w), self.valid_height(h)


def crop_face(image: np.ndarray, location: FaceLocalization) -> np.ndarray:
    x, y, w, h = location.clamped(image.shape)
    if w <= 0 or h <= 0:
        raise ValueError(f"Face box {location} lies outside image of shape {image.shape[:2]}")
    return image[y : y + h, x : x + w]


def resize_face(face: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """Resize to `size` = (width, height); no-op when already there."""
    w, h = int(size[0]), int(size[1])
    if face.shape[1] == w and face.shape[0] == h:
        return face
    return cv2.resize(face, (w, h), interpolation=cv2.INTER_LINEAR)


def normalize_pixels(image: np.ndarray) -> np.ndarray:
    """Scale 0..255 channel values to [0, 1] floats."""
    return np.asarray(image, dtype=np.float32) / 255.0


def prepare_face(image: np.ndarray, location: FaceLocalization, size: Tuple[int, int]) -> np.ndarray:
    """Crop + resize + normalize, ready for `Embedder.embed`."""
    return normalize_pixels(resize_face(crop_face(image, location), size))
