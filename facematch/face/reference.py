from __future__ import annotations

from pathlib import Path
from typing import Iterator, List, Tuple

import cv2
import numpy as np

from facematch.face.preprocess import normalize_pixels, resize_face
from facematch.utils.log import get_logger

logger = get_logger(__name__)

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png")


def list_reference_images(root) -> List[Tuple[str, Path]]:
    """(label, path) for every image under root/<label>/, sorted by label then file name."""
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Reference directory not found: {root}")

    out: List[Tuple[str, Path]] = []
    for person_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        # 不区分大小写的后缀匹配，避免漏掉 0001.JPG 这类大写扩展名
        image_files = sorted(
            p for p in person_dir.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
        )
        if not image_files:
            logger.warning(f"{person_dir.name}: no reference images")
            continue
        logger.info(f"{person_dir.name}: {len(image_files)} reference images")
        out.extend((person_dir.name, p) for p in image_files)
    return out


def iter_reference_images(root, size: Tuple[int, int]) -> Iterator[Tuple[str, np.ndarray]]:
    """Yield (label, image) with each image resized to `size` and scaled to [0, 1].

    Reference photos are expected to be face crops already. Files OpenCV
    cannot decode are logged and skipped.
    """
    for label, path in list_reference_images(root):
        image = cv2.imread(str(path))
        if image is None:
            logger.warning(f"Cannot read image: {path}")
            continue
        yield label, normalize_pixels(resize_face(image, size))
