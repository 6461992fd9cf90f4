import io

from contextlib import redirect_stderr, redirect_stdout
from typing import Any, Dict, Protocol, Tuple

import numpy as np
import torch

from facematch.face.errors import EmbeddingExtractionError
from facematch.face.preprocess import resize_face
from facematch.utils.log import get_logger, suppress_fds
from facematch.utils.math import l2_normalize

logger = get_logger(__name__)

# 进程内模型缓存：同一进程内多次构造 embedder（例如 pytest 多用例）不重复加载模型。
# 缓存 key 包含会影响输出的参数（model name / providers / ctx_id / det_size）。
_FACEAPP_CACHE: Dict[Tuple, Any] = {}


class Embedder(Protocol):
    """Anything that maps a normalized face image to an embedding.

    `embed` receives a (H, W, 3) float image of size `input_size` = (width,
    height) with pixel values already scaled to [0, 1], and must be
    deterministic for identical input.
    """

    input_size: Tuple[int, int]

    def embed(self, image: np.ndarray) -> np.ndarray: ...


def resolve_device(device: str = "auto") -> str:
    """'auto' picks 'gpu' when CUDA is available, otherwise 'cpu'."""
    if device == "auto":
        try:
            return "gpu" if torch.cuda.is_available() else "cpu"
        except Exception:
            return "cpu"
    if device not in ("cpu", "gpu"):
        raise ValueError(f"Unknown device {device!r}, expected auto/cpu/gpu")
    return device


def to_model_pixels(image: np.ndarray) -> np.ndarray:
    """[0, 1] float image -> uint8 BGR, the layout InsightFace's ONNX models take."""
    arr = np.asarray(image, dtype=np.float32)
    if arr.size == 0:
        raise EmbeddingExtractionError("Empty face image")
    if arr.ndim != 3 or arr.shape[2] != 3:
        raise EmbeddingExtractionError(f"Expected an (H, W, 3) image, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)) or float(arr.min()) < 0.0 or float(arr.max()) > 1.0:
        raise EmbeddingExtractionError("Pixel values must be normalized to [0, 1] (divide by 255 first)")
    return np.clip(np.rint(arr * 255.0), 0, 255).astype(np.uint8)


class InsightFaceEmbedder:
    """ArcFace embeddings from the InsightFace recognition model (buffalo_l by default).

    Only the recognition model is used for embedding; detection is loaded
    because FaceAnalysis needs it to prepare, but faces arrive pre-cropped.
    """

    def __init__(self, model_name: str = "buffalo_l", device: str = "auto", det_size: int = 640):
        self.model_name = model_name
        self.device = resolve_device(device)
        self.det_size: Tuple[int, int] = (int(det_size), int(det_size))

        if self.device == "gpu":
            self.providers = ["CUDAExecutionProvider"]
            self.ctx_id = 0
        else:
            self.providers = ["CPUExecutionProvider"]
            self.ctx_id = -1

        self._app = self._load_app()
        self._rec = self._app.models.get("recognition")
        if self._rec is None:
            raise RuntimeError(f"InsightFace model pack {model_name!r} has no recognition model")
        self.input_size: Tuple[int, int] = tuple(int(x) for x in self._rec.input_size)

    def _load_app(self):
        key = (str(self.model_name), tuple(self.providers), int(self.ctx_id), self.det_size)
        cached = _FACEAPP_CACHE.get(key)
        if cached is not None:
            return cached

        # 懒加载：只有真正需要模型时才引入 insightface / onnxruntime
        from insightface.app import FaceAnalysis

        try:
            with suppress_fds():
                app = FaceAnalysis(
                    name=self.model_name,
                    providers=self.providers,
                    allowed_modules=["detection", "recognition"],
                )
            buf = io.StringIO()
            with redirect_stdout(buf), redirect_stderr(buf):
                app.prepare(ctx_id=self.ctx_id, det_size=self.det_size)
        except Exception as e:
            logger.error(f"Failed to load InsightFace model {self.model_name}: {e}")
            raise

        logger.info(f"Loaded InsightFace model: {self.model_name} ({self.device})")
        _FACEAPP_CACHE[key] = app
        return app

    def embed(self, image: np.ndarray) -> np.ndarray:
        pixels = resize_face(to_model_pixels(image), self.input_size)
        try:
            feat = self._rec.get_feat(pixels)
        except Exception as e:
            raise EmbeddingExtractionError(f"recognition model failed: {e}") from e
        emb = np.asarray(feat, dtype=np.float32).reshape(-1)
        if emb.size == 0 or not np.all(np.isfinite(emb)):
            raise EmbeddingExtractionError("recognition model produced an invalid embedding")
        return l2_normalize(emb)

    __call__ = embed
