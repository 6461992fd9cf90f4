from __future__ import annotations

from typing import Optional


class FaceMatchError(Exception):
    """Base class for errors raised by the matching engine."""


class DimensionMismatchError(FaceMatchError, ValueError):
    """Two embeddings that must be compared have different lengths."""

    def __init__(self, expected: int, actual: int, what: str = "embedding"):
        self.expected = int(expected)
        self.actual = int(actual)
        super().__init__(f"{what} has dimension {self.actual}, expected {self.expected}")


class EmbeddingExtractionError(FaceMatchError, RuntimeError):
    """The embedding provider failed for one image."""

    def __init__(self, message: str, label: Optional[str] = None):
        self.label = label
        if label is not None:
            message = f"[{label}] {message}"
        super().__init__(message)
