"""Face identification building blocks (gallery/scoring/matcher).

The matcher only sees numpy vectors; the embedding model and image glue live
in `embedder`, `preprocess` and `reference` so they can be swapped out.
"""
from __future__ import annotations
