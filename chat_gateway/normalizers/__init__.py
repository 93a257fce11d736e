"""Per-provider-family stream normalizers."""

from .base import ChunkNormalizer, classify_status
from .registry import get_normalizer, infer_provider, register, select_normalizer

__all__ = [
    "ChunkNormalizer",
    "classify_status",
    "get_normalizer",
    "infer_provider",
    "register",
    "select_normalizer",
]
