"""Per-backend normalizers sharing one canonical output model."""
from .base import NormalizationContext, Normalizer
from .claude import ClaudeNormalizer
from .opencode import OpenCodeNormalizationContext, OpenCodeNormalizer

__all__ = [
    "ClaudeNormalizer",
    "NormalizationContext",
    "Normalizer",
    "OpenCodeNormalizationContext",
    "OpenCodeNormalizer",
]
