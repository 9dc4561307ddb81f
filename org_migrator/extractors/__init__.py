"""Data extractors for source organisations."""

from .base import BaseExtractor, ExtractionResult
from .query_extractor import QueryExtractor

__all__ = [
    "BaseExtractor",
    "ExtractionResult",
    "QueryExtractor",
]
