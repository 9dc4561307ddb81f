"""Data loaders for target organisations."""

from .base import BaseLoader, LoadResult
from .bulk_loader import BulkLoader

__all__ = [
    "BaseLoader",
    "LoadResult",
    "BulkLoader",
]
