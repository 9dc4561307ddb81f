"""Storage backends for migration state."""

from .base import MigrationStore
from .memory import InMemoryStore

__all__ = [
    "MigrationStore",
    "InMemoryStore",
]
