"""Platform clients."""

from .base import FieldDescribe, ObjectDescribe, PlatformClient, WriteResult
from .query import QuerySpec, selection_queries
from .rest_client import RestPlatformClient

__all__ = [
    "FieldDescribe",
    "ObjectDescribe",
    "PlatformClient",
    "WriteResult",
    "QuerySpec",
    "selection_queries",
    "RestPlatformClient",
]
