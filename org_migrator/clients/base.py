"""Platform client capability used by extract, load, delete and describe calls."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ..errors import format_errors
from ..models.template import LoadOperation
from .query import QuerySpec


@dataclass
class FieldDescribe:
    name: str
    type: str = "string"
    createable: bool = True
    updateable: bool = True
    nillable: bool = True
    external_id: bool = False
    relationship_name: Optional[str] = None
    reference_to: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "FieldDescribe":
        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            createable=data.get("createable", True),
            updateable=data.get("updateable", True),
            nillable=data.get("nillable", True),
            external_id=data.get("externalId", False),
            relationship_name=data.get("relationshipName"),
            reference_to=tuple(data.get("referenceTo") or ()),
        )


@dataclass
class ObjectDescribe:
    """Metadata for one object type, as seen by the acting credential."""
    name: str
    fields: Dict[str, FieldDescribe] = field(default_factory=dict)
    queryable: bool = True
    createable: bool = True
    updateable: bool = True
    deletable: bool = True

    def get_field(self, name: str) -> Optional[FieldDescribe]:
        """Case-insensitive field lookup (platform field names are case-insensitive)."""
        if name in self.fields:
            return self.fields[name]
        lowered = name.lower()
        for field_name, describe in self.fields.items():
            if field_name.lower() == lowered:
                return describe
        return None

    def has_path(self, path: str) -> bool:
        """Check a field or a relationship path such as `Account.Name`."""
        if "." not in path:
            return self.get_field(path) is not None
        root = path.split(".")[0].lower()
        return any(
            f.relationship_name and f.relationship_name.lower() == root
            for f in self.fields.values()
        )

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ObjectDescribe":
        fields_ = [FieldDescribe.from_payload(f) for f in data.get("fields", [])]
        return cls(
            name=data["name"],
            fields={f.name: f for f in fields_},
            queryable=data.get("queryable", True),
            createable=data.get("createable", True),
            updateable=data.get("updateable", True),
            deletable=data.get("deletable", True),
        )


@dataclass
class WriteResult:
    """Per-record result of a bulk write or delete."""
    success: bool
    id: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def message(self) -> Optional[str]:
        if not self.errors:
            return None
        return format_errors(self.errors)

    @property
    def error_code(self) -> Optional[str]:
        if not self.errors:
            return None
        return self.errors[0].get("statusCode") or self.errors[0].get("errorCode")

    @classmethod
    def failure(cls, message: str, code: Optional[str] = None) -> "WriteResult":
        return cls(success=False, errors=[{"statusCode": code, "message": message}])

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "WriteResult":
        return cls(
            success=bool(data.get("success")),
            id=data.get("id"),
            errors=list(data.get("errors") or []),
        )


class PlatformClient(ABC):
    """
    Authenticated access to one organisation.

    Handed out by the token manager; callers never see the token itself.
    Transport failures raise TransientApiError, AuthError or
    ConnectivityError. Record-level rejections come back as unsuccessful
    WriteResults.
    """

    def __init__(self, org_id: Optional[str] = None, token_version: int = 0):
        self.org_id = org_id
        self.token_version = token_version

    @abstractmethod
    def query(self, spec: QuerySpec) -> Iterator[Dict[str, Any]]:
        """Yield every row matching the query, following pagination."""

    @abstractmethod
    def count(self, spec: QuerySpec) -> int:
        """Number of rows matching the query."""

    @abstractmethod
    def describe(self, object_type: str) -> Optional[ObjectDescribe]:
        """Object metadata, or None when the object does not exist."""

    @abstractmethod
    def bulk_write(
        self,
        object_type: str,
        records: Sequence[Dict[str, Any]],
        operation: LoadOperation,
        batch_size: int = 200,
        external_id_field: Optional[str] = None,
    ) -> List[WriteResult]:
        """Insert, update or upsert records; one result per input record, in order."""

    @abstractmethod
    def bulk_delete(self, object_type: str, ids: Sequence[str]) -> List[WriteResult]:
        """Delete records by id; one result per input id, in order."""
