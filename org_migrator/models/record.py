"""Record-level models for extracted rows, transformed records and outcomes."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..errors import DataError, ErrorKind


class RecordStatus(str, Enum):
    """Outcome of one migrated row in one step."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# SUCCESS -> SKIPPED is the rollback transition; everything else only moves forward
ALLOWED_TRANSITIONS = {
    RecordStatus.PENDING: frozenset({RecordStatus.SUCCESS, RecordStatus.FAILED, RecordStatus.SKIPPED}),
    RecordStatus.SUCCESS: frozenset({RecordStatus.SKIPPED}),
    RecordStatus.FAILED: frozenset(),
    RecordStatus.SKIPPED: frozenset(),
}


@dataclass
class SourceRow:
    """A row extracted from the source, tagged with the object type it belongs to."""
    object_type: str
    source_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    extracted_at: datetime = field(default_factory=datetime.utcnow)

    def get(self, path: str) -> Any:
        """Get a field value using dot notation for relationship fields."""
        value: Any = self.fields
        for part in path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return None
        return value

    @classmethod
    def from_platform(
        cls,
        object_type: str,
        raw: Dict[str, Any],
        declared_fields: Iterable[str],
    ) -> "SourceRow":
        """
        Build a row from a platform query result.

        Only the declared fields (and relationship roots of dotted paths) are
        kept; the platform's `attributes` envelope is dropped.

        Raises:
            DataError: if the row has no Id
        """
        source_id = raw.get("Id")
        if not source_id:
            raise DataError(f"{object_type} row returned without an Id")

        roots = {name.split(".")[0] for name in declared_fields}
        roots.add("Id")
        data = {key: value for key, value in raw.items() if key in roots}
        return cls(object_type=object_type, source_id=str(source_id), fields=data)


@dataclass
class TransformedRecord:
    """A record ready to be written to the target."""
    source_id: str
    object_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class MigrationResult:
    """Result of loading one record."""
    record_id: str  # Source id of the row
    success: bool
    target_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    retry_count: int = 0


@dataclass
class MigrationRecord:
    """Persisted outcome of one row in one step of a session."""
    session_id: str
    step_name: str
    object_type: str
    source_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    target_id: Optional[str] = None
    status: RecordStatus = RecordStatus.PENDING
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def can_transition(self, status: RecordStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, status: RecordStatus, error_message: Optional[str] = None) -> None:
        """
        Move the record to a new status.

        Raises:
            ValueError: if the transition is not allowed
        """
        if not self.can_transition(status):
            raise ValueError(
                f"Record {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if error_message is not None:
            self.error_message = error_message
        self.updated_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "step_name": self.step_name,
            "object_type": self.object_type,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "status": self.status.value,
            "error_message": self.error_message,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class RollbackResult:
    """Aggregate outcome of deleting previously created target records."""
    success: bool = True
    deleted_records: int = 0
    failed_deletions: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def add_failure(self, record_id: str, error: str) -> None:
        self.failed_deletions += 1
        self.success = False
        self.errors.append({"record_id": record_id, "error": error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "deleted_records": self.deleted_records,
            "failed_deletions": self.failed_deletions,
            "errors": self.errors,
        }
