"""Migration execution models: projects, sessions and step progress."""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class MigrationStatus(str, Enum):
    """Status of a project and of each of its sessions."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# A project may start a new session from any of these
RESTARTABLE_STATUSES = frozenset({
    MigrationStatus.PENDING,
    MigrationStatus.COMPLETED,
    MigrationStatus.FAILED,
    MigrationStatus.CANCELLED,
})


class StepState(str, Enum):
    """Sub-state of a step within a running session."""
    QUEUED = "queued"
    EXTRACTING = "extracting"
    TRANSFORMING = "transforming"
    LOADING = "loading"
    DONE = "done"
    STEP_FAILED = "step_failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_STEP_STATES = frozenset({
    StepState.DONE,
    StepState.STEP_FAILED,
    StepState.SKIPPED,
    StepState.CANCELLED,
})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Project:
    """A user-initiated migration between a source and a target organisation."""
    name: str
    source_org_id: str
    target_org_id: str
    template_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MigrationStatus = MigrationStatus.PENDING
    selection: Dict[str, List[str]] = field(default_factory=dict)  # Object type -> source ids
    latest_session_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source_org_id": self.source_org_id,
            "target_org_id": self.target_org_id,
            "template_id": self.template_id,
            "status": self.status.value,
            "selection": self.selection,
            "latest_session_id": self.latest_session_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class StepProgress:
    """Progress of a single step in a session."""
    name: str
    order: int = 0
    object_type: str = ""
    state: StepState = StepState.QUEUED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    skipped_records: int = 0
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def processed_records(self) -> int:
        return self.successful_records + self.failed_records + self.skipped_records

    @property
    def failure_ratio(self) -> float:
        if self.total_records == 0:
            return 0.0
        return self.failed_records / self.total_records

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STEP_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "order": self.order,
            "object_type": self.object_type,
            "state": self.state.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "total_records": self.total_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "skipped_records": self.skipped_records,
            "error": self.error,
            "warnings": self.warnings,
        }


@dataclass
class Session:
    """One execution attempt of a project."""
    project_id: str
    template_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MigrationStatus = MigrationStatus.PENDING

    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Steps in execution order
    steps: List[StepProgress] = field(default_factory=list)
    current_step: Optional[str] = None

    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    skipped_records: int = 0

    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "template_id": self.template_id,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "steps": [s.to_dict() for s in self.steps],
            "current_step": self.current_step,
            "total_records": self.total_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "skipped_records": self.skipped_records,
            "error": self.error,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add_step(self, name: str, order: int, object_type: str) -> StepProgress:
        """Add a step to the session."""
        step = StepProgress(name=name, order=order, object_type=object_type)
        self.steps.append(step)
        return step

    def get_step(self, name: str) -> Optional[StepProgress]:
        """Get a step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def update_totals(self) -> None:
        """Update aggregate counters from steps."""
        self.total_records = sum(s.total_records for s in self.steps)
        self.successful_records = sum(s.successful_records for s in self.steps)
        self.failed_records = sum(s.failed_records for s in self.steps)
        self.skipped_records = sum(s.skipped_records for s in self.steps)


@dataclass
class ProgressSnapshot:
    """Point-in-time view of a session, suitable for polling."""
    session_id: str
    project_id: str
    status: MigrationStatus
    current_step_index: Optional[int]
    current_step_name: Optional[str]
    total_steps: int
    total_records: int
    successful_records: int
    failed_records: int
    skipped_records: int
    started_at: Optional[datetime]
    estimated_completion: Optional[datetime]
    steps: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "current_step_index": self.current_step_index,
            "current_step_name": self.current_step_name,
            "total_steps": self.total_steps,
            "total_records": self.total_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "skipped_records": self.skipped_records,
            "started_at": _iso(self.started_at),
            "estimated_completion": _iso(self.estimated_completion),
            "steps": self.steps,
        }


class IdMap:
    """
    Source id -> target id table owned by a single session.

    Entries are keyed by step name so a lookup always resolves through the
    step that actually loaded the parent record.
    """

    def __init__(self):
        self._maps: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def record(self, step_name: str, source_id: str, target_id: str) -> None:
        with self._lock:
            self._maps.setdefault(step_name, {})[source_id] = target_id

    def resolve(self, step_name: str, source_id: str) -> Optional[str]:
        with self._lock:
            return self._maps.get(step_name, {}).get(source_id)

    def for_step(self, step_name: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._maps.get(step_name, {}))

    def __len__(self) -> int:
        with self._lock:
            return sum(len(m) for m in self._maps.values())
