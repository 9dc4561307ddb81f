"""Thread-safe in-memory store."""

import copy
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import NotFoundError
from ..models.credential import Credential
from ..models.migration import MigrationStatus, Project, Session
from ..models.record import MigrationRecord
from ..models.validation import ValidationResult
from .base import MigrationStore


def _matches(obj: Any, filters: Dict[str, Any]) -> bool:
    for key, expected in filters.items():
        if expected is None:
            continue
        if getattr(obj, key, None) != expected:
            return False
    return True


class InMemoryStore(MigrationStore):
    """Keeps everything in dictionaries guarded by one lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._projects: Dict[str, Project] = {}
        self._sessions: Dict[str, Session] = {}
        self._records: Dict[str, MigrationRecord] = {}
        self._validation: Dict[Tuple[str, str], ValidationResult] = {}
        self._credentials: Dict[str, Credential] = {}

    # Projects

    def create_project(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.id] = copy.deepcopy(project)
            return copy.deepcopy(project)

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._lock:
            project = self._projects.get(project_id)
            return copy.deepcopy(project) if project else None

    def update_project(self, project: Project) -> Project:
        with self._lock:
            if project.id not in self._projects:
                raise NotFoundError(f"Project not found: {project.id}")
            project.updated_at = datetime.utcnow()
            self._projects[project.id] = copy.deepcopy(project)
            return copy.deepcopy(project)

    def list_projects(self, **filters) -> List[Project]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._projects.values() if _matches(p, filters)]

    def compare_and_set_project_status(
        self,
        project_id: str,
        expected: Iterable[MigrationStatus],
        new_status: MigrationStatus,
    ) -> bool:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise NotFoundError(f"Project not found: {project_id}")
            if project.status not in set(expected):
                return False
            project.status = new_status
            project.updated_at = datetime.utcnow()
            return True

    # Sessions

    def create_session(self, session: Session) -> Session:
        with self._lock:
            self._sessions[session.id] = copy.deepcopy(session)
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def update_session(self, session: Session) -> Session:
        with self._lock:
            if session.id not in self._sessions:
                raise NotFoundError(f"Session not found: {session.id}")
            self._sessions[session.id] = copy.deepcopy(session)
            return copy.deepcopy(session)

    def list_sessions(self, **filters) -> List[Session]:
        with self._lock:
            sessions = [copy.deepcopy(s) for s in self._sessions.values() if _matches(s, filters)]
        return sorted(sessions, key=lambda s: s.created_at)

    # Records

    def add_records(self, records: Iterable[MigrationRecord]) -> int:
        count = 0
        with self._lock:
            for record in records:
                self._records[record.id] = copy.deepcopy(record)
                count += 1
        return count

    def get_record(self, record_id: str) -> Optional[MigrationRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record else None

    def update_record(self, record: MigrationRecord) -> MigrationRecord:
        with self._lock:
            if record.id not in self._records:
                raise NotFoundError(f"Record not found: {record.id}")
            self._records[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def list_records(self, **filters) -> List[MigrationRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values() if _matches(r, filters)]

    # Validation results

    def save_validation_result(self, result: ValidationResult) -> None:
        with self._lock:
            self._validation[(result.project_id, result.template_id)] = copy.deepcopy(result)

    def get_validation_result(self, project_id: str, template_id: str) -> Optional[ValidationResult]:
        with self._lock:
            result = self._validation.get((project_id, template_id))
            return copy.deepcopy(result) if result else None

    # Credentials

    def save_credential(self, credential: Credential) -> None:
        with self._lock:
            self._credentials[credential.org_id] = copy.deepcopy(credential)

    def get_credential(self, org_id: str) -> Optional[Credential]:
        with self._lock:
            credential = self._credentials.get(org_id)
            return copy.deepcopy(credential) if credential else None

    def delete_credential(self, org_id: str) -> bool:
        with self._lock:
            return self._credentials.pop(org_id, None) is not None

    def list_credentials(self) -> List[Credential]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._credentials.values()]
