"""Durable store interface for projects, sessions, records, validation results and credentials."""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from ..models.credential import Credential
from ..models.migration import MigrationStatus, Project, Session
from ..models.record import MigrationRecord
from ..models.validation import ValidationResult


class MigrationStore(ABC):
    """
    Persistence collaborator for the migration core.

    Implementations return copies: mutating a returned object has no effect
    until it is written back with the matching update call.
    """

    # Projects

    @abstractmethod
    def create_project(self, project: Project) -> Project: ...

    @abstractmethod
    def get_project(self, project_id: str) -> Optional[Project]: ...

    @abstractmethod
    def update_project(self, project: Project) -> Project: ...

    @abstractmethod
    def list_projects(self, **filters) -> List[Project]: ...

    @abstractmethod
    def compare_and_set_project_status(
        self,
        project_id: str,
        expected: Iterable[MigrationStatus],
        new_status: MigrationStatus,
    ) -> bool:
        """Atomically move a project to `new_status` if its status is one of `expected`."""

    # Sessions

    @abstractmethod
    def create_session(self, session: Session) -> Session: ...

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    def update_session(self, session: Session) -> Session: ...

    @abstractmethod
    def list_sessions(self, **filters) -> List[Session]: ...

    # Records

    @abstractmethod
    def add_records(self, records: Iterable[MigrationRecord]) -> int: ...

    @abstractmethod
    def get_record(self, record_id: str) -> Optional[MigrationRecord]: ...

    @abstractmethod
    def update_record(self, record: MigrationRecord) -> MigrationRecord: ...

    @abstractmethod
    def list_records(self, **filters) -> List[MigrationRecord]: ...

    # Validation results

    @abstractmethod
    def save_validation_result(self, result: ValidationResult) -> None:
        """Store a result, replacing any prior one for the same project and template."""

    @abstractmethod
    def get_validation_result(self, project_id: str, template_id: str) -> Optional[ValidationResult]: ...

    # Credentials

    @abstractmethod
    def save_credential(self, credential: Credential) -> None: ...

    @abstractmethod
    def get_credential(self, org_id: str) -> Optional[Credential]: ...

    @abstractmethod
    def delete_credential(self, org_id: str) -> bool: ...

    @abstractmethod
    def list_credentials(self) -> List[Credential]: ...
