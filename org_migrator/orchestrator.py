"""Migration orchestrator - single entry point wiring every migration component."""

import logging
from typing import Dict, List, Optional

from .config import EngineConfig
from .errors import ConcurrencyError, NotFoundError
from .models.credential import CredentialSnapshot, TokenHealthReport
from .models.migration import MigrationStatus, ProgressSnapshot, Project, Session
from .models.record import MigrationRecord, RecordStatus, RollbackResult
from .models.template import Template
from .models.validation import ValidationResult
from .services.crypto import TokenCipher
from .services.execution_engine import ExecutionEngine
from .services.rollback_service import RollbackService
from .services.template_registry import TemplateCatalog, TemplateRegistry
from .services.token_manager import TokenManager, TokenRefresher
from .services.validation_engine import ValidationEngine
from .storage.base import MigrationStore
from .storage.memory import InMemoryStore

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Coordinates org-to-org migrations.

    Handles:
    - Template catalog queries
    - Project creation and pre-flight validation
    - Starting, cancelling and polling sessions
    - Rolling back the records a session created
    - Organisation connections and token health
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        store: MigrationStore,
        token_manager: TokenManager,
        config: Optional[EngineConfig] = None,
        validator: Optional[ValidationEngine] = None,
        engine: Optional[ExecutionEngine] = None,
        rollback_service: Optional[RollbackService] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            registry: Frozen template registry
            store: Durable store for projects, sessions and records
            token_manager: Credential owner for every organisation
            config: Engine configuration
            validator: Validation engine (built from the above when omitted)
            engine: Execution engine (built from the above when omitted)
            rollback_service: Rollback service (built from the above when omitted)
        """
        self.config = config or token_manager.config
        self.registry = registry
        self.store = store
        self.token_manager = token_manager
        self.validator = validator or ValidationEngine(token_manager, store, self.config)
        self.engine = engine or ExecutionEngine(registry, self.validator, token_manager, store, self.config)
        self.rollback_service = rollback_service or RollbackService(token_manager, store)

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        templates_dir: Optional[str] = None,
        store: Optional[MigrationStore] = None,
        cipher: Optional[TokenCipher] = None,
        refresher: Optional[TokenRefresher] = None,
    ) -> "MigrationOrchestrator":
        """Build a fully wired orchestrator with the default implementations."""
        store = store or InMemoryStore()
        token_manager = TokenManager(
            store,
            cipher or TokenCipher(),
            refresher=refresher,
            config=config,
        )
        registry = TemplateRegistry.from_directory(templates_dir)
        logger.info(f"Orchestrator ready with {len(registry)} templates")
        return cls(registry, store, token_manager, config=config)

    @classmethod
    def from_env(cls, templates_dir: Optional[str] = None) -> "MigrationOrchestrator":
        return cls.from_config(EngineConfig.from_env(), templates_dir=templates_dir)

    # Templates

    def list_templates(self) -> TemplateCatalog:
        return self.registry.list_templates()

    def get_template(self, template_id: str) -> Template:
        template = self.registry.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")
        return template

    # Projects

    def create_project(
        self,
        name: str,
        source_org_id: str,
        target_org_id: str,
        template_id: str,
        selection: Optional[Dict[str, List[str]]] = None,
    ) -> Project:
        """Create a PENDING project for a registered template."""
        self.get_template(template_id)
        project = Project(
            name=name,
            source_org_id=source_org_id,
            target_org_id=target_org_id,
            template_id=template_id,
            selection=dict(selection or {}),
        )
        self.store.create_project(project)
        logger.info(f"Created project {project.id} ({template_id}: {source_org_id} -> {target_org_id})")
        return project

    def get_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    def list_projects(self, **filters) -> List[Project]:
        return self.store.list_projects(**filters)

    def validate(
        self,
        project_id: str,
        selection: Optional[Dict[str, List[str]]] = None,
    ) -> ValidationResult:
        """
        Validate a project's template against its organisations.

        A given selection replaces the project's stored selection before the
        checks run.
        """
        project = self.get_project(project_id)
        template = self.get_template(project.template_id)

        if selection is not None:
            project.selection = dict(selection)
            self.store.update_project(project)

        return self.validator.validate(
            template,
            project.source_org_id,
            project.target_org_id,
            selection=project.selection or None,
            project_id=project.id,
        )

    # Sessions

    def start(self, project_id: str) -> str:
        return self.engine.start(project_id)

    def wait(self, session_id: str, timeout: Optional[float] = None) -> Session:
        return self.engine.wait(session_id, timeout=timeout)

    def cancel(self, project_id: str) -> bool:
        self.get_project(project_id)
        return self.engine.cancel(project_id)

    def get_progress(self, session_id: str) -> ProgressSnapshot:
        return self.engine.get_progress(session_id)

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def list_records(self, session_id: str, status: Optional[RecordStatus] = None) -> List[MigrationRecord]:
        return self.store.list_records(session_id=session_id, status=status)

    def rollback(self, project_id: str) -> RollbackResult:
        """
        Delete the target records created by the project's latest session.

        Raises:
            NotFoundError: unknown project, or no session to roll back
            ConcurrencyError: the project is still running
        """
        project = self.get_project(project_id)
        if project.status == MigrationStatus.RUNNING:
            raise ConcurrencyError(f"Project {project_id} is running; cancel it before rolling back")
        if not project.latest_session_id:
            raise NotFoundError(f"Project {project_id} has no session to roll back")

        session = self.get_session(project.latest_session_id)
        step_rank = {step.name: index for index, step in enumerate(session.steps)}
        records = self.store.list_records(session_id=session.id, status=RecordStatus.SUCCESS)
        records.sort(key=lambda r: step_rank.get(r.step_name, 0), reverse=True)

        result = self.rollback_service.rollback(records, project.target_org_id)

        self._recount(session)
        fully_rolled_back = session.successful_records == 0
        if fully_rolled_back:
            session.status = MigrationStatus.CANCELLED
        self.store.update_session(session)

        if fully_rolled_back:
            project = self.get_project(project_id)
            project.status = MigrationStatus.CANCELLED
            self.store.update_project(project)
            logger.info(f"Session {session.id} fully rolled back")

        return result

    def _recount(self, session: Session) -> None:
        """Refresh step and session counters from the stored record outcomes."""
        for progress in session.steps:
            records = self.store.list_records(session_id=session.id, step_name=progress.name)
            progress.total_records = len(records)
            progress.successful_records = sum(1 for r in records if r.status == RecordStatus.SUCCESS)
            progress.failed_records = sum(1 for r in records if r.status == RecordStatus.FAILED)
            progress.skipped_records = sum(1 for r in records if r.status == RecordStatus.SKIPPED)
        session.update_totals()

    # Organisations

    def connect_org(
        self,
        org_id: str,
        instance_url: str,
        access_token: str,
        refresh_token: str,
        expires_in: Optional[int] = None,
        org_name: str = "",
    ) -> CredentialSnapshot:
        return self.token_manager.connect(
            org_id, instance_url, access_token, refresh_token, expires_in=expires_in, org_name=org_name,
        )

    def disconnect_org(self, org_id: str) -> bool:
        return self.token_manager.disconnect(org_id)

    def get_org_session(self, org_id: str) -> CredentialSnapshot:
        snapshot = self.token_manager.get_session(org_id)
        if snapshot is None:
            raise NotFoundError(f"Organisation not connected: {org_id}")
        return snapshot

    def get_token_health_report(self) -> TokenHealthReport:
        return self.token_manager.get_token_health_report()

    def shutdown(self) -> None:
        self.engine.shutdown()
