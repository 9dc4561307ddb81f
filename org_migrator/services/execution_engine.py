"""Execution engine: runs a template's steps in dependency order."""

import json
import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple

from ..clients.base import PlatformClient
from ..config import EngineConfig
from ..errors import (
    AuthError,
    ConcurrencyError,
    ConnectivityError,
    ErrorKind,
    MigrationError,
    NotFoundError,
    TransientApiError,
    ValidationError,
)
from ..extractors.query_extractor import QueryExtractor
from ..loaders.bulk_loader import BulkLoader
from ..models.migration import (
    RESTARTABLE_STATUSES,
    IdMap,
    MigrationStatus,
    ProgressSnapshot,
    Project,
    Session,
    StepProgress,
    StepState,
)
from ..models.record import MigrationRecord, RecordStatus, SourceRow, TransformedRecord
from ..models.template import Step, Template
from ..models.validation import ValidationResult
from ..retry import RetryPolicy
from ..storage.base import MigrationStore
from .template_registry import TemplateRegistry, resolve_execution_order
from .token_manager import TokenManager
from .transformer import TransformEngine
from .validation_engine import ValidationEngine

logger = logging.getLogger(__name__)

SOURCE = "source"
TARGET = "target"


@dataclass
class _SessionRun:
    """Runtime state of one session; never shared with another session."""
    session: Session
    project: Project
    template: Template
    order: List[Step]
    id_map: IdMap = field(default_factory=IdMap)
    clients: Dict[str, PlatformClient] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    lock: threading.RLock = field(default_factory=threading.RLock)
    # (seconds, records) of recently completed steps
    step_timings: Deque[Tuple[float, int]] = field(default_factory=deque)
    record_estimates: Dict[str, int] = field(default_factory=dict)


class ExecutionEngine:
    """
    Runs migration sessions.

    Handles:
    - Duplicate-run guard per project (compare-and-set on project status)
    - Dependency-ordered scheduling with a bounded step worker pool
    - Extract, transform and load per step with per-record outcomes
    - Skipping every step downstream of a failed step
    - Cancellation at step boundaries
    - Polled progress snapshots with an estimated completion time
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        validator: ValidationEngine,
        token_manager: TokenManager,
        store: MigrationStore,
        config: Optional[EngineConfig] = None,
        transformer: Optional[TransformEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.registry = registry
        self.validator = validator
        self.token_manager = token_manager
        self.store = store
        self.config = config or EngineConfig()
        self.transformer = transformer or TransformEngine()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)

        self._runs: Dict[str, _SessionRun] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._runner = ThreadPoolExecutor(
            max_workers=max(1, self.config.max_concurrent_sessions),
            thread_name_prefix="migration-session",
        )

    # Public operations

    def start(self, project_id: str) -> str:
        """
        Start a new session for a project.

        Returns:
            The new session id; the run continues in the background

        Raises:
            NotFoundError: unknown project or template
            ValidationError: pre-flight validation does not allow the run
            ConcurrencyError: the project already has a running session
        """
        project = self._get_project(project_id)
        template = self.registry.get_template(project.template_id)
        if template is None:
            raise NotFoundError(f"Template not registered: {project.template_id}")

        if project.status == MigrationStatus.RUNNING:
            raise ConcurrencyError(f"Project {project_id} already has a running session")

        validation = self._ensure_validated(project, template)
        order = resolve_execution_order(template.steps)

        if not self.store.compare_and_set_project_status(project_id, RESTARTABLE_STATUSES, MigrationStatus.RUNNING):
            raise ConcurrencyError(f"Project {project_id} already has a running session")

        session = Session(project_id=project_id, template_id=template.id)
        for step in order:
            session.add_step(step.name, step.order, step.object_type)
        self.store.create_session(session)

        project = self._get_project(project_id)
        project.latest_session_id = session.id
        self.store.update_project(project)

        run = _SessionRun(
            session=session,
            project=project,
            template=template,
            order=order,
            step_timings=deque(maxlen=max(1, self.config.eta_window)),
            record_estimates=dict(validation.record_estimates),
        )

        with self._lock:
            self._runs[session.id] = run
            self._futures[session.id] = self._runner.submit(self._run_session, run)

        logger.info(f"Started session {session.id} for project {project_id} ({template.id})")
        return session.id

    def wait(self, session_id: str, timeout: Optional[float] = None) -> Session:
        """Block until a session finishes and return its final state."""
        with self._lock:
            future = self._futures.get(session_id)
        if future is not None:
            future.result(timeout=timeout)
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    def cancel(self, project_id: str) -> bool:
        """
        Request cancellation of a project's running session.

        The in-flight step finishes; no further step is dispatched.

        Returns:
            True if a running session was signalled
        """
        with self._lock:
            runs = [run for run in self._runs.values() if run.project.id == project_id]
        for run in runs:
            run.cancel_event.set()
            logger.info(f"Cancellation requested for session {run.session.id}")
        return bool(runs)

    def get_progress(self, session_id: str) -> ProgressSnapshot:
        """Point-in-time progress of a session."""
        with self._lock:
            run = self._runs.get(session_id)

        if run is not None:
            with run.lock:
                return self._snapshot(run.session, run.order, self._estimate_completion(run))

        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return self._snapshot(session, None, None)

    def shutdown(self, wait_for_runs: bool = True) -> None:
        self._runner.shutdown(wait=wait_for_runs)

    # Session lifecycle

    def _get_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    def _ensure_validated(self, project: Project, template: Template) -> ValidationResult:
        result = self.store.get_validation_result(project.id, template.id)
        if result is None or self.config.revalidate_on_start:
            result = self.validator.validate(
                template,
                project.source_org_id,
                project.target_org_id,
                selection=project.selection or None,
                project_id=project.id,
            )
        if not result.can_proceed:
            raise ValidationError(
                f"Project {project.id} failed pre-flight validation with {len(result.errors)} error(s)",
                result=result,
                details={"errors": result.errors},
            )
        return result

    def _run_session(self, run: _SessionRun) -> None:
        session = run.session
        with run.lock:
            session.status = MigrationStatus.RUNNING
            session.started_at = datetime.utcnow()
            self._persist(run)

        try:
            try:
                run.clients[SOURCE] = self.token_manager.get_client(run.project.source_org_id)
                run.clients[TARGET] = self.token_manager.get_client(run.project.target_org_id)
            except (AuthError, TransientApiError, ConnectivityError) as e:
                logger.error(f"Session {session.id} could not connect: {e}")
                with run.lock:
                    session.error = e.message
                    for progress in session.steps:
                        progress.state = StepState.SKIPPED
                        progress.error = "Connection unavailable"
                return

            self._schedule(run)
        except Exception as e:
            logger.exception(f"Session {session.id} aborted: {e}")
            with run.lock:
                session.error = str(e)
                for progress in session.steps:
                    if not progress.is_terminal:
                        progress.state = StepState.STEP_FAILED
                        progress.error = progress.error or "Session aborted"
            raise
        finally:
            self._finish(run)

    def _finish(self, run: _SessionRun) -> None:
        session = run.session
        with run.lock:
            states = {p.state for p in session.steps}
            if session.error or StepState.STEP_FAILED in states:
                session.status = MigrationStatus.FAILED
            elif StepState.CANCELLED in states:
                session.status = MigrationStatus.CANCELLED
            else:
                session.status = MigrationStatus.COMPLETED
            session.current_step = None
            session.completed_at = datetime.utcnow()
            session.update_totals()
            self._persist(run)

        project = self.store.get_project(run.project.id)
        if project is not None:
            project.status = session.status
            self.store.update_project(project)

        with self._lock:
            self._runs.pop(session.id, None)

        logger.info(
            f"Session {session.id} {session.status.value}: {session.successful_records} succeeded, "
            f"{session.failed_records} failed, {session.skipped_records} skipped"
        )
        self._save_report(run)

    def _persist(self, run: _SessionRun) -> None:
        run.session.update_totals()
        self.store.update_session(run.session)

    # Scheduling

    def _schedule(self, run: _SessionRun) -> None:
        session = run.session
        pending = [step.name for step in run.order]
        by_name = {step.name: step for step in run.order}
        running: Dict[Future, str] = {}
        max_workers = max(1, self.config.max_step_workers)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"steps-{session.id[:8]}") as pool:
            while pending or running:
                if run.cancel_event.is_set():
                    self._cancel_pending(run, pending)
                    pending = []
                else:
                    for name in list(pending):
                        if len(running) >= max_workers:
                            break
                        step = by_name[name]
                        dependency_states = [session.get_step(d).state for d in step.depends_on]

                        if any(s in (StepState.STEP_FAILED, StepState.SKIPPED, StepState.CANCELLED)
                               for s in dependency_states):
                            pending.remove(name)
                            self._skip_step(run, step)
                            continue

                        if all(s == StepState.DONE for s in dependency_states):
                            pending.remove(name)
                            running[pool.submit(self._run_step, run, step)] = name

                if not running:
                    # Pending is in topological order, so one pass either dispatches or skips
                    if pending:
                        raise RuntimeError(f"Steps could not be scheduled: {', '.join(pending)}")
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
                    future.result()

    def _cancel_pending(self, run: _SessionRun, pending: List[str]) -> None:
        with run.lock:
            for name in pending:
                progress = run.session.get_step(name)
                progress.state = StepState.CANCELLED
                progress.error = "Cancelled before start"
            if pending:
                logger.info(f"Session {run.session.id} cancelled; {len(pending)} steps not started")
            self._persist(run)

    def _skip_step(self, run: _SessionRun, step: Step) -> None:
        """Mark a step downstream of a failure as skipped without touching the source."""
        failed_upstream = sorted(
            d for d in step.depends_on
            if run.session.get_step(d).state != StepState.DONE
        )
        reason = f"Skipped: dependency {', '.join(failed_upstream)} did not complete"
        # Only an Id selection names this step's own records without querying
        selected: List[str] = []
        if step.extract.selection_field == "Id":
            selected = (run.project.selection or {}).get(step.extract.selection_key) or []

        records = [
            MigrationRecord(
                session_id=run.session.id,
                step_name=step.name,
                object_type=step.object_type,
                source_id=source_id,
                status=RecordStatus.SKIPPED,
                error_message=reason,
            )
            for source_id in dict.fromkeys(selected)
        ]
        if records:
            self.store.add_records(records)

        with run.lock:
            progress = run.session.get_step(step.name)
            progress.state = StepState.SKIPPED
            progress.error = reason
            progress.total_records = len(records)
            progress.skipped_records = len(records)
            self._persist(run)

        logger.warning(f"Step {step.name} skipped: {reason}")

    # Step execution

    def _set_state(self, run: _SessionRun, progress: StepProgress, state: StepState) -> None:
        with run.lock:
            progress.state = state
            self._persist(run)

    def _run_step(self, run: _SessionRun, step: Step) -> None:
        session = run.session
        progress = session.get_step(step.name)

        with run.lock:
            progress.state = StepState.EXTRACTING
            progress.started_at = datetime.utcnow()
            session.current_step = step.name
            self._persist(run)

        logger.info(f"Step {step.name}: extracting {step.extract.object_type}")

        try:
            rows = self._extract(run, step, progress)
        except (AuthError, TransientApiError, ConnectivityError) as e:
            logger.error(f"Step {step.name} extraction failed: {e}")
            self._complete_step(run, progress, StepState.STEP_FAILED, error=e.message)
            return
        except Exception as e:
            logger.exception(f"Step {step.name} extraction failed unexpectedly: {e}")
            self._complete_step(run, progress, StepState.STEP_FAILED, error=str(e))
            return

        try:
            self._transform_and_load(run, step, progress, rows)
        except Exception as e:
            # Only this step fails; independent steps keep running
            logger.exception(f"Step {step.name} failed unexpectedly: {e}")
            self._complete_step(run, progress, StepState.STEP_FAILED, error=str(e))

    def _transform_and_load(
        self,
        run: _SessionRun,
        step: Step,
        progress: StepProgress,
        rows: List[SourceRow],
    ) -> None:
        session = run.session
        self._set_state(run, progress, StepState.TRANSFORMING)
        valid, records = self._transform(run, step, rows)

        self._set_state(run, progress, StepState.LOADING)
        fatal: Optional[MigrationError] = None
        if valid:
            loader = BulkLoader(
                run.clients[TARGET],
                step.load,
                retry_policy=self.retry_policy,
                reauthenticate=lambda client: self._reauthenticate(run, TARGET, client),
                batch_size=min(step.load.batch_size or self.config.batch_size, self.config.max_batch_size),
            )
            load_result = loader.load_all(valid)
            fatal = load_result.fatal_error

            for result in load_result.results:
                record = MigrationRecord(
                    session_id=session.id,
                    step_name=step.name,
                    object_type=step.object_type,
                    source_id=result.record_id,
                )
                if result.success:
                    record.transition(RecordStatus.SUCCESS)
                    record.target_id = result.target_id
                    if result.target_id:
                        run.id_map.record(step.name, result.record_id, result.target_id)
                else:
                    record.transition(RecordStatus.FAILED, result.error or "Load failed")
                    record.error_kind = result.error_kind or ErrorKind.DATA
                records.append(record)

        self.store.add_records(records)

        successful = sum(1 for r in records if r.status == RecordStatus.SUCCESS)
        failed = sum(1 for r in records if r.status == RecordStatus.FAILED)
        with run.lock:
            progress.total_records = len(records)
            progress.successful_records = successful
            progress.failed_records = failed

        if fatal is not None:
            state, error = StepState.STEP_FAILED, fatal.message
        elif progress.failure_ratio > self.config.failure_threshold:
            state = StepState.STEP_FAILED
            error = f"{failed} of {len(records)} records failed (threshold {self.config.failure_threshold:.0%})"
        else:
            state, error = StepState.DONE, None

        self._complete_step(run, progress, state, error=error)

    def _complete_step(
        self,
        run: _SessionRun,
        progress: StepProgress,
        state: StepState,
        error: Optional[str] = None,
    ) -> None:
        with run.lock:
            progress.state = state
            progress.error = error
            progress.completed_at = datetime.utcnow()
            if progress.duration_seconds is not None and progress.total_records:
                run.step_timings.append((progress.duration_seconds, progress.total_records))
            self._persist(run)

        log = logger.info if state == StepState.DONE else logger.error
        log(
            f"Step {progress.name} {state.value}: {progress.successful_records}/{progress.total_records} "
            f"succeeded, {progress.failed_records} failed" + (f" ({error})" if error else "")
        )

    def _extract(self, run: _SessionRun, step: Step, progress: StepProgress) -> List[SourceRow]:
        selection = run.project.selection or {}
        selected = selection.get(step.extract.selection_key) if selection else None

        def extract_once() -> List[SourceRow]:
            extractor = QueryExtractor(run.clients[SOURCE], step.extract, selected)
            try:
                result = extractor.extract()
            except AuthError:
                self._reauthenticate(run, SOURCE, run.clients[SOURCE])
                result = QueryExtractor(run.clients[SOURCE], step.extract, selected).extract()
            with run.lock:
                progress.warnings.extend(e["message"] for e in result.errors)
            return result.rows

        return self.retry_policy.call(extract_once, description=f"Extracting {step.extract.object_type}")

    def _transform(
        self,
        run: _SessionRun,
        step: Step,
        rows: List[SourceRow],
    ) -> Tuple[List[TransformedRecord], List[MigrationRecord]]:
        """Transform rows; invalid ones become FAILED records immediately."""
        valid: List[TransformedRecord] = []
        failed: List[MigrationRecord] = []

        for row in rows:
            transformed = self.transformer.transform_row(row, step.transform, step.object_type, run.id_map)
            if transformed.is_valid:
                valid.append(transformed)
                continue
            record = MigrationRecord(
                session_id=run.session.id,
                step_name=step.name,
                object_type=step.object_type,
                source_id=row.source_id,
                error_kind=ErrorKind.DATA,
            )
            record.transition(RecordStatus.FAILED, "; ".join(transformed.errors))
            failed.append(record)

        if failed:
            logger.warning(f"Step {step.name}: {len(failed)} of {len(rows)} rows failed transformation")
        return valid, failed

    def _reauthenticate(self, run: _SessionRun, side: str, stale: PlatformClient) -> PlatformClient:
        org_id = run.project.source_org_id if side == SOURCE else run.project.target_org_id
        client = self.token_manager.refresh_after_auth_error(org_id, stale)
        with run.lock:
            run.clients[side] = client
        return client

    # Progress

    def _estimate_completion(self, run: _SessionRun) -> Optional[datetime]:
        """Moving average of seconds per record over recently completed steps."""
        if not run.step_timings:
            return None

        seconds = sum(t[0] for t in run.step_timings)
        records = sum(t[1] for t in run.step_timings)
        if records == 0:
            return None
        per_record = seconds / records
        average_step_records = records / len(run.step_timings)

        remaining = 0.0
        for progress in run.session.steps:
            if progress.is_terminal:
                continue
            estimate = run.record_estimates.get(progress.name, average_step_records)
            remaining += max(0, estimate - progress.processed_records)

        return datetime.utcnow() + timedelta(seconds=per_record * remaining)

    def _snapshot(
        self,
        session: Session,
        order: Optional[List[Step]],
        estimated_completion: Optional[datetime],
    ) -> ProgressSnapshot:
        names = [s.name for s in order] if order else [s.name for s in session.steps]
        current_index = None
        if session.current_step in names:
            current_index = names.index(session.current_step) + 1

        session.update_totals()
        return ProgressSnapshot(
            session_id=session.id,
            project_id=session.project_id,
            status=session.status,
            current_step_index=current_index,
            current_step_name=session.current_step,
            total_steps=len(session.steps),
            total_records=session.total_records,
            successful_records=session.successful_records,
            failed_records=session.failed_records,
            skipped_records=session.skipped_records,
            started_at=session.started_at,
            estimated_completion=estimated_completion,
            steps=[s.to_dict() for s in session.steps],
        )

    def _save_report(self, run: _SessionRun) -> None:
        """Write a JSON session report when a report directory is configured."""
        if not self.config.report_dir:
            return
        path = Path(self.config.report_dir)
        path.mkdir(parents=True, exist_ok=True)
        filepath = path / f"session_{run.session.id}.json"
        report = {
            "session": run.session.to_dict(),
            "project": run.project.to_dict(),
            "template": {"id": run.template.id, "version": run.template.version},
            "id_map_size": len(run.id_map),
        }
        with open(filepath, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Saved session report to {filepath}")
