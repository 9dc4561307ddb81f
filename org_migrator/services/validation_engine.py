"""Pre-flight validation of a template against a source/target pair."""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..clients.base import ObjectDescribe, PlatformClient
from ..clients.query import selection_queries
from ..config import EngineConfig
from ..errors import MigrationError
from ..models.template import LoadOperation, Step, Template
from ..models.validation import CheckStatus, ValidationResult
from ..storage.base import MigrationStore
from .template_registry import resolve_execution_order, transitive_dependencies
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

CheckOutcome = Tuple[CheckStatus, str]
Selection = Dict[str, List[str]]


class _DescribeCache:
    """Describe results for one organisation, fetched at most once per object type."""

    def __init__(self, client: Optional[PlatformClient], label: str):
        self.client = client
        self.label = label
        self._results: Dict[str, Optional[ObjectDescribe]] = {}
        self._errors: Dict[str, MigrationError] = {}

    def get(self, object_type: str) -> Optional[ObjectDescribe]:
        if self.client is None:
            raise MigrationError(f"No {self.label} connection available")
        if object_type in self._errors:
            raise self._errors[object_type]
        if object_type not in self._results:
            try:
                self._results[object_type] = self.client.describe(object_type)
            except MigrationError as e:
                self._errors[object_type] = e
                raise
        return self._results[object_type]

    def require(self, object_type: str) -> ObjectDescribe:
        describe = self.get(object_type)
        if describe is None:
            raise MigrationError(f"{self.label.capitalize()} object {object_type} does not exist")
        return describe


class ValidationEngine:
    """
    Runs independent pre-flight checks for every step of a template.

    A failing check never stops the others; the result lists every problem
    found in one sweep.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        store: Optional[MigrationStore] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.token_manager = token_manager
        self.store = store
        self.config = config or EngineConfig()

    def validate(
        self,
        template: Template,
        source_org_id: str,
        target_org_id: str,
        selection: Optional[Selection] = None,
        project_id: Optional[str] = None,
    ) -> ValidationResult:
        """
        Validate a template against live organisation metadata.

        Args:
            template: Template to check
            source_org_id: Organisation records are read from
            target_org_id: Organisation records are written to
            selection: Optional object type -> source ids restriction
            project_id: When given, the result replaces the project's stored result

        Returns:
            ValidationResult with one entry per check
        """
        result = ValidationResult(
            template_id=template.id,
            source_org_id=source_org_id,
            target_org_id=target_org_id,
            project_id=project_id,
        )
        logger.info(f"Validating template {template.id} for {source_org_id} -> {target_org_id}")

        source = _DescribeCache(self._connect(result, source_org_id, "source"), "source")
        target = _DescribeCache(self._connect(result, target_org_id, "target"), "target")

        for step in resolve_execution_order(template.steps):
            self._validate_step(result, template, step, source, target, selection)

        summary = result.summary
        logger.info(
            f"Validation of {template.id}: {summary['passed']} passed, {summary['failed']} failed, "
            f"{summary['warnings']} warnings"
        )

        if project_id and self.store is not None:
            self.store.save_validation_result(result)

        return result

    def _connect(self, result: ValidationResult, org_id: str, label: str) -> Optional[PlatformClient]:
        name = f"connection.{label}"
        try:
            client = self.token_manager.get_client(org_id)
        except MigrationError as e:
            result.add(name, CheckStatus.FAIL, e.message)
            return None
        result.add(name, CheckStatus.PASS, f"Connected to {label} organisation {org_id}")
        return client

    def _check(
        self,
        result: ValidationResult,
        name: str,
        step: Step,
        check: Callable[[], CheckOutcome],
    ) -> None:
        try:
            status, message = check()
        except MigrationError as e:
            status, message = CheckStatus.FAIL, e.message
        result.add(name, status, message, step_name=step.name)

    def _validate_step(
        self,
        result: ValidationResult,
        template: Template,
        step: Step,
        source: _DescribeCache,
        target: _DescribeCache,
        selection: Optional[Selection],
    ) -> None:
        prefix = step.name
        extract = step.extract
        load = step.load

        self._check(result, f"{prefix}.source_object", step, lambda: self._source_object(source, extract.object_type))
        self._check(result, f"{prefix}.target_object", step, lambda: self._target_object(target, load.object_type, load.operation))

        source_fields = list(dict.fromkeys(list(extract.fields) + list(step.transform.source_fields)))
        for field_name in source_fields:
            self._check(
                result, f"{prefix}.source_field.{field_name}", step,
                lambda f=field_name: self._source_field(source, extract.object_type, f),
            )

        for field_name in step.transform.target_fields:
            self._check(
                result, f"{prefix}.target_field.{field_name}", step,
                lambda f=field_name: self._target_field(target, load.object_type, f, load.operation),
            )

        upstream = transitive_dependencies(template, step.name)
        for lookup in step.transform.lookups:
            self._check(
                result, f"{prefix}.lookup.{lookup.target_field}", step,
                lambda l=lookup: self._lookup(template, upstream, target, load.object_type, l),
            )

        self._check(result, f"{prefix}.external_id", step, lambda: self._external_id(target, step))
        self._check(result, f"{prefix}.batch_size", step, lambda: self._batch_size(step))

        selected = selection.get(extract.selection_key) if selection else None
        self._check(
            result, f"{prefix}.record_count", step,
            lambda: self._record_count(result, source, step, selected),
        )

    def _source_object(self, source: _DescribeCache, object_type: str) -> CheckOutcome:
        describe = source.get(object_type)
        if describe is None:
            return CheckStatus.FAIL, f"Source object {object_type} does not exist"
        if not describe.queryable:
            return CheckStatus.FAIL, f"Source object {object_type} is not readable by this user"
        return CheckStatus.PASS, f"Source object {object_type} is readable"

    def _target_object(self, target: _DescribeCache, object_type: str, operation: LoadOperation) -> CheckOutcome:
        describe = target.get(object_type)
        if describe is None:
            return CheckStatus.FAIL, f"Target object {object_type} does not exist"

        missing = []
        if operation in (LoadOperation.INSERT, LoadOperation.UPSERT) and not describe.createable:
            missing.append("create")
        if operation in (LoadOperation.UPDATE, LoadOperation.UPSERT) and not describe.updateable:
            missing.append("update")
        if missing:
            return CheckStatus.FAIL, f"No {'/'.join(missing)} permission on target object {object_type}"
        return CheckStatus.PASS, f"Target object {object_type} accepts {operation.value}"

    def _source_field(self, source: _DescribeCache, object_type: str, field_name: str) -> CheckOutcome:
        describe = source.require(object_type)
        if not describe.has_path(field_name):
            return CheckStatus.FAIL, f"Field {field_name} does not exist on source object {object_type}"
        return CheckStatus.PASS, f"Source field {object_type}.{field_name} exists"

    def _target_field(
        self,
        target: _DescribeCache,
        object_type: str,
        field_name: str,
        operation: LoadOperation,
    ) -> CheckOutcome:
        describe = target.require(object_type)
        field = describe.get_field(field_name)
        if field is None:
            return CheckStatus.FAIL, f"Field {field_name} does not exist on target object {object_type}"
        if field_name.lower() == "id":
            return CheckStatus.PASS, f"Target field {object_type}.Id exists"
        if operation == LoadOperation.INSERT and not field.createable:
            return CheckStatus.FAIL, f"Target field {object_type}.{field_name} is not writable on create"
        if operation == LoadOperation.UPDATE and not field.updateable:
            return CheckStatus.FAIL, f"Target field {object_type}.{field_name} is not writable on update"
        if operation == LoadOperation.UPSERT and not (field.createable or field.updateable):
            return CheckStatus.FAIL, f"Target field {object_type}.{field_name} is read-only"
        return CheckStatus.PASS, f"Target field {object_type}.{field_name} is writable"

    def _lookup(self, template, upstream, target: _DescribeCache, object_type: str, lookup) -> CheckOutcome:
        if lookup.step not in upstream:
            return CheckStatus.FAIL, f"Lookup step '{lookup.step}' is not a dependency"

        parent = template.get_step(lookup.step)
        field = target.require(object_type).get_field(lookup.target_field)
        if field is None:
            return CheckStatus.FAIL, f"Lookup field {lookup.target_field} does not exist on {object_type}"
        if field.reference_to and parent.object_type not in field.reference_to:
            return (
                CheckStatus.WARNING,
                f"{object_type}.{lookup.target_field} references {', '.join(field.reference_to)}, "
                f"but step '{lookup.step}' loads {parent.object_type}",
            )
        return CheckStatus.PASS, f"{lookup.target_field} resolves through step '{lookup.step}'"

    def _external_id(self, target: _DescribeCache, step: Step) -> CheckOutcome:
        load = step.load
        if load.external_id_field:
            field = target.require(load.object_type).get_field(load.external_id_field)
            if field is None:
                return CheckStatus.FAIL, f"External id field {load.external_id_field} does not exist on {load.object_type}"
            if not field.external_id:
                return CheckStatus.WARNING, f"{load.object_type}.{load.external_id_field} is not flagged as an external id"
            return CheckStatus.PASS, f"Records are matched on {load.external_id_field}"
        if step.transform.external_id_target_field:
            return (
                CheckStatus.WARNING,
                f"Source ids are stored in {step.transform.external_id_target_field}, "
                f"but {load.operation.value} does not match on it; re-running creates duplicates",
            )
        return CheckStatus.WARNING, "No external id field declared; re-running this template creates duplicates"

    def _batch_size(self, step: Step) -> CheckOutcome:
        if step.load.batch_size > self.config.max_batch_size:
            return (
                CheckStatus.FAIL,
                f"Batch size {step.load.batch_size} exceeds the limit of {self.config.max_batch_size}",
            )
        return CheckStatus.PASS, f"Batch size {step.load.batch_size}"

    def _record_count(
        self,
        result: ValidationResult,
        source: _DescribeCache,
        step: Step,
        selected: Optional[Sequence[str]],
    ) -> CheckOutcome:
        if source.client is None:
            raise MigrationError("No source connection available")

        total = sum(source.client.count(spec) for spec in selection_queries(step.extract, selected))
        result.record_estimates[step.name] = total

        if total > self.config.max_records_per_step:
            return (
                CheckStatus.FAIL,
                f"{total} records exceed the limit of {self.config.max_records_per_step} per step",
            )
        if total == 0:
            return CheckStatus.WARNING, f"No {step.extract.object_type} records to migrate"

        batches = -(-total // step.load.batch_size)
        return CheckStatus.PASS, f"{total} records in {batches} batches"
