"""
Shared fixtures for the org migrator test suite.

Provides a scripted in-memory organisation (`FakeOrg`) behind the real
PlatformClient interface, wired into a real TokenManager and store.
"""

import re
import threading
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import pytest

from org_migrator.clients.base import FieldDescribe, ObjectDescribe, PlatformClient, WriteResult
from org_migrator.clients.query import QuerySpec
from org_migrator.config import EngineConfig
from org_migrator.errors import AuthError, MigrationError
from org_migrator.models.template import LoadOperation, Template
from org_migrator.orchestrator import MigrationOrchestrator
from org_migrator.services.crypto import TokenCipher
from org_migrator.services.template_registry import TemplateRegistry
from org_migrator.services.token_manager import TokenGrant, TokenManager
from org_migrator.storage.memory import InMemoryStore

IN_CONDITION = re.compile(r"^(\w+) IN \((.*)\)$")
QUOTED = re.compile(r"'((?:[^'\\]|\\.)*)'")


class FakeOrg:
    """Scripted organisation: metadata, rows and failure injection."""

    def __init__(self, org_id: str, id_prefix: str = "a0"):
        self.org_id = org_id
        self.id_prefix = id_prefix
        self.describes: Dict[str, ObjectDescribe] = {}
        self.rows: Dict[str, List[Dict[str, Any]]] = {}

        # Call log
        self.query_calls: Counter = Counter()
        self.count_calls: Counter = Counter()
        self.writes: List[Dict[str, Any]] = []
        self.deletes: List[Dict[str, Any]] = []

        # Failure injection
        self.write_errors: Dict[str, List[MigrationError]] = {}  # consumed one per call
        self.persistent_write_errors: Dict[str, MigrationError] = {}
        self.query_errors: Dict[str, MigrationError] = {}
        self.delete_errors: Dict[str, MigrationError] = {}
        self.rejections: Dict[str, Callable[[Dict[str, Any]], Optional[WriteResult]]] = {}
        self.delete_failures: Dict[str, str] = {}
        self.revoked_tokens: set = set()

        # Synchronisation hooks for concurrency tests
        self.write_entered: Dict[str, threading.Event] = defaultdict(threading.Event)
        self.write_gates: Dict[str, threading.Event] = {}

        self._lock = threading.Lock()
        self._next_id = 0

    def add_object(
        self,
        name: str,
        fields: Sequence[str],
        references: Optional[Dict[str, str]] = None,
        external_ids: Sequence[str] = (),
        **flags,
    ) -> ObjectDescribe:
        references = references or {}
        describe_fields = {
            "Id": FieldDescribe(name="Id", type="id", createable=False, updateable=False, nillable=False),
        }
        for field_name in fields:
            if field_name == "Id":
                continue
            reference = references.get(field_name)
            describe_fields[field_name] = FieldDescribe(
                name=field_name,
                type="reference" if reference else "string",
                external_id=field_name in external_ids,
                relationship_name=field_name[:-2] if reference and field_name.endswith("Id") else None,
                reference_to=(reference,) if reference else (),
            )
        describe = ObjectDescribe(name=name, fields=describe_fields, **flags)
        self.describes[name] = describe
        return describe

    def add_rows(self, object_type: str, rows: List[Dict[str, Any]]) -> None:
        self.rows.setdefault(object_type, []).extend(rows)

    def new_id(self, object_type: str) -> str:
        with self._lock:
            self._next_id += 1
            return f"{self.id_prefix}{object_type[:3].upper()}{self._next_id:012d}"

    def writes_for(self, object_type: str) -> List[Dict[str, Any]]:
        return [w for w in self.writes if w["object_type"] == object_type]

    def _matching_rows(self, spec: QuerySpec) -> List[Dict[str, Any]]:
        rows = list(self.rows.get(spec.object_type, []))
        for condition in spec.conditions:
            match = IN_CONDITION.match(condition)
            if not match:
                continue
            field_name, values = match.group(1), set(QUOTED.findall(match.group(2)))
            rows = [r for r in rows if r.get(field_name) in values]
        return rows


class FakePlatformClient(PlatformClient):
    """PlatformClient backed by a FakeOrg."""

    def __init__(self, org: FakeOrg, access_token: str, token_version: int):
        super().__init__(org_id=org.org_id, token_version=token_version)
        self.org = org
        self.access_token = access_token

    def _check_token(self) -> None:
        if self.access_token in self.org.revoked_tokens:
            raise AuthError("Authentication failed: Session expired or invalid", status_code=401)

    def query(self, spec: QuerySpec) -> Iterator[Dict[str, Any]]:
        self._check_token()
        self.org.query_calls[spec.object_type] += 1
        if spec.object_type in self.org.query_errors:
            raise self.org.query_errors[spec.object_type]
        for row in self.org._matching_rows(spec):
            yield dict(row, attributes={"type": spec.object_type})

    def count(self, spec: QuerySpec) -> int:
        self._check_token()
        self.org.count_calls[spec.object_type] += 1
        return len(self.org._matching_rows(spec))

    def describe(self, object_type: str) -> Optional[ObjectDescribe]:
        self._check_token()
        return self.org.describes.get(object_type)

    def bulk_write(
        self,
        object_type: str,
        records: Sequence[Dict[str, Any]],
        operation: LoadOperation,
        batch_size: int = 200,
        external_id_field: Optional[str] = None,
    ) -> List[WriteResult]:
        self._check_token()
        self.org.write_entered[object_type].set()
        gate = self.org.write_gates.get(object_type)
        if gate is not None:
            gate.wait(timeout=10)

        with self.org._lock:
            self.org.writes.append({
                "object_type": object_type,
                "records": [dict(r) for r in records],
                "operation": operation,
                "external_id_field": external_id_field,
            })
            queued = self.org.write_errors.get(object_type)
            error = queued.pop(0) if queued else None
        if error is not None:
            raise error
        if object_type in self.org.persistent_write_errors:
            raise self.org.persistent_write_errors[object_type]

        results = []
        reject = self.org.rejections.get(object_type)
        for record in records:
            rejected = reject(record) if reject else None
            results.append(rejected or WriteResult(success=True, id=self.org.new_id(object_type)))
        return results

    def bulk_delete(self, object_type: str, ids: Sequence[str]) -> List[WriteResult]:
        self._check_token()
        self.org.deletes.append({"object_type": object_type, "ids": list(ids)})
        if object_type in self.org.delete_errors:
            raise self.org.delete_errors[object_type]
        return [
            WriteResult.failure(self.org.delete_failures[record_id], "DELETE_FAILED")
            if record_id in self.org.delete_failures
            else WriteResult(success=True, id=record_id)
            for record_id in ids
        ]


class FakeRefresher:
    """Token endpoint stand-in; counts calls and can block or fail."""

    def __init__(self, lifetime_seconds: int = 7200):
        self.lifetime_seconds = lifetime_seconds
        self.calls = 0
        self.errors: List[MigrationError] = []
        self.entered = threading.Event()
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def refresh(self, org_id: str, refresh_token: str) -> TokenGrant:
        with self._lock:
            self.calls += 1
            number = self.calls
            error = self.errors.pop(0) if self.errors else None
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if error is not None:
            raise error
        return TokenGrant(
            access_token=f"{org_id}-access-{number + 1}",
            expires_at=datetime.utcnow() + timedelta(seconds=self.lifetime_seconds),
        )


class Clock:
    """Mutable clock for token expiry tests."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def build_template(steps: List[Dict[str, Any]], template_id: str = "test-template", **extra) -> Template:
    """Build a template from compact step dictionaries."""
    data = {
        "id": template_id,
        "name": extra.pop("name", "Test Template"),
        "version": extra.pop("version", "1.0.0"),
        "category": extra.pop("category", "custom"),
        "steps": steps,
    }
    data.update(extra)
    return Template.from_dict(data)


def step(
    name: str,
    object_type: str,
    order: int,
    fields: Sequence[str] = ("Name",),
    depends_on: Sequence[str] = (),
    lookups: Sequence[Dict[str, Any]] = (),
    required: Sequence[str] = (),
    operation: str = "insert",
    external_id_field: Optional[str] = None,
    batch_size: int = 200,
) -> Dict[str, Any]:
    """Compact step definition mapping each field onto itself."""
    extract_fields = ["Id", *fields, *(l["source_field"] for l in lookups)]
    load = {"object_type": object_type, "operation": operation, "batch_size": batch_size}
    if external_id_field:
        load["external_id_field"] = external_id_field
    return {
        "name": name,
        "order": order,
        "depends_on": list(depends_on),
        "extract": {"object_type": object_type, "fields": extract_fields},
        "transform": {
            "field_mappings": [
                {"source_field": f, "target_field": f, "required": f in required} for f in fields
            ],
            "lookups": list(lookups),
        },
        "load": load,
    }


@pytest.fixture
def config():
    return EngineConfig(backoff_base_seconds=0.0, backoff_max_seconds=0.0)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def cipher():
    return TokenCipher(key=TokenCipher.generate_key())


@pytest.fixture
def source_org():
    return FakeOrg("source", id_prefix="s0")


@pytest.fixture
def target_org():
    return FakeOrg("target", id_prefix="t0")


@pytest.fixture
def refresher():
    return FakeRefresher()


@pytest.fixture
def clock():
    return None


@pytest.fixture
def token_manager(store, cipher, refresher, config, source_org, target_org, clock):
    orgs = {source_org.org_id: source_org, target_org.org_id: target_org}

    def client_factory(org_id, instance_url, access_token, token_version):
        return FakePlatformClient(orgs[org_id], access_token, token_version)

    manager = TokenManager(
        store,
        cipher,
        refresher=refresher,
        config=config,
        client_factory=client_factory,
        clock=clock,
    )
    for org in orgs.values():
        manager.connect(org.org_id, f"https://{org.org_id}.example.com", f"{org.org_id}-access-1", "refresh")
    return manager


@pytest.fixture
def registry():
    return TemplateRegistry()


@pytest.fixture
def orchestrator(registry, store, token_manager, config):
    orchestrator = MigrationOrchestrator(registry, store, token_manager, config=config)
    yield orchestrator
    orchestrator.shutdown()
