"""Tests for pre-flight validation against live organisation metadata."""

import pytest

from org_migrator.config import EngineConfig
from org_migrator.errors import TransientApiError
from org_migrator.models.validation import CheckStatus
from org_migrator.services.validation_engine import ValidationEngine

from .conftest import FakePlatformClient, build_template, step

LOOKUP_ACCOUNT = {"source_field": "AccountId", "target_field": "AccountId", "step": "accounts"}


@pytest.fixture
def orgs(source_org, target_org):
    for org in (source_org, target_org):
        org.add_object("Account", ["Name", "External_Id__c"], external_ids=["External_Id__c"])
        org.add_object("Contact", ["LastName", "Email", "AccountId"], references={"AccountId": "Account"})
    source_org.add_rows("Account", [{"Id": f"001S{i}", "Name": f"Account {i}"} for i in range(4)])
    source_org.add_rows("Contact", [
        {"Id": f"003S{i}", "LastName": f"Contact {i}", "AccountId": f"001S{i % 2}"} for i in range(6)
    ])
    return source_org, target_org


@pytest.fixture
def template():
    return build_template([
        step("accounts", "Account", 1, operation="upsert", external_id_field="External_Id__c"),
        step("contacts", "Contact", 2, fields=("LastName", "Email"), depends_on=["accounts"], lookups=[LOOKUP_ACCOUNT]),
    ])


@pytest.fixture
def engine(token_manager, store, config):
    return ValidationEngine(token_manager, store, config)


def failed(result):
    return [c.name for c in result.checks if c.status == CheckStatus.FAIL]


class TestValidationEngine:
    """ValidationEngine.validate"""

    def test_valid_template(self, engine, orgs, template):
        result = engine.validate(template, "source", "target")

        assert failed(result) == []
        assert result.is_valid
        assert result.can_proceed
        assert result.get_check("connection.source").status == CheckStatus.PASS
        assert result.get_check("accounts.external_id").status == CheckStatus.PASS
        assert result.record_estimates == {"accounts": 4, "contacts": 6}

    def test_missing_target_field_fails_only_that_check(self, engine, orgs, template):
        _, target = orgs
        target.add_object("Contact", ["LastName", "AccountId"], references={"AccountId": "Account"})

        result = engine.validate(template, "source", "target")

        assert failed(result) == ["contacts.target_field.Email"]
        assert result.can_proceed is False
        assert result.get_check("contacts.target_field.LastName").status == CheckStatus.PASS
        assert result.get_check("contacts.target_field.AccountId").status == CheckStatus.PASS
        assert result.get_check("contacts.target_field.Email").step_name == "contacts"

    def test_missing_source_object(self, engine, orgs, template):
        source, _ = orgs
        del source.describes["Contact"]

        result = engine.validate(template, "source", "target")

        assert "contacts.source_object" in failed(result)
        assert "contacts.source_field.LastName" in failed(result)
        assert result.get_check("accounts.source_object").status == CheckStatus.PASS

    def test_unreadable_source_object(self, engine, orgs, template):
        source, _ = orgs
        source.add_object("Account", ["Name", "External_Id__c"], queryable=False)

        result = engine.validate(template, "source", "target")

        assert "accounts.source_object" in failed(result)

    def test_missing_create_permission(self, engine, orgs, template):
        _, target = orgs
        target.add_object("Contact", ["LastName", "Email", "AccountId"], references={"AccountId": "Account"}, createable=False)

        result = engine.validate(template, "source", "target")

        assert failed(result) == ["contacts.target_object"]

    def test_missing_external_id_warns(self, engine, orgs):
        template = build_template([step("accounts", "Account", 1)])

        result = engine.validate(template, "source", "target")

        assert result.get_check("accounts.external_id").status == CheckStatus.WARNING
        assert result.can_proceed
        assert result.warnings

    def test_unflagged_external_id_warns(self, engine, orgs):
        template = build_template([
            step("accounts", "Account", 1, operation="upsert", external_id_field="Name"),
        ])

        result = engine.validate(template, "source", "target")

        assert result.get_check("accounts.external_id").status == CheckStatus.WARNING

    def test_lookup_to_wrong_object_warns(self, engine, orgs, target_org):
        target_org.add_object("Contact", ["LastName", "AccountId"], references={"AccountId": "Partner__c"})
        template = build_template([
            step("accounts", "Account", 1),
            step("contacts", "Contact", 2, fields=("LastName",), depends_on=["accounts"], lookups=[LOOKUP_ACCOUNT]),
        ])

        result = engine.validate(template, "source", "target")

        assert result.get_check("contacts.lookup.AccountId").status == CheckStatus.WARNING

    def test_batch_size_over_limit(self, engine, orgs):
        template = build_template([step("accounts", "Account", 1, batch_size=500)])

        result = engine.validate(template, "source", "target")

        assert failed(result) == ["accounts.batch_size"]

    def test_unknown_connection_reports_without_raising(self, engine, orgs, template):
        result = engine.validate(template, "source", "missing-org")

        assert result.get_check("connection.target").status == CheckStatus.FAIL
        assert result.get_check("connection.source").status == CheckStatus.PASS
        assert "accounts.target_object" in failed(result)
        assert result.get_check("accounts.source_object").status == CheckStatus.PASS
        assert result.can_proceed is False

    def test_transient_describe_failure_becomes_failed_check(self, engine, orgs, template, monkeypatch):
        original = FakePlatformClient.describe

        def flaky(self, object_type):
            if self.org.org_id == "target" and object_type == "Contact":
                raise TransientApiError("Server unavailable", status_code=503)
            return original(self, object_type)

        monkeypatch.setattr(FakePlatformClient, "describe", flaky)

        result = engine.validate(template, "source", "target")

        assert result.get_check("contacts.target_object").status == CheckStatus.FAIL
        assert result.get_check("accounts.target_object").status == CheckStatus.PASS

    def test_record_estimates_follow_selection(self, engine, orgs, template):
        result = engine.validate(template, "source", "target", selection={"Account": ["001S0", "001S1", "001S9"]})

        assert result.record_estimates["accounts"] == 2
        # Contacts are not restricted unless their own object type is selected
        assert result.record_estimates["contacts"] == 6

    def test_empty_selection_warns(self, engine, orgs, template):
        result = engine.validate(template, "source", "target", selection={"Account": []})

        check = result.get_check("accounts.record_count")
        assert check.status == CheckStatus.WARNING
        assert result.record_estimates["accounts"] == 0

    def test_too_many_records(self, token_manager, store, orgs, template):
        engine = ValidationEngine(token_manager, store, EngineConfig(max_records_per_step=3))

        result = engine.validate(template, "source", "target")

        assert failed(result) == ["accounts.record_count", "contacts.record_count"]

    def test_result_is_stored_for_project(self, engine, store, orgs, template):
        engine.validate(template, "source", "target", project_id="project-1")

        stored = store.get_validation_result("project-1", template.id)
        assert stored is not None
        assert stored.to_dict()["is_valid"] is True

    def test_describe_is_cached_per_object(self, engine, orgs, template, monkeypatch):
        calls = []
        original = FakePlatformClient.describe

        def counting(self, object_type):
            calls.append((self.org.org_id, object_type))
            return original(self, object_type)

        monkeypatch.setattr(FakePlatformClient, "describe", counting)

        engine.validate(template, "source", "target")

        assert sorted(calls) == sorted(set(calls))
