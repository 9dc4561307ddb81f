"""Tests for configuration, retry, query building, token encryption and error mapping."""

import pytest

from org_migrator.clients.query import MAX_IN_CLAUSE_VALUES, QuerySpec, quote_value, selection_queries
from org_migrator.config import EngineConfig
from org_migrator.errors import (
    AuthError,
    ConnectivityError,
    ErrorKind,
    TransientApiError,
    classify_response,
)
from org_migrator.models.template import ExtractSpec
from org_migrator.retry import RetryPolicy
from org_migrator.services.crypto import ENCRYPTION_KEY_ENV, TokenCipher


class TestEngineConfig:

    def test_defaults(self):
        config = EngineConfig()

        assert config.failure_threshold == 0.25
        assert config.max_batch_size == 200
        assert config.rate_limit == 10.0

    def test_from_env(self):
        config = EngineConfig.from_env({
            "ORG_MIGRATOR_BATCH_SIZE": "50",
            "ORG_MIGRATOR_RATE_LIMIT": "2.5",
            "ORG_MIGRATOR_FAILURE_THRESHOLD": "0.1",
            "ORG_MIGRATOR_REVALIDATE_ON_START": "yes",
            "ORG_MIGRATOR_CLIENT_ID": "abc",
            "ORG_MIGRATOR_REPORT_DIR": "",
            "UNRELATED": "1",
        })

        assert config.batch_size == 50
        assert config.rate_limit == 2.5
        assert config.failure_threshold == 0.1
        assert config.revalidate_on_start is True
        assert config.client_id == "abc"
        assert config.report_dir is None

    def test_invalid_number(self):
        with pytest.raises(ValueError):
            EngineConfig.from_env({"ORG_MIGRATOR_MAX_ATTEMPTS": "many"})

    def test_to_dict_omits_secret(self):
        data = EngineConfig(client_secret="shh").to_dict()

        assert "client_secret" not in data
        assert EngineConfig.from_dict({**data, "unknown": 1}) == EngineConfig()


class TestRetryPolicy:

    def test_delays_grow_and_are_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)

        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]
        assert policy.delay_for(1, retry_after=3.0) == 3.0

    def test_retries_transient_errors_only(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=3, base_delay=0.5, sleep=sleeps.append)
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientApiError("busy", status_code=503)
            return "ok"

        assert policy.call(flaky) == "ok"
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_max_attempts(self):
        policy = RetryPolicy(max_attempts=2, sleep=lambda _: None)
        calls = []

        def always_busy():
            calls.append(1)
            raise TransientApiError("busy")

        with pytest.raises(TransientApiError):
            policy.call(always_busy)
        assert len(calls) == 2

    def test_other_errors_are_not_retried(self):
        policy = RetryPolicy(max_attempts=5, sleep=lambda _: None)
        calls = []

        def rejected():
            calls.append(1)
            raise AuthError("expired")

        with pytest.raises(AuthError):
            policy.call(rejected)
        assert len(calls) == 1


class TestQueries:

    def test_quote_value(self):
        assert quote_value("O'Brien") == "'O\\'Brien'"
        assert quote_value(None) == "null"
        assert quote_value(True) == "true"
        assert quote_value(3) == "3"

    def test_soql(self):
        spec = QuerySpec("Contact", fields=("Id", "Name"), conditions=("IsDeleted = false",), order_by="Name", limit=10)

        assert spec.to_soql() == "SELECT Id, Name FROM Contact WHERE (IsDeleted = false) ORDER BY Name LIMIT 10"
        assert spec.to_count_soql() == "SELECT COUNT() FROM Contact WHERE (IsDeleted = false)"

    def test_selection_queries(self):
        extract = ExtractSpec.from_dict({
            "object_type": "Contact",
            "fields": ["LastName"],
            "filters": ["Email != null"],
            "selection_field": "AccountId",
            "selection_object": "Account",
        })

        assert len(selection_queries(extract, None)) == 1
        assert selection_queries(extract, []) == []

        [query] = selection_queries(extract, ["001A", "001B", "001A"])
        assert query.fields == ("Id", "LastName")
        assert query.conditions == ("Email != null", "AccountId IN ('001A', '001B')")

    def test_large_selection_is_chunked(self):
        extract = ExtractSpec(object_type="Account")
        ids = [f"001{i:05d}" for i in range(MAX_IN_CLAUSE_VALUES * 2 + 1)]

        assert len(selection_queries(extract, ids)) == 3


class TestTokenCipher:

    def test_round_trip_and_opaque(self):
        cipher = TokenCipher(key=TokenCipher.generate_key())

        encrypted = cipher.encrypt("access-token")

        assert encrypted != "access-token"
        assert cipher.decrypt(encrypted) == "access-token"

    def test_wrong_key(self):
        encrypted = TokenCipher(key=TokenCipher.generate_key()).encrypt("access-token")

        with pytest.raises(AuthError):
            TokenCipher(key=TokenCipher.generate_key()).decrypt(encrypted)

    def test_key_file_is_created_and_reused(self, tmp_path, monkeypatch):
        monkeypatch.delenv(ENCRYPTION_KEY_ENV, raising=False)
        key_file = tmp_path / "keys" / "token.key"

        encrypted = TokenCipher(key_file=str(key_file)).encrypt("access-token")

        assert key_file.exists()
        assert TokenCipher(key_file=str(key_file)).decrypt(encrypted) == "access-token"


class TestClassifyResponse:

    @pytest.mark.parametrize("status,body,kind", [
        (401, [{"errorCode": "INVALID_SESSION_ID", "message": "expired"}], ErrorKind.AUTH),
        (400, {"error": "invalid_grant", "error_description": "bad"}, ErrorKind.AUTH),
        (503, "unavailable", ErrorKind.TRANSIENT),
        (400, [{"errorCode": "UNABLE_TO_LOCK_ROW", "message": "locked"}], ErrorKind.TRANSIENT),
        (400, [{"errorCode": "INVALID_FIELD", "message": "No such column"}], ErrorKind.CONNECTIVITY),
    ])
    def test_kinds(self, status, body, kind):
        assert classify_response(status, body).kind == kind

    def test_connectivity_keeps_status(self):
        error = classify_response(404, [{"errorCode": "NOT_FOUND", "message": "missing"}])

        assert isinstance(error, ConnectivityError)
        assert error.status_code == 404
        assert error.to_dict()["kind"] == "connectivity"
