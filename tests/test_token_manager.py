"""Tests for credential storage, single-flight refresh and token health."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from org_migrator.errors import AuthError, TransientApiError
from org_migrator.models.credential import TokenHealth
from org_migrator.services.token_manager import TokenManager

from .conftest import Clock


class TestConnect:
    """TokenManager.connect / disconnect / get_session"""

    def test_connect_returns_snapshot(self, token_manager):
        snapshot = token_manager.connect("other", "https://other.example.com", "tok", "ref", org_name="Other Org")

        assert snapshot.org_id == "other"
        assert snapshot.org_name == "Other Org"
        assert snapshot.token_version == 1
        assert snapshot.health == TokenHealth.HEALTHY
        assert snapshot.requires_reconnect is False
        assert "access_token" not in snapshot.to_dict()

    def test_tokens_are_encrypted_at_rest(self, token_manager, store):
        credential = store.get_credential("source")

        assert credential.encrypted_access_token != "source-access-1"
        assert credential.encrypted_refresh_token != "refresh"

    def test_reconnect_bumps_version(self, token_manager):
        snapshot = token_manager.connect("source", "https://source.example.com", "new-token", "refresh")

        assert snapshot.token_version == 2
        assert token_manager.get_client("source").access_token == "new-token"

    def test_disconnect(self, token_manager):
        assert token_manager.disconnect("source") is True
        assert token_manager.disconnect("source") is False
        assert token_manager.get_session("source") is None

        with pytest.raises(AuthError) as exc_info:
            token_manager.get_client("source")
        assert exc_info.value.reconnect_required is True


class TestGetClient:
    """TokenManager.get_client"""

    def test_valid_token_is_not_refreshed(self, token_manager, refresher):
        client = token_manager.get_client("source")

        assert client.access_token == "source-access-1"
        assert client.token_version == 1
        assert refresher.calls == 0

    def test_expiring_token_is_refreshed(self, token_manager, refresher, store):
        token_manager.connect("target", "https://target.example.com", "target-access-1", "refresh", expires_in=60)

        client = token_manager.get_client("target")

        assert refresher.calls == 1
        assert client.access_token == "target-access-2"
        assert client.token_version == 3
        credential = store.get_credential("target")
        assert credential.last_refresh_at is not None
        assert credential.refresh_failure_count == 0

    def test_concurrent_callers_share_one_refresh(self, token_manager, refresher):
        token_manager.connect("target", "https://target.example.com", "target-access-1", "refresh", expires_in=1)
        refresher.gate = threading.Event()

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(token_manager.get_client, "target") for _ in range(8)]
            assert refresher.entered.wait(timeout=5)
            time.sleep(0.2)
            refresher.gate.set()
            clients = [f.result(timeout=10) for f in futures]

        assert refresher.calls == 1
        assert {c.access_token for c in clients} == {"target-access-2"}
        assert {c.token_version for c in clients} == {3}

    def test_waiting_on_slow_refresh_times_out_as_transient(self, token_manager, refresher, config):
        token_manager.connect("target", "https://target.example.com", "target-access-1", "refresh", expires_in=1)
        config.refresh_wait_timeout_seconds = 0.1
        refresher.gate = threading.Event()

        with ThreadPoolExecutor(max_workers=1) as pool:
            leader = pool.submit(token_manager.get_client, "target")
            assert refresher.entered.wait(timeout=5)
            try:
                with pytest.raises(TransientApiError) as exc_info:
                    token_manager.get_client("target")
            finally:
                refresher.gate.set()
            assert leader.result(timeout=10).access_token == "target-access-2"

        assert "waiting for token refresh of target" in exc_info.value.message
        assert refresher.calls == 1

    def test_rejected_refresh_marks_credential_invalid(self, token_manager, refresher, store):
        token_manager.connect("target", "https://target.example.com", "target-access-1", "refresh", expires_in=1)
        refresher.errors.append(AuthError("invalid_grant: expired access/refresh token", reconnect_required=True))

        with pytest.raises(AuthError) as exc_info:
            token_manager.get_client("target")
        assert exc_info.value.reconnect_required is True
        assert exc_info.value.org_id == "target"

        snapshot = token_manager.get_session("target")
        assert snapshot.health == TokenHealth.INVALID
        assert snapshot.requires_reconnect is True
        assert store.get_credential("target").refresh_failure_count == 1

        with pytest.raises(AuthError):
            token_manager.get_client("target")
        assert refresher.calls == 1

    def test_reconnect_clears_invalid_state(self, token_manager, refresher):
        token_manager.connect("target", "https://target.example.com", "target-access-1", "refresh", expires_in=1)
        refresher.errors.append(AuthError("invalid_grant", reconnect_required=True))
        with pytest.raises(AuthError):
            token_manager.get_client("target")

        token_manager.connect("target", "https://target.example.com", "fresh-token", "refresh")

        assert token_manager.get_client("target").access_token == "fresh-token"

    def test_transient_refresh_failures_are_retried(self, token_manager, refresher, config, store):
        token_manager.connect("target", "https://target.example.com", "target-access-1", "refresh", expires_in=1)
        refresher.errors.extend(
            TransientApiError("Token endpoint unavailable", status_code=503) for _ in range(config.max_attempts)
        )

        with pytest.raises(TransientApiError):
            token_manager.get_client("target")

        assert refresher.calls == config.max_attempts
        credential = store.get_credential("target")
        assert credential.refresh_failure_count == 1
        assert credential.health != TokenHealth.INVALID

    def test_transient_failure_then_success(self, token_manager, refresher):
        token_manager.connect("target", "https://target.example.com", "target-access-1", "refresh", expires_in=1)
        refresher.errors.append(TransientApiError("Token endpoint unavailable", status_code=503))

        client = token_manager.get_client("target")

        assert refresher.calls == 2
        assert client.access_token == "target-access-3"


class TestRefreshAfterAuthError:
    """TokenManager.refresh_after_auth_error"""

    def test_refreshes_stale_client(self, token_manager, refresher):
        stale = token_manager.get_client("target")

        fresh = token_manager.refresh_after_auth_error("target", stale)

        assert refresher.calls == 1
        assert fresh.token_version == stale.token_version + 1
        assert fresh.access_token == "target-access-2"

    def test_same_stale_client_refreshes_once(self, token_manager, refresher):
        stale = token_manager.get_client("target")

        first = token_manager.refresh_after_auth_error("target", stale)
        second = token_manager.refresh_after_auth_error("target", stale)

        assert refresher.calls == 1
        assert first.token_version == second.token_version


class TestTokenHealthReport:
    """TokenManager.get_token_health_report"""

    @pytest.fixture
    def clock(self):
        return Clock()

    def test_report_classifies_every_org(self, token_manager, refresher, clock, config):
        token_manager.connect("expiring", "https://e.example.com", "a", "r", expires_in=config.expiring_window_seconds - 60)
        token_manager.connect("expired", "https://x.example.com", "a", "r", expires_in=60)
        token_manager.connect("revoked", "https://r.example.com", "a", "r", expires_in=60)
        refresher.errors.append(AuthError("invalid_grant", reconnect_required=True))
        with pytest.raises(AuthError):
            token_manager.get_client("revoked")
        clock.advance(120)

        report = token_manager.get_token_health_report()

        health = {d.org_id: d.health for d in report.details}
        assert health == {
            "expired": TokenHealth.EXPIRED,
            "expiring": TokenHealth.EXPIRING,
            "revoked": TokenHealth.INVALID,
            "source": TokenHealth.HEALTHY,
            "target": TokenHealth.HEALTHY,
        }
        assert report.total_orgs == 5
        assert report.healthy_orgs == 3
        assert report.unhealthy_orgs == 2
        assert report.require_reconnect == 1
        assert [d["org_id"] for d in report.to_dict()["details"]] == sorted(health)

    def test_empty_report(self, store, cipher, refresher, config, clock):
        manager = TokenManager(store, cipher, refresher=refresher, config=config, clock=clock)

        report = manager.get_token_health_report()

        assert report.to_dict()["total_orgs"] == 0
        assert report.details == []
