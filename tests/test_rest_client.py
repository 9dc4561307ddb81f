"""Tests for the REST platform client and the OAuth token refresher."""

import json

import pytest
import requests

from org_migrator.clients.query import QuerySpec
from org_migrator.clients.rest_client import RestPlatformClient
from org_migrator.errors import AuthError, ConnectivityError, TransientApiError
from org_migrator.models.template import LoadOperation
from org_migrator.services.token_manager import TokenRefresher


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None, text=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        self.text = text if text is not None else (json.dumps(body) if body is not None else "")
        self.content = self.text.encode()

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeSession:
    """Replays queued responses and records every request."""

    def __init__(self, responses=()):
        self.headers = {}
        self.responses = list(responses)
        self.requests = []

    def _next(self):
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        return self._next()

    def post(self, url, **kwargs):
        self.requests.append({"method": "POST", "url": url, **kwargs})
        return self._next()


def make_client(*responses, **options):
    session = FakeSession(responses)
    options.setdefault("rate_limit", 0)
    client = RestPlatformClient(
        "https://acme.my.salesforce.com/",
        "token-1",
        org_id="acme",
        token_version=2,
        session=session,
        **options,
    )
    return client, session


class TestRestPlatformClient:
    """RestPlatformClient"""

    def test_sets_auth_header(self):
        client, session = make_client()

        assert session.headers["Authorization"] == "Bearer token-1"
        assert client.base_url == "https://acme.my.salesforce.com/services/data/v59.0"
        assert client.token_version == 2

    def test_query_follows_pagination(self):
        client, session = make_client(
            FakeResponse(body={
                "done": False,
                "nextRecordsUrl": "/services/data/v59.0/query/01g-2000",
                "records": [{"attributes": {"type": "Account"}, "Id": "001A"}],
            }),
            FakeResponse(body={"done": True, "records": [{"attributes": {"type": "Account"}, "Id": "001B"}]}),
        )

        rows = list(client.query(QuerySpec("Account", fields=("Id", "Name"), conditions=("Name != null",))))

        assert rows == [{"Id": "001A"}, {"Id": "001B"}]
        assert session.requests[0]["params"] == {"q": "SELECT Id, Name FROM Account WHERE (Name != null)"}
        assert session.requests[1]["url"] == "https://acme.my.salesforce.com/services/data/v59.0/query/01g-2000"

    def test_count(self):
        client, session = make_client(FakeResponse(body={"totalSize": 42, "done": True, "records": []}))

        assert client.count(QuerySpec("Contact")) == 42
        assert session.requests[0]["params"] == {"q": "SELECT COUNT() FROM Contact"}

    def test_describe(self):
        client, _ = make_client(FakeResponse(body={
            "name": "Contact",
            "createable": True,
            "fields": [
                {"name": "Id", "type": "id", "createable": False},
                {"name": "AccountId", "type": "reference", "referenceTo": ["Account"], "relationshipName": "Account"},
            ],
        }))

        describe = client.describe("Contact")

        assert describe.get_field("accountid").reference_to == ("Account",)
        assert describe.has_path("Account.Name")
        assert not describe.has_path("Owner.Name")

    def test_describe_missing_object(self):
        client, _ = make_client(FakeResponse(404, body=[{"errorCode": "NOT_FOUND", "message": "The requested resource does not exist"}]))

        assert client.describe("Nope__c") is None

    def test_insert_sends_collections_and_returns_results(self):
        client, session = make_client(
            FakeResponse(body=[{"success": True, "id": "001T1", "errors": []}, {"success": True, "id": "001T2", "errors": []}]),
            FakeResponse(body=[{
                "success": False,
                "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Required fields are missing", "fields": ["Name"]}],
            }]),
        )

        results = client.bulk_write("Account", [{"Name": "A"}, {"Name": "B"}, {}], LoadOperation.INSERT, batch_size=2)

        assert [r.success for r in results] == [True, True, False]
        assert results[2].message == "REQUIRED_FIELD_MISSING: Required fields are missing [Name]"
        assert results[2].error_code == "REQUIRED_FIELD_MISSING"
        first = session.requests[0]
        assert first["method"] == "POST"
        assert first["json"]["allOrNone"] is False
        assert first["json"]["records"][0] == {"attributes": {"type": "Account"}, "Name": "A"}

    def test_upsert_uses_external_id_path(self):
        client, session = make_client(FakeResponse(body=[{"success": True, "id": "001T1", "errors": []}]))

        client.bulk_write("Account", [{"Ext__c": "1"}], LoadOperation.UPSERT, external_id_field="Ext__c")

        assert session.requests[0]["method"] == "PATCH"
        assert session.requests[0]["url"].endswith("/composite/sobjects/Account/Ext__c")

    def test_upsert_without_external_id(self):
        client, _ = make_client()

        with pytest.raises(ValueError):
            client.bulk_write("Account", [{"Name": "A"}], LoadOperation.UPSERT)

    def test_delete(self):
        client, session = make_client(FakeResponse(body=[
            {"success": True, "id": "001T1", "errors": []},
            {"success": False, "id": "001T2", "errors": [{"statusCode": "ENTITY_IS_DELETED", "message": "entity is deleted"}]},
        ]))

        results = client.bulk_delete("Account", ["001T1", "001T2"])

        assert [r.success for r in results] == [True, False]
        assert session.requests[0]["params"] == {"ids": "001T1,001T2", "allOrNone": "false"}

    def test_result_count_mismatch(self):
        client, _ = make_client(FakeResponse(body=[{"success": True, "id": "001T1", "errors": []}]))

        with pytest.raises(ConnectivityError):
            client.bulk_delete("Account", ["001T1", "001T2"])

    @pytest.mark.parametrize("response,error_type", [
        (FakeResponse(401, body=[{"errorCode": "INVALID_SESSION_ID", "message": "Session expired or invalid"}]), AuthError),
        (FakeResponse(503, text="Service Unavailable"), TransientApiError),
        (FakeResponse(403, body=[{"errorCode": "REQUEST_LIMIT_EXCEEDED", "message": "TotalRequests Limit exceeded"}]), TransientApiError),
        (FakeResponse(400, body=[{"errorCode": "MALFORMED_QUERY", "message": "unexpected token"}]), ConnectivityError),
        (requests.exceptions.ConnectTimeout("timed out"), TransientApiError),
        (requests.exceptions.ConnectionError("reset"), TransientApiError),
        (requests.exceptions.InvalidURL("bad url"), ConnectivityError),
    ])
    def test_error_classification(self, response, error_type):
        client, _ = make_client(response)

        with pytest.raises(error_type):
            client.count(QuerySpec("Account"))

    def test_retry_after_header(self):
        client, _ = make_client(FakeResponse(429, body=[{"errorCode": "REQUEST_LIMIT_EXCEEDED", "message": "slow down"}], headers={"Retry-After": "12"}))

        with pytest.raises(TransientApiError) as exc_info:
            client.count(QuerySpec("Account"))

        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.error_code == "REQUEST_LIMIT_EXCEEDED"


class ManualClock:
    """Monotonic clock that only moves when slept on or advanced."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateLimit:
    """Client-side request throttling"""

    def count_response(self):
        return FakeResponse(body={"totalSize": 1, "done": True, "records": []})

    def test_requests_are_spaced_by_rate_limit(self):
        clock = ManualClock()
        client, session = make_client(
            *(self.count_response() for _ in range(3)), rate_limit=4, clock=clock, sleep=clock.sleep,
        )

        for _ in range(3):
            client.count(QuerySpec("Account"))

        assert clock.sleeps == [0.25, 0.25]
        assert len(session.requests) == 3

    def test_elapsed_time_counts_towards_interval(self):
        clock = ManualClock()
        client, _ = make_client(
            self.count_response(), self.count_response(), rate_limit=2, clock=clock, sleep=clock.sleep,
        )

        client.count(QuerySpec("Account"))
        clock.now += 0.2
        client.count(QuerySpec("Account"))

        assert clock.sleeps == [pytest.approx(0.3)]

    def test_zero_disables_throttling(self):
        clock = ManualClock()
        client, _ = make_client(
            self.count_response(), self.count_response(), rate_limit=0, clock=clock, sleep=clock.sleep,
        )

        client.count(QuerySpec("Account"))
        client.count(QuerySpec("Account"))

        assert clock.sleeps == []

    def test_failed_requests_are_throttled_too(self):
        clock = ManualClock()
        client, _ = make_client(
            FakeResponse(503, body="unavailable"), self.count_response(),
            rate_limit=10, clock=clock, sleep=clock.sleep,
        )

        with pytest.raises(TransientApiError):
            client.count(QuerySpec("Account"))
        client.count(QuerySpec("Account"))

        assert clock.sleeps == [pytest.approx(0.1)]

class TestTokenRefresher:
    """TokenRefresher.refresh"""

    def make_refresher(self, *responses):
        session = FakeSession(responses)
        refresher = TokenRefresher(
            "https://login.example.com/services/oauth2/token",
            client_id="client",
            client_secret="secret",
            session=session,
        )
        return refresher, session

    def test_successful_grant(self):
        refresher, session = self.make_refresher(FakeResponse(body={
            "access_token": "new-access",
            "instance_url": "https://acme.my.salesforce.com",
            "expires_in": 3600,
        }))

        grant = refresher.refresh("acme", "refresh-1")

        assert grant.access_token == "new-access"
        assert grant.refresh_token is None
        assert grant.instance_url == "https://acme.my.salesforce.com"
        assert session.requests[0]["data"] == {
            "grant_type": "refresh_token",
            "refresh_token": "refresh-1",
            "client_id": "client",
            "client_secret": "secret",
        }

    def test_explicit_expiry_timestamp(self):
        refresher, _ = self.make_refresher(FakeResponse(body={
            "access_token": "new-access",
            "expires_at": "2030-01-01T10:00:00+02:00",
        }))

        grant = refresher.refresh("acme", "refresh-1")

        assert grant.expires_at.isoformat() == "2030-01-01T08:00:00"

    def test_invalid_grant_requires_reconnect(self):
        refresher, _ = self.make_refresher(FakeResponse(400, body={
            "error": "invalid_grant",
            "error_description": "expired access/refresh token",
        }))

        with pytest.raises(AuthError) as exc_info:
            refresher.refresh("acme", "refresh-1")

        assert exc_info.value.reconnect_required is True
        assert exc_info.value.org_id == "acme"

    def test_server_error_is_transient(self):
        refresher, _ = self.make_refresher(FakeResponse(503, text="unavailable"))

        with pytest.raises(TransientApiError):
            refresher.refresh("acme", "refresh-1")

    def test_timeout_is_transient(self):
        refresher, _ = self.make_refresher(requests.exceptions.ReadTimeout("slow"))

        with pytest.raises(TransientApiError):
            refresher.refresh("acme", "refresh-1")
