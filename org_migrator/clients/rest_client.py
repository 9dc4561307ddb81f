"""REST client for Salesforce-style platform organisations."""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import (
    ConnectivityError,
    TransientApiError,
    classify_response,
)
from ..models.template import LoadOperation
from .base import ObjectDescribe, PlatformClient, WriteResult
from .query import QuerySpec, chunked

logger = logging.getLogger(__name__)

# Composite sObject collections accept at most this many records per call
COLLECTION_LIMIT = 200


class RestPlatformClient(PlatformClient):
    """
    Platform client over the REST API.

    Supports:
    - SOQL queries with nextRecordsUrl pagination
    - Object describe
    - Composite collection insert/update/upsert/delete with per-record results
    - Automatic retry of idempotent reads on 429/5xx
    - Client-side throttling to a maximum request rate
    """

    def __init__(
        self,
        instance_url: str,
        access_token: str,
        org_id: Optional[str] = None,
        token_version: int = 0,
        api_version: str = "59.0",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        max_read_retries: int = 3,
        backoff_factor: float = 0.5,
        rate_limit: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the client.

        Args:
            instance_url: Organisation base URL, e.g. https://acme.my.salesforce.com
            access_token: OAuth access token
            org_id: Organisation the token belongs to
            token_version: Version of the token, used to detect stale clients
            api_version: REST API version
            timeout: Per-request timeout in seconds
            session: Custom requests session
            max_read_retries: Retries for GET requests on 429/5xx
            backoff_factor: urllib3 backoff factor for those retries
            rate_limit: Max requests per second; 0 disables throttling
            clock: Monotonic time source used for throttling
            sleep: Sleep function used for throttling
        """
        super().__init__(org_id=org_id, token_version=token_version)
        self.instance_url = instance_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.rate_limit = rate_limit
        self._clock = clock
        self._sleep = sleep
        self._last_request_time: Optional[float] = None
        self._rate_lock = threading.Lock()
        self._session = session or self._create_session(max_read_retries, backoff_factor)
        self._session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def _create_session(self, max_retries: int, backoff_factor: float) -> requests.Session:
        """Create a requests session that retries idempotent reads."""
        session = requests.Session()

        retries = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=frozenset(["GET"]),
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    @property
    def base_url(self) -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}"

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        if path.startswith("/services/"):
            return f"{self.instance_url}{path}"
        return f"{self.base_url}{path}"

    def _rate_limit_wait(self) -> None:
        """Space requests at least 1/rate_limit seconds apart; shared by every thread using this client."""
        if self.rate_limit <= 0:
            return
        with self._rate_lock:
            now = self._clock()
            if self._last_request_time is not None:
                wait_time = (1.0 / self.rate_limit) - (now - self._last_request_time)
                if wait_time > 0:
                    self._sleep(wait_time)
                    now = self._clock()
            self._last_request_time = now

    def _request(self, method: str, path: str, **kwargs) -> Any:
        """Send a request and decode the JSON body, raising taxonomy errors on failure."""
        url = self._url(path)
        self._rate_limit_wait()
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransientApiError(f"{method} {path} timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientApiError(f"{method} {path} could not connect: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ConnectivityError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise classify_response(
                response.status_code,
                self._decode(response),
                retry_after=self._retry_after(response),
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    def query(self, spec: QuerySpec) -> Iterator[Dict[str, Any]]:
        soql = spec.to_soql()
        logger.debug(f"Querying {spec.object_type}: {soql}")
        data = self._request("GET", "/query", params={"q": soql})

        while True:
            for row in data.get("records", []):
                row.pop("attributes", None)
                yield row

            next_url = data.get("nextRecordsUrl")
            if data.get("done", True) or not next_url:
                break
            data = self._request("GET", next_url)

    def count(self, spec: QuerySpec) -> int:
        data = self._request("GET", "/query", params={"q": spec.to_count_soql()})
        return int(data.get("totalSize", 0))

    def describe(self, object_type: str) -> Optional[ObjectDescribe]:
        try:
            data = self._request("GET", f"/sobjects/{object_type}/describe")
        except ConnectivityError as e:
            if e.status_code == 404:
                return None
            raise
        return ObjectDescribe.from_payload(data)

    def bulk_write(
        self,
        object_type: str,
        records: Sequence[Dict[str, Any]],
        operation: LoadOperation,
        batch_size: int = 200,
        external_id_field: Optional[str] = None,
    ) -> List[WriteResult]:
        if operation == LoadOperation.UPSERT and not external_id_field:
            raise ValueError("Upsert requires an external id field")

        size = max(1, min(batch_size, COLLECTION_LIMIT))
        results: List[WriteResult] = []

        for chunk in chunked(list(records), size):
            payload = {
                "allOrNone": False,
                "records": [{"attributes": {"type": object_type}, **record} for record in chunk],
            }
            if operation == LoadOperation.INSERT:
                data = self._request("POST", "/composite/sobjects", json=payload)
            elif operation == LoadOperation.UPDATE:
                data = self._request("PATCH", "/composite/sobjects", json=payload)
            else:
                data = self._request(
                    "PATCH",
                    f"/composite/sobjects/{object_type}/{external_id_field}",
                    json=payload,
                )
            results.extend(self._write_results(data, len(chunk)))

        return results

    def bulk_delete(self, object_type: str, ids: Sequence[str]) -> List[WriteResult]:
        results: List[WriteResult] = []
        for chunk in chunked(list(ids), COLLECTION_LIMIT):
            data = self._request(
                "DELETE",
                "/composite/sobjects",
                params={"ids": ",".join(chunk), "allOrNone": "false"},
            )
            results.extend(self._write_results(data, len(chunk)))
        return results

    @staticmethod
    def _write_results(data: Any, expected: int) -> List[WriteResult]:
        if not isinstance(data, list) or len(data) != expected:
            received = len(data) if isinstance(data, list) else 0
            raise ConnectivityError(
                f"Platform returned {received} results for {expected} records"
            )
        return [WriteResult.from_payload(item) for item in data]
