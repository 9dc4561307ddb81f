"""Session/token manager: OAuth credential lifecycle per organisation."""

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import requests
from dateutil import parser as date_parser

from ..clients.base import PlatformClient
from ..clients.rest_client import RestPlatformClient
from ..config import EngineConfig
from ..errors import (
    AuthError,
    ConnectivityError,
    RETRYABLE_STATUS_CODES,
    TransientApiError,
)
from ..models.credential import Credential, CredentialSnapshot, TokenHealth, TokenHealthReport
from ..retry import RetryPolicy
from ..storage.base import MigrationStore
from .crypto import TokenCipher

logger = logging.getLogger(__name__)

# OAuth error codes that mean the refresh token will never work again
UNRECOVERABLE_OAUTH_ERRORS = frozenset({
    "invalid_grant",
    "invalid_client",
    "unauthorized_client",
    "inactive_user",
    "inactive_org",
})

ClientFactory = Callable[[str, str, str, int], PlatformClient]


@dataclass
class TokenGrant:
    """Tokens returned by a successful refresh."""
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    instance_url: Optional[str] = None


class TokenRefresher:
    """Exchanges a refresh token for a new access token at the OAuth token endpoint."""

    def __init__(
        self,
        token_url: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = 30.0,
        default_lifetime_seconds: int = 7200,
        session: Optional[requests.Session] = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.default_lifetime_seconds = default_lifetime_seconds
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: EngineConfig) -> "TokenRefresher":
        return cls(
            token_url=config.token_url,
            client_id=config.client_id,
            client_secret=config.client_secret,
            timeout=config.request_timeout_seconds,
            default_lifetime_seconds=config.default_token_lifetime_seconds,
        )

    def refresh(self, org_id: str, refresh_token: str) -> TokenGrant:
        """
        Perform one refresh-token grant.

        Raises:
            AuthError: the grant was rejected (reconnect required)
            TransientApiError: timeout, rate limit or server error
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if self.client_id:
            data["client_id"] = self.client_id
        if self.client_secret:
            data["client_secret"] = self.client_secret

        try:
            response = self._session.post(self.token_url, data=data, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientApiError(f"Token refresh for {org_id} timed out") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientApiError(f"Token refresh for {org_id} could not connect: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ConnectivityError(f"Token refresh for {org_id} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = str(body.get("error", "")).lower()
            description = body.get("error_description") or response.text or f"HTTP {response.status_code}"
            if response.status_code in RETRYABLE_STATUS_CODES and error not in UNRECOVERABLE_OAUTH_ERRORS:
                raise TransientApiError(
                    f"Token refresh for {org_id} failed temporarily: {description}",
                    status_code=response.status_code,
                )
            raise AuthError(
                f"Token refresh for {org_id} was rejected ({error or response.status_code}): {description}",
                org_id=org_id,
                reconnect_required=True,
                status_code=response.status_code,
            )

        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            instance_url=body.get("instance_url"),
            expires_at=self._expiry(body),
        )

    def _expiry(self, body: Dict[str, object]) -> datetime:
        now = datetime.utcnow()
        if body.get("expires_in"):
            return now + timedelta(seconds=int(body["expires_in"]))
        if body.get("expires_at"):
            parsed = date_parser.parse(str(body["expires_at"]))
            if parsed.tzinfo is not None:
                parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
            return parsed
        return now + timedelta(seconds=self.default_lifetime_seconds)


class TokenManager:
    """
    Owns credentials for every connected organisation.

    Callers get PlatformClient handles bound to a valid token; tokens are
    refreshed transparently near expiry. Concurrent refreshes for the same
    organisation are collapsed into a single outbound call whose result is
    shared by all waiters.
    """

    def __init__(
        self,
        store: MigrationStore,
        cipher: TokenCipher,
        refresher: Optional[TokenRefresher] = None,
        config: Optional[EngineConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Initialize the token manager.

        Args:
            store: Durable store holding credentials
            cipher: Encrypts tokens at rest
            refresher: Performs refresh-token grants
            config: Engine configuration
            client_factory: Builds a client from (org_id, instance_url, access_token, token_version)
            clock: Returns the current naive UTC time
            retry_policy: Backoff for transient refresh failures
        """
        self.config = config or EngineConfig()
        self._store = store
        self._cipher = cipher
        self._refresher = refresher or TokenRefresher.from_config(self.config)
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or datetime.utcnow
        self._retry = retry_policy or RetryPolicy.from_config(self.config)

        self._guard = threading.Lock()
        self._inflight: Dict[str, Future] = {}

    def _default_client_factory(
        self,
        org_id: str,
        instance_url: str,
        access_token: str,
        token_version: int,
    ) -> PlatformClient:
        return RestPlatformClient(
            instance_url,
            access_token,
            org_id=org_id,
            token_version=token_version,
            api_version=self.config.api_version,
            timeout=self.config.request_timeout_seconds,
            rate_limit=self.config.rate_limit,
        )

    def connect(
        self,
        org_id: str,
        instance_url: str,
        access_token: str,
        refresh_token: str,
        expires_in: Optional[int] = None,
        org_name: str = "",
    ) -> CredentialSnapshot:
        """Store (or replace) the credential for an organisation."""
        now = self._clock()
        lifetime = expires_in or self.config.default_token_lifetime_seconds
        previous = self._store.get_credential(org_id)

        credential = Credential(
            org_id=org_id,
            org_name=org_name,
            instance_url=instance_url,
            encrypted_access_token=self._cipher.encrypt(access_token),
            encrypted_refresh_token=self._cipher.encrypt(refresh_token),
            expires_at=now + timedelta(seconds=lifetime),
            token_version=(previous.token_version + 1) if previous else 1,
            connected_at=now,
        )
        self._store.save_credential(credential)
        logger.info(f"Connected organisation {org_id} ({instance_url})")
        return credential.snapshot()

    def disconnect(self, org_id: str) -> bool:
        removed = self._store.delete_credential(org_id)
        if removed:
            logger.info(f"Disconnected organisation {org_id}")
        return removed

    def get_session(self, org_id: str) -> Optional[CredentialSnapshot]:
        """Current credential snapshot for an organisation, or None."""
        credential = self._store.get_credential(org_id)
        if credential is None:
            return None
        return credential.snapshot(credential.evaluate_health(self._clock(), self.config.expiring_window_seconds))

    def get_client(self, org_id: str) -> PlatformClient:
        """
        Get a client bound to a currently valid token.

        Raises:
            AuthError: unknown organisation, or the credential needs a reconnect
            TransientApiError: refresh kept failing transiently
        """
        credential = self._load(org_id)
        if credential.needs_refresh(self._clock(), self.config.refresh_margin_seconds):
            logger.debug(f"Token for {org_id} is expired or expiring, refreshing")
            credential = self._refresh_single_flight(org_id, credential.token_version)
        return self._build_client(credential)

    def refresh_after_auth_error(self, org_id: str, stale_client: PlatformClient) -> PlatformClient:
        """
        Get a new client after the platform rejected `stale_client`'s token.

        Only one refresh is made, even when several callers report the same
        stale token.
        """
        credential = self._load(org_id)
        if credential.token_version <= stale_client.token_version:
            credential = self._refresh_single_flight(org_id, stale_client.token_version)
        return self._build_client(credential)

    def get_token_health_report(self) -> TokenHealthReport:
        """Aggregate token health across all known organisations."""
        now = self._clock()
        details = [
            credential.snapshot(credential.evaluate_health(now, self.config.expiring_window_seconds))
            for credential in self._store.list_credentials()
        ]
        details.sort(key=lambda d: d.org_id)
        return TokenHealthReport(checked_at=now, details=details)

    def _load(self, org_id: str) -> Credential:
        credential = self._store.get_credential(org_id)
        if credential is None:
            raise AuthError(
                f"Organisation {org_id} is not connected",
                org_id=org_id,
                reconnect_required=True,
            )
        if credential.health == TokenHealth.INVALID:
            raise AuthError(
                f"Credential for {org_id} is invalid; reconnect required",
                org_id=org_id,
                reconnect_required=True,
            )
        return credential

    def _build_client(self, credential: Credential) -> PlatformClient:
        access_token = self._cipher.decrypt(credential.encrypted_access_token)
        return self._client_factory(
            credential.org_id,
            credential.instance_url,
            access_token,
            credential.token_version,
        )

    def _refresh_single_flight(self, org_id: str, stale_version: int) -> Credential:
        """
        Refresh once per organisation no matter how many callers ask.

        The first caller becomes the leader and performs the refresh; others
        wait on the leader's future. The future is removed only after the new
        credential is persisted, so a late caller either joins the future or
        sees the new token version.
        """
        with self._guard:
            future = self._inflight.get(org_id)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[org_id] = future

        if not leader:
            logger.debug(f"Waiting for in-flight token refresh of {org_id}")
            try:
                return future.result(timeout=self.config.refresh_wait_timeout_seconds)
            except FutureTimeoutError as e:
                raise TransientApiError(
                    f"Timed out after {self.config.refresh_wait_timeout_seconds}s waiting for token refresh of {org_id}"
                ) from e

        try:
            credential = self._refresh(org_id, stale_version)
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(credential)
            return credential
        finally:
            with self._guard:
                self._inflight.pop(org_id, None)

    def _refresh(self, org_id: str, stale_version: int) -> Credential:
        credential = self._load(org_id)
        if credential.token_version > stale_version:
            logger.debug(f"Token for {org_id} was already refreshed (version {credential.token_version})")
            return credential

        refresh_token = self._cipher.decrypt(credential.encrypted_refresh_token)

        try:
            grant = self._retry.call(
                lambda: self._refresher.refresh(org_id, refresh_token),
                description=f"Token refresh for {org_id}",
            )
        except AuthError as e:
            credential.health = TokenHealth.INVALID
            credential.refresh_failure_count += 1
            credential.last_error = e.message
            self._store.save_credential(credential)
            logger.error(f"Token refresh for {org_id} rejected; marked INVALID: {e}")
            e.org_id = org_id
            e.reconnect_required = True
            raise
        except (TransientApiError, ConnectivityError) as e:
            credential.refresh_failure_count += 1
            credential.last_error = e.message
            credential.health = credential.evaluate_health(self._clock(), self.config.expiring_window_seconds)
            self._store.save_credential(credential)
            raise

        now = self._clock()
        credential.encrypted_access_token = self._cipher.encrypt(grant.access_token)
        if grant.refresh_token:
            credential.encrypted_refresh_token = self._cipher.encrypt(grant.refresh_token)
        if grant.instance_url:
            credential.instance_url = grant.instance_url
        credential.expires_at = grant.expires_at
        credential.token_version += 1
        credential.health = TokenHealth.HEALTHY
        credential.last_refresh_at = now
        credential.refresh_failure_count = 0
        credential.last_error = None
        self._store.save_credential(credential)

        logger.info(f"Refreshed token for {org_id} (version {credential.token_version})")
        return credential
