"""Per-organisation OAuth credential models."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


class TokenHealth(str, Enum):
    HEALTHY = "healthy"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass
class Credential:
    """
    OAuth state for one connected organisation.

    Tokens are stored encrypted; only the token manager ever decrypts them.
    """
    org_id: str
    instance_url: str
    encrypted_access_token: str
    encrypted_refresh_token: str
    expires_at: datetime
    org_name: str = ""
    token_version: int = 1
    health: TokenHealth = TokenHealth.HEALTHY
    connected_at: datetime = field(default_factory=datetime.utcnow)
    last_refresh_at: Optional[datetime] = None
    refresh_failure_count: int = 0
    last_error: Optional[str] = None

    def needs_refresh(self, now: datetime, margin_seconds: int) -> bool:
        """True when the access token is expired or within the safety margin."""
        return now >= self.expires_at - timedelta(seconds=margin_seconds)

    def evaluate_health(self, now: datetime, expiring_window_seconds: int) -> TokenHealth:
        """Health as of `now`; INVALID is sticky until reconnect."""
        if self.health == TokenHealth.INVALID:
            return TokenHealth.INVALID
        if now >= self.expires_at:
            return TokenHealth.EXPIRED
        if now >= self.expires_at - timedelta(seconds=expiring_window_seconds):
            return TokenHealth.EXPIRING
        return TokenHealth.HEALTHY

    def snapshot(self, health: Optional[TokenHealth] = None) -> "CredentialSnapshot":
        health = health or self.health
        return CredentialSnapshot(
            org_id=self.org_id,
            org_name=self.org_name,
            instance_url=self.instance_url,
            expires_at=self.expires_at,
            health=health,
            token_version=self.token_version,
            connected_at=self.connected_at,
            last_refresh_at=self.last_refresh_at,
            refresh_failure_count=self.refresh_failure_count,
            requires_reconnect=health == TokenHealth.INVALID,
            last_error=self.last_error,
        )


@dataclass(frozen=True)
class CredentialSnapshot:
    """Read-only view of a credential without any token material."""
    org_id: str
    org_name: str
    instance_url: str
    expires_at: datetime
    health: TokenHealth
    token_version: int
    connected_at: datetime
    last_refresh_at: Optional[datetime]
    refresh_failure_count: int
    requires_reconnect: bool
    last_error: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "org_name": self.org_name,
            "instance_url": self.instance_url,
            "expires_at": self.expires_at.isoformat(),
            "health": self.health.value,
            "token_version": self.token_version,
            "connected_at": self.connected_at.isoformat(),
            "last_refresh_at": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
            "refresh_failure_count": self.refresh_failure_count,
            "requires_reconnect": self.requires_reconnect,
            "last_error": self.last_error,
        }


@dataclass
class TokenHealthReport:
    """Token health aggregated across all known organisations."""
    checked_at: datetime
    details: List[CredentialSnapshot] = field(default_factory=list)

    @property
    def total_orgs(self) -> int:
        return len(self.details)

    @property
    def healthy_orgs(self) -> int:
        return sum(1 for d in self.details if d.health in (TokenHealth.HEALTHY, TokenHealth.EXPIRING))

    @property
    def unhealthy_orgs(self) -> int:
        return self.total_orgs - self.healthy_orgs

    @property
    def require_reconnect(self) -> int:
        return sum(1 for d in self.details if d.requires_reconnect)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "total_orgs": self.total_orgs,
            "healthy_orgs": self.healthy_orgs,
            "unhealthy_orgs": self.unhealthy_orgs,
            "require_reconnect": self.require_reconnect,
            "details": [d.to_dict() for d in self.details],
        }
