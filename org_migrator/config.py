"""Runtime configuration for the migration engine."""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

ENV_PREFIX = "ORG_MIGRATOR_"


@dataclass
class EngineConfig:
    """Configuration shared by validation, execution, token and rollback services."""

    # Loading
    batch_size: int = 200
    max_batch_size: int = 200  # Platform collection limit per request
    failure_threshold: float = 0.25  # Failed-record ratio above which a step fails
    max_records_per_step: int = 50000

    # Retry policy for transient failures
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    # Concurrency
    max_step_workers: int = 1
    max_concurrent_sessions: int = 4

    # Network
    request_timeout_seconds: float = 30.0
    rate_limit: float = 10.0  # Max requests per second per client; 0 disables throttling
    api_version: str = "59.0"

    # OAuth token lifecycle
    token_url: str = "https://login.salesforce.com/services/oauth2/token"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_margin_seconds: int = 300
    expiring_window_seconds: int = 900
    default_token_lifetime_seconds: int = 7200
    refresh_wait_timeout_seconds: float = 60.0

    # Execution
    revalidate_on_start: bool = False
    eta_window: int = 5
    report_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (secrets omitted)."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.pop("client_secret", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create from dictionary representation, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Build a configuration from ORG_MIGRATOR_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            EngineConfig with every variable that is set applied over the defaults
        """
        environ = os.environ if environ is None else environ
        defaults = cls()
        values: Dict[str, Any] = {}

        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            values[f.name] = _coerce(raw, getattr(defaults, f.name))

        return cls(**values)


def _coerce(raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the field default."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
