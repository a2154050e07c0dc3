"""Configuration management with validation.

Timeouts and polling behaviour are explicit values passed to every
lifecycle call. There is no process-wide mutable timeout state: callers
construct a Config (usually via Config.from_env()) and hand it to the
Reconciler, which falls back to these defaults when a call supplies none.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Lifecycle deadlines (seconds)
DEFAULT_TIMEOUT_SECONDS = 5 * 60
DEFAULT_CREATE_TIMEOUT_SECONDS = 35 * 60
DEFAULT_DELETE_TIMEOUT_SECONDS = 25 * 60

# Operation polling
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_TRANSIENT_ERRORS = 3
MAX_POLL_INTERVAL_SECONDS = 60.0

# Control plane endpoints
DEFAULT_API_ENDPOINT = "https://api.cloud.hashicorp.com"
DEFAULT_AUTH_URL = "https://auth.idp.hashicorp.com/oauth2/token"
DEFAULT_API_SCOPE = "https://api.hashicorp.cloud"

# Per-request timeout for a single control plane call
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60

# Record and state files are small YAML documents
MAX_RECORD_FILE_SIZE_BYTES = 64 * 1024

# Organization and project IDs are UUIDs on the control plane
VALID_UUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class Timeouts:
    """Wall-clock deadlines for each lifecycle action.

    The default applies to Read and to anything without a dedicated value.
    """

    default_seconds: float = DEFAULT_TIMEOUT_SECONDS
    create_seconds: float = DEFAULT_CREATE_TIMEOUT_SECONDS
    delete_seconds: float = DEFAULT_DELETE_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        for name in ("default_seconds", "create_seconds", "delete_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"Timeouts.{name} must be positive")


@dataclass(frozen=True)
class PollerConfig:
    """Operation polling behaviour."""

    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    # Consecutive transient query failures tolerated before giving up
    max_transient_errors: int = DEFAULT_MAX_TRANSIENT_ERRORS

    def __post_init__(self) -> None:
        if not 0 < self.interval_seconds <= MAX_POLL_INTERVAL_SECONDS:
            raise ConfigurationError(
                f"poll interval must be between 0 and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )
        if self.max_transient_errors < 0:
            raise ConfigurationError("max_transient_errors cannot be negative")


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-operation.
    """

    # Required fields
    organization_id: str
    project_id: str

    # Credentials (only needed by the HTTP client)
    client_id: str | None = None
    client_secret: str | None = None

    # Endpoints
    api_endpoint: str = DEFAULT_API_ENDPOINT
    auth_url: str = DEFAULT_AUTH_URL
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    timeouts: Timeouts = field(default_factory=Timeouts)
    poller: PollerConfig = field(default_factory=PollerConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.organization_id:
            errors.append("HCP_ORGANIZATION_ID is required")
        elif not re.match(VALID_UUID_PATTERN, self.organization_id.lower()):
            errors.append(f"HCP_ORGANIZATION_ID must be a valid UUID: {self.organization_id}")

        if not self.project_id:
            errors.append("HCP_PROJECT_ID is required")
        elif not re.match(VALID_UUID_PATTERN, self.project_id.lower()):
            errors.append(f"HCP_PROJECT_ID must be a valid UUID: {self.project_id}")

        if bool(self.client_id) != bool(self.client_secret):
            errors.append("HCP_CLIENT_ID and HCP_CLIENT_SECRET must be set together")

        for name, url in (("HCP_API_ENDPOINT", self.api_endpoint), ("HCP_AUTH_URL", self.auth_url)):
            if not url.startswith("https://"):
                errors.append(f"{name} must use https: {url}")

        if self.request_timeout_seconds < 1:
            errors.append("HCP_REQUEST_TIMEOUT must be at least 1 second")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            HCP_ORGANIZATION_ID: Organization owning the clusters
            HCP_PROJECT_ID: Default project for clusters without project_id
            HCP_CLIENT_ID / HCP_CLIENT_SECRET: Service principal credentials
            HCP_API_ENDPOINT: Control plane base URL
            HCP_AUTH_URL: OAuth2 token endpoint
            HCP_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 60)
            HCP_DEFAULT_TIMEOUT: Read timeout in seconds (default: 300)
            HCP_CREATE_TIMEOUT: Create timeout in seconds (default: 2100)
            HCP_DELETE_TIMEOUT: Delete timeout in seconds (default: 1500)
            HCP_POLL_INTERVAL: Seconds between operation queries (default: 5)
            HCP_POLL_MAX_TRANSIENT_ERRORS: Tolerated query failures (default: 3)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        return cls(
            organization_id=os.environ.get("HCP_ORGANIZATION_ID", ""),
            project_id=os.environ.get("HCP_PROJECT_ID", ""),
            client_id=os.environ.get("HCP_CLIENT_ID") or None,
            client_secret=os.environ.get("HCP_CLIENT_SECRET") or None,
            api_endpoint=os.environ.get("HCP_API_ENDPOINT", DEFAULT_API_ENDPOINT),
            auth_url=os.environ.get("HCP_AUTH_URL", DEFAULT_AUTH_URL),
            request_timeout_seconds=get_int("HCP_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            timeouts=Timeouts(
                default_seconds=get_int("HCP_DEFAULT_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
                create_seconds=get_int("HCP_CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
                delete_seconds=get_int("HCP_DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            ),
            poller=PollerConfig(
                interval_seconds=get_float("HCP_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
                max_transient_errors=get_int(
                    "HCP_POLL_MAX_TRANSIENT_ERRORS", DEFAULT_MAX_TRANSIENT_ERRORS
                ),
            ),
        )
