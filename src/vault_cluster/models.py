"""Pydantic models for the Vault cluster record and control plane payloads.

These models provide:
1. Validation of user-supplied identity fields (slugs, versions)
2. A frozen record whose computed fields are filled from one snapshot
3. Parsing of control plane JSON into typed snapshots and operations
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from .errors import ClusterValidationError

# Slugs: letters, digits and hyphens, 3 to 36 characters
SLUG_PATTERN = re.compile(r"^[-\da-zA-Z]{3,36}$")

# semver.org grammar, with an optional leading "v"
SEMVER_PATTERN = re.compile(
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

# The control plane does not report a namespace; HCP Vault clusters use "admin"
DEFAULT_NAMESPACE = "admin"

# Identity fields: any change forces replacement
IDENTITY_FIELDS: tuple[str, ...] = (
    "cluster_id",
    "network_id",
    "public_endpoint",
    "min_version",
    "project_id",
)

# Fields populated only from a remote snapshot
COMPUTED_FIELDS: tuple[str, ...] = (
    "tier",
    "organization_id",
    "cloud_provider",
    "region",
    "namespace",
    "vault_version",
    "public_endpoint_url",
    "private_endpoint_url",
    "created_at",
    "state",
)


def validate_slug(value: str, field_name: str = "id") -> str:
    """Check a slug-formatted identifier.

    Raises:
        ValueError: If the value is not a valid slug.
    """
    if not SLUG_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must be between 3 and 36 characters in length "
            f"and contain only letters, numbers or hyphens: {value!r}"
        )
    return value


def validate_semver(value: str, field_name: str = "version") -> str:
    """Check a semantic version string.

    Raises:
        ValueError: If the value is not a valid semantic version.
    """
    if not SEMVER_PATTERN.match(value):
        raise ValueError(f"{field_name} must be a valid semantic version: {value!r}")
    return value


def normalize_version(value: str | None) -> str | None:
    if value is None:
        return None
    return value[1:] if value.startswith("v") else value


# =============================================================================
# Control plane payloads
# =============================================================================


@dataclass(frozen=True)
class Location:
    """Organization and project a cluster lives in."""

    organization_id: str
    project_id: str


class OperationStatus(str, Enum):
    """Operation states as seen by the poller."""

    RUNNING = "Running"
    DONE = "Done"
    ERROR = "Error"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationStatus.RUNNING


class Operation(BaseModel):
    """Handle to an asynchronous control plane action."""

    model_config = {"extra": "ignore", "frozen": True}

    id: str
    status: OperationStatus = OperationStatus.RUNNING
    error_message: str | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> Operation:
        """Parse an operation object.

        The control plane reports PENDING, RUNNING and DONE states; a DONE
        operation carrying an error is a failure.
        """
        state = str(payload.get("state", "")).upper()
        error = payload.get("error") or None
        if state == "DONE":
            status = OperationStatus.ERROR if error else OperationStatus.DONE
        else:
            status = OperationStatus.RUNNING

        message = None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            message = message or "operation failed without a reason"

        return cls(id=payload["id"], status=status, error_message=message)


class NetworkSnapshot(BaseModel):
    """Observed state of the network (HVN) a cluster attaches to."""

    model_config = {"extra": "ignore", "frozen": True}

    id: str
    cloud_provider: str
    region: str
    state: str | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> NetworkSnapshot:
        region = payload.get("location", {}).get("region", {})
        return cls(
            id=payload["id"],
            cloud_provider=region.get("provider", ""),
            region=region.get("region", ""),
            state=payload.get("state"),
        )


class ClusterSnapshot(BaseModel):
    """One consistent observation of a cluster from the control plane."""

    model_config = {"extra": "ignore", "frozen": True}

    id: str
    organization_id: str
    project_id: str
    network_id: str
    cloud_provider: str = ""
    region: str = ""
    tier: str = ""
    state: str = ""
    namespace: str = DEFAULT_NAMESPACE
    vault_version: str = ""
    min_version: str | None = None
    public_endpoint: bool = False
    public_endpoint_url: str = ""
    private_endpoint_url: str = ""
    created_at: str = ""

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> ClusterSnapshot:
        """Parse a cluster object from the Vault service API."""
        location = payload.get("location", {})
        region = location.get("region", {})
        config = payload.get("config", {})
        network_config = config.get("network_config", {})
        vault_config = config.get("vault_config", {})
        dns_names = payload.get("dns_names", {})

        return cls(
            id=payload["id"],
            organization_id=location.get("organization_id", ""),
            project_id=location.get("project_id", ""),
            network_id=network_config.get("network_id", ""),
            cloud_provider=region.get("provider", ""),
            region=region.get("region", ""),
            tier=config.get("tier", ""),
            state=payload.get("state", ""),
            namespace=payload.get("namespace") or DEFAULT_NAMESPACE,
            vault_version=payload.get("current_version", ""),
            min_version=vault_config.get("initial_version") or None,
            public_endpoint=bool(network_config.get("public_ips_enabled", False)),
            public_endpoint_url=dns_names.get("public", "") or "",
            private_endpoint_url=dns_names.get("private", "") or "",
            created_at=payload.get("created_at", ""),
        )


class ClusterCreateRequest(BaseModel):
    """Body of a create-cluster call."""

    model_config = {"extra": "ignore", "frozen": True}

    cluster_id: str
    network_id: str
    public_endpoint: bool = False
    min_version: str | None = None
    cloud_provider: str
    region: str

    def to_api_body(self, location: Location) -> dict[str, Any]:
        """Convert to the Vault service create payload."""
        vault_config: dict[str, Any] = {}
        if self.min_version:
            vault_config["initial_version"] = normalize_version(self.min_version)

        return {
            "cluster": {
                "id": self.cluster_id,
                "location": {
                    "organization_id": location.organization_id,
                    "project_id": location.project_id,
                    "region": {"provider": self.cloud_provider, "region": self.region},
                },
                "config": {
                    "vault_config": vault_config,
                    "network_config": {
                        "network_id": self.network_id,
                        "public_ips_enabled": self.public_endpoint,
                    },
                },
            }
        }


# =============================================================================
# Resource record
# =============================================================================


class VaultClusterRecord(BaseModel):
    """Caller-visible record of a Vault cluster.

    Identity fields come from the user and never change; computed fields
    come only from a control plane snapshot. The model is frozen: lifecycle
    calls return new records and never modify the one they were given.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    cluster_id: str = Field(alias="clusterId")
    network_id: str = Field(alias="networkId")
    public_endpoint: bool = Field(False, alias="publicEndpoint")
    min_version: str | None = Field(None, alias="minVersion")
    project_id: str | None = Field(None, alias="projectId")

    tier: str | None = None
    organization_id: str | None = None
    cloud_provider: str | None = None
    region: str | None = None
    namespace: str | None = None
    vault_version: str | None = None
    public_endpoint_url: str | None = None
    private_endpoint_url: str | None = None
    created_at: str | None = None
    state: str | None = None

    @field_validator("cluster_id", "network_id")
    @classmethod
    def validate_ids(cls, v: str, info: ValidationInfo) -> str:
        return validate_slug(v, info.field_name or "id")

    @field_validator("min_version")
    @classmethod
    def validate_min_version(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return validate_semver(v, "min_version")

    @classmethod
    def declare(cls, data: dict[str, Any]) -> VaultClusterRecord:
        """Build a record from user intent, ignoring any computed values."""
        record = cls.model_validate(data)
        return record.model_copy(update=dict.fromkeys(COMPUTED_FIELDS))

    @property
    def has_computed(self) -> bool:
        return all(getattr(self, name) is not None for name in COMPUTED_FIELDS)

    def check_identity(self) -> None:
        """Re-check identity fields on records built without validation.

        Raises:
            ClusterValidationError: If any identity field is malformed.
        """
        try:
            validate_slug(self.cluster_id, "cluster_id")
            validate_slug(self.network_id, "network_id")
            if self.min_version is not None:
                validate_semver(self.min_version, "min_version")
        except (TypeError, ValueError) as e:
            raise ClusterValidationError(str(e)) from e

    def with_project(self, project_id: str) -> VaultClusterRecord:
        return self.model_copy(update={"project_id": project_id})

    def with_snapshot(self, snapshot: ClusterSnapshot) -> VaultClusterRecord:
        """Return a copy with every computed field taken from one snapshot."""
        return self.model_copy(
            update={
                "project_id": snapshot.project_id or self.project_id,
                "tier": snapshot.tier,
                "organization_id": snapshot.organization_id,
                "cloud_provider": snapshot.cloud_provider,
                "region": snapshot.region,
                "namespace": snapshot.namespace,
                "vault_version": snapshot.vault_version,
                "public_endpoint_url": snapshot.public_endpoint_url if self.public_endpoint else "",
                "private_endpoint_url": snapshot.private_endpoint_url,
                "created_at": snapshot.created_at,
                "state": snapshot.state,
            }
        )

    def without_computed(self) -> VaultClusterRecord:
        return self.model_copy(update=dict.fromkeys(COMPUTED_FIELDS))


def changed_identity_fields(
    prior: VaultClusterRecord, desired: VaultClusterRecord
) -> list[str]:
    """List identity fields that differ between two records.

    An unset project_id in the desired record matches whatever project
    the prior record was resolved to. Versions compare without a leading "v".
    """
    changed = []
    for name in IDENTITY_FIELDS:
        before = getattr(prior, name)
        after = getattr(desired, name)
        if name == "project_id" and after is None:
            continue
        if name == "min_version":
            before, after = normalize_version(before), normalize_version(after)
        if before != after:
            changed.append(name)
    return changed
