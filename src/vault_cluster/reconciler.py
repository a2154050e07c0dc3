"""Lifecycle reconciler for HCP Vault clusters.

Create, Read and Delete each turn a declared record into a short sequence
of control plane calls:

    create: get network -> existence check -> submit -> poll -> fetch
    read:   fetch -> network check (absent -> None)
    delete: existence check (absent -> network check) -> submit -> poll

Each call runs under one wall-clock deadline (Config.timeouts, overridable
per call) and an optional cancel event. Records are frozen; a call either
returns a new fully populated record or raises a ClusterError whose
outcome says whether the remote change is not done, maybe done, or done
and failed. No state is kept between calls.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from .client import ControlPlaneClient
from .config import Config
from .errors import (
    ClusterError,
    ConflictError,
    ImmutableFieldError,
    NotFoundError,
    OperationCancelledError,
    OperationTimeoutError,
    Outcome,
)
from .models import (
    ClusterCreateRequest,
    Location,
    NetworkSnapshot,
    VaultClusterRecord,
    changed_identity_fields,
)
from .poller import OperationPoller, run_bounded

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Lifecycle entry points."""

    CREATE = "create"
    READ = "read"
    DELETE = "delete"


class Phase(str, Enum):
    """Per-call state: SUBMITTED -> POLLING -> terminal."""

    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (Phase.SUBMITTED, Phase.POLLING)


@dataclass
class LifecycleCall:
    """Tracks one lifecycle invocation for logging."""

    action: Action
    cluster_id: str
    phase: Phase = Phase.SUBMITTED
    start_time: float = field(default_factory=time.monotonic)
    # Set once the control plane accepted the mutation
    submitted: bool = False

    @property
    def duration_seconds(self) -> float:
        return round(time.monotonic() - self.start_time, 3)

    def transition(self, phase: Phase) -> None:
        if self.phase.is_terminal:
            raise RuntimeError(f"{self.action.value} already finished as {self.phase.value}")
        logger.debug(
            "Lifecycle phase change",
            extra={
                "action": self.action.value,
                "cluster_id": self.cluster_id,
                "from_phase": self.phase.value,
                "to_phase": phase.value,
            },
        )
        self.phase = phase

    def fail(self, error: ClusterError) -> None:
        """Move to the terminal phase matching error and tag it.

        After submission nothing can be reported as not done: the remote
        change is under way or finished, whatever the later call that failed.
        """
        if self.submitted and error.outcome is Outcome.NOT_DONE:
            error.outcome = Outcome.MAYBE_DONE
        if isinstance(error, OperationTimeoutError):
            self.transition(Phase.TIMED_OUT)
        elif isinstance(error, OperationCancelledError):
            self.transition(Phase.CANCELLED)
        else:
            self.transition(Phase.FAILED)
        error.phase = self.phase.value
        logger.error(
            f"Cluster {self.action.value} failed",
            extra={
                "action": self.action.value,
                "cluster_id": self.cluster_id,
                "phase": self.phase.value,
                "outcome": error.outcome.value,
                "error_type": type(error).__name__,
                "error": str(error),
                "duration_seconds": self.duration_seconds,
            },
        )

    def succeed(self, message: str, **extra: object) -> None:
        self.transition(Phase.SUCCEEDED)
        logger.info(
            message,
            extra={
                "action": self.action.value,
                "cluster_id": self.cluster_id,
                "phase": self.phase.value,
                "duration_seconds": self.duration_seconds,
                **extra,
            },
        )


class Reconciler:
    """Converges HCP Vault clusters to declared records.

    The client is any ControlPlaneClient; its blocking calls run in the
    default executor so that deadlines and cancellation stay responsive.
    """

    def __init__(self, client: ControlPlaneClient, config: Config) -> None:
        self._client = client
        self._config = config
        self._poller = OperationPoller(client, config.poller)

    @property
    def config(self) -> Config:
        return self._config

    def _deadline(self, timeout: float | None, default: float) -> float:
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")
        return time.monotonic() + (timeout if timeout is not None else default)

    def _location(self, record: VaultClusterRecord) -> Location:
        return Location(
            organization_id=self._config.organization_id,
            project_id=record.project_id or self._config.project_id,
        )

    @staticmethod
    def check_replacement(prior: VaultClusterRecord, desired: VaultClusterRecord) -> None:
        """Reject any change to identity fields.

        Raises:
            ImmutableFieldError: If the desired record changes identity
                fields; the cluster has to be deleted and created again.
        """
        fields = changed_identity_fields(prior, desired)
        if fields:
            raise ImmutableFieldError(fields)

    async def create(
        self,
        record: VaultClusterRecord,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> VaultClusterRecord:
        """Create a cluster and wait for it to be provisioned.

        Args:
            record: Declared record; computed fields are ignored.
            timeout: Seconds allowed for the whole call (default: create timeout).
            cancel: Event that aborts the call when set.

        Returns:
            A new record with every computed field populated.

        Raises:
            ClusterValidationError: Malformed identity fields (no remote call).
            NotFoundError: The network does not exist.
            ConflictError: A cluster with this id already exists.
            RemoteFailureError: Provisioning failed remotely.
            OperationTimeoutError: The deadline passed; the cluster may
                still be provisioning, so read before retrying.
        """
        record.check_identity()
        deadline = self._deadline(timeout, self._config.timeouts.create_seconds)
        record = record.without_computed().with_project(record.project_id or self._config.project_id)
        location = self._location(record)
        call = LifecycleCall(Action.CREATE, record.cluster_id)

        try:
            network = await self._lookup_network(record, location, deadline, cancel)
            await self._ensure_absent(record, location, deadline, cancel)

            request = ClusterCreateRequest(
                cluster_id=record.cluster_id,
                network_id=record.network_id,
                public_endpoint=record.public_endpoint,
                min_version=record.min_version,
                cloud_provider=network.cloud_provider,
                region=network.region,
            )
            _, operation = await run_bounded(
                self._client.create_cluster,
                location,
                request,
                deadline=deadline,
                what=f"submit cluster {record.cluster_id}; it may have been created",
                cancel=cancel,
            )
            call.submitted = True
            logger.info(
                "Cluster create submitted",
                extra={"cluster_id": record.cluster_id, "operation_id": operation.id},
            )

            call.transition(Phase.POLLING)
            await self._poller.wait(operation, location, deadline, cancel)

            snapshot = await run_bounded(
                self._client.get_cluster,
                location,
                record.cluster_id,
                deadline=deadline,
                what=f"fetch created cluster {record.cluster_id}",
                cancel=cancel,
            )
        except ClusterError as e:
            call.fail(e)
            raise

        created = record.with_snapshot(snapshot)
        call.succeed(
            "Cluster created",
            operation_id=operation.id,
            tier=created.tier,
            vault_version=created.vault_version,
        )
        return created

    async def _lookup_network(
        self,
        record: VaultClusterRecord,
        location: Location,
        deadline: float,
        cancel: asyncio.Event | None,
    ) -> NetworkSnapshot:
        """Fetch the record's network; NotFoundError if it does not exist."""
        return await run_bounded(
            self._client.get_network,
            location,
            record.network_id,
            deadline=deadline,
            what=f"look up network {record.network_id}",
            cancel=cancel,
            outcome=Outcome.NOT_DONE,
        )

    async def _ensure_absent(
        self,
        record: VaultClusterRecord,
        location: Location,
        deadline: float,
        cancel: asyncio.Event | None,
    ) -> None:
        try:
            await run_bounded(
                self._client.get_cluster,
                location,
                record.cluster_id,
                deadline=deadline,
                what=f"check for existing cluster {record.cluster_id}",
                cancel=cancel,
                outcome=Outcome.NOT_DONE,
            )
        except NotFoundError:
            return
        raise ConflictError(
            f"a Vault cluster with cluster_id {record.cluster_id!r} already exists "
            f"in project {location.project_id}; delete it or choose another id"
        )

    async def read(
        self,
        record: VaultClusterRecord,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> VaultClusterRecord | None:
        """Refresh a record from the control plane.

        Performs a single fetch and no polling: a cluster that is still
        provisioning comes back with its current state.

        Returns:
            The refreshed record, or None if the cluster no longer exists.

        Raises:
            NotFoundError: The record's network does not exist, or the
                cluster is attached to a different network.
        """
        record.check_identity()
        deadline = self._deadline(timeout, self._config.timeouts.default_seconds)
        location = self._location(record)
        call = LifecycleCall(Action.READ, record.cluster_id)

        try:
            try:
                snapshot = await run_bounded(
                    self._client.get_cluster,
                    location,
                    record.cluster_id,
                    deadline=deadline,
                    what=f"read cluster {record.cluster_id}",
                    cancel=cancel,
                    outcome=Outcome.NOT_DONE,
                )
            except NotFoundError:
                # Gone is only drift when the record still names a real network
                await self._lookup_network(record, location, deadline, cancel)
                call.succeed("Cluster not found, dropping record", found=False)
                return None

            if snapshot.network_id and snapshot.network_id != record.network_id:
                raise NotFoundError(
                    f"cluster {record.cluster_id} is attached to network "
                    f"{snapshot.network_id}, not {record.network_id}"
                )
        except ClusterError as e:
            call.fail(e)
            raise

        refreshed = record.with_snapshot(snapshot)
        call.succeed("Cluster read", found=True, state=refreshed.state)
        return refreshed

    async def delete(
        self,
        record: VaultClusterRecord,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Delete a cluster and wait until it is gone.

        A cluster that is already absent from a known network counts as
        deleted, so repeating a failed or completed delete is safe.

        Raises:
            NotFoundError: The cluster is absent and so is its network.
            RemoteFailureError: Teardown failed remotely.
            OperationTimeoutError: The deadline passed; teardown may still
                complete, so delete again or read before assuming anything.
        """
        record.check_identity()
        deadline = self._deadline(timeout, self._config.timeouts.delete_seconds)
        location = self._location(record)
        call = LifecycleCall(Action.DELETE, record.cluster_id)

        try:
            try:
                await run_bounded(
                    self._client.get_cluster,
                    location,
                    record.cluster_id,
                    deadline=deadline,
                    what=f"check cluster {record.cluster_id} before delete",
                    cancel=cancel,
                    outcome=Outcome.NOT_DONE,
                )
            except NotFoundError:
                await self._lookup_network(record, location, deadline, cancel)
                call.succeed("Cluster already absent", already_absent=True)
                return

            try:
                operation = await run_bounded(
                    self._client.delete_cluster,
                    location,
                    record.cluster_id,
                    deadline=deadline,
                    what=f"submit delete of cluster {record.cluster_id}; it may have been deleted",
                    cancel=cancel,
                )
            except NotFoundError:
                # Removed between the check and the request
                call.succeed("Cluster already absent", already_absent=True)
                return
            call.submitted = True

            call.transition(Phase.POLLING)
            await self._poller.wait(operation, location, deadline, cancel)
        except ClusterError as e:
            call.fail(e)
            raise

        call.succeed("Cluster deleted", operation_id=operation.id)
