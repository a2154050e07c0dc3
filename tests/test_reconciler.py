"""Tests for the lifecycle reconciler against the in-memory control plane."""

from __future__ import annotations

import asyncio
import logging

import pytest
from hcp_mock import MockControlPlane

from vault_cluster.config import Config
from vault_cluster.errors import (
    ClientRequestError,
    ClusterValidationError,
    ConflictError,
    ImmutableFieldError,
    NotFoundError,
    OperationCancelledError,
    OperationTimeoutError,
    Outcome,
    RemoteFailureError,
    TransientError,
)
from vault_cluster.models import (
    COMPUTED_FIELDS,
    ClusterCreateRequest,
    Location,
    VaultClusterRecord,
)
from vault_cluster.reconciler import Action, LifecycleCall, Phase, Reconciler

PROJECT_ID = "66666666-7777-8888-9999-000000000000"


def declared(**overrides: object) -> VaultClusterRecord:
    data: dict[str, object] = {"cluster_id": "vault-1", "network_id": "hvn-1"}
    data.update(overrides)
    return VaultClusterRecord.declare(data)


def seed_cluster(control_plane: MockControlPlane, config: Config, cluster_id: str = "vault-1") -> None:
    """Provision a cluster directly on the control plane."""
    location = Location(config.organization_id, config.project_id)
    request = ClusterCreateRequest(
        cluster_id=cluster_id, network_id="hvn-1", cloud_provider="aws", region="us-west-2"
    )
    control_plane.create_cluster(location, request)
    control_plane.complete_operations()
    control_plane.reset_calls()


@pytest.fixture
def reconciler(control_plane: MockControlPlane, config: Config) -> Reconciler:
    return Reconciler(control_plane, config)


class TestCreate:
    """Tests for Reconciler.create()."""

    @pytest.mark.asyncio
    async def test_create_populates_every_computed_field(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a successful create returns a fully populated record."""
        record = declared(public_endpoint=True, min_version="v1.7.3")

        created = await reconciler.create(record)

        assert created.has_computed is True
        assert created.state == "RUNNING"
        assert created.tier == "DEV"
        assert created.cloud_provider == "aws"
        assert created.region == "us-west-2"
        assert created.vault_version == "1.7.3"
        assert created.namespace == "admin"
        assert created.project_id == PROJECT_ID
        assert created.public_endpoint_url.startswith("https://vault-1.")
        assert created.min_version == "v1.7.3"
        # The input record is untouched
        assert record.state is None
        assert record.project_id is None

    @pytest.mark.asyncio
    async def test_create_call_sequence(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that create looks up, submits once, polls, then fetches."""
        await reconciler.create(declared())

        assert control_plane.method_calls() == [
            "get_network",
            "get_cluster",
            "create_cluster",
            "get_operation",
            "get_operation",
            "get_cluster",
        ]

    @pytest.mark.asyncio
    async def test_create_uses_network_location(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that provider and region come from the network."""
        control_plane.add_network("hvn-eu", provider="azure", region="westeurope")

        created = await reconciler.create(declared(network_id="hvn-eu"))

        assert created.cloud_provider == "azure"
        assert created.region == "westeurope"

    @pytest.mark.asyncio
    async def test_create_in_explicit_project(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a record's project overrides the configured one."""
        other_project = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"

        created = await reconciler.create(declared(project_id=other_project))

        assert created.project_id == other_project
        assert control_plane.cluster_payload(other_project, "vault-1") is not None
        assert control_plane.cluster_payload(PROJECT_ID, "vault-1") is None

    @pytest.mark.asyncio
    async def test_create_ignores_computed_input(self, reconciler: Reconciler) -> None:
        """Test that stale computed values never leak into the result."""
        stale = VaultClusterRecord(
            cluster_id="vault-1", network_id="hvn-1", tier="PLUS_LARGE", state="DELETING"
        )

        created = await reconciler.create(stale)

        assert created.tier == "DEV"
        assert created.state == "RUNNING"

    @pytest.mark.asyncio
    async def test_invalid_identity_makes_no_remote_call(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that malformed identity fields fail before any remote call."""
        record = VaultClusterRecord.model_construct(
            cluster_id="no", network_id="hvn-1", public_endpoint=False
        )

        with pytest.raises(ClusterValidationError):
            await reconciler.create(record)

        assert control_plane.call_count() == 0

    @pytest.mark.asyncio
    async def test_missing_network(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that an unknown network fails without submitting."""
        with pytest.raises(NotFoundError) as exc_info:
            await reconciler.create(declared(network_id="hvn-missing"))

        assert exc_info.value.outcome is Outcome.NOT_DONE
        assert exc_info.value.phase == Phase.FAILED.value
        assert control_plane.call_count("create_cluster") == 0

    @pytest.mark.asyncio
    async def test_existing_cluster_conflicts(
        self, reconciler: Reconciler, control_plane: MockControlPlane, config: Config
    ) -> None:
        """Test that an existing cluster with the same id is not adopted."""
        seed_cluster(control_plane, config)

        with pytest.raises(ConflictError) as exc_info:
            await reconciler.create(declared())

        assert exc_info.value.outcome is Outcome.NOT_DONE
        assert "already exists" in str(exc_info.value)
        assert control_plane.call_count("create_cluster") == 0

    @pytest.mark.asyncio
    async def test_remote_failure(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a failed provisioning operation reports its reason."""
        control_plane.create_fail_reason = "vault version 1.7.3 unavailable"

        with pytest.raises(RemoteFailureError) as exc_info:
            await reconciler.create(declared())

        assert exc_info.value.outcome is Outcome.FAILED
        assert exc_info.value.reason == "vault version 1.7.3 unavailable"
        assert exc_info.value.phase == Phase.FAILED.value

    @pytest.mark.asyncio
    async def test_submission_is_never_retried(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a lost create response surfaces as maybe done."""
        control_plane.inject_error(
            "create_cluster", TransientError("connection reset", outcome=Outcome.MAYBE_DONE)
        )

        with pytest.raises(TransientError) as exc_info:
            await reconciler.create(declared())

        assert exc_info.value.may_have_completed is True
        assert control_plane.call_count("create_cluster") == 1

    @pytest.mark.asyncio
    async def test_timeout_while_provisioning(self, config: Config) -> None:
        """Test that a deadline during polling leaves a readable cluster behind."""
        control_plane = MockControlPlane(hold_operations=True)
        control_plane.add_network("hvn-1")
        reconciler = Reconciler(control_plane, config)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await reconciler.create(declared(), timeout=0.2)

        assert exc_info.value.outcome is Outcome.MAYBE_DONE
        assert exc_info.value.phase == Phase.TIMED_OUT.value

        # The cluster is still provisioning and a later read sees it
        in_progress = await reconciler.read(declared())
        assert in_progress is not None
        assert in_progress.state == "CREATING"

        control_plane.complete_operations()
        finished = await reconciler.read(declared())
        assert finished is not None
        assert finished.state == "RUNNING"

    @pytest.mark.asyncio
    async def test_cancel_while_provisioning(self, config: Config) -> None:
        """Test that cancelling returns promptly as maybe done."""
        control_plane = MockControlPlane(hold_operations=True)
        control_plane.add_network("hvn-1")
        reconciler = Reconciler(control_plane, config)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.1, cancel.set)

        with pytest.raises(OperationCancelledError) as exc_info:
            await reconciler.create(declared(), timeout=30, cancel=cancel)

        assert exc_info.value.outcome is Outcome.MAYBE_DONE
        assert exc_info.value.phase == Phase.CANCELLED.value
        assert control_plane.call_count("create_cluster") == 1

    @pytest.mark.asyncio
    async def test_slow_network_lookup_times_out_not_done(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that timing out before submission is safe to retry."""
        control_plane.set_delay("get_network", 0.5)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await reconciler.create(declared(), timeout=0.1)

        assert exc_info.value.outcome is Outcome.NOT_DONE
        assert control_plane.call_count("create_cluster") == 0

    @pytest.mark.asyncio
    async def test_non_positive_timeout_rejected(self, reconciler: Reconciler) -> None:
        """Test that a zero timeout is a caller error."""
        with pytest.raises(ValueError, match="timeout must be positive"):
            await reconciler.create(declared(), timeout=0)

    @pytest.mark.asyncio
    async def test_create_logs_success(
        self, reconciler: Reconciler, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that success is logged with structured fields."""
        with caplog.at_level(logging.INFO, logger="vault_cluster.reconciler"):
            await reconciler.create(declared())

        records = [r for r in caplog.records if r.getMessage() == "Cluster created"]
        assert len(records) == 1
        assert records[0].cluster_id == "vault-1"  # type: ignore[attr-defined]
        assert records[0].phase == "succeeded"  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_fetch_failure_after_submit_maybe_done(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a failed fetch of the provisioned cluster is maybe done."""
        control_plane.inject_error("get_cluster", NotFoundError("absent"), TransientError("503"))

        with pytest.raises(TransientError) as exc_info:
            await reconciler.create(declared())

        assert exc_info.value.outcome is Outcome.MAYBE_DONE
        assert exc_info.value.phase == Phase.FAILED.value
        assert control_plane.cluster_payload(PROJECT_ID, "vault-1") is not None

    @pytest.mark.asyncio
    async def test_lost_operation_after_submit_maybe_done(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that an operation that cannot be found while polling is maybe done."""
        control_plane.inject_error("get_operation", NotFoundError("operation expired"))

        with pytest.raises(NotFoundError) as exc_info:
            await reconciler.create(declared())

        assert exc_info.value.outcome is Outcome.MAYBE_DONE

    @pytest.mark.asyncio
    async def test_rejected_submit_not_done(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a create the control plane refused stays not done."""
        control_plane.inject_error("create_cluster", ConflictError("taken"))

        with pytest.raises(ConflictError) as exc_info:
            await reconciler.create(declared())

        assert exc_info.value.outcome is Outcome.NOT_DONE


class TestRead:
    """Tests for Reconciler.read()."""

    @pytest.mark.asyncio
    async def test_read_existing(
        self, reconciler: Reconciler, control_plane: MockControlPlane, config: Config
    ) -> None:
        """Test that reading refreshes every computed field without polling."""
        seed_cluster(control_plane, config)

        refreshed = await reconciler.read(declared())

        assert refreshed is not None
        assert refreshed.has_computed is True
        assert refreshed.state == "RUNNING"
        assert control_plane.method_calls() == ["get_cluster"]

    @pytest.mark.asyncio
    async def test_read_missing_returns_none(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a missing cluster drops the record."""
        assert await reconciler.read(declared()) is None

    @pytest.mark.asyncio
    async def test_read_after_out_of_band_delete(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a cluster deleted elsewhere reads as gone."""
        created = await reconciler.create(declared())
        control_plane.remove_cluster_out_of_band(PROJECT_ID, "vault-1")

        assert await reconciler.read(created) is None

    @pytest.mark.asyncio
    async def test_read_transient_error_not_done(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a failed read changes nothing remotely."""
        control_plane.inject_error("get_cluster", TransientError("503"))

        with pytest.raises(TransientError) as exc_info:
            await reconciler.read(declared())

        assert exc_info.value.outcome is Outcome.NOT_DONE
        assert exc_info.value.phase == Phase.FAILED.value

    @pytest.mark.asyncio
    async def test_read_is_repeatable(
        self, reconciler: Reconciler, control_plane: MockControlPlane, config: Config
    ) -> None:
        """Test that reading twice yields the same record."""
        seed_cluster(control_plane, config)

        first = await reconciler.read(declared())
        second = await reconciler.read(first)  # type: ignore[arg-type]

        assert first == second

    @pytest.mark.asyncio
    async def test_read_reflects_create(self, reconciler: Reconciler) -> None:
        """Test that reading a freshly created cluster returns the created record."""
        created = await reconciler.create(declared())

        assert await reconciler.read(created) == created

    @pytest.mark.asyncio
    async def test_read_with_wrong_network(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a cluster on another network than recorded is not found."""
        control_plane.add_network("hvn-2")
        created = await reconciler.create(declared())
        moved = created.model_copy(update={"network_id": "hvn-2"})

        with pytest.raises(NotFoundError, match="attached to network hvn-1") as exc_info:
            await reconciler.read(moved)

        assert exc_info.value.outcome is Outcome.NOT_DONE
        assert exc_info.value.phase == Phase.FAILED.value

    @pytest.mark.asyncio
    async def test_read_missing_on_unknown_network(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a missing cluster on a missing network is not found."""
        with pytest.raises(NotFoundError):
            await reconciler.read(declared(network_id="hvn-nope"))

        assert control_plane.method_calls() == ["get_cluster", "get_network"]


class TestDelete:
    """Tests for Reconciler.delete()."""

    @pytest.mark.asyncio
    async def test_delete_waits_until_gone(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that delete polls until the cluster is removed."""
        created = await reconciler.create(declared())
        control_plane.reset_calls()

        await reconciler.delete(created)

        assert control_plane.method_calls() == [
            "get_cluster",
            "delete_cluster",
            "get_operation",
            "get_operation",
        ]
        assert control_plane.cluster_payload(PROJECT_ID, "vault-1") is None

    @pytest.mark.asyncio
    async def test_delete_absent_succeeds(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that deleting a missing cluster is a no-op."""
        await reconciler.delete(declared())

        assert control_plane.call_count("delete_cluster") == 0

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that a second delete succeeds without submitting."""
        created = await reconciler.create(declared())

        await reconciler.delete(created)
        await reconciler.delete(created)

        assert control_plane.call_count("delete_cluster") == 1

    @pytest.mark.asyncio
    async def test_delete_races_with_removal(
        self, reconciler: Reconciler, control_plane: MockControlPlane, config: Config
    ) -> None:
        """Test that a 404 on the delete request itself counts as deleted."""
        seed_cluster(control_plane, config)
        control_plane.inject_error("delete_cluster", NotFoundError("gone"))

        await reconciler.delete(declared())

        assert control_plane.call_count("get_operation") == 0

    @pytest.mark.asyncio
    async def test_delete_remote_failure(
        self, reconciler: Reconciler, control_plane: MockControlPlane, config: Config
    ) -> None:
        """Test that a failed teardown leaves the cluster and reports why."""
        seed_cluster(control_plane, config)
        control_plane.delete_fail_reason = "cluster has active snapshots"

        with pytest.raises(RemoteFailureError) as exc_info:
            await reconciler.delete(declared())

        assert exc_info.value.reason == "cluster has active snapshots"
        assert control_plane.cluster_payload(PROJECT_ID, "vault-1") is not None

    @pytest.mark.asyncio
    async def test_delete_timeout_then_retry(self, config: Config) -> None:
        """Test that a timed out delete can be repeated once teardown ends."""
        control_plane = MockControlPlane(hold_operations=True)
        control_plane.add_network("hvn-1")
        seed_cluster(control_plane, config)
        reconciler = Reconciler(control_plane, config)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await reconciler.delete(declared(), timeout=0.2)

        assert exc_info.value.may_have_completed is True

        control_plane.complete_operations()
        await reconciler.delete(declared())
        assert control_plane.call_count("delete_cluster") == 1

    @pytest.mark.asyncio
    async def test_delete_transient_submit_maybe_done(
        self, reconciler: Reconciler, control_plane: MockControlPlane, config: Config
    ) -> None:
        """Test that a lost delete response surfaces as maybe done."""
        seed_cluster(control_plane, config)
        control_plane.inject_error(
            "delete_cluster", TransientError("reset", outcome=Outcome.MAYBE_DONE)
        )

        with pytest.raises(TransientError) as exc_info:
            await reconciler.delete(declared())

        assert exc_info.value.may_have_completed is True

    @pytest.mark.asyncio
    async def test_poll_rejected_after_submit_maybe_done(
        self, reconciler: Reconciler, control_plane: MockControlPlane, config: Config
    ) -> None:
        """Test that a rejected status query after submission is maybe done."""
        seed_cluster(control_plane, config)
        control_plane.inject_error("get_operation", ClientRequestError("bad", status_code=400))

        with pytest.raises(ClientRequestError) as exc_info:
            await reconciler.delete(declared())

        assert exc_info.value.outcome is Outcome.MAYBE_DONE

    @pytest.mark.asyncio
    async def test_delete_absent_on_unknown_network(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that deleting from a network that does not exist is not found."""
        with pytest.raises(NotFoundError) as exc_info:
            await reconciler.delete(declared(cluster_id="other-1", network_id="hvn-nope"))

        assert exc_info.value.outcome is Outcome.NOT_DONE
        assert control_plane.call_count("delete_cluster") == 0


class TestReplacement:
    """Tests for identity change detection."""

    def test_identity_change_requires_replacement(self) -> None:
        """Test that changing an identity field is rejected."""
        prior = VaultClusterRecord(cluster_id="vault-1", network_id="hvn-1", project_id=PROJECT_ID)
        desired = declared(network_id="hvn-2", public_endpoint=True)

        with pytest.raises(ImmutableFieldError) as exc_info:
            Reconciler.check_replacement(prior, desired)

        assert exc_info.value.fields == ["network_id", "public_endpoint"]

    def test_same_identity_accepted(self) -> None:
        """Test that an unchanged declaration needs no replacement."""
        prior = VaultClusterRecord(cluster_id="vault-1", network_id="hvn-1", project_id=PROJECT_ID)

        Reconciler.check_replacement(prior, declared())


class TestLifecycleCall:
    """Tests for per-call phase tracking."""

    def test_phases_progress(self) -> None:
        """Test the submitted, polling, succeeded progression."""
        call = LifecycleCall(Action.CREATE, "vault-1")
        call.transition(Phase.POLLING)
        call.succeed("done")

        assert call.phase is Phase.SUCCEEDED
        assert call.phase.is_terminal is True

    def test_terminal_phase_is_final(self) -> None:
        """Test that a finished call cannot change phase."""
        call = LifecycleCall(Action.DELETE, "vault-1")
        call.fail(NotFoundError("gone"))

        with pytest.raises(RuntimeError):
            call.transition(Phase.POLLING)

    def test_fail_tags_error_phase(self) -> None:
        """Test that the error records where the call ended."""
        call = LifecycleCall(Action.CREATE, "vault-1")
        error = OperationTimeoutError("deadline exceeded")

        call.fail(error)

        assert call.phase is Phase.TIMED_OUT
        assert error.phase == "timed_out"

    def test_computed_field_list(self) -> None:
        """Test that state is reported as a computed field."""
        assert "state" in COMPUTED_FIELDS


class TestScenarios:
    """End-to-end lifecycle scenarios."""

    @pytest.mark.asyncio
    async def test_private_cluster_after_three_polls(self, config: Config) -> None:
        """Test a private cluster provisioned after three poll cycles."""
        control_plane = MockControlPlane(polls_until_done=3)
        control_plane.add_network("hvn-1")
        reconciler = Reconciler(control_plane, config)
        record = declared(cluster_id="prod-vault", public_endpoint=False)

        created = await reconciler.create(record, timeout=35 * 60)

        assert control_plane.call_count("get_operation") == 3
        assert created.tier
        assert created.region == "us-west-2"
        assert created.vault_version
        assert created.private_endpoint_url
        assert created.public_endpoint_url == ""

    @pytest.mark.asyncio
    async def test_delete_of_vanished_cluster_only_checks_existence(
        self, reconciler: Reconciler, control_plane: MockControlPlane
    ) -> None:
        """Test that deleting a vanished cluster only makes existence checks."""
        await reconciler.delete(declared())

        assert control_plane.method_calls() == ["get_cluster", "get_network"]

    @pytest.mark.asyncio
    async def test_create_timeout_then_read_sees_completion(self, config: Config) -> None:
        """Test that a timed out create can still finish and be read."""
        control_plane = MockControlPlane(polls_until_done=1000)
        control_plane.add_network("hvn-1")
        reconciler = Reconciler(control_plane, config)

        with pytest.raises(TimeoutError):
            await reconciler.create(declared(), timeout=0.1)

        control_plane.complete_operations()
        refreshed = await reconciler.read(declared())

        assert refreshed is not None
        assert refreshed.state == "RUNNING"
        assert refreshed.has_computed is True
