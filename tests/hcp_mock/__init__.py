"""HCP control plane mock for integration testing.

Provides an in-memory implementation of the ControlPlaneClient protocol
so lifecycle calls can be tested without HCP connectivity.

Key Features:
- In-memory networks, clusters and operations
- Operation lifecycle simulation (running -> done / error)
- Error injection and per-method delays for failure scenarios
- Call recording for asserting which remote calls were made

Usage:
    from hcp_mock import MockControlPlane

    control_plane = MockControlPlane(polls_until_done=2)
    control_plane.add_network("hvn-1")
    reconciler = Reconciler(control_plane, config)
    created = await reconciler.create(record)

    assert control_plane.call_count("create_cluster") == 1
"""

from .context import MockHCPContext
from .control_plane import MockControlPlane, MockNetwork, MockOperation

__all__ = [
    "MockControlPlane",
    "MockHCPContext",
    "MockNetwork",
    "MockOperation",
]
