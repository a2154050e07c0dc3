"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for hcp_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from hcp_mock import MockControlPlane  # noqa: E402
from vault_cluster.config import Config, PollerConfig  # noqa: E402

ORGANIZATION_ID = "11111111-2222-3333-4444-555555555555"
PROJECT_ID = "66666666-7777-8888-9999-000000000000"


@pytest.fixture
def config() -> Config:
    """Configuration with fast polling for tests."""
    return Config(
        organization_id=ORGANIZATION_ID,
        project_id=PROJECT_ID,
        poller=PollerConfig(interval_seconds=0.01, max_transient_errors=2),
    )


@pytest.fixture
def control_plane() -> MockControlPlane:
    """Control plane with one network and fast-finishing operations."""
    plane = MockControlPlane(polls_until_done=2)
    plane.add_network("hvn-1", provider="aws", region="us-west-2")
    return plane


@pytest.fixture
def hcp_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Environment for building a Config from the process environment."""
    monkeypatch.setenv("HCP_ORGANIZATION_ID", ORGANIZATION_ID)
    monkeypatch.setenv("HCP_PROJECT_ID", PROJECT_ID)
    monkeypatch.setenv("HCP_CLIENT_ID", "client-id")
    monkeypatch.setenv("HCP_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("HCP_POLL_INTERVAL", "0.01")
