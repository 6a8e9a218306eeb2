"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloudstack_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloudstack_mock import MockCloudStackClient, MockCloudStackState  # noqa: E402

from cloudstack_operator.models import (  # noqa: E402
    ClusterTopology,
    ClusterTopologySpec,
    Network,
    ObjectMeta,
    Zone,
)
from cloudstack_operator.network import DEFAULT_NETWORK_OFFERING  # noqa: E402

CLUSTER_UID = "0b8f1a52-6a43-4e0b-9c55-2f8f3c1a9d10"


@pytest.fixture
def state() -> MockCloudStackState:
    """A control plane with one zone and the default network offering."""
    cs = MockCloudStackState()
    cs.add_network_offering(DEFAULT_NETWORK_OFFERING)
    return cs


@pytest.fixture
def zone_id(state: MockCloudStackState) -> str:
    return state.add_zone("zone-a")


@pytest.fixture
def client(state: MockCloudStackState) -> MockCloudStackClient:
    return MockCloudStackClient(state)


@pytest.fixture
def client_factory(client: MockCloudStackClient):
    """Factory handing out the shared mock client whatever the identity."""
    return lambda identity_ref: client


def make_topology(
    *zones: Zone,
    name: str = "cluster-a",
    uid: str = CLUSTER_UID,
    host: str = "",
    port: int = 0,
    account: str = "",
    domain: str = "",
) -> ClusterTopology:
    """Build a ClusterTopology the way it would be declared."""
    return ClusterTopology(
        metadata=ObjectMeta(name=name, uid=uid),
        spec=ClusterTopologySpec.model_validate(
            {
                "zones": [z.model_dump(by_alias=True) for z in zones],
                "account": account,
                "domain": domain,
                "controlPlaneEndpoint": {"host": host, "port": port},
            }
        ),
    )


def zone(name: str = "zone-a", network: str = "net-a", network_id: str = "") -> Zone:
    return Zone(name=name, network=Network(name=network, id=network_id))
