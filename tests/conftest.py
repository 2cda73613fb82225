"""Pytest configuration for ha-controller tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from dqlitewire.messages import LeaderResponse, WelcomeResponse
from hacontroller.collaborator import MemoryCollaborator
from hacontroller.models import Node, NodeRole, NodeSpec
from hacontroller.topology import Topology
from helpers import FakeClock, make_node


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def nodes() -> list[Node]:
    """One primary and two replicas, r1 the least lagged."""
    return [
        make_node("p1", NodeRole.PRIMARY),
        make_node("r1", lag=0.0),
        make_node("r2", lag=5.0),
    ]


@pytest.fixture
def topology(nodes: list[Node], clock: FakeClock) -> Topology:
    return Topology(nodes, clock=clock)


@pytest.fixture
def collaborator(nodes: list[Node]) -> MemoryCollaborator:
    return MemoryCollaborator(
        [NodeSpec(node_id=n.node_id, address=n.address, role=n.role) for n in nodes]
    )


@pytest.fixture
def mock_reader() -> AsyncMock:
    """Create a mock StreamReader."""
    reader = AsyncMock()
    return reader


@pytest.fixture
def mock_writer() -> MagicMock:
    """Create a mock StreamWriter."""
    writer = MagicMock()
    writer.write = MagicMock()
    writer.drain = AsyncMock()
    writer.close = MagicMock()
    writer.wait_closed = AsyncMock()
    return writer


@pytest.fixture
def welcome_response() -> bytes:
    """Create encoded WelcomeResponse."""
    return WelcomeResponse(heartbeat_timeout=15000).encode()


@pytest.fixture
def leader_response() -> bytes:
    """Create encoded LeaderResponse pointing at another node."""
    return LeaderResponse(node_id=1, address="localhost:9001").encode()
