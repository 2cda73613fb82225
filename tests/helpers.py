"""Shared test helpers."""

from hacontroller.models import HealthStatus, Node, NodeRole


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_node(
    node_id: str,
    role: NodeRole = NodeRole.REPLICA,
    *,
    health: HealthStatus = HealthStatus.HEALTHY,
    lag: float | None = None,
) -> Node:
    return Node(node_id=node_id, address=f"{node_id}:9001", role=role, health=health, lag=lag)
