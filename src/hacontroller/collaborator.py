"""Interfaces to the orchestration platform and telemetry source."""

from abc import ABC, abstractmethod

from hacontroller.exceptions import TopologyError
from hacontroller.models import EndpointMapping, NodeRole, NodeSpec, Sample, ScalingDecision


class TopologyCollaborator(ABC):
    """The cluster platform that actually runs the store's nodes."""

    @abstractmethod
    async def list_nodes(self) -> list[NodeSpec]:
        """Get the nodes the platform currently runs."""
        ...

    @abstractmethod
    async def register_node(self, spec: NodeSpec) -> None:
        """Start tracking a node."""
        ...

    @abstractmethod
    async def deregister_node(self, node_id: str) -> None:
        """Stop tracking a node."""
        ...

    @abstractmethod
    async def set_node_role(self, node_id: str, role: NodeRole) -> None:
        """Instruct a node to take a role.

        FENCED revokes write capability; PRIMARY issues the promote command.
        """
        ...

    @abstractmethod
    async def get_node_role(self, node_id: str) -> NodeRole | None:
        """Role the node itself currently reports, or None if unknown."""
        ...

    @abstractmethod
    async def set_replica_count(self, count: int) -> None:
        """Converge the replica set to ``count`` nodes."""
        ...

    async def on_scaling_decision(self, decision: ScalingDecision) -> None:
        """Receive a scaling decision."""
        return None

    async def on_endpoint_mapping(self, mapping: EndpointMapping) -> None:
        """Receive a newly published endpoint mapping."""
        return None


class TelemetryFeed(ABC):
    """Pull-based source of load samples."""

    @abstractmethod
    async def pull(self) -> list[Sample]:
        """Return samples collected since the last pull."""
        ...


class MemoryCollaborator(TopologyCollaborator):
    """In-memory collaborator.

    Role changes are reported back immediately unless the node is listed in
    ``unresponsive``, which simulates a node that never confirms a promote.
    """

    def __init__(self, initial: list[NodeSpec] | None = None) -> None:
        self._nodes: dict[str, NodeSpec] = {}
        self._reported: dict[str, NodeRole] = {}
        self.unresponsive: set[str] = set()
        self.replica_count: int | None = None
        self.role_changes: list[tuple[str, NodeRole]] = []
        self.scaling_decisions: list[ScalingDecision] = []
        self.mappings: list[EndpointMapping] = []
        for spec in initial or []:
            self._nodes[spec.node_id] = spec
            self._reported[spec.node_id] = spec.role

    async def list_nodes(self) -> list[NodeSpec]:
        return [
            NodeSpec(node_id=spec.node_id, address=spec.address, role=self._reported[spec.node_id])
            for spec in self._nodes.values()
        ]

    async def register_node(self, spec: NodeSpec) -> None:
        if spec.node_id in self._nodes:
            raise TopologyError(f"Node {spec.node_id} already registered")
        self._nodes[spec.node_id] = spec
        self._reported[spec.node_id] = spec.role

    async def deregister_node(self, node_id: str) -> None:
        self._nodes.pop(node_id, None)
        self._reported.pop(node_id, None)

    async def set_node_role(self, node_id: str, role: NodeRole) -> None:
        if node_id not in self._nodes:
            raise TopologyError(f"Unknown node {node_id}")
        self.role_changes.append((node_id, role))
        if node_id not in self.unresponsive:
            self._reported[node_id] = role

    async def get_node_role(self, node_id: str) -> NodeRole | None:
        return self._reported.get(node_id)

    async def set_replica_count(self, count: int) -> None:
        self.replica_count = count

    async def on_scaling_decision(self, decision: ScalingDecision) -> None:
        self.scaling_decisions.append(decision)

    async def on_endpoint_mapping(self, mapping: EndpointMapping) -> None:
        self.mappings.append(mapping)


class MemoryTelemetryFeed(TelemetryFeed):
    """Telemetry feed backed by a list; each pull drains it."""

    def __init__(self, samples: list[Sample] | None = None) -> None:
        self._pending: list[Sample] = list(samples or [])

    def push(self, sample: Sample) -> None:
        self._pending.append(sample)

    async def pull(self) -> list[Sample]:
        samples, self._pending = self._pending, []
        return samples
