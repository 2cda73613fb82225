"""Authoritative topology state owned by the controller."""

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from hacontroller.exceptions import TopologyError
from hacontroller.models import HealthStatus, Node, NodeRole

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class TopologySnapshot:
    """Point-in-time, read-only view of the topology."""

    nodes: dict[str, Node]
    primary_id: str | None
    promotion_in_progress: bool = False

    def get(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    @property
    def primary(self) -> Node | None:
        if self.primary_id is None:
            return None
        return self.nodes.get(self.primary_id)

    def with_role(self, role: NodeRole) -> list[Node]:
        """Nodes holding ``role``, ordered by node id."""
        return sorted((n for n in self.nodes.values() if n.role == role), key=lambda n: n.node_id)

    @property
    def replicas(self) -> list[Node]:
        return self.with_role(NodeRole.REPLICA)


class Topology:
    """Set of nodes plus the current primary.

    Writers take a per-node lock for the record they touch; there is no lock
    spanning all nodes. Records are immutable, so :meth:`snapshot` can copy
    them without locking and still never observe a partial update.
    """

    def __init__(
        self,
        nodes: Iterable[Node] = (),
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._nodes: dict[str, Node] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._primary_id: str | None = None
        self._listeners: list[ChangeListener] = []
        self.promotion_in_progress = False
        self.vacant_since: float | None = None
        for node in nodes:
            self._insert(node)

    @property
    def primary_id(self) -> str | None:
        return self._primary_id

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise TopologyError(f"Unknown node {node_id}") from None

    def snapshot(self) -> TopologySnapshot:
        return TopologySnapshot(
            nodes=dict(self._nodes),
            primary_id=self._primary_id,
            promotion_in_progress=self.promotion_in_progress,
        )

    def node_lock(self, node_id: str) -> asyncio.Lock:
        """Exclusive lock guarding one node record."""
        self.get(node_id)
        return self._locks[node_id]

    def subscribe(self, listener: ChangeListener) -> None:
        """Call ``listener`` after every change that affects routing."""
        self._listeners.append(listener)

    def _insert(self, node: Node) -> None:
        if node.node_id in self._nodes:
            raise TopologyError(f"Node {node.node_id} already registered")
        if node.role == NodeRole.PRIMARY:
            self._check_single_primary(node.node_id)
            self._primary_id = node.node_id
            self.vacant_since = None
        self._nodes[node.node_id] = node
        self._locks[node.node_id] = asyncio.Lock()

    def _check_single_primary(self, node_id: str) -> None:
        if self._primary_id is not None and self._primary_id != node_id:
            raise TopologyError(
                f"Cannot make {node_id} primary while {self._primary_id} is primary"
            )

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            await listener()

    async def add(self, node: Node) -> None:
        """Enroll a node registered by the collaborator."""
        self._insert(node)
        logger.info("Enrolled node %s (%s) at %s", node.node_id, node.role, node.address)
        await self._notify()

    async def remove(self, node_id: str) -> Node:
        """Drop a deregistered node."""
        async with self.node_lock(node_id):
            node = self._nodes.pop(node_id)
            if self._primary_id == node_id:
                self._primary_id = None
                self.vacant_since = self._clock()
        self._locks.pop(node_id, None)
        logger.info("Removed node %s", node_id)
        await self._notify()
        return node

    async def update_health(
        self,
        node_id: str,
        *,
        health: HealthStatus,
        lag: float | None,
        last_seen: float | None,
    ) -> Node:
        """Record probe results for a node. Health probe path only."""
        async with self.node_lock(node_id):
            old = self._nodes[node_id]
            new = dataclasses.replace(
                old,
                health=health,
                lag=lag if lag is not None else old.lag,
                last_seen=last_seen if last_seen is not None else old.last_seen,
            )
            self._nodes[node_id] = new
        if old.health != new.health:
            logger.info("Node %s health %s -> %s", node_id, old.health, new.health)
            await self._notify()
        return new

    async def set_role(self, node_id: str, role: NodeRole) -> Node:
        """Change a node's role. Promotion path only.

        Raises:
            TopologyError: if the change would create a second primary
        """
        async with self.node_lock(node_id):
            old = self._nodes[node_id]
            if old.role == role:
                return old
            if role == NodeRole.PRIMARY:
                self._check_single_primary(node_id)
            new = dataclasses.replace(old, role=role)
            self._nodes[node_id] = new
            if role == NodeRole.PRIMARY:
                self._primary_id = node_id
                self.vacant_since = None
            elif self._primary_id == node_id:
                self._primary_id = None
                self.vacant_since = self._clock()
        logger.info("Node %s role %s -> %s", node_id, old.role, role)
        await self._notify()
        return new

    def vacancy(self) -> float:
        """Seconds the topology has been without a primary (0 if it has one)."""
        if self._primary_id is not None or self.vacant_since is None:
            return 0.0
        return self._clock() - self.vacant_since
