"""Periodic liveness and replication-lag probing."""

import asyncio
import dataclasses
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from hacontroller.config import ProbeConfig
from hacontroller.exceptions import HAError, TopologyError, TransientProbeError
from hacontroller.metrics import MetricAggregator
from hacontroller.models import HealthResult, HealthStatus, Node, NodeRole, Observation
from hacontroller.protocol import DqliteSession
from hacontroller.topology import Topology

logger = logging.getLogger(__name__)

ObservationHandler = Callable[[Observation], Awaitable[object]]
NodeHandler = Callable[[str], Awaitable[object]]


class ProbeBackend(ABC):
    """Performs one network check against a node."""

    @abstractmethod
    async def check(self, node: Node) -> HealthResult:
        """Check ``node``.

        Raises OSError, TimeoutError or HAError when the node cannot be reached.
        """
        ...


class DqliteProbeBackend(ProbeBackend):
    """Probe a dqlite node by handshaking and asking for the leader."""

    async def check(self, node: Node) -> HealthResult:
        session = await DqliteSession.open(node.address)
        try:
            await session.handshake()
            _, leader_address = await session.get_leader()
        finally:
            await session.close()

        # Empty address means this node is the leader
        is_leader = not leader_address or leader_address == node.address
        return HealthResult(
            status=HealthStatus.HEALTHY,
            reported_role=NodeRole.PRIMARY if is_leader else NodeRole.REPLICA,
        )


class CallableProbeBackend(ProbeBackend):
    """Adapt an async callable into a probe backend."""

    def __init__(self, func: Callable[[Node], Awaitable[HealthResult]]) -> None:
        self._func = func

    async def check(self, node: Node) -> HealthResult:
        return await self._func(node)


class HealthProbe:
    """One observer's probe of every node.

    A single probe path cannot tell node failure from a partition, so a
    failed probe only makes the node suspect. ``suspect_threshold``
    consecutive suspect results escalate the local judgment to down; from
    then on every failed probe emits a down observation for the quorum
    detector, and the first successful probe emits a healthy one.
    """

    def __init__(
        self,
        observer_id: str,
        topology: Topology,
        backend: ProbeBackend,
        *,
        config: ProbeConfig | None = None,
        aggregator: MetricAggregator | None = None,
        on_observation: ObservationHandler | None = None,
        on_fenced_primary: NodeHandler | None = None,
        updates_topology: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the probe.

        Args:
            observer_id: Identity this probe votes under
            topology: Topology whose nodes are probed
            backend: Network check implementation
            config: Probe cadence and escalation settings
            aggregator: Source of telemetry lag when the backend reports none
            on_observation: Called with every emitted observation
            on_fenced_primary: Called with the id of a fenced node that reports
                itself primary
            updates_topology: Whether this observer writes health into the topology
            clock: Monotonic clock
        """
        self.observer_id = observer_id
        self._topology = topology
        self._backend = backend
        self._config = config or ProbeConfig()
        self._aggregator = aggregator
        self._on_observation = on_observation
        self._on_fenced_primary = on_fenced_primary
        self._updates_topology = updates_topology
        self._clock = clock
        self._suspects: dict[str, int] = {}
        self._down: set[str] = set()

    def consecutive_suspects(self, node_id: str) -> int:
        return self._suspects.get(node_id, 0)

    async def probe(self, node: Node) -> HealthResult:
        """Probe ``node`` once. Never raises for network failures."""
        try:
            result = await asyncio.wait_for(self._backend.check(node), timeout=self._config.timeout)
        except TimeoutError:
            error = TransientProbeError(node.node_id, f"probe timed out after {self._config.timeout}s")
        except (OSError, HAError) as e:
            error = TransientProbeError(node.node_id, str(e))
        else:
            if result.status != HealthStatus.HEALTHY:
                return dataclasses.replace(result, status=HealthStatus.SUSPECT)
            if result.lag is None and self._aggregator is not None:
                sample = self._aggregator.latest(node.node_id)
                if sample is not None:
                    result = dataclasses.replace(result, lag=sample.lag)
            return result

        logger.debug("[%s] %s", self.observer_id, error)
        return HealthResult(status=HealthStatus.SUSPECT, error=str(error))

    async def record(self, node_id: str, result: HealthResult) -> Observation | None:
        """Apply a probe result; returns the observation emitted, if any."""
        if node_id not in self._topology:
            return None

        now = self._clock()

        if result.status == HealthStatus.HEALTHY:
            self._suspects[node_id] = 0
            if self._updates_topology:
                node = await self._topology.update_health(
                    node_id, health=HealthStatus.HEALTHY, lag=result.lag, last_seen=now
                )
                if node.role == NodeRole.FENCED and result.reported_role == NodeRole.PRIMARY:
                    logger.error("Fenced node %s still reports itself as primary", node_id)
                    if self._on_fenced_primary is not None:
                        await self._on_fenced_primary(node_id)
            if node_id in self._down:
                self._down.discard(node_id)
                logger.info("[%s] node %s recovered", self.observer_id, node_id)
                return await self._emit(node_id, HealthStatus.HEALTHY, now)
            return None

        count = self._suspects.get(node_id, 0) + 1
        self._suspects[node_id] = count
        health = HealthStatus.DOWN if count >= self._config.suspect_threshold else HealthStatus.SUSPECT

        if self._updates_topology:
            await self._topology.update_health(node_id, health=health, lag=None, last_seen=None)

        if health != HealthStatus.DOWN:
            return None
        if node_id not in self._down:
            self._down.add(node_id)
            logger.info(
                "[%s] node %s judged down after %d suspect probes: %s",
                self.observer_id,
                node_id,
                count,
                result.error,
            )
        # Re-asserted every cycle so a restarted agreement window still sees this vote
        return await self._emit(node_id, HealthStatus.DOWN, now)

    async def _emit(self, node_id: str, verdict: HealthStatus, now: float) -> Observation:
        observation = Observation(
            observer_id=self.observer_id, node_id=node_id, verdict=verdict, timestamp=now
        )
        if self._on_observation is not None:
            await self._on_observation(observation)
        return observation

    async def run_once(self, node_id: str) -> Observation | None:
        if node_id not in self._topology:
            return None
        result = await self.probe(self._topology.get(node_id))
        return await self.record(node_id, result)

    async def run(self, node_id: str) -> None:
        """Probe ``node_id`` every interval until it leaves the topology."""
        while node_id in self._topology:
            started = self._clock()
            try:
                await self.run_once(node_id)
            except TopologyError:
                # Removed while the probe was in flight
                break
            elapsed = self._clock() - started
            await asyncio.sleep(max(0.0, self._config.interval - elapsed))
        self.forget(node_id)

    def forget(self, node_id: str) -> None:
        self._suspects.pop(node_id, None)
        self._down.discard(node_id)
