"""Write/read endpoint resolution and publication."""

import logging
from collections.abc import Callable

from hacontroller.alerts import Alert, AlertSeverity, AlertSink
from hacontroller.collaborator import TopologyCollaborator
from hacontroller.exceptions import NoPrimary, StaleMappingRejected
from hacontroller.models import EndpointMapping, HealthStatus
from hacontroller.topology import Topology, TopologySnapshot

logger = logging.getLogger(__name__)


def write_endpoint(snapshot: TopologySnapshot) -> str:
    """Address of the primary.

    Raises:
        NoPrimary: if the topology currently has no primary
    """
    primary = snapshot.primary
    if primary is None:
        raise NoPrimary("Topology has no primary")
    return primary.address


def read_endpoints(snapshot: TopologySnapshot) -> tuple[tuple[str, ...], bool]:
    """Addresses serving reads, and whether this is the degraded fallback.

    Healthy replicas serve reads. With none, reads fall back to the primary.
    """
    addresses = tuple(n.address for n in snapshot.replicas if n.health == HealthStatus.HEALTHY)
    if addresses:
        return addresses, False
    primary = snapshot.primary
    return ((primary.address,) if primary else ()), True


def compute_mapping(snapshot: TopologySnapshot, generation: int) -> EndpointMapping:
    try:
        writer: str | None = write_endpoint(snapshot)
    except NoPrimary:
        writer = None
    readers, degraded = read_endpoints(snapshot)
    return EndpointMapping(
        generation=generation,
        write_endpoint=writer,
        read_endpoints=readers,
        degraded=degraded,
    )


class EndpointConsumer:
    """Client-side view of the published endpoints.

    Mappings are applied only when their generation strictly increases, so a
    late delivery can never route clients back to a demoted primary.
    """

    def __init__(self) -> None:
        self._mapping: EndpointMapping | None = None

    @property
    def mapping(self) -> EndpointMapping | None:
        return self._mapping

    @property
    def generation(self) -> int:
        return self._mapping.generation if self._mapping else 0

    def apply(self, mapping: EndpointMapping) -> bool:
        """Apply ``mapping``. Returns False for a repeat of the current generation.

        Raises:
            StaleMappingRejected: if the generation went backwards
        """
        current = self.generation
        if mapping.generation < current:
            raise StaleMappingRejected(mapping.generation, current)
        if mapping.generation == current and self._mapping is not None:
            return False
        self._mapping = mapping
        return True

    def resolve_write(self) -> str:
        if self._mapping is None or self._mapping.write_endpoint is None:
            raise NoPrimary("No write endpoint published")
        return self._mapping.write_endpoint

    def resolve_read(self) -> tuple[str, ...]:
        if self._mapping is None:
            return ()
        return self._mapping.read_endpoints


def _same_routes(a: EndpointMapping, b: EndpointMapping) -> bool:
    return (a.write_endpoint, a.read_endpoints, a.degraded) == (
        b.write_endpoint,
        b.read_endpoints,
        b.degraded,
    )


class EndpointRouter:
    """Recomputes the endpoint mapping from the topology and publishes it.

    After the first publication every topology change triggers a publish,
    except while a promotion is in flight: the promotion coordinator
    publishes once when it resolves.
    """

    def __init__(
        self,
        topology: Topology,
        *,
        collaborator: TopologyCollaborator | None = None,
        alerts: AlertSink | None = None,
    ) -> None:
        self._topology = topology
        self._collaborator = collaborator
        self._alerts = alerts
        self._generation = 0
        self._mapping: EndpointMapping | None = None
        self._subscribers: list[Callable[[EndpointMapping], object]] = []
        self._degraded = False
        topology.subscribe(self.on_topology_change)

    async def on_topology_change(self) -> None:
        if self._mapping is None:
            # Initial load; the owner publishes once it is complete
            return
        if self._topology.promotion_in_progress:
            logger.debug("Promotion in progress, deferring endpoint publication")
            return
        await self.publish()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def mapping(self) -> EndpointMapping | None:
        return self._mapping

    def subscribe(self, callback: Callable[[EndpointMapping], object]) -> None:
        """Deliver every published mapping to ``callback`` (e.g. EndpointConsumer.apply)."""
        self._subscribers.append(callback)
        if self._mapping is not None:
            self._deliver(callback, self._mapping)

    def _deliver(self, callback: Callable[[EndpointMapping], object], mapping: EndpointMapping) -> None:
        try:
            callback(mapping)
        except StaleMappingRejected as e:
            logger.error("Subscriber rejected endpoint mapping: %s", e)

    async def publish(self, *, force: bool = False) -> EndpointMapping:
        """Publish a mapping for the current topology under a new generation.

        Unless ``force`` is set, nothing is published when the routes are
        unchanged and the last mapping is returned.
        """
        mapping = compute_mapping(self._topology.snapshot(), self._generation + 1)
        if not force and self._mapping is not None and _same_routes(mapping, self._mapping):
            return self._mapping
        self._generation = mapping.generation
        self._mapping = mapping

        if mapping.write_endpoint is None:
            logger.warning("Published generation %d with no write endpoint", mapping.generation)
        await self._track_degraded(mapping)
        logger.info(
            "Endpoint mapping generation %d: write=%s read=%s",
            mapping.generation,
            mapping.write_endpoint,
            ",".join(mapping.read_endpoints),
        )

        for callback in list(self._subscribers):
            self._deliver(callback, mapping)
        if self._collaborator is not None:
            await self._collaborator.on_endpoint_mapping(mapping)
        return mapping

    async def _track_degraded(self, mapping: EndpointMapping) -> None:
        if mapping.degraded == self._degraded:
            return
        self._degraded = mapping.degraded
        if not mapping.degraded:
            logger.info("Read endpoints restored to replicas")
            return
        logger.warning("No healthy replicas; reads fall back to the primary")
        if self._alerts is not None:
            await self._alerts.send(
                Alert(
                    severity=AlertSeverity.WARNING,
                    title="degraded-reads",
                    message="No healthy replicas; reads served by the primary",
                    details={"generation": mapping.generation},
                )
            )
