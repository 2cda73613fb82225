"""High-availability controller wiring probes, detection, promotion and scaling."""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from hacontroller.alerts import Alert, AlertSeverity, AlertSink, LoggingAlertSink
from hacontroller.autoscaler import AutoscaleController
from hacontroller.collaborator import MemoryCollaborator, TelemetryFeed, TopologyCollaborator
from hacontroller.config import ControllerConfig
from hacontroller.detector import QuorumFailureDetector
from hacontroller.exceptions import HAError, TopologyError
from hacontroller.metrics import MetricAggregator
from hacontroller.models import (
    Node,
    NodeRole,
    NodeSpec,
    Observation,
    PrimaryDownEvent,
    PromotionResult,
    Sample,
)
from hacontroller.probe import DqliteProbeBackend, HealthProbe, ProbeBackend
from hacontroller.promotion import PromotionCoordinator
from hacontroller.retry import retry_with_backoff
from hacontroller.router import EndpointConsumer, EndpointRouter
from hacontroller.topology import Topology

logger = logging.getLogger(__name__)


class HAController:
    """Keeps one primary/replica store available.

    Owns the topology and runs, as independent tasks: a probe loop per node
    for every in-process observer, a maintenance loop (telemetry pull,
    detector window expiry, membership sync, primary vacancy watchdog) and
    the autoscale loop.
    """

    def __init__(
        self,
        collaborator: TopologyCollaborator,
        *,
        config: ControllerConfig | None = None,
        backend: ProbeBackend | None = None,
        feed: TelemetryFeed | None = None,
        alerts: AlertSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the controller (does not start it).

        Args:
            collaborator: Platform running the store's nodes
            config: Controller configuration
            backend: Probe implementation, dqlite handshake by default
            feed: Telemetry source pulled on the maintenance loop
            alerts: Destination for operator alerts, the log by default
            clock: Monotonic clock shared by every component
        """
        self._config = config or ControllerConfig()
        self._collaborator = collaborator
        self._feed = feed
        self._clock = clock
        self.alerts = alerts or LoggingAlertSink()

        self.topology = Topology(clock=clock)
        self.aggregator = MetricAggregator(self._config.aggregator, clock=clock)
        self.router = EndpointRouter(self.topology, collaborator=collaborator, alerts=self.alerts)
        self.detector = QuorumFailureDetector(
            self._config.detector,
            is_primary=lambda node_id: node_id == self.topology.primary_id,
            clock=clock,
        )
        self.coordinator = PromotionCoordinator(
            self.topology,
            collaborator,
            self.router,
            config=self._config.promotion,
            alerts=self.alerts,
            clock=clock,
        )
        self.autoscaler = AutoscaleController(
            self.topology,
            self.aggregator,
            collaborator,
            config=self._config.autoscale,
            clock=clock,
        )

        backend = backend or DqliteProbeBackend()
        # Only the first in-process observer writes health into the topology
        self.probes = [
            HealthProbe(
                observer_id,
                self.topology,
                backend,
                config=self._config.probe,
                aggregator=self.aggregator,
                on_observation=self.submit_observation,
                on_fenced_primary=self.coordinator.refence,
                updates_topology=index == 0,
                clock=clock,
            )
            for index, observer_id in enumerate(self._config.observers_in_process)
        ]

        self._probe_tasks: dict[tuple[str, str], asyncio.Task[None]] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self._vacancy_alerted = False

    @classmethod
    def from_addresses(
        cls,
        addresses: list[str],
        *,
        primary: str | None = None,
        config: ControllerConfig | None = None,
    ) -> "HAController":
        """Create a controller for dqlite nodes known only by address.

        Node ids are the addresses; ``primary`` defaults to the first one.
        """
        primary = primary or addresses[0]
        specs = [
            NodeSpec(
                node_id=addr,
                address=addr,
                role=NodeRole.PRIMARY if addr == primary else NodeRole.REPLICA,
            )
            for addr in addresses
        ]
        return cls(MemoryCollaborator(specs), config=config)

    @property
    def config(self) -> ControllerConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._running

    def consumer(self) -> EndpointConsumer:
        """Create an endpoint consumer subscribed to every published mapping."""
        consumer = EndpointConsumer()
        self.router.subscribe(consumer.apply)
        return consumer

    async def sync(self) -> None:
        """Reconcile topology membership with the collaborator.

        Roles of known nodes are owned by the controller and never
        overwritten; removals wait while a promotion is in progress. A listed
        node that cannot be enrolled (e.g. a second primary) is skipped and
        logged without holding up the rest of the sync.
        """
        specs = await retry_with_backoff(
            self._collaborator.list_nodes,
            max_attempts=3,
            retry_on=(TimeoutError, OSError, HAError),
            label="list nodes",
        )
        listed = {spec.node_id: spec for spec in specs}

        for spec in specs:
            if spec.node_id in self.topology:
                continue
            try:
                await self._enroll(spec)
            except TopologyError as e:
                logger.warning("Skipping listed node %s: %s", spec.node_id, e)

        if self.topology.promotion_in_progress:
            return
        for node_id in list(self.topology.snapshot().nodes):
            if node_id not in listed:
                await self._forget(node_id)

    async def _enroll(self, spec: NodeSpec) -> None:
        await self.topology.add(Node(node_id=spec.node_id, address=spec.address, role=spec.role))
        if self._running:
            self._start_probes(spec.node_id)

    async def _forget(self, node_id: str) -> None:
        for probe in self.probes:
            task = self._probe_tasks.pop((probe.observer_id, node_id), None)
            if task is not None:
                task.cancel()
            probe.forget(node_id)
        await self.topology.remove(node_id)
        self.aggregator.forget(node_id)
        self.detector.forget(node_id)

    async def register_node(self, spec: NodeSpec) -> None:
        """Register a node with the collaborator and start monitoring it."""
        await self._collaborator.register_node(spec)
        await self._enroll(spec)

    async def deregister_node(self, node_id: str) -> None:
        """Stop monitoring a node and deregister it from the collaborator."""
        await self._forget(node_id)
        await self._collaborator.deregister_node(node_id)

    async def submit_observation(self, observation: Observation) -> PrimaryDownEvent | None:
        """Feed one observer's verdict into the quorum detector.

        Remote observers call this too. A confirmed primary failure starts a
        promotion in the background.
        """
        event = self.detector.observe(observation)
        if event is not None:
            self.coordinator.handle(event)
        return event

    def ingest_sample(self, sample: Sample) -> None:
        """Accept a pushed telemetry sample."""
        self.aggregator.ingest(sample)

    async def force_failover(self, target: str | None = None) -> PromotionResult:
        """Administrative failover, bypassing quorum detection."""
        return await self.coordinator.force_failover(target)

    def resume(self) -> None:
        """Re-enable automatic promotion after a fail-stop."""
        self.coordinator.resume()

    async def maintenance_tick(self, now: float | None = None) -> None:
        """Pull telemetry, expire agreement windows, sync membership, watch vacancy."""
        now = self._clock() if now is None else now
        if self._feed is not None:
            try:
                await asyncio.wait_for(
                    self.aggregator.pull(self._feed), timeout=self._config.probe.timeout
                )
            except (TimeoutError, OSError, HAError) as e:
                logger.warning("Telemetry pull failed: %s", e)
        self.detector.expire(now)
        try:
            await self.sync()
        except (TimeoutError, OSError, HAError) as e:
            logger.warning("Topology sync failed: %s", e)
        await self.check_vacancy()

    async def check_vacancy(self) -> None:
        vacancy = self.topology.vacancy()
        if vacancy <= self._config.promotion.max_vacancy:
            if vacancy == 0.0:
                self._vacancy_alerted = False
            return
        if self._vacancy_alerted:
            return
        self._vacancy_alerted = True
        await self.alerts.send(
            Alert(
                severity=AlertSeverity.CRITICAL,
                title="primary-vacancy",
                message=f"No primary for {vacancy:.0f}s",
                details={"promotion_in_progress": self.topology.promotion_in_progress},
            )
        )

    def _start_probes(self, node_id: str) -> None:
        for probe in self.probes:
            key = (probe.observer_id, node_id)
            if key not in self._probe_tasks:
                self._probe_tasks[key] = asyncio.create_task(
                    probe.run(node_id), name=f"probe-{probe.observer_id}-{node_id}"
                )

    async def _maintenance_loop(self) -> None:
        interval = min(
            self._config.aggregator.pull_interval, self._config.detector.agreement_window / 2
        )
        while True:
            await self.maintenance_tick()
            await asyncio.sleep(interval)

    async def start(self) -> None:
        """Load the topology, publish endpoints and start background tasks."""
        if self._running:
            return
        await self.sync()
        await self.router.publish(force=True)
        self._running = True

        for node_id in self.topology.snapshot().nodes:
            self._start_probes(node_id)
        self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="maintenance"))
        if self._config.autoscale.enabled:
            self._tasks.append(asyncio.create_task(self.autoscaler.run(), name="autoscale"))
        logger.info(
            "HA controller started with %d nodes, %d local observers",
            len(self.topology),
            len(self.probes),
        )

    async def stop(self) -> None:
        """Cancel background tasks. An in-flight promotion is left to finish."""
        self._running = False
        tasks = [*self._tasks, *self._probe_tasks.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._probe_tasks.clear()
        logger.info("HA controller stopped")

    async def __aenter__(self) -> "HAController":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
