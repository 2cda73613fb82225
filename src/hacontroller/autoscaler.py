"""Replica autoscaling control loop."""

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Callable

from hacontroller.collaborator import TopologyCollaborator
from hacontroller.config import AutoscaleConfig
from hacontroller.exceptions import HAError
from hacontroller.metrics import MetricAggregator
from hacontroller.models import AggregateMetrics, ScalingDecision
from hacontroller.topology import Topology

logger = logging.getLogger(__name__)


class AutoscaleController:
    """Keeps the replica count within bounds based on aggregated load.

    Scaling up is applied on the tick it is computed. Scaling down only
    happens once a lower desired count has persisted for the stabilization
    window, and then removes a limited number of replicas per tick.
    """

    def __init__(
        self,
        topology: Topology,
        aggregator: MetricAggregator,
        collaborator: TopologyCollaborator,
        *,
        config: AutoscaleConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._topology = topology
        self._aggregator = aggregator
        self._collaborator = collaborator
        self._config = config or AutoscaleConfig()
        self._clock = clock
        self._below_since: float | None = None
        self._recommendations: deque[tuple[float, int]] = deque()
        self.decisions: list[ScalingDecision] = []

    def clamp(self, count: int) -> int:
        return max(self._config.min_replicas, min(self._config.max_replicas, count))

    def desired_replicas(self, current: int, metrics: AggregateMetrics | None) -> int:
        """ceil(current * max(cpu/target_cpu, mem/target_mem)), clamped to bounds."""
        if metrics is None:
            return self.clamp(current)
        ratio = max(metrics.cpu / self._config.target_cpu, metrics.mem / self._config.target_mem)
        if abs(ratio - 1.0) <= self._config.tolerance:
            return self.clamp(current)
        return self.clamp(math.ceil(current * ratio))

    def max_step_down(self, current: int) -> int:
        step = max(1, math.floor(current * self._config.scale_down_max_fraction))
        if self._config.scale_down_max_count is not None:
            step = min(step, self._config.scale_down_max_count)
        return step

    def _reset_stabilization(self) -> None:
        self._below_since = None
        self._recommendations.clear()

    async def tick(self, now: float | None = None) -> ScalingDecision | None:
        """Run one control step. Returns the decision emitted, if any."""
        now = self._clock() if now is None else now
        snapshot = self._topology.snapshot()
        replicas = [n.node_id for n in snapshot.replicas]
        current = len(replicas)
        sources = replicas or ([snapshot.primary_id] if snapshot.primary_id else [])

        metrics = self._aggregator.aggregate(sources, now)
        if metrics is None:
            logger.debug("No load samples for %s", ", ".join(sources) or "any node")
        elif metrics.partial:
            logger.info("Scaling on partial metrics, missing %s", ", ".join(metrics.missing))

        desired = self.desired_replicas(current, metrics)
        reason = self._reason(metrics)

        if desired > current:
            self._reset_stabilization()
            return await self._emit(desired, current, f"scale up: {reason}", now)
        if desired == current:
            self._reset_stabilization()
            return None

        if self._below_since is None:
            self._below_since = now
        self._recommendations.append((now, desired))
        cutoff = now - self._config.stabilization_window
        while self._recommendations and self._recommendations[0][0] < cutoff:
            self._recommendations.popleft()

        if now - self._below_since < self._config.stabilization_window:
            logger.debug(
                "Desired %d < current %d for %.0fs, waiting for stabilization",
                desired,
                current,
                now - self._below_since,
            )
            return None
        if snapshot.promotion_in_progress:
            logger.info("Promotion in progress, deferring scale down")
            return None

        # Highest recommendation in the window, at most max_step_down below current
        target = max(count for _, count in self._recommendations)
        target = max(target, current - self.max_step_down(current))
        if target >= current:
            return None
        return await self._emit(target, current, f"scale down: {reason}", now)

    def _reason(self, metrics: AggregateMetrics | None) -> str:
        if metrics is None:
            return "no metrics, enforcing replica bounds"
        return (
            f"{self._aggregator.statistic} cpu {metrics.cpu:.1f}%/{self._config.target_cpu:.0f}%, "
            f"mem {metrics.mem:.1f}%/{self._config.target_mem:.0f}%"
        )

    async def _emit(self, desired: int, current: int, reason: str, now: float) -> ScalingDecision:
        decision = ScalingDecision(desired=desired, current=current, reason=reason, timestamp=now)
        logger.info("Scaling replicas %d -> %d (%s)", current, desired, reason)
        await asyncio.wait_for(
            self._collaborator.set_replica_count(desired), timeout=self._config.call_timeout
        )
        await self._collaborator.on_scaling_decision(decision)
        self.decisions.append(decision)
        return decision

    async def run(self) -> None:
        """Tick every interval until cancelled."""
        while True:
            try:
                await self.tick()
            except (TimeoutError, OSError, HAError) as e:
                logger.warning("Autoscale tick failed: %s", e)
            await asyncio.sleep(self._config.interval)
