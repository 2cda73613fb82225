"""Fencing and promotion of a replica after the primary fails."""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import NoReturn

from hacontroller.alerts import Alert, AlertSeverity, AlertSink
from hacontroller.collaborator import TopologyCollaborator
from hacontroller.config import PromotionConfig
from hacontroller.exceptions import (
    FencingFailed,
    HAError,
    NoViablePrimary,
    PromotionTimeout,
    TopologyError,
)
from hacontroller.models import HealthStatus, NodeRole, PrimaryDownEvent, PromotionResult
from hacontroller.retry import retry_with_backoff
from hacontroller.router import EndpointRouter
from hacontroller.topology import Topology, TopologySnapshot

logger = logging.getLogger(__name__)


def select_candidate(
    snapshot: TopologySnapshot,
    max_lag: float | None = None,
) -> str | None:
    """Pick the replica to promote.

    Least replication lag wins (unknown lag sorts last), ties go to the
    lowest node id. Down replicas and replicas over ``max_lag`` are skipped.
    """
    eligible = [
        n
        for n in snapshot.replicas
        if n.health != HealthStatus.DOWN
        and (max_lag is None or (n.lag is not None and n.lag <= max_lag))
    ]
    if not eligible:
        return None
    best = min(eligible, key=lambda n: (n.lag is None, n.lag or 0.0, n.node_id))
    return best.node_id


class PromotionCoordinator:
    """Promotes exactly one replica per confirmed primary failure.

    The old primary is always fenced before any candidate is asked to
    promote. A node stays in ``fence_pending`` from the moment it is marked
    fenced until the collaborator acknowledges the fence, and every later
    promotion (manual ones included) fences it again first. When no
    candidate can be promoted the coordinator halts automatic remediation
    until an operator intervenes.
    """

    def __init__(
        self,
        topology: Topology,
        collaborator: TopologyCollaborator,
        router: EndpointRouter,
        *,
        config: PromotionConfig | None = None,
        alerts: AlertSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._topology = topology
        self._collaborator = collaborator
        self._router = router
        self._config = config or PromotionConfig()
        self._alerts = alerts
        self._clock = clock
        self._task: asyncio.Task[PromotionResult] | None = None
        self.halted = False
        self.history: list[PromotionResult] = []
        self.fence_pending: set[str] = set()

    @property
    def in_progress(self) -> bool:
        return self._topology.promotion_in_progress

    @property
    def task(self) -> asyncio.Task[PromotionResult] | None:
        """The most recent automatic promotion task."""
        return self._task

    def handle(self, event: PrimaryDownEvent) -> asyncio.Task[PromotionResult] | None:
        """Start a promotion for ``event`` as a separate task.

        Returns None when the event is coalesced into an in-flight promotion,
        when automatic remediation is halted, or when the node is no longer
        the primary.
        """
        if not self._accepts(event):
            return None

        self._topology.promotion_in_progress = True
        self._task = asyncio.create_task(self._run(event), name=f"promote-after-{event.node_id}")
        self._task.add_done_callback(self._on_done)
        return self._task

    async def promote(self, event: PrimaryDownEvent) -> PromotionResult | None:
        """Run a promotion for ``event`` inline.

        Same admission rules as :meth:`handle`; returns None when the event
        is not acted on.

        Raises:
            FencingFailed: if the old primary could not be fenced
            NoViablePrimary: if no replica could be promoted
        """
        if not self._accepts(event):
            return None
        self._topology.promotion_in_progress = True
        return await self._run(event)

    def _accepts(self, event: PrimaryDownEvent) -> bool:
        if self.halted:
            logger.warning("Automatic promotion halted; ignoring failure of %s", event.node_id)
            return False
        if self._topology.promotion_in_progress:
            logger.info("Promotion already in progress; coalescing failure of %s", event.node_id)
            return False
        if event.node_id != self._topology.primary_id:
            logger.info("Ignoring failure of %s, not the current primary", event.node_id)
            return False
        return True

    def _on_done(self, task: asyncio.Task[PromotionResult]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, HAError):
            logger.error("Promotion task crashed", exc_info=error)

    async def force_failover(self, target: str | None = None) -> PromotionResult:
        """Operator-initiated failover.

        Bypasses quorum detection and the halted state. An in-flight
        automatic promotion is cancelled first. ``target`` names the replica
        to promote; otherwise the usual candidate selection applies.
        """
        if target is not None:
            node = self._topology.get(target)
            if node.role != NodeRole.REPLICA:
                raise TopologyError(f"Cannot promote {target}: role is {node.role}")

        if self._task is not None and not self._task.done():
            logger.warning("Manual override: cancelling in-flight promotion")
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, HAError):
                await self._task

        event = PrimaryDownEvent(
            node_id=self._topology.primary_id or "",
            detected_at=self._clock(),
            manual=True,
        )
        logger.warning(
            "Manual failover requested (primary=%s, target=%s)",
            self._topology.primary_id,
            target or "auto",
        )
        self._topology.promotion_in_progress = True
        result = await self._run(event, target)
        self.halted = False
        return result

    def resume(self) -> None:
        """Re-enable automatic promotion after an operator fixed the cluster."""
        if self.halted:
            logger.info("Automatic promotion resumed")
        self.halted = False

    async def _run(self, event: PrimaryDownEvent, target: str | None = None) -> PromotionResult:
        try:
            return await self._promote(event, target)
        finally:
            self._topology.promotion_in_progress = False

    async def _promote(self, event: PrimaryDownEvent, target: str | None) -> PromotionResult:
        old_primary = event.node_id or None
        started = self._clock()
        logger.warning("Starting promotion after failure of primary %s", old_primary)

        for node_id in self._must_fence(old_primary):
            await self._fence(node_id)

        attempts: list[str] = []
        while True:
            candidate = target or select_candidate(
                self._topology.snapshot(), self._config.max_candidate_lag
            )
            target = None
            if candidate is None:
                await self._no_viable_primary(old_primary, attempts)

            attempts.append(candidate)
            try:
                await self._promote_candidate(candidate)
            except PromotionTimeout as e:
                logger.warning("%s; trying the next candidate", e)
                await self._fence_failed_candidate(candidate)
                continue
            break

        mapping = await self._router.publish(force=True)
        result = PromotionResult(
            old_primary=old_primary,
            new_primary=candidate,
            generation=mapping.generation,
            attempts=attempts,
        )
        self.history.append(result)
        logger.warning(
            "Promoted %s to primary in %.2fs (generation %d)",
            candidate,
            self._clock() - started,
            mapping.generation,
        )
        return result

    async def _call(self, node_id: str, role: NodeRole) -> None:
        await asyncio.wait_for(
            self._collaborator.set_node_role(node_id, role), timeout=self._config.call_timeout
        )

    def _must_fence(self, old_primary: str | None) -> list[str]:
        """Old primary first, then every node whose fence was never acknowledged."""
        self.fence_pending.intersection_update(self._topology.snapshot().nodes)
        nodes = sorted(n for n in self.fence_pending if n != old_primary)
        if old_primary is not None and old_primary in self._topology:
            nodes.insert(0, old_primary)
        return nodes

    async def _fence(self, node_id: str) -> None:
        # Routing drops the node now; the fence counts once acknowledged
        self.fence_pending.add(node_id)
        await self._topology.set_role(node_id, NodeRole.FENCED)
        try:
            await retry_with_backoff(
                lambda: self._call(node_id, NodeRole.FENCED),
                max_attempts=self._config.fence_attempts,
                retry_on=(TimeoutError, OSError, HAError),
                label=f"fence {node_id}",
            )
        except (TimeoutError, OSError, HAError) as e:
            self.halted = True
            await self._router.publish(force=True)
            await self._alert(
                "fencing-failed",
                f"Could not revoke write capability of {node_id}; automatic promotion halted",
                node_id=node_id,
                error=str(e),
            )
            raise FencingFailed(f"Could not fence {node_id}: {e}") from e
        self.fence_pending.discard(node_id)
        logger.info("Fenced %s", node_id)

    async def refence(self, node_id: str) -> None:
        """Revoke write capability again from a fenced node still acting as primary.

        Called when a fenced node turns up alive and reports itself primary.
        Always raises a critical alert; if the collaborator cannot be reached
        the node stays pending and the next promotion fences it first.
        """
        if node_id not in self._topology or self._topology.get(node_id).role != NodeRole.FENCED:
            return
        self.fence_pending.add(node_id)
        error: str | None = None
        try:
            await self._call(node_id, NodeRole.FENCED)
        except (TimeoutError, OSError, HAError) as e:
            error = str(e)
        else:
            self.fence_pending.discard(node_id)
        await self._alert(
            "fenced-node-writable",
            f"Fenced node {node_id} still reports itself as primary; fence re-issued",
            node_id=node_id,
            error=error,
        )

    async def _promote_candidate(self, node_id: str) -> None:
        await self._topology.set_role(node_id, NodeRole.CANDIDATE)
        try:
            await asyncio.wait_for(self._command_and_confirm(node_id), timeout=self._config.timeout)
        except (TimeoutError, OSError, HAError) as e:
            raise PromotionTimeout(node_id, self._config.timeout) from e
        except asyncio.CancelledError:
            # A half-promoted node must not linger
            await self._fence_failed_candidate(node_id)
            raise
        await self._topology.set_role(node_id, NodeRole.PRIMARY)

    async def _command_and_confirm(self, node_id: str) -> None:
        await self._collaborator.set_node_role(node_id, NodeRole.PRIMARY)
        while await self._collaborator.get_node_role(node_id) != NodeRole.PRIMARY:
            await asyncio.sleep(self._config.poll_interval)

    async def _fence_failed_candidate(self, node_id: str) -> None:
        if node_id not in self._topology:
            return
        self.fence_pending.add(node_id)
        await self._topology.set_role(node_id, NodeRole.FENCED)
        try:
            await self._call(node_id, NodeRole.FENCED)
        except (TimeoutError, OSError, HAError) as e:
            logger.error("Could not fence failed candidate %s: %s", node_id, e)
        else:
            self.fence_pending.discard(node_id)

    async def _no_viable_primary(self, old_primary: str | None, attempts: list[str]) -> NoReturn:
        self.halted = True
        await self._router.publish(force=True)
        message = (
            f"No viable replica to replace {old_primary}; tried {attempts or 'none'}. "
            "Automatic promotion halted, manual intervention required"
        )
        await self._alert("no-viable-primary", message, old_primary=old_primary, attempts=attempts)
        raise NoViablePrimary(message)

    async def _alert(self, title: str, message: str, **details: object) -> None:
        logger.critical("%s", message)
        if self._alerts is not None:
            await self._alerts.send(
                Alert(severity=AlertSeverity.CRITICAL, title=title, message=message, details=details)
            )
