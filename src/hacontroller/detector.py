"""Quorum-based failure detection over independent observers."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from hacontroller.config import DetectorConfig
from hacontroller.exceptions import QuorumNotReached
from hacontroller.models import HealthStatus, Observation, PrimaryDownEvent

logger = logging.getLogger(__name__)


class DetectorState(StrEnum):
    HEALTHY = "healthy"
    SUSPECT = "suspect"
    CONFIRMED_DOWN = "confirmed_down"


@dataclass
class _NodeVotes:
    state: DetectorState = DetectorState.HEALTHY
    window_start: float | None = None
    confirmed_at: float | None = None
    emitted: bool = False
    # Latest observation per observer
    votes: dict[str, Observation] = field(default_factory=dict)

    def count(self, verdict: HealthStatus, since: float) -> list[str]:
        return sorted(
            obs.observer_id
            for obs in self.votes.values()
            if obs.verdict == verdict and obs.timestamp >= since
        )


class QuorumFailureDetector:
    """Turns per-observer observations into a confirmed-down verdict.

    Per node: HEALTHY -> SUSPECT on the first down vote, which opens the
    agreement window. SUSPECT -> CONFIRMED_DOWN once a strict majority of the
    configured observers voted down inside the window. A window that
    elapses without a majority restarts with stale votes discarded.
    CONFIRMED_DOWN -> HEALTHY needs a majority of healthy votes cast after
    the confirmation.
    """

    def __init__(
        self,
        config: DetectorConfig | None = None,
        *,
        is_primary: Callable[[str], bool] = lambda node_id: True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or DetectorConfig()
        self._is_primary = is_primary
        self._clock = clock
        self._observers = frozenset(self._config.observers)
        self._nodes: dict[str, _NodeVotes] = {}

    @property
    def quorum(self) -> int:
        return self._config.quorum

    def state(self, node_id: str) -> DetectorState:
        entry = self._nodes.get(node_id)
        return entry.state if entry else DetectorState.HEALTHY

    def forget(self, node_id: str) -> None:
        self._nodes.pop(node_id, None)

    def require_confirmed(self, node_id: str) -> None:
        """Raise QuorumNotReached unless ``node_id`` is confirmed down."""
        entry = self._nodes.get(node_id)
        if entry is None or entry.state != DetectorState.CONFIRMED_DOWN:
            votes = 0
            if entry is not None and entry.window_start is not None:
                votes = len(entry.count(HealthStatus.DOWN, entry.window_start))
            raise QuorumNotReached(node_id, votes, self.quorum)

    def observe(self, observation: Observation) -> PrimaryDownEvent | None:
        """Record an observation.

        Returns a PrimaryDownEvent the first time the current primary becomes
        confirmed down, None otherwise.
        """
        if observation.observer_id not in self._observers:
            logger.warning(
                "Ignoring observation from unknown observer %s", observation.observer_id
            )
            return None

        entry = self._nodes.setdefault(observation.node_id, _NodeVotes())
        previous = entry.votes.get(observation.observer_id)
        if previous is not None and previous.timestamp > observation.timestamp:
            return None
        entry.votes[observation.observer_id] = observation

        if observation.verdict == HealthStatus.DOWN:
            return self._on_down(observation.node_id, entry, observation.timestamp)
        if observation.verdict == HealthStatus.HEALTHY:
            self._on_healthy(observation.node_id, entry)
        return None

    def _on_down(self, node_id: str, entry: _NodeVotes, now: float) -> PrimaryDownEvent | None:
        if entry.state == DetectorState.CONFIRMED_DOWN:
            return None

        if entry.state == DetectorState.HEALTHY:
            entry.state = DetectorState.SUSPECT
            entry.window_start = now
            logger.info("Node %s suspect, agreement window opened", node_id)
        elif entry.window_start is None or now - entry.window_start > self._config.agreement_window:
            self._restart_window(node_id, entry, now)

        assert entry.window_start is not None
        voters = entry.count(HealthStatus.DOWN, entry.window_start)
        if len(voters) < self.quorum:
            return None

        entry.state = DetectorState.CONFIRMED_DOWN
        entry.confirmed_at = now
        logger.warning(
            "Node %s confirmed down by %d/%d observers (%s)",
            node_id,
            len(voters),
            len(self._observers),
            ", ".join(voters),
        )

        if entry.emitted or not self._is_primary(node_id):
            return None
        entry.emitted = True
        return PrimaryDownEvent(node_id=node_id, detected_at=now, observers=tuple(voters))

    def _on_healthy(self, node_id: str, entry: _NodeVotes) -> None:
        if entry.state == DetectorState.SUSPECT:
            if not any(v.verdict == HealthStatus.DOWN for v in entry.votes.values()):
                self._clear(node_id, entry)
        elif entry.state == DetectorState.CONFIRMED_DOWN:
            assert entry.confirmed_at is not None
            if len(entry.count(HealthStatus.HEALTHY, entry.confirmed_at)) >= self.quorum:
                self._clear(node_id, entry)

    def _clear(self, node_id: str, entry: _NodeVotes) -> None:
        logger.info("Node %s healthy again (was %s)", node_id, entry.state)
        entry.state = DetectorState.HEALTHY
        entry.window_start = None
        entry.confirmed_at = None
        entry.emitted = False
        entry.votes.clear()

    def _restart_window(self, node_id: str, entry: _NodeVotes, now: float) -> QuorumNotReached:
        since = entry.window_start if entry.window_start is not None else now
        reason = QuorumNotReached(
            node_id, len(entry.count(HealthStatus.DOWN, since)), self.quorum
        )
        logger.info("%s; restarting agreement window", reason)
        cutoff = now - self._config.agreement_window
        entry.votes = {k: v for k, v in entry.votes.items() if v.timestamp >= cutoff}
        entry.state = DetectorState.SUSPECT
        # The new window starts at the oldest down vote still inside it
        down = [v.timestamp for v in entry.votes.values() if v.verdict == HealthStatus.DOWN]
        entry.window_start = min(down, default=now)
        return reason

    def expire(self, now: float | None = None) -> list[QuorumNotReached]:
        """Restart agreement windows that elapsed without a majority."""
        now = self._clock() if now is None else now
        expired: list[QuorumNotReached] = []
        for node_id, entry in list(self._nodes.items()):
            if entry.state != DetectorState.SUSPECT or entry.window_start is None:
                continue
            if now - entry.window_start <= self._config.agreement_window:
                continue
            expired.append(self._restart_window(node_id, entry, now))
            if not any(v.verdict == HealthStatus.DOWN for v in entry.votes.values()):
                self._clear(node_id, entry)
        return expired
