"""Sliding-window aggregation of per-node load signals."""

import logging
import math
import statistics
import time
from collections import deque
from collections.abc import Callable, Iterable

from hacontroller.collaborator import TelemetryFeed
from hacontroller.config import AggregatorConfig, Statistic
from hacontroller.models import AggregateMetrics, Sample

logger = logging.getLogger(__name__)


def reduce_values(values: list[float], statistic: Statistic) -> float:
    """Reduce ``values`` with the configured statistic.

    Percentiles use linear interpolation between closest ranks.
    """
    if not values:
        raise ValueError("No values to reduce")
    if statistic == "mean":
        return statistics.fmean(values)
    if statistic == "max":
        return max(values)

    q = int(statistic[1:]) / 100
    ordered = sorted(values)
    pos = (len(ordered) - 1) * q
    lower = math.floor(pos)
    upper = math.ceil(pos)
    if lower == upper:
        return ordered[lower]
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (pos - lower)


class MetricAggregator:
    """Keeps a window of raw samples per node and reduces them on demand.

    Each node's samples are reduced with the configured statistic; the
    per-node values are then averaged across the requested node set.
    """

    def __init__(
        self,
        config: AggregatorConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or AggregatorConfig()
        self._clock = clock
        self._samples: dict[str, deque[Sample]] = {}

    @property
    def statistic(self) -> Statistic:
        return self._config.statistic

    def _evict(self, node_id: str, now: float) -> deque[Sample]:
        window = self._samples.get(node_id)
        if window is None:
            return deque()
        cutoff = now - self._config.window
        while window and window[0].timestamp < cutoff:
            window.popleft()
        return window

    def ingest(self, sample: Sample) -> None:
        """Add a pushed sample. Out-of-order samples are kept in timestamp order."""
        window = self._samples.setdefault(sample.node_id, deque())
        if window and sample.timestamp < window[-1].timestamp:
            ordered = sorted([*window, sample], key=lambda s: s.timestamp)
            window.clear()
            window.extend(ordered)
        else:
            window.append(sample)
        self._evict(sample.node_id, self._clock())

    async def pull(self, feed: TelemetryFeed) -> int:
        """Drain ``feed`` into the window. Returns the number of samples ingested."""
        samples = await feed.pull()
        for sample in samples:
            self.ingest(sample)
        return len(samples)

    def latest(self, node_id: str) -> Sample | None:
        window = self._evict(node_id, self._clock())
        return window[-1] if window else None

    def forget(self, node_id: str) -> None:
        self._samples.pop(node_id, None)

    def aggregate(self, node_ids: Iterable[str], now: float | None = None) -> AggregateMetrics | None:
        """Aggregate the window over ``node_ids``.

        Nodes with no samples in the window are excluded and reported as
        missing. Returns None when no requested node has any data.
        """
        now = self._clock() if now is None else now
        cpu: list[float] = []
        mem: list[float] = []
        max_lag = 0.0
        missing: list[str] = []

        for node_id in node_ids:
            window = self._evict(node_id, now)
            if not window:
                missing.append(node_id)
                continue
            cpu.append(reduce_values([s.cpu for s in window], self.statistic))
            mem.append(reduce_values([s.mem for s in window], self.statistic))
            max_lag = max(max_lag, max(s.lag for s in window))

        if missing:
            logger.debug("Partial metrics, no samples for %s", ", ".join(missing))
        if not cpu:
            return None

        return AggregateMetrics(
            cpu=statistics.fmean(cpu),
            mem=statistics.fmean(mem),
            max_lag=max_lag,
            node_count=len(cpu),
            missing=tuple(missing),
        )
