"""Data model shared by the controller components."""

from dataclasses import dataclass, field
from enum import StrEnum


class NodeRole(StrEnum):
    """Role of a node in the topology."""

    PRIMARY = "primary"
    REPLICA = "replica"
    CANDIDATE = "candidate"
    FENCED = "fenced"


class HealthStatus(StrEnum):
    """Health judgment for a node."""

    HEALTHY = "healthy"
    SUSPECT = "suspect"
    DOWN = "down"


@dataclass(frozen=True)
class NodeSpec:
    """What the topology collaborator needs to register a node."""

    node_id: str
    address: str
    role: NodeRole = NodeRole.REPLICA


@dataclass(frozen=True)
class Node:
    """A node record.

    Records are immutable; the topology replaces them on every update so
    snapshots never observe a half-applied change.
    """

    node_id: str
    address: str
    role: NodeRole
    health: HealthStatus = HealthStatus.HEALTHY
    last_seen: float | None = None
    lag: float | None = None  # seconds behind the primary


@dataclass(frozen=True)
class HealthResult:
    """Outcome of a single probe."""

    status: HealthStatus
    lag: float | None = None
    error: str | None = None
    reported_role: NodeRole | None = None


@dataclass(frozen=True)
class Observation:
    """One observer's verdict about one node."""

    observer_id: str
    node_id: str
    verdict: HealthStatus
    timestamp: float


@dataclass(frozen=True)
class Sample:
    """Raw telemetry sample for a node."""

    node_id: str
    cpu: float
    mem: float
    lag: float
    timestamp: float


@dataclass(frozen=True)
class AggregateMetrics:
    """Smoothed load signals over a set of nodes."""

    cpu: float
    mem: float
    max_lag: float
    node_count: int
    missing: tuple[str, ...] = ()

    @property
    def partial(self) -> bool:
        """True when some requested nodes had no samples in the window."""
        return bool(self.missing)


@dataclass(frozen=True)
class EndpointMapping:
    """Logical role to physical address mapping, versioned by generation."""

    generation: int
    write_endpoint: str | None
    read_endpoints: tuple[str, ...]
    degraded: bool = False


@dataclass(frozen=True)
class ScalingDecision:
    """Desired replica count emitted by the autoscaler."""

    desired: int
    current: int
    reason: str
    timestamp: float


@dataclass(frozen=True)
class PrimaryDownEvent:
    """Quorum-backed verdict that the primary has failed."""

    node_id: str
    detected_at: float
    observers: tuple[str, ...] = ()
    manual: bool = False


@dataclass
class PromotionResult:
    """Outcome of a successful promotion."""

    old_primary: str | None
    new_primary: str
    generation: int
    attempts: list[str] = field(default_factory=list)
