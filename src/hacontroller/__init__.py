"""High-availability controller for primary/replica data stores."""

from hacontroller.alerts import Alert, AlertSeverity, AlertSink, LoggingAlertSink, MemoryAlertSink
from hacontroller.autoscaler import AutoscaleController
from hacontroller.collaborator import (
    MemoryCollaborator,
    MemoryTelemetryFeed,
    TelemetryFeed,
    TopologyCollaborator,
)
from hacontroller.config import (
    AggregatorConfig,
    AutoscaleConfig,
    ControllerConfig,
    DetectorConfig,
    ProbeConfig,
    PromotionConfig,
)
from hacontroller.controller import HAController
from hacontroller.detector import DetectorState, QuorumFailureDetector
from hacontroller.exceptions import (
    FencingFailed,
    HAError,
    NoPrimary,
    NoViablePrimary,
    PromotionTimeout,
    ProtocolError,
    QuorumNotReached,
    StaleMappingRejected,
    TopologyError,
    TransientProbeError,
)
from hacontroller.metrics import MetricAggregator
from hacontroller.models import (
    AggregateMetrics,
    EndpointMapping,
    HealthResult,
    HealthStatus,
    Node,
    NodeRole,
    NodeSpec,
    Observation,
    PrimaryDownEvent,
    PromotionResult,
    Sample,
    ScalingDecision,
)
from hacontroller.probe import CallableProbeBackend, DqliteProbeBackend, HealthProbe, ProbeBackend
from hacontroller.promotion import PromotionCoordinator, select_candidate
from hacontroller.router import EndpointConsumer, EndpointRouter, compute_mapping
from hacontroller.topology import Topology, TopologySnapshot

__all__ = [
    "start",
    "HAController",
    "ControllerConfig",
    "ProbeConfig",
    "AggregatorConfig",
    "DetectorConfig",
    "PromotionConfig",
    "AutoscaleConfig",
    "Topology",
    "TopologySnapshot",
    "HealthProbe",
    "ProbeBackend",
    "DqliteProbeBackend",
    "CallableProbeBackend",
    "MetricAggregator",
    "QuorumFailureDetector",
    "DetectorState",
    "PromotionCoordinator",
    "select_candidate",
    "EndpointRouter",
    "EndpointConsumer",
    "compute_mapping",
    "AutoscaleController",
    "TopologyCollaborator",
    "MemoryCollaborator",
    "TelemetryFeed",
    "MemoryTelemetryFeed",
    "Alert",
    "AlertSeverity",
    "AlertSink",
    "LoggingAlertSink",
    "MemoryAlertSink",
    "Node",
    "NodeSpec",
    "NodeRole",
    "HealthStatus",
    "HealthResult",
    "Observation",
    "Sample",
    "AggregateMetrics",
    "EndpointMapping",
    "ScalingDecision",
    "PrimaryDownEvent",
    "PromotionResult",
    "HAError",
    "TopologyError",
    "TransientProbeError",
    "ProtocolError",
    "QuorumNotReached",
    "PromotionTimeout",
    "NoViablePrimary",
    "FencingFailed",
    "NoPrimary",
    "StaleMappingRejected",
]

__version__ = "0.1.0"


async def start(
    collaborator: TopologyCollaborator,
    *,
    config: ControllerConfig | None = None,
    backend: ProbeBackend | None = None,
    feed: TelemetryFeed | None = None,
    alerts: AlertSink | None = None,
) -> HAController:
    """Create and start an HA controller.

    Args:
        collaborator: Platform running the store's nodes
        config: Controller configuration
        backend: Probe implementation, dqlite handshake by default
        feed: Telemetry source
        alerts: Alert destination

    Returns:
        A running HAController
    """
    controller = HAController(
        collaborator, config=config, backend=backend, feed=feed, alerts=alerts
    )
    await controller.start()
    return controller
