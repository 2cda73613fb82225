"""Controller configuration.

All durations are in seconds. Load targets and samples are percentages
(0-100).
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

Statistic = Literal["mean", "p50", "p90", "p95", "p99", "max"]


class ProbeConfig(BaseModel):
    """Health probe cadence and escalation."""

    interval: float = Field(default=5.0, gt=0, description="Seconds between probes of a node.")
    timeout: float = Field(default=2.0, gt=0, description="Per-probe timeout.")
    suspect_threshold: int = Field(
        default=3, ge=1, description="Consecutive suspect results before judging a node down."
    )

    @model_validator(mode="after")
    def timeout_shorter_than_interval(self) -> "ProbeConfig":
        """A probe must never block the next cycle."""
        if self.timeout >= self.interval:
            raise ValueError(
                f"probe timeout ({self.timeout}s) must be shorter than the interval ({self.interval}s)"
            )
        return self


class AggregatorConfig(BaseModel):
    """Metric window and the statistic autoscaling decisions are based on."""

    window: float = Field(default=300.0, gt=0, description="Sliding window length.")
    statistic: Statistic = Field(default="mean", description="How samples are reduced.")
    pull_interval: float = Field(default=15.0, gt=0, description="Telemetry feed pull cadence.")


class DetectorConfig(BaseModel):
    """Quorum failure detection."""

    observers: list[str] = Field(
        default_factory=lambda: ["observer-1", "observer-2", "observer-3"],
        description="Identities of every observer that votes on node health.",
    )
    agreement_window: float = Field(default=10.0, gt=0, description="Vote agreement window.")

    @field_validator("observers")
    @classmethod
    def validate_observers(cls, v: list[str]) -> list[str]:
        """Observer ids must be non-empty and unique."""
        if not v:
            raise ValueError("At least one observer is required")
        if len(set(v)) != len(v):
            raise ValueError("Observer ids must be unique")
        return v

    @property
    def quorum(self) -> int:
        """Votes needed for a strict majority."""
        return len(self.observers) // 2 + 1


class PromotionConfig(BaseModel):
    """Failover behaviour."""

    timeout: float = Field(default=30.0, gt=0, description="Wait for a candidate to report primary.")
    poll_interval: float = Field(default=0.5, gt=0, description="Candidate role polling cadence.")
    max_vacancy: float = Field(
        default=60.0, gt=0, description="Longest tolerated time with no primary before alerting."
    )
    max_candidate_lag: float | None = Field(
        default=None, ge=0, description="Replicas lagging more than this are never promoted."
    )
    fence_attempts: int = Field(default=3, ge=1, description="Attempts to fence the old primary.")
    call_timeout: float = Field(default=5.0, gt=0, description="Timeout for each collaborator call.")

    @model_validator(mode="after")
    def poll_shorter_than_timeout(self) -> "PromotionConfig":
        if self.poll_interval >= self.timeout:
            raise ValueError("promotion poll_interval must be shorter than the timeout")
        return self


class AutoscaleConfig(BaseModel):
    """Replica autoscaling bounds and targets."""

    enabled: bool = Field(default=True)
    interval: float = Field(default=30.0, gt=0, description="Control loop tick interval.")
    min_replicas: int = Field(default=1, ge=0)
    max_replicas: int = Field(default=5, ge=0)
    target_cpu: float = Field(default=70.0, gt=0, le=100)
    target_mem: float = Field(default=80.0, gt=0, le=100)
    stabilization_window: float = Field(
        default=300.0, ge=0, description="How long a lower desired count must persist."
    )
    scale_down_max_fraction: float = Field(default=0.5, gt=0, le=1)
    scale_down_max_count: int | None = Field(default=None, ge=1)
    tolerance: float = Field(default=0.0, ge=0, lt=1)
    call_timeout: float = Field(default=10.0, gt=0, description="Timeout for set_replica_count.")

    @model_validator(mode="after")
    def validate_bounds(self) -> "AutoscaleConfig":
        if self.min_replicas > self.max_replicas:
            raise ValueError(
                f"min_replicas ({self.min_replicas}) exceeds max_replicas ({self.max_replicas})"
            )
        if self.call_timeout >= self.interval:
            raise ValueError("autoscale call_timeout must be shorter than the interval")
        return self


class ControllerConfig(BaseModel):
    """Top-level configuration for :class:`~hacontroller.controller.HAController`."""

    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    promotion: PromotionConfig = Field(default_factory=PromotionConfig)
    autoscale: AutoscaleConfig = Field(default_factory=AutoscaleConfig)
    local_observers: list[str] | None = Field(
        default=None,
        description="Observers run in this process; None runs every configured observer.",
    )

    @model_validator(mode="after")
    def validate_local_observers(self) -> "ControllerConfig":
        if self.local_observers is not None:
            unknown = set(self.local_observers) - set(self.detector.observers)
            if unknown:
                raise ValueError(f"Unknown local observers: {sorted(unknown)}")
        return self

    @property
    def observers_in_process(self) -> list[str]:
        if self.local_observers is None:
            return list(self.detector.observers)
        return list(self.local_observers)
