"""Pydantic models for blue/green deployment requests and records.

This module defines the deployment request schema (canary plan, routes,
pools, timeouts) and the persisted Deployment record the coordinator drives
through its phases.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shiftdeck.lib.errors import ErrorKind
from shiftdeck.models.pool import HealthCheckConfig
from shiftdeck.models.replica_set import ReplicaSpec


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    """Deployment coordinator phases."""

    REQUESTED = "requested"
    PROVISIONING_GREEN = "provisioning_green"
    SHIFTING_TRAFFIC = "shifting_traffic"
    BAKING = "baking"
    VALIDATING = "validating"
    PROMOTED = "promoted"
    DRAINING_BLUE = "draining_blue"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        """Return True for phases no transition leaves."""
        return self in (Phase.SUCCEEDED, Phase.ROLLED_BACK)

    @property
    def can_roll_back(self) -> bool:
        """Return True for phases that may still transition to rolling back."""
        return self in (
            Phase.REQUESTED,
            Phase.PROVISIONING_GREEN,
            Phase.SHIFTING_TRAFFIC,
            Phase.BAKING,
            Phase.VALIDATING,
        )

    @property
    def is_stepped(self) -> bool:
        """Return True for phases that carry a canary step index."""
        return self in (Phase.SHIFTING_TRAFFIC, Phase.BAKING, Phase.VALIDATING)


class Outcome(str, Enum):
    """Deployment outcome."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


class ExitStatus(str, Enum):
    """Outcome codes exposed to calling automation."""

    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled-back"
    ABORTED = "aborted"
    FAILED_PROVISIONING = "failed-provisioning"


class TrafficStep(BaseModel):
    """A single canary step: shift to a percentage, then bake.

    Attributes:
        percentage: Share of traffic sent to green after this step (0-100)
        bake_time: Seconds to wait before validating the step
    """

    model_config = ConfigDict(extra="forbid")

    percentage: int = Field(..., ge=0, le=100, description="Green traffic share")
    bake_time: float = Field(default=60.0, ge=0, description="Bake time in seconds")


def time_based_canary(
    step_percentage: int = 20, bake_time: float = 60.0
) -> list[TrafficStep]:
    """Build a two-step canary plan: shift a share, bake, then shift the rest.

    Args:
        step_percentage: Share of traffic shifted in the first step.
        bake_time: Bake time in seconds applied after each step.

    Returns:
        Canary plan ending at 100%.
    """
    return [
        TrafficStep(percentage=step_percentage, bake_time=bake_time),
        TrafficStep(percentage=100, bake_time=bake_time),
    ]


def linear_canary(
    step_percentage: int = 10, bake_time: float = 60.0
) -> list[TrafficStep]:
    """Build a plan that shifts traffic in equal increments.

    Args:
        step_percentage: Increment per step (1-100).
        bake_time: Bake time in seconds applied after each step.

    Returns:
        Canary plan ending at 100%.
    """
    if not 1 <= step_percentage <= 100:
        raise ValueError(f"step_percentage must be 1-100, got {step_percentage}")
    steps = [
        TrafficStep(percentage=pct, bake_time=bake_time)
        for pct in range(step_percentage, 100, step_percentage)
    ]
    steps.append(TrafficStep(percentage=100, bake_time=bake_time))
    return steps


class RouteConfig(BaseModel):
    """Concrete route identifiers for the production and test routes."""

    model_config = ConfigDict(extra="forbid")

    production: str = Field(..., min_length=1, description="Production route id")
    test: str = Field(..., min_length=1, description="Test route id")

    @model_validator(mode="after")
    def validate_distinct(self) -> RouteConfig:
        """Validate that production and test are different routes."""
        if self.production == self.test:
            raise ValueError("production and test routes must be different")
        return self

    def ids(self) -> list[str]:
        """Return route ids in shift order (test first, then production)."""
        return [self.test, self.production]


class PoolPair(BaseModel):
    """Blue and green target pools behind both routes."""

    model_config = ConfigDict(extra="forbid")

    blue: str = Field(..., min_length=1, description="Target pool of the blue side")
    green: str = Field(..., min_length=1, description="Target pool of the green side")

    @model_validator(mode="after")
    def validate_distinct(self) -> PoolPair:
        """Validate that blue and green pools differ."""
        if self.blue == self.green:
            raise ValueError("blue and green pools must be different")
        return self


class TimeoutConfig(BaseModel):
    """Bounds for the blocking operations of a deployment.

    Attributes:
        provision_timeout: Seconds to wait for green to become active
        drain_grace_period: Seconds blue keeps serving in-flight connections
            after deregistration, before termination
    """

    model_config = ConfigDict(extra="forbid")

    provision_timeout: float = Field(default=600.0, gt=0)
    drain_grace_period: float = Field(default=60.0, ge=0)


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient collaborator failures.

    With defaults, delays are: 1s, 2s (3 attempts in total).
    """

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, le=20)
    base_delay: float = Field(default=1.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=10.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Return the delay before retrying after a failed attempt (0-based)."""
        return min(self.base_delay * (self.exponential_base**attempt), self.max_delay)


class DeploymentRequest(BaseModel):
    """Everything the coordinator needs to run one blue/green deployment.

    Attributes:
        service_id: Service being deployed
        replica_spec: Desired green replica set
        canary_plan: Ordered traffic steps ending at 100%
        routes: Production and test route ids
        pools: Blue and green target pools
        health_check: Health check settings for green's pool
        blue_replica_set_id: Currently active replica set; looked up in the
            blue pool when omitted
        min_healthy_count: Healthy green targets required to pass a
            validation gate; defaults to the smaller of the health check
            healthy threshold and the desired replica count
        timeouts: Bounds for provisioning and draining
        retry: Backoff policy for transient prober/router failures
    """

    model_config = ConfigDict(extra="forbid")

    service_id: str = Field(..., min_length=1, description="Service identifier")
    replica_spec: ReplicaSpec = Field(..., description="Desired green replica set")
    canary_plan: list[TrafficStep] = Field(
        default_factory=time_based_canary, description="Canary traffic steps"
    )
    routes: RouteConfig = Field(..., description="Production and test routes")
    pools: PoolPair = Field(..., description="Blue and green target pools")
    health_check: HealthCheckConfig = Field(
        default_factory=HealthCheckConfig, description="Health check settings"
    )
    blue_replica_set_id: str | None = Field(
        default=None, description="Active blue replica set id"
    )
    min_healthy_count: int | None = Field(
        default=None, ge=1, description="Healthy targets required per validation"
    )
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @field_validator("canary_plan")
    @classmethod
    def validate_canary_plan(cls, v: list[TrafficStep]) -> list[TrafficStep]:
        """Validate the plan is non-decreasing and culminates at 100%."""
        if not v:
            raise ValueError("canary_plan must contain at least one step")
        for previous, current in zip(v, v[1:], strict=False):
            if current.percentage < previous.percentage:
                raise ValueError(
                    "canary_plan percentages must be non-decreasing "
                    f"({previous.percentage} followed by {current.percentage})"
                )
        if v[-1].percentage != 100:
            raise ValueError(
                f"canary_plan must end at 100%, last step is {v[-1].percentage}%"
            )
        return v

    @property
    def required_healthy_count(self) -> int:
        """Return the healthy target count a validation gate requires."""
        if self.min_healthy_count is not None:
            return self.min_healthy_count
        return min(
            self.health_check.healthy_threshold, self.replica_spec.desired_count
        )

    def weights_for(self, green_percentage: int) -> dict[str, int]:
        """Return the pool weight mapping for a green traffic share."""
        return {
            self.pools.blue: 100 - green_percentage,
            self.pools.green: green_percentage,
        }


class PhaseTransition(BaseModel):
    """One entry in a deployment's audit trail."""

    model_config = ConfigDict(extra="forbid")

    phase: Phase
    step_index: int | None = None
    at: datetime = Field(default_factory=_utcnow)


class DeploymentErrorInfo(BaseModel):
    """Failure reported to users: error kind and last reached phase."""

    model_config = ConfigDict(extra="forbid")

    kind: ErrorKind
    message: str
    phase: Phase = Field(..., description="Last phase successfully reached")
    step_index: int | None = None


class Deployment(BaseModel):
    """Persisted record of a deployment, owned by the coordinator."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(uuid4()))
    service_id: str
    request: DeploymentRequest
    phase: Phase = Field(default=Phase.REQUESTED)
    step_index: int | None = Field(default=None)
    outcome: Outcome = Field(default=Outcome.PENDING)
    revision: int = Field(default=0, ge=0)
    started_at: datetime = Field(default_factory=_utcnow)
    last_transition_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    green_replica_set_id: str | None = None
    blue_replica_set_id: str | None = None
    error: DeploymentErrorInfo | None = None
    cleanup_error: str | None = None
    history: list[PhaseTransition] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        """Return True once the deployment reached a terminal phase."""
        return self.phase.is_terminal

    @property
    def exit_status(self) -> ExitStatus | None:
        """Return the automation-facing outcome code for terminal deployments."""
        if self.phase == Phase.SUCCEEDED:
            return ExitStatus.SUCCEEDED
        if self.phase != Phase.ROLLED_BACK:
            return None
        kind = self.error.kind if self.error else None
        if kind == ErrorKind.OPERATOR_ABORT:
            return ExitStatus.ABORTED
        if kind in (ErrorKind.PROVISION_TIMEOUT, ErrorKind.PROVISION_FAILURE):
            return ExitStatus.FAILED_PROVISIONING
        return ExitStatus.ROLLED_BACK

    def transition(self, phase: Phase, step_index: int | None = None) -> Deployment:
        """Return a copy moved to a new phase with a bumped revision."""
        now = _utcnow()
        entry = PhaseTransition(phase=phase, step_index=step_index, at=now)
        update: dict[str, object] = {
            "phase": phase,
            "step_index": step_index,
            "revision": self.revision + 1,
            "last_transition_at": now,
            "history": [*self.history, entry],
        }
        if phase == Phase.SUCCEEDED:
            update["outcome"] = Outcome.SUCCEEDED
            update["completed_at"] = now
        elif phase == Phase.ROLLED_BACK:
            update["outcome"] = Outcome.ROLLED_BACK
            update["completed_at"] = now
        return self.model_copy(update=update)

    def to_status(self) -> DeploymentStatus:
        """Return the externally visible status of this deployment."""
        return DeploymentStatus(
            id=self.id,
            service_id=self.service_id,
            phase=self.phase,
            step_index=self.step_index,
            outcome=self.outcome,
            exit_status=self.exit_status,
            last_transition_at=self.last_transition_at,
            error=self.error,
            cleanup_error=self.cleanup_error,
        )


class DeploymentStatus(BaseModel):
    """Status of a deployment as returned to operators and automation."""

    model_config = ConfigDict(extra="forbid")

    id: str
    service_id: str
    phase: Phase
    step_index: int | None = None
    outcome: Outcome
    exit_status: ExitStatus | None = None
    last_transition_at: datetime
    error: DeploymentErrorInfo | None = None
    cleanup_error: str | None = None
