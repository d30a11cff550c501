"""Pydantic models for target pools and health checking."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

HTTP_CODES_PATTERN = re.compile(r"^\d{3}(-\d{3})?(,\d{3}(-\d{3})?)*$")


class HealthCheckConfig(BaseModel):
    """Health check configuration for a target pool.

    Defaults match the target group health checks the blue and green pools
    are provisioned with.

    Attributes:
        interval: Seconds between checks of the same endpoint
        path: HTTP path requested on each endpoint
        healthy_threshold: Consecutive passes before an endpoint is healthy
        unhealthy_threshold: Consecutive failures before an endpoint is unhealthy
        timeout: Seconds to wait for a single check response
        healthy_http_codes: Status codes counted as passing ("200", "200,204",
            "200-299")
    """

    model_config = ConfigDict(extra="forbid")

    interval: float = Field(default=5.0, gt=0, description="Seconds between checks")
    path: str = Field(default="/", description="HTTP path for health checks")
    healthy_threshold: int = Field(
        default=2, ge=1, le=10, description="Consecutive passes to become healthy"
    )
    unhealthy_threshold: int = Field(
        default=3, ge=1, le=10, description="Consecutive failures to become unhealthy"
    )
    timeout: float = Field(default=4.0, gt=0, description="Per-check timeout (s)")
    healthy_http_codes: str = Field(
        default="200", description="Status codes counted as passing"
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate health check path is absolute."""
        if not v.startswith("/"):
            raise ValueError(f"Invalid health check path: {v}. Must start with '/'")
        return v

    @field_validator("healthy_http_codes")
    @classmethod
    def validate_http_codes(cls, v: str) -> str:
        """Validate the status code list syntax."""
        compact = v.replace(" ", "")
        if not HTTP_CODES_PATTERN.match(compact):
            raise ValueError(
                f"Invalid healthy_http_codes: {v}. "
                "Use a comma separated list of codes or ranges, e.g. '200,202-204'"
            )
        return compact

    @model_validator(mode="after")
    def validate_timeout(self) -> HealthCheckConfig:
        """Validate that timeout is shorter than the check interval."""
        if self.timeout >= self.interval:
            raise ValueError(
                f"timeout ({self.timeout}) must be less than interval ({self.interval})"
            )
        return self

    @property
    def probe_budget(self) -> float:
        """Upper bound in seconds on a single aggregate probe."""
        return self.timeout * (self.healthy_threshold + self.unhealthy_threshold)

    def accepts(self, status_code: int) -> bool:
        """Return True if the status code counts as a passing check."""
        for part in self.healthy_http_codes.split(","):
            low, _, high = part.partition("-")
            if high:
                if int(low) <= status_code <= int(high):
                    return True
            elif status_code == int(low):
                return True
        return False


class TargetPool(BaseModel):
    """A load balancer target pool and its registered endpoints.

    Pools belong to the surrounding infrastructure. ShiftDeck only changes
    registration membership, never the pool itself.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Target pool identifier")
    health_check: HealthCheckConfig = Field(
        default_factory=HealthCheckConfig, description="Health check settings"
    )
    targets: list[str] = Field(
        default_factory=list, description="Registered endpoints (host:port)"
    )


class HealthSnapshot(BaseModel):
    """Aggregate health of a target pool at a point in time."""

    model_config = ConfigDict(extra="forbid")

    pool: str = Field(..., description="Target pool identifier")
    healthy_count: int = Field(default=0, ge=0)
    unhealthy_count: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    taken_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def validate_counts(self) -> HealthSnapshot:
        """Validate that classified endpoints never exceed the total."""
        if self.healthy_count + self.unhealthy_count > self.total:
            raise ValueError(
                f"healthy_count ({self.healthy_count}) + unhealthy_count "
                f"({self.unhealthy_count}) exceeds total ({self.total})"
            )
        return self
