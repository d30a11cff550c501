"""Pydantic models for versioned replica sets."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ulid import ULID


class Color(str, Enum):
    """Side of a blue/green pair."""

    BLUE = "blue"
    GREEN = "green"


class ReplicaSetState(str, Enum):
    """Lifecycle state of a replica set."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    DRAINING = "draining"
    TERMINATED = "terminated"


class ReplicaSpec(BaseModel):
    """Desired replica set definition.

    Attributes:
        image: Container image reference including tag or digest
        env: Environment variables for the container
        port: Container port registered with the target pool
        desired_count: Number of replicas to run
    """

    model_config = ConfigDict(extra="forbid")

    image: str = Field(..., min_length=1, description="Container image reference")
    env: dict[str, str] = Field(
        default_factory=dict, description="Environment variables for the container"
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=80, description="Container port to register"
    )
    desired_count: int = Field(default=1, ge=1, description="Number of replicas")

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Validate image reference has no whitespace."""
        if any(ch.isspace() for ch in v):
            raise ValueError(f"Invalid image reference: {v!r}")
        return v


class ReplicaSet(BaseModel):
    """A versioned set of replicas registered against a target pool."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    color: Color
    spec: ReplicaSpec
    pool: str = Field(..., description="Target pool the replicas register with")
    state: ReplicaSetState = Field(default=ReplicaSetState.PROVISIONING)
    healthy_count: int = Field(default=0, ge=0)
    endpoints: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def desired_count(self) -> int:
        """Return the desired replica count from the spec."""
        return self.spec.desired_count

    @property
    def is_terminated(self) -> bool:
        """Return True once the replica set has been torn down."""
        return self.state == ReplicaSetState.TERMINATED
