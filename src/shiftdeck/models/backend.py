"""Local backend configuration declared next to a deployment request."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LocalBackendConfig(BaseModel):
    """Endpoints the local pools hold and where their state is kept.

    The local backend does not start processes. Blue endpoints are adopted as
    the running replica set; green endpoints are handed out, in order, to the
    replicas of each newly provisioned green set.

    Attributes:
        blue_endpoints: ``host:port`` addresses currently serving blue
        green_endpoints: ``host:port`` addresses the green replicas answer on
        state_dir: Directory for routes, pools, replica sets and deployments
        blue_image: Image reported for the adopted blue replica set
        scheme: URL scheme used for health checks
        poll_interval: Seconds between activation health polls
    """

    model_config = ConfigDict(extra="forbid")

    blue_endpoints: list[str] = Field(default_factory=list)
    green_endpoints: list[str] = Field(default_factory=list)
    state_dir: str | None = Field(default=None)
    blue_image: str | None = Field(default=None)
    scheme: str = Field(default="http", pattern=r"^https?$")
    poll_interval: float = Field(default=1.0, gt=0)

    @field_validator("blue_endpoints", "green_endpoints")
    @classmethod
    def validate_endpoints(cls, v: list[str]) -> list[str]:
        """Validate endpoints are non-empty and unique."""
        if any(not endpoint.strip() for endpoint in v):
            raise ValueError("endpoints must be non-empty strings")
        if len(set(v)) != len(v):
            raise ValueError("endpoints must be unique")
        return v


class BackendSettings(BaseModel):
    """Backend settings recorded per target pool in the state directory.

    Each prepared request records its ``LocalBackendConfig`` under both of its
    pool names, so a resumed deployment provisions green on the endpoints its
    own request declared.

    Attributes:
        version: Document format version
        pools: Backend settings keyed by target pool name
    """

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0", description="Settings file version")
    pools: dict[str, LocalBackendConfig] = Field(default_factory=dict)
