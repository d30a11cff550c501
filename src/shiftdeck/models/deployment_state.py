"""Deployment state models for persisted deployments."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from shiftdeck.models.deployment import Deployment


class DeploymentState(BaseModel):
    """Top-level deployment state stored on disk."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0", description="State file version")
    deployments: dict[str, Deployment] = Field(
        default_factory=dict, description="Live deployments keyed by deployment id"
    )
    archived: dict[str, Deployment] = Field(
        default_factory=dict, description="Terminal deployments past retention"
    )
