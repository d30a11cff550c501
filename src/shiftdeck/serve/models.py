"""Response models for the ShiftDeck control server."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from shiftdeck.models.deployment import DeploymentStatus, Phase


class ServerState(str, Enum):
    """Control server lifecycle states."""

    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class HealthResponse(BaseModel):
    """Response body of ``GET /health``."""

    status: str = Field(..., description="'healthy' or 'unhealthy'")
    version: str = Field(..., description="ShiftDeck version")
    in_flight: int = Field(..., ge=0, description="Deployments not yet finished")
    uptime_seconds: float = Field(..., ge=0)


class DeploymentListResponse(BaseModel):
    """Response body of ``GET /deployments``."""

    deployments: list[DeploymentStatus] = Field(default_factory=list)


class AbortResponse(BaseModel):
    """Response body of ``POST /deployments/{id}/abort``."""

    id: str
    accepted: bool = Field(..., description="True if the deployment will roll back")
    phase: Phase = Field(..., description="Phase when the abort was requested")
