"""ShiftDeck deployment engine.

This package provides the blue/green deployment coordinator and the
collaborators it drives: health prober, traffic router, replica set manager
and deployment state store.
"""

from shiftdeck.deploy.coordinator import CoordinatorSettings, DeploymentCoordinator
from shiftdeck.deploy.health import HealthProber, HttpHealthProber
from shiftdeck.deploy.pools import TargetPoolRegistry
from shiftdeck.deploy.replicas import InMemoryReplicaSetManager, ReplicaSetManager
from shiftdeck.deploy.router import InMemoryTrafficRouter, TrafficRouter
from shiftdeck.deploy.state import (
    DeploymentStore,
    InMemoryDeploymentStore,
    JsonFileDeploymentStore,
)

__all__ = [
    "CoordinatorSettings",
    "DeploymentCoordinator",
    "DeploymentStore",
    "HealthProber",
    "HttpHealthProber",
    "InMemoryDeploymentStore",
    "InMemoryReplicaSetManager",
    "InMemoryTrafficRouter",
    "JsonFileDeploymentStore",
    "ReplicaSetManager",
    "TargetPoolRegistry",
    "TrafficRouter",
]
