"""Local backend: JSON-file collaborators plus the HTTP health prober.

Every collaborator persists into one state directory, so a deployment started
by ``shiftdeck deploy run`` can be inspected, aborted or resumed by another
process::

    .shiftdeck/
        deployments.json          deployment records (state store)
        deployments.aborts.json   operator abort requests
        routes.json               route weights (traffic router)
        pools.json                target pool membership
        replica_sets.json         replica sets (replica set manager)
        backend.json              endpoints and probe settings per pool
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import httpx
from pydantic import ValidationError as PydanticValidationError

from shiftdeck.deploy.coordinator import CoordinatorSettings, DeploymentCoordinator
from shiftdeck.deploy.health import HttpHealthProber
from shiftdeck.deploy.pools import TargetPoolRegistry
from shiftdeck.deploy.replicas import (
    EndpointFactory,
    InMemoryReplicaSetManager,
)
from shiftdeck.deploy.router import InMemoryTrafficRouter
from shiftdeck.deploy.state import JsonFileDeploymentStore, get_state_path
from shiftdeck.lib.errors import ConfigError, DeploymentError
from shiftdeck.lib.files import atomic_write_json, locked, read_json
from shiftdeck.lib.logging_config import get_logger
from shiftdeck.models.backend import BackendSettings, LocalBackendConfig
from shiftdeck.models.deployment import DeploymentRequest
from shiftdeck.models.pool import TargetPool
from shiftdeck.models.replica_set import Color, ReplicaSet

logger = get_logger(__name__)

ROUTES_FILE = "routes.json"
POOLS_FILE = "pools.json"
REPLICA_SETS_FILE = "replica_sets.json"
BACKEND_FILE = "backend.json"


def endpoint_pool_factory(endpoints: list[str]) -> EndpointFactory:
    """Return a factory handing out declared endpoints by replica index."""

    def factory(replica_set: ReplicaSet, index: int) -> str:
        if index >= len(endpoints):
            raise DeploymentError(
                operation="provision",
                message=(
                    f"Replica {index} of {replica_set.id} has no declared endpoint "
                    f"({len(endpoints)} available)"
                ),
            )
        return endpoints[index]

    return factory


def pool_endpoint_factory(
    settings: Mapping[str, LocalBackendConfig],
) -> EndpointFactory:
    """Return a factory using the green endpoints recorded for each pool."""

    def factory(replica_set: ReplicaSet, index: int) -> str:
        config = settings.get(replica_set.pool)
        if config is None or not config.green_endpoints:
            raise DeploymentError(
                operation="provision",
                message=f"No endpoints are declared for pool '{replica_set.pool}'",
            )
        return endpoint_pool_factory(config.green_endpoints)(replica_set, index)

    return factory


def _load_backend_settings(path: Path) -> BackendSettings:
    try:
        payload = read_json(path)
        return BackendSettings.model_validate(payload or {})
    except (OSError, json.JSONDecodeError, PydanticValidationError) as exc:
        raise ConfigError(
            "backend", f"Failed to read backend settings at {path}: {exc}"
        ) from exc


def _record_backend_settings(
    path: Path, request: DeploymentRequest, backend: LocalBackendConfig
) -> BackendSettings:
    try:
        with locked(path):
            settings = _load_backend_settings(path)
            for pool in (request.pools.blue, request.pools.green):
                settings.pools[pool] = backend
            atomic_write_json(path, settings.model_dump(mode="json"))
    except OSError as exc:
        raise DeploymentError(
            operation="backend",
            message=f"Failed to write backend settings to {path}: {exc}",
        ) from exc
    return settings


@dataclass
class LocalBackend:
    """Collaborators sharing one state directory.

    Attributes:
        state_dir: Directory every collaborator persists into
        pools: Target pool registry
        router: Traffic router
        replicas: Replica set manager
        prober: HTTP health prober
        store: Deployment state store
    """

    state_dir: Path
    pools: TargetPoolRegistry
    router: InMemoryTrafficRouter
    replicas: InMemoryReplicaSetManager
    prober: HttpHealthProber
    store: JsonFileDeploymentStore

    def coordinator(
        self, settings: CoordinatorSettings | None = None
    ) -> DeploymentCoordinator:
        """Build a coordinator over this backend's collaborators."""
        return DeploymentCoordinator(
            router=self.router,
            replicas=self.replicas,
            prober=self.prober,
            pools=self.pools,
            store=self.store,
            settings=settings,
        )

    async def aclose(self) -> None:
        """Release the prober's HTTP client."""
        await self.prober.aclose()


async def open_local_backend(
    state_dir: Path,
    *,
    request: DeploymentRequest | None = None,
    backend: LocalBackendConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> LocalBackend:
    """Open (and, given a request, prepare) the local backend.

    Backend settings are recorded per pool in ``backend.json``. A resumed
    deployment provisions green on the endpoints recorded for its green pool,
    whichever request was prepared last. With a request, the blue and green
    pools are declared, both routes are created at 100% blue if they do not
    exist yet, and the declared blue endpoints are adopted as the active blue
    replica set unless the blue pool already has one.

    Args:
        state_dir: State directory.
        request: Deployment request to prepare collaborators for.
        backend: Endpoints and probe settings from the request file, recorded
            for the request's pools.
        client: Optional HTTP client for the prober.

    Returns:
        The wired backend.

    Raises:
        ConfigError: If backend settings are given without a request or
            declare no green endpoints, or saved settings cannot be read.
    """
    backend_path = state_dir / BACKEND_FILE
    if backend is not None:
        if request is None:
            raise ConfigError(
                "backend", "Backend settings are recorded for a request's pools"
            )
        if not backend.green_endpoints:
            raise ConfigError(
                "backend.green_endpoints",
                "The local backend needs the endpoints green replicas answer on",
            )
        settings = _record_backend_settings(backend_path, request, backend)
    else:
        settings = _load_backend_settings(backend_path)

    declared: list[TargetPool] = []
    initial_routes: dict[str, dict[str, int]] = {}
    if request is not None:
        declared = [
            TargetPool(name=request.pools.blue, health_check=request.health_check),
            TargetPool(name=request.pools.green, health_check=request.health_check),
        ]
        initial_routes = {
            route: request.weights_for(0) for route in request.routes.ids()
        }

    poll_interval = min(
        (config.poll_interval for config in settings.pools.values()),
        default=LocalBackendConfig().poll_interval,
    )
    pools = TargetPoolRegistry(declared, path=state_dir / POOLS_FILE)
    router = InMemoryTrafficRouter(initial_routes, path=state_dir / ROUTES_FILE)
    prober = HttpHealthProber(
        client=client,
        pool_schemes={name: c.scheme for name, c in settings.pools.items()},
    )
    replicas = InMemoryReplicaSetManager(
        pools,
        endpoint_factory=pool_endpoint_factory(settings.pools),
        prober=prober,
        poll_interval=poll_interval,
        path=state_dir / REPLICA_SETS_FILE,
    )
    store = JsonFileDeploymentStore(get_state_path(state_dir))

    if request is not None and backend is not None and backend.blue_endpoints:
        if await replicas.active_in_pool(request.pools.blue) is None:
            spec = request.replica_spec.model_copy(
                update={
                    "image": backend.blue_image or "unknown",
                    "desired_count": len(backend.blue_endpoints),
                }
            )
            replicas.adopt(
                spec,
                request.pools.blue,
                color=Color.BLUE,
                endpoints=backend.blue_endpoints,
            )

    logger.debug(f"Opened local backend at {state_dir}")
    return LocalBackend(
        state_dir=state_dir,
        pools=pools,
        router=router,
        replicas=replicas,
        prober=prober,
        store=store,
    )
