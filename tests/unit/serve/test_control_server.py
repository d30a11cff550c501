"""Tests for the deployment control server.

Tests cover:
- Health endpoint and server lifecycle states
- Listing and inspecting deployments
- Abort before promotion, after promotion and after completion
- Error mapping for unknown deployments
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from shiftdeck.deploy.coordinator import DeploymentCoordinator
from shiftdeck.deploy.health import HttpHealthProber
from shiftdeck.deploy.pools import TargetPoolRegistry
from shiftdeck.deploy.replicas import InMemoryReplicaSetManager
from shiftdeck.deploy.router import InMemoryTrafficRouter
from shiftdeck.deploy.state import InMemoryDeploymentStore
from shiftdeck.models.deployment import (
    Deployment,
    DeploymentRequest,
    Phase,
    PoolPair,
    RouteConfig,
)
from shiftdeck.models.replica_set import ReplicaSpec
from shiftdeck.serve.models import ServerState
from shiftdeck.serve.server import ControlServer


def _seed(
    store: InMemoryDeploymentStore, *phases: Phase, service_id: str = "checkout"
) -> Deployment:
    request = DeploymentRequest(
        service_id=service_id,
        replica_spec=ReplicaSpec(image="registry.local/checkout:2.0.0"),
        routes=RouteConfig(production=f"{service_id}-prod", test=f"{service_id}-test"),
        pools=PoolPair(blue=f"{service_id}-blue", green=f"{service_id}-green"),
    )
    deployment = Deployment(service_id=service_id, request=request)
    for phase in phases:
        deployment = deployment.transition(phase, 0 if phase.is_stepped else None)
    store.deployments[deployment.id] = deployment
    return deployment


@pytest.fixture
def store() -> InMemoryDeploymentStore:
    """Empty in-memory deployment store."""
    return InMemoryDeploymentStore()


@pytest.fixture
def server(store: InMemoryDeploymentStore) -> ControlServer:
    """Control server over an in-memory coordinator."""
    pools = TargetPoolRegistry([])
    coordinator = DeploymentCoordinator(
        router=InMemoryTrafficRouter(),
        replicas=InMemoryReplicaSetManager(pools),
        prober=HttpHealthProber(),
        pools=pools,
        store=store,
    )
    return ControlServer(coordinator)


@pytest.fixture
def client(server: ControlServer) -> TestClient:
    """Test client for the control server app."""
    return TestClient(server.create_app())


class TestHealth:
    """Tests for GET /health and lifecycle state."""

    def test_ready_after_create_app(
        self, server: ControlServer, client: TestClient, store: InMemoryDeploymentStore
    ) -> None:
        """The app reports healthy with the in-flight count."""
        _seed(store, Phase.REQUESTED)
        _seed(store, Phase.REQUESTED, Phase.SUCCEEDED, service_id="search")

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["in_flight"] == 1
        assert server.state == ServerState.READY

    def test_unhealthy_when_stopping(
        self, server: ControlServer, client: TestClient
    ) -> None:
        """A server shutting down reports unhealthy."""
        server.state = ServerState.SHUTTING_DOWN

        assert client.get("/health").json()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, server: ControlServer) -> None:
        """start() runs the server and stop() leaves it stopped."""
        await server.start()

        assert server.state == ServerState.RUNNING
        assert server.is_ready
        assert server.uptime_seconds >= 0

        await server.stop()

        assert server.state == ServerState.STOPPED
        assert not server.is_ready


class TestDeploymentEndpoints:
    """Tests for listing and inspecting deployments."""

    def test_list_all(self, client: TestClient, store: InMemoryDeploymentStore) -> None:
        """Finished deployments are listed by default."""
        running = _seed(store, Phase.REQUESTED)
        done = _seed(store, Phase.REQUESTED, Phase.SUCCEEDED, service_id="search")

        response = client.get("/deployments")

        assert response.status_code == 200
        ids = {d["id"] for d in response.json()["deployments"]}
        assert ids == {running.id, done.id}

    def test_list_in_flight_only(
        self, client: TestClient, store: InMemoryDeploymentStore
    ) -> None:
        """all=false hides finished deployments."""
        running = _seed(store, Phase.REQUESTED, Phase.BAKING)
        _seed(store, Phase.REQUESTED, Phase.ROLLED_BACK, service_id="search")

        response = client.get("/deployments", params={"all": "false"})

        (listed,) = response.json()["deployments"]
        assert listed["id"] == running.id
        assert listed["phase"] == "baking"

    def test_get_status(
        self, client: TestClient, store: InMemoryDeploymentStore
    ) -> None:
        """A deployment's status is returned by id."""
        seeded = _seed(store, Phase.REQUESTED, Phase.VALIDATING)

        response = client.get(f"/deployments/{seeded.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["phase"] == "validating"
        assert body["step_index"] == 0

    def test_get_unknown_is_404(self, client: TestClient) -> None:
        """Unknown ids map to 404."""
        response = client.get("/deployments/missing")

        assert response.status_code == 404
        assert "missing" in response.json()["detail"]


class TestAbortEndpoint:
    """Tests for POST /deployments/{id}/abort."""

    def test_abort_accepted(
        self, client: TestClient, store: InMemoryDeploymentStore
    ) -> None:
        """Aborting before promotion is accepted and recorded."""
        seeded = _seed(store, Phase.REQUESTED, Phase.BAKING)

        response = client.post(f"/deployments/{seeded.id}/abort")

        assert response.status_code == 200
        assert response.json() == {
            "id": seeded.id,
            "accepted": True,
            "phase": "baking",
        }
        assert seeded.id in store._abort_requests

    def test_abort_after_promotion_ignored(
        self, client: TestClient, store: InMemoryDeploymentStore
    ) -> None:
        """A promoted deployment keeps going."""
        seeded = _seed(store, Phase.REQUESTED, Phase.PROMOTED)

        response = client.post(f"/deployments/{seeded.id}/abort")

        assert response.status_code == 200
        assert response.json()["accepted"] is False
        assert seeded.id not in store._abort_requests

    def test_abort_finished_is_409(
        self, client: TestClient, store: InMemoryDeploymentStore
    ) -> None:
        """Finished deployments cannot be aborted."""
        seeded = _seed(store, Phase.REQUESTED, Phase.SUCCEEDED)

        response = client.post(f"/deployments/{seeded.id}/abort")

        assert response.status_code == 409
        assert "already finished" in response.json()["detail"]

    def test_abort_unknown_is_404(self, client: TestClient) -> None:
        """Unknown ids map to 404."""
        assert client.post("/deployments/missing/abort").status_code == 404
