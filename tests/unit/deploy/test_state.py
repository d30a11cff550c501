"""Unit tests for deployment state stores."""

from __future__ import annotations

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from deploy_helpers import make_request

from shiftdeck.deploy.state import (
    DeploymentStore,
    InMemoryDeploymentStore,
    JsonFileDeploymentStore,
    get_state_path,
    load_state,
    save_state,
)
from shiftdeck.lib.errors import (
    DeploymentNotFoundError,
    RouteBusyError,
    StaleDeploymentError,
    StoreUnavailableError,
)
from shiftdeck.models.deployment import Deployment, Phase
from shiftdeck.models.deployment_state import DeploymentState


def _make_deployment() -> Deployment:
    request = make_request()
    return Deployment(service_id=request.service_id, request=request).transition(
        Phase.REQUESTED
    )


def _finished(deployment: Deployment, days_ago: float) -> Deployment:
    done = deployment.transition(Phase.ROLLED_BACK)
    when = datetime.now(timezone.utc) - timedelta(days=days_ago)
    return done.model_copy(update={"completed_at": when, "last_transition_at": when})


@pytest.fixture(params=["memory", "json"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> DeploymentStore:
    """Each store implementation behind the same contract."""
    if request.param == "memory":
        return InMemoryDeploymentStore()
    return JsonFileDeploymentStore(get_state_path(tmp_path))


class TestDeploymentStateIO:
    """Tests for DeploymentState read/write helpers."""

    def test_load_state_missing_returns_default(self, tmp_path: Path) -> None:
        """Missing state file returns default state."""
        state = load_state(tmp_path / "deployments.json")

        assert state.version == "1.0"
        assert state.deployments == {}
        assert state.archived == {}

    def test_load_state_empty_file_returns_default(self, tmp_path: Path) -> None:
        """An empty state file is treated as no deployments."""
        state_path = tmp_path / "deployments.json"
        state_path.write_text("  \n", encoding="utf-8")

        assert load_state(state_path).deployments == {}

    def test_save_and_load_state_round_trip(self, tmp_path: Path) -> None:
        """Saving and loading state preserves records."""
        state_path = tmp_path / "nested" / "deployments.json"
        deployment = _make_deployment()

        save_state(state_path, DeploymentState(deployments={deployment.id: deployment}))
        loaded = load_state(state_path)

        assert loaded.deployments[deployment.id] == deployment

    def test_load_state_invalid_json_raises(self, tmp_path: Path) -> None:
        """Invalid JSON is reported as an unavailable store."""
        state_path = tmp_path / "deployments.json"
        state_path.write_text("{invalid}", encoding="utf-8")

        with pytest.raises(
            StoreUnavailableError, match="Invalid deployment state format"
        ):
            load_state(state_path)

    def test_load_state_invalid_schema_raises(self, tmp_path: Path) -> None:
        """A document of the wrong shape is reported as an unavailable store."""
        state_path = tmp_path / "deployments.json"
        state_path.write_text(
            json.dumps({"version": "1.0", "deployments": []}), encoding="utf-8"
        )

        with pytest.raises(
            StoreUnavailableError, match="Invalid deployment state format"
        ):
            load_state(state_path)

    def test_save_state_unwritable_raises(self, tmp_path: Path) -> None:
        """Write failures surface as StoreUnavailableError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")

        with pytest.raises(StoreUnavailableError, match="Failed to write"):
            save_state(blocker / "deployments.json", DeploymentState())


class TestDeploymentStoreContract:
    """Behaviour shared by every deployment store."""

    @pytest.mark.asyncio
    async def test_save_then_load(self, store: DeploymentStore) -> None:
        """A saved record is returned by load."""
        deployment = _make_deployment()

        await store.save(deployment)

        assert await store.load(deployment.id) == deployment

    @pytest.mark.asyncio
    async def test_load_missing_raises(self, store: DeploymentStore) -> None:
        """Loading an unknown id raises DeploymentNotFoundError."""
        with pytest.raises(DeploymentNotFoundError, match="not found"):
            await store.load("missing")

    @pytest.mark.asyncio
    async def test_stale_revision_rejected(self, store: DeploymentStore) -> None:
        """A save whose revision is not newer than the stored one is rejected."""
        deployment = _make_deployment()
        newer = deployment.transition(Phase.PROVISIONING_GREEN)
        await store.save(newer)

        with pytest.raises(StaleDeploymentError) as exc_info:
            await store.save(deployment)

        assert exc_info.value.stored == newer.revision
        assert (await store.load(deployment.id)).phase == Phase.PROVISIONING_GREEN

    @pytest.mark.asyncio
    async def test_same_revision_rejected(self, store: DeploymentStore) -> None:
        """Two writers racing from the same revision cannot both win."""
        deployment = _make_deployment()
        await store.save(deployment)

        with pytest.raises(StaleDeploymentError):
            await store.save(deployment.model_copy(update={"cleanup_error": "x"}))

    @pytest.mark.asyncio
    async def test_in_flight_excludes_terminal(self, store: DeploymentStore) -> None:
        """list_in_flight returns only non-terminal deployments."""
        running = _make_deployment()
        finished = _finished(_make_deployment(), days_ago=0)
        await store.save(running)
        await store.save(finished)

        in_flight = await store.list_in_flight()
        everything = await store.list_all()

        assert [d.id for d in in_flight] == [running.id]
        assert {d.id for d in everything} == {running.id, finished.id}

    @pytest.mark.asyncio
    async def test_abort_request_recorded(self, store: DeploymentStore) -> None:
        """request_abort is visible through abort_requested."""
        deployment = _make_deployment()
        await store.save(deployment)

        assert await store.abort_requested(deployment.id) is False
        await store.request_abort(deployment.id)
        await store.request_abort(deployment.id)

        assert await store.abort_requested(deployment.id) is True

    @pytest.mark.asyncio
    async def test_abort_unknown_deployment_raises(
        self, store: DeploymentStore
    ) -> None:
        """Aborts can only be requested for known deployments."""
        with pytest.raises(DeploymentNotFoundError):
            await store.request_abort("missing")

    @pytest.mark.asyncio
    async def test_archive_terminal_after_retention(
        self, store: DeploymentStore
    ) -> None:
        """Old terminal records are archived but stay loadable."""
        old = _finished(_make_deployment(), days_ago=10)
        recent = _finished(_make_deployment(), days_ago=1)
        running = _make_deployment()
        for deployment in (old, recent, running):
            await store.save(deployment)

        archived = await store.archive_terminal(timedelta(days=7))

        assert archived == 1
        assert {d.id for d in await store.list_all()} == {recent.id, running.id}
        assert (await store.load(old.id)).phase == Phase.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_claim_rejects_owned_route(self, store: DeploymentStore) -> None:
        """A route owned by an in-flight deployment cannot be claimed."""
        first = _make_deployment()
        await store.claim(first)

        second = _make_deployment()
        with pytest.raises(RouteBusyError) as exc_info:
            await store.claim(second)

        assert exc_info.value.owner == first.id
        assert [d.id for d in await store.list_all()] == [first.id]

    @pytest.mark.asyncio
    async def test_claim_after_owner_finished(self, store: DeploymentStore) -> None:
        """Finished deployments release their routes."""
        first = _make_deployment()
        await store.claim(first)
        await store.save(first.transition(Phase.ROLLED_BACK))

        second = _make_deployment()
        await store.claim(second)

        assert (await store.load(second.id)).phase == Phase.REQUESTED


class TestJsonFileDeploymentStore:
    """Tests specific to the file-backed store."""

    @pytest.mark.asyncio
    async def test_two_instances_share_state(self, tmp_path: Path) -> None:
        """A second process sees saves and abort requests of the first."""
        path = get_state_path(tmp_path)
        writer = JsonFileDeploymentStore(path)
        reader = JsonFileDeploymentStore(path)
        deployment = _make_deployment()

        await writer.save(deployment)
        await reader.request_abort(deployment.id)

        assert (await reader.load(deployment.id)).id == deployment.id
        assert await writer.abort_requested(deployment.id) is True

    @pytest.mark.asyncio
    async def test_abort_requests_in_sibling_file(self, tmp_path: Path) -> None:
        """Abort requests never rewrite the deployment document."""
        store = JsonFileDeploymentStore(get_state_path(tmp_path))
        deployment = _make_deployment()
        await store.save(deployment)
        before = store.path.read_text(encoding="utf-8")

        await store.request_abort(deployment.id)

        assert store.abort_path == tmp_path / "deployments.aborts.json"
        assert store.abort_path.exists()
        assert store.path.read_text(encoding="utf-8") == before

    @pytest.mark.asyncio
    async def test_corrupt_abort_file_is_store_unavailable(
        self, tmp_path: Path
    ) -> None:
        """An unreadable abort file surfaces as StoreUnavailableError."""
        store = JsonFileDeploymentStore(get_state_path(tmp_path))
        store.abort_path.write_text("{nope", encoding="utf-8")

        with pytest.raises(StoreUnavailableError, match="abort requests"):
            await store.abort_requested("anything")

    @pytest.mark.asyncio
    async def test_claim_across_instances(self, tmp_path: Path) -> None:
        """Route ownership holds between stores sharing a file."""
        path = get_state_path(tmp_path)
        first = _make_deployment()
        await JsonFileDeploymentStore(path).claim(first)

        with pytest.raises(RouteBusyError):
            await JsonFileDeploymentStore(path).claim(_make_deployment())

    def test_concurrent_writers_keep_every_record(self, tmp_path: Path) -> None:
        """Saves from writers racing on one file never drop a record."""
        path = get_state_path(tmp_path)
        batches = [[_make_deployment() for _ in range(15)] for _ in range(4)]

        def save_all(batch: list[Deployment]) -> None:
            store = JsonFileDeploymentStore(path)

            async def run() -> None:
                for deployment in batch:
                    await store.save(deployment)

            asyncio.run(run())

        with ThreadPoolExecutor(max_workers=len(batches)) as pool:
            list(pool.map(save_all, batches))

        stored = load_state(path).deployments
        assert set(stored) == {d.id for batch in batches for d in batch}
