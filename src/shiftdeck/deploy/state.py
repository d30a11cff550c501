"""Deployment state stores.

The store is the durability boundary of the coordinator: every phase change
is saved before the side effect it announces, so a restarted coordinator can
resume from the last saved phase.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from shiftdeck.lib.errors import (
    DeploymentNotFoundError,
    RouteBusyError,
    StaleDeploymentError,
    StoreUnavailableError,
)
from shiftdeck.lib.files import atomic_write_json, locked, read_json
from shiftdeck.lib.logging_config import get_logger
from shiftdeck.models.deployment import Deployment
from shiftdeck.models.deployment_state import DeploymentState

logger = get_logger(__name__)

STATE_VERSION = "1.0"
DEFAULT_RETENTION = timedelta(days=7)


def get_state_path(state_dir: Path) -> Path:
    """Return the deployment state file path inside a state directory."""
    return state_dir / "deployments.json"


def load_state(state_path: Path) -> DeploymentState:
    """Load deployment state data from disk."""
    if not state_path.exists():
        return DeploymentState(version=STATE_VERSION)

    try:
        content = state_path.read_text(encoding="utf-8")
        if not content.strip():
            return DeploymentState(version=STATE_VERSION)
    except OSError as exc:
        raise StoreUnavailableError(
            f"Failed to read deployment state at {state_path}: {exc}"
        ) from exc

    try:
        state = DeploymentState.model_validate_json(content)
    except ValidationError as exc:
        raise StoreUnavailableError(
            f"Invalid deployment state format in {state_path}: {exc}"
        ) from exc

    if not state.version:
        state = state.model_copy(update={"version": STATE_VERSION})
    return state


def save_state(state_path: Path, state: DeploymentState) -> None:
    """Persist deployment state data to disk."""
    try:
        atomic_write_json(state_path, state.model_dump(mode="json"))
    except (OSError, TypeError, ValueError) as exc:
        raise StoreUnavailableError(
            f"Failed to write deployment state to {state_path}: {exc}"
        ) from exc


def _check_revision(existing: Deployment | None, deployment: Deployment) -> None:
    if existing is not None and deployment.revision <= existing.revision:
        raise StaleDeploymentError(
            deployment.id, stored=existing.revision, attempted=deployment.revision
        )


def _check_route_owner(others: Iterable[Deployment], deployment: Deployment) -> None:
    for other in others:
        if other.is_terminal or other.id == deployment.id:
            continue
        owned = set(other.request.routes.ids())
        for route in deployment.request.routes.ids():
            if route in owned:
                raise RouteBusyError(route, other.id)


def _is_expired(deployment: Deployment, cutoff: datetime) -> bool:
    finished = deployment.completed_at or deployment.last_transition_at
    return deployment.is_terminal and finished < cutoff


class DeploymentStore(ABC):
    """Abstract base class for deployment state stores."""

    @abstractmethod
    async def save(self, deployment: Deployment) -> None:
        """Persist a deployment record.

        Writes are last-writer-wins per deployment id, but a record whose
        revision is not newer than the stored one is rejected.

        Raises:
            StaleDeploymentError: If the stored record is newer.
            StoreUnavailableError: If the store cannot be written.
        """

    @abstractmethod
    async def claim(self, deployment: Deployment) -> None:
        """Save a new deployment if no in-flight deployment owns its routes.

        The ownership check and the save are one atomic step, so two
        coordinators cannot both claim a route.

        Raises:
            RouteBusyError: If an in-flight deployment owns either route.
            StoreUnavailableError: If the store cannot be read or written.
        """

    @abstractmethod
    async def load(self, deployment_id: str) -> Deployment:
        """Load a deployment record.

        Raises:
            DeploymentNotFoundError: If no record exists.
            StoreUnavailableError: If the store cannot be read.
        """

    @abstractmethod
    async def list_in_flight(self) -> list[Deployment]:
        """Return deployments that have not reached a terminal phase."""

    @abstractmethod
    async def list_all(self) -> list[Deployment]:
        """Return all live (non-archived) deployments, oldest first."""

    @abstractmethod
    async def request_abort(self, deployment_id: str) -> None:
        """Record an operator abort request for a deployment."""

    @abstractmethod
    async def abort_requested(self, deployment_id: str) -> bool:
        """Return True if an operator requested an abort."""

    @abstractmethod
    async def archive_terminal(self, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Archive terminal deployments finished longer than ``retention`` ago.

        Returns:
            Number of deployments archived.
        """


class InMemoryDeploymentStore(DeploymentStore):
    """Deployment store kept in process memory."""

    def __init__(self) -> None:
        """Initialize an empty store."""
        self.deployments: dict[str, Deployment] = {}
        self.archived: dict[str, Deployment] = {}
        self._abort_requests: dict[str, datetime] = {}

    async def save(self, deployment: Deployment) -> None:
        """Persist a deployment record."""
        _check_revision(self.deployments.get(deployment.id), deployment)
        self.deployments[deployment.id] = deployment

    async def claim(self, deployment: Deployment) -> None:
        """Save a new deployment unless its routes are owned."""
        _check_route_owner(self.deployments.values(), deployment)
        await self.save(deployment)

    async def load(self, deployment_id: str) -> Deployment:
        """Load a deployment record."""
        deployment = self.deployments.get(deployment_id) or self.archived.get(
            deployment_id
        )
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    async def list_in_flight(self) -> list[Deployment]:
        """Return non-terminal deployments."""
        return [d for d in await self.list_all() if not d.is_terminal]

    async def list_all(self) -> list[Deployment]:
        """Return all live deployments."""
        return sorted(self.deployments.values(), key=lambda d: d.started_at)

    async def request_abort(self, deployment_id: str) -> None:
        """Record an abort request."""
        await self.load(deployment_id)
        self._abort_requests.setdefault(deployment_id, datetime.now(timezone.utc))

    async def abort_requested(self, deployment_id: str) -> bool:
        """Return True if an abort was requested."""
        return deployment_id in self._abort_requests

    async def archive_terminal(self, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Archive expired terminal deployments."""
        cutoff = datetime.now(timezone.utc) - retention
        expired = [d for d in self.deployments.values() if _is_expired(d, cutoff)]
        for deployment in expired:
            self.archived[deployment.id] = self.deployments.pop(deployment.id)
            self._abort_requests.pop(deployment.id, None)
        return len(expired)


class JsonFileDeploymentStore(DeploymentStore):
    """Deployment store persisted as a single JSON document.

    Every operation re-reads the file, so several processes (a running
    deployment and an operator issuing ``abort``) share one view.

    Attributes:
        path: Location of the state file.
    """

    def __init__(self, path: Path) -> None:
        """Initialize the store.

        Args:
            path: State file location, created on first save. Abort requests
                live in a sibling file written only by operators.
        """
        self.path = path
        self.abort_path = path.with_name(f"{path.stem}.aborts.json")

    @contextmanager
    def _exclusive(self, path: Path) -> Iterator[None]:
        """Serialize read-modify-write of ``path`` across processes."""
        try:
            with locked(path):
                yield
        except OSError as exc:
            raise StoreUnavailableError(f"Failed to lock {path}: {exc}") from exc

    async def save(self, deployment: Deployment) -> None:
        """Persist a deployment record, rewriting only its own entry."""
        with self._exclusive(self.path):
            state = load_state(self.path)
            _check_revision(state.deployments.get(deployment.id), deployment)
            state.deployments[deployment.id] = deployment
            save_state(self.path, state)
        logger.debug(
            f"Saved deployment {deployment.id} at revision {deployment.revision} "
            f"({deployment.phase.value})"
        )

    async def claim(self, deployment: Deployment) -> None:
        """Save a new deployment unless its routes are owned."""
        with self._exclusive(self.path):
            state = load_state(self.path)
            _check_route_owner(state.deployments.values(), deployment)
            _check_revision(state.deployments.get(deployment.id), deployment)
            state.deployments[deployment.id] = deployment
            save_state(self.path, state)

    async def load(self, deployment_id: str) -> Deployment:
        """Load a deployment record."""
        state = load_state(self.path)
        deployment = state.deployments.get(deployment_id) or state.archived.get(
            deployment_id
        )
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    async def list_in_flight(self) -> list[Deployment]:
        """Return non-terminal deployments."""
        return [d for d in await self.list_all() if not d.is_terminal]

    async def list_all(self) -> list[Deployment]:
        """Return all live deployments."""
        state = load_state(self.path)
        return sorted(state.deployments.values(), key=lambda d: d.started_at)

    async def request_abort(self, deployment_id: str) -> None:
        """Record an abort request in the abort file."""
        await self.load(deployment_id)
        with self._exclusive(self.abort_path):
            requests = self._read_abort_requests()
            requests.setdefault(deployment_id, datetime.now(timezone.utc).isoformat())
            try:
                atomic_write_json(self.abort_path, requests)
            except OSError as exc:
                raise StoreUnavailableError(
                    f"Failed to write abort requests to {self.abort_path}: {exc}"
                ) from exc

    async def abort_requested(self, deployment_id: str) -> bool:
        """Return True if an abort was requested."""
        return deployment_id in self._read_abort_requests()

    def _read_abort_requests(self) -> dict[str, str]:
        try:
            payload = read_json(self.abort_path)
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreUnavailableError(
                f"Failed to read abort requests at {self.abort_path}: {exc}"
            ) from exc
        return dict(payload or {})

    async def archive_terminal(self, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Archive expired terminal deployments."""
        cutoff = datetime.now(timezone.utc) - retention
        with self._exclusive(self.path):
            state = load_state(self.path)
            expired = [d for d in state.deployments.values() if _is_expired(d, cutoff)]
            if not expired:
                return 0
            for deployment in expired:
                state.archived[deployment.id] = state.deployments.pop(deployment.id)
            save_state(self.path, state)
        logger.info(f"Archived {len(expired)} terminal deployment(s)")
        return len(expired)
