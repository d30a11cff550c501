"""Traffic routers: weighted forwarding from a route to target pools."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path

from shiftdeck.lib.errors import (
    DeploymentError,
    RouterWriteFailureError,
    ValidationError,
)
from shiftdeck.lib.files import atomic_write_json, locked, read_json
from shiftdeck.lib.logging_config import get_logger

logger = get_logger(__name__)


def validate_weights(route: str, weights: dict[str, int], known: set[str]) -> None:
    """Validate a weight mapping for a route.

    Raises:
        ValidationError: If weights are out of range, do not sum to 100, or
            name a pool the route does not forward to.
    """
    unknown = sorted(set(weights) - known)
    if unknown:
        raise ValidationError(
            field=f"routes.{route}",
            message="Unknown target pool(s) in weights",
            expected=f"one of {sorted(known)}",
            actual=", ".join(unknown),
        )
    for pool, weight in weights.items():
        valid_type = isinstance(weight, int) and not isinstance(weight, bool)
        if not valid_type or not 0 <= weight <= 100:
            raise ValidationError(
                field=f"routes.{route}.{pool}",
                message="Weight out of range",
                expected="integer between 0 and 100",
                actual=repr(weight),
            )
    total = sum(weights.values())
    if total != 100:
        raise ValidationError(
            field=f"routes.{route}",
            message="Weights must sum to 100",
            expected="100",
            actual=str(total),
        )


class TrafficRouter(ABC):
    """Abstract base class for traffic routers."""

    @abstractmethod
    async def set_weights(self, route: str, weights: dict[str, int]) -> None:
        """Atomically replace a route's pool weights.

        Setting weights identical to the current ones is a no-op.

        Args:
            route: Route identifier.
            weights: Mapping of target pool to weight; must sum to 100.

        Raises:
            ValidationError: If the weights are invalid for the route.
            RouterWriteFailureError: If the backend rejects the write.
        """

    @abstractmethod
    async def get_weights(self, route: str) -> dict[str, int]:
        """Return a route's current pool weights.

        Raises:
            RouterWriteFailureError: If the backend cannot be read.
        """


class InMemoryTrafficRouter(TrafficRouter):
    """Router holding weights in memory, optionally mirrored to a JSON file.

    A route's mapping is only ever replaced wholesale, so a reader never
    observes a partial distribution. With ``path`` set, the file is the
    source of truth shared by every process using it: reads reload it, and a
    write re-reads it under a file lock and changes only its own route.

    Attributes:
        path: Optional persistence file.
    """

    def __init__(
        self,
        routes: dict[str, dict[str, int]] | None = None,
        path: Path | None = None,
    ) -> None:
        """Initialize the router.

        Args:
            routes: Initial weights per route. The pools named here are the
                only pools the route may forward to. Persisted weights take
                precedence over these initial values.
            path: Optional persistence file. It is only written when it lacks
                one of the initial routes.
        """
        self.path = path
        self._pools: dict[str, set[str]] = {}
        self._weights: dict[str, dict[str, int]] = {}
        self._revisions: dict[str, int] = {}
        self._lock = asyncio.Lock()

        for route, weights in (routes or {}).items():
            validate_weights(route, weights, set(weights))
            self._pools[route] = set(weights)
            self._weights[route] = dict(weights)
            self._revisions[route] = 0
        if path is None:
            return
        try:
            with locked(path):
                persisted = self._reload()
                if set(self._weights) - persisted:
                    self._persist()
        except (OSError, json.JSONDecodeError) as exc:
            raise DeploymentError(
                operation="route",
                message=f"Failed to open routes at {path}: {exc}",
            ) from exc

    def _reload(self) -> set[str]:
        """Apply the persisted document and return the routes it holds."""
        if self.path is None:
            return set(self._weights)
        payload = read_json(self.path)
        persisted = (payload or {}).get("routes", {})
        for route, entry in persisted.items():
            weights = {pool: int(w) for pool, w in entry["weights"].items()}
            self._pools[route] = set(self._pools.get(route, set())) | set(weights)
            self._weights[route] = weights
            self._revisions[route] = int(entry.get("revision", 0))
        return set(persisted)

    def _persist(self) -> None:
        if self.path is None:
            return
        payload = {
            "routes": {
                route: {"weights": weights, "revision": self._revisions[route]}
                for route, weights in self._weights.items()
            }
        }
        atomic_write_json(self.path, payload)

    def _refresh(self, route: str) -> None:
        try:
            self._reload()
        except (OSError, json.JSONDecodeError) as exc:
            raise RouterWriteFailureError(route, str(exc)) from exc

    def routes(self) -> list[str]:
        """Return the known route identifiers."""
        return sorted(self._weights)

    def revision(self, route: str) -> int:
        """Return how many effective weight changes the route has seen."""
        self._refresh(route)
        self._require_route(route)
        return self._revisions[route]

    def _require_route(self, route: str) -> None:
        if route not in self._weights:
            raise ValidationError(
                field="route",
                message="Unknown route",
                expected=f"one of {self.routes()}",
                actual=route,
            )

    async def set_weights(self, route: str, weights: dict[str, int]) -> None:
        """Replace a route's weights."""
        async with self._lock:
            if self.path is None:
                changed = self._write(route, weights)
            else:
                try:
                    with locked(self.path):
                        changed = self._write(route, weights)
                except OSError as exc:
                    raise RouterWriteFailureError(route, str(exc)) from exc

        if changed is not None:
            logger.info(f"Route '{route}' weights set to {changed}")

    def _write(self, route: str, weights: dict[str, int]) -> dict[str, int] | None:
        """Apply weights to the freshly loaded state; return them if changed."""
        self._refresh(route)
        self._require_route(route)
        validate_weights(route, weights, self._pools[route])
        # Pools left out of the mapping receive no traffic
        desired = {pool: weights.get(pool, 0) for pool in sorted(self._pools[route])}

        current = self._weights[route]
        if current == desired:
            logger.debug(f"Route '{route}' already at {desired}, skipping write")
            return None

        previous_revision = self._revisions[route]
        self._weights[route] = desired
        self._revisions[route] = previous_revision + 1
        try:
            self._persist()
        except OSError:
            self._weights[route] = current
            self._revisions[route] = previous_revision
            raise
        return desired

    async def get_weights(self, route: str) -> dict[str, int]:
        """Return a copy of a route's weights."""
        self._refresh(route)
        self._require_route(route)
        return dict(self._weights[route])
