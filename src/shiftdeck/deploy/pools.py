"""Target pool registration membership.

Pools are declared up front by the surrounding infrastructure. The replica
set manager registers and deregisters endpoints; the health prober and the
coordinator read membership.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from shiftdeck.lib.errors import ConfigError, DeploymentError
from shiftdeck.lib.files import atomic_write_json, locked, read_json
from shiftdeck.lib.logging_config import get_logger
from shiftdeck.models.pool import TargetPool

logger = get_logger(__name__)


class TargetPoolRegistry:
    """Registration table for a fixed set of target pools.

    With ``path`` set the JSON file is shared by every process using the
    state directory: reads reload it, and each change re-reads it under a
    file lock and rewrites only the pool being changed.

    Attributes:
        path: Optional JSON file the table is persisted to.
    """

    def __init__(
        self, pools: list[TargetPool] | None = None, path: Path | None = None
    ) -> None:
        """Initialize the registry.

        Args:
            pools: Pools to declare. Pools already persisted at ``path`` keep
                their registered targets.
            path: Optional persistence file, written only when a declaration
                changes it.
        """
        self.path = path
        self._pools: dict[str, TargetPool] = {}
        with self._exclusive():
            before = dict(self._pools)
            for pool in pools or []:
                existing = self._pools.get(pool.name)
                if existing is not None and not pool.targets:
                    pool = pool.model_copy(update={"targets": existing.targets})
                self._pools[pool.name] = pool
            if self._pools != before:
                self._persist()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Lock the file and reload it; a no-op without a path."""
        if self.path is None:
            yield
            return
        try:
            with locked(self.path):
                self._refresh()
                yield
        except OSError as exc:
            raise DeploymentError(
                operation="pools",
                message=f"Failed to lock target pools at {self.path}: {exc}",
            ) from exc

    def _refresh(self) -> None:
        if self.path is not None:
            self._pools.update(self._load(self.path))

    @staticmethod
    def _load(path: Path) -> dict[str, TargetPool]:
        try:
            payload = read_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise DeploymentError(
                operation="pools",
                message=f"Failed to read target pools at {path}: {exc}",
            ) from exc
        if not payload:
            return {}
        try:
            return {
                name: TargetPool.model_validate(data)
                for name, data in payload.get("pools", {}).items()
            }
        except PydanticValidationError as exc:
            raise DeploymentError(
                operation="pools",
                message=f"Invalid target pool format in {path}: {exc}",
            ) from exc

    def _persist(self) -> None:
        if self.path is None:
            return
        payload = {
            "pools": {
                name: pool.model_dump(mode="json") for name, pool in self._pools.items()
            }
        }
        try:
            atomic_write_json(self.path, payload)
        except OSError as exc:
            raise DeploymentError(
                operation="pools",
                message=f"Failed to write target pools to {self.path}: {exc}",
            ) from exc

    def names(self) -> list[str]:
        """Return the declared pool names."""
        self._refresh()
        return sorted(self._pools)

    def get(self, name: str) -> TargetPool:
        """Return a pool by name.

        Raises:
            ConfigError: If the pool is not declared.
        """
        self._refresh()
        return self._require(name)

    def _require(self, name: str) -> TargetPool:
        pool = self._pools.get(name)
        if pool is None:
            raise ConfigError(
                field="pools", message=f"Target pool '{name}' is not declared"
            )
        return pool

    def register(self, name: str, endpoints: list[str]) -> TargetPool:
        """Register endpoints with a pool. Already registered endpoints are kept."""
        with self._exclusive():
            pool = self._require(name)
            targets = list(pool.targets)
            targets.extend(e for e in endpoints if e not in targets)
            updated = pool.model_copy(update={"targets": targets})
            self._pools[name] = updated
            self._persist()
        logger.debug(f"Registered {len(endpoints)} endpoint(s) with pool '{name}'")
        return updated

    def deregister(self, name: str, endpoints: list[str]) -> TargetPool:
        """Remove endpoints from a pool. Unknown endpoints are ignored."""
        with self._exclusive():
            pool = self._require(name)
            targets = [t for t in pool.targets if t not in endpoints]
            updated = pool.model_copy(update={"targets": targets})
            self._pools[name] = updated
            self._persist()
        logger.debug(f"Deregistered {len(endpoints)} endpoint(s) from pool '{name}'")
        return updated
