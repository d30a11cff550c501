"""Replica set managers: create, activate, drain and terminate replica sets."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from shiftdeck.deploy.health import HealthProber
from shiftdeck.deploy.pools import TargetPoolRegistry
from shiftdeck.lib.errors import (
    DeploymentError,
    DrainTimeoutError,
    ProbeUnavailableError,
    ProvisionTimeoutError,
)
from shiftdeck.lib.files import atomic_write_json, locked, read_json
from shiftdeck.lib.logging_config import get_logger
from shiftdeck.models.replica_set import Color, ReplicaSet, ReplicaSetState, ReplicaSpec

logger = get_logger(__name__)

EndpointFactory = Callable[[ReplicaSet, int], str]


def default_endpoint_factory(replica_set: ReplicaSet, index: int) -> str:
    """Return a synthetic endpoint address for replica ``index`` of a set."""
    suffix = replica_set.id[-6:].lower()
    return f"{replica_set.color.value}-{suffix}-{index}:{replica_set.spec.port}"


class ReplicaSetManager(ABC):
    """Abstract base class for replica set managers."""

    @abstractmethod
    async def create(
        self, spec: ReplicaSpec, pool: str, *, color: Color
    ) -> ReplicaSet:
        """Start provisioning a replica set and return it in ``provisioning``.

        Args:
            spec: Desired replica set definition.
            pool: Target pool the replicas register with.
            color: Side of the blue/green pair.

        Raises:
            DeploymentError: If provisioning cannot be started.
        """

    @abstractmethod
    async def wait_active(self, replica_set_id: str, timeout: float) -> ReplicaSet:
        """Block until the desired count is registered and healthy.

        Raises:
            ProvisionTimeoutError: If the set is not active within ``timeout``.
            DeploymentError: If the set cannot become active at all.
        """

    @abstractmethod
    async def drain(self, replica_set_id: str, grace_period: float) -> None:
        """Deregister from the pool, wait ``grace_period``, then terminate.

        Raises:
            DrainTimeoutError: If draining cannot complete.
        """

    @abstractmethod
    async def terminate(self, replica_set_id: str) -> None:
        """Tear down a replica set. Terminating twice succeeds silently."""

    @abstractmethod
    async def get(self, replica_set_id: str) -> ReplicaSet:
        """Return a replica set by id.

        Raises:
            DeploymentError: If the replica set is unknown.
        """

    @abstractmethod
    async def active_in_pool(self, pool: str) -> ReplicaSet | None:
        """Return the active replica set registered with a pool, if any."""


class InMemoryReplicaSetManager(ReplicaSetManager):
    """Replica set manager backed by a target pool registry.

    Endpoints come from ``endpoint_factory``. When a prober is supplied,
    ``wait_active`` polls it until the set's own endpoints report the desired
    healthy count; otherwise registration alone activates the set.
    """

    def __init__(
        self,
        pools: TargetPoolRegistry,
        *,
        endpoint_factory: EndpointFactory | None = None,
        prober: HealthProber | None = None,
        poll_interval: float = 1.0,
        provision_delay: float = 0.0,
        path: Path | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            pools: Registry the replicas register with.
            endpoint_factory: Builds the endpoint address of each replica.
            prober: Optional prober gating activation on real health.
            poll_interval: Seconds between activation health polls.
            provision_delay: Simulated boot time before registration.
            path: Optional JSON persistence file.
        """
        self._pools = pools
        self._endpoint_factory = endpoint_factory or default_endpoint_factory
        self._prober = prober
        self._poll_interval = poll_interval
        self._provision_delay = provision_delay
        self.path = path
        self._replica_sets: dict[str, ReplicaSet] = {}
        if path is not None:
            self._replica_sets.update(self._load(path))

    @staticmethod
    def _load(path: Path) -> dict[str, ReplicaSet]:
        try:
            payload = read_json(path)
            return {
                rs_id: ReplicaSet.model_validate(data)
                for rs_id, data in (payload or {}).get("replica_sets", {}).items()
            }
        except (OSError, json.JSONDecodeError, PydanticValidationError) as exc:
            raise DeploymentError(
                operation="replica_set",
                message=f"Failed to read replica sets at {path}: {exc}",
            ) from exc

    def _refresh(self) -> None:
        if self.path is not None:
            self._replica_sets.update(self._load(self.path))

    def _save(self, replica_set: ReplicaSet) -> ReplicaSet:
        if self.path is None:
            self._replica_sets[replica_set.id] = replica_set
            return replica_set
        try:
            with locked(self.path):
                self._refresh()
                self._replica_sets[replica_set.id] = replica_set
                payload = {
                    "replica_sets": {
                        rs_id: rs.model_dump(mode="json")
                        for rs_id, rs in self._replica_sets.items()
                    }
                }
                atomic_write_json(self.path, payload)
        except OSError as exc:
            raise DeploymentError(
                operation="replica_set",
                message=f"Failed to write replica sets to {self.path}: {exc}",
            ) from exc
        return replica_set

    def _update(self, replica_set: ReplicaSet, **changes: object) -> ReplicaSet:
        changes["updated_at"] = datetime.now(timezone.utc)
        return self._save(replica_set.model_copy(update=changes))

    def _require(self, replica_set_id: str) -> ReplicaSet:
        self._refresh()
        replica_set = self._replica_sets.get(replica_set_id)
        if replica_set is None:
            raise DeploymentError(
                operation="replica_set",
                message=f"Replica set '{replica_set_id}' not found",
            )
        return replica_set

    def adopt(
        self,
        spec: ReplicaSpec,
        pool: str,
        *,
        color: Color,
        endpoints: list[str],
    ) -> ReplicaSet:
        """Record an already running replica set as active in a pool."""
        replica_set = ReplicaSet(
            color=color,
            spec=spec,
            pool=pool,
            state=ReplicaSetState.ACTIVE,
            healthy_count=len(endpoints),
            endpoints=list(endpoints),
        )
        self._pools.register(pool, replica_set.endpoints)
        logger.info(
            f"Adopted {color.value} replica set {replica_set.id} in pool '{pool}'"
        )
        return self._save(replica_set)

    async def create(
        self, spec: ReplicaSpec, pool: str, *, color: Color
    ) -> ReplicaSet:
        """Create a replica set in the provisioning state."""
        self._pools.get(pool)
        replica_set = ReplicaSet(color=color, spec=spec, pool=pool)
        endpoints = [
            self._endpoint_factory(replica_set, index)
            for index in range(spec.desired_count)
        ]
        replica_set = replica_set.model_copy(update={"endpoints": endpoints})
        logger.info(
            f"Provisioning {color.value} replica set {replica_set.id} "
            f"({spec.image}, {spec.desired_count} replica(s)) in pool '{pool}'"
        )
        return self._save(replica_set)

    async def _activate(self, replica_set: ReplicaSet) -> ReplicaSet:
        if self._provision_delay:
            await asyncio.sleep(self._provision_delay)
        self._pools.register(replica_set.pool, replica_set.endpoints)

        healthy = replica_set.desired_count
        if self._prober is not None:
            while True:
                view = self._pools.get(replica_set.pool).model_copy(
                    update={"targets": replica_set.endpoints}
                )
                try:
                    snapshot = await self._prober.probe(view)
                except ProbeUnavailableError as exc:
                    logger.warning(f"Activation probe unavailable, retrying: {exc}")
                else:
                    if snapshot.healthy_count >= replica_set.desired_count:
                        healthy = snapshot.healthy_count
                        break
                await asyncio.sleep(self._poll_interval)

        return self._update(
            replica_set, state=ReplicaSetState.ACTIVE, healthy_count=healthy
        )

    async def wait_active(self, replica_set_id: str, timeout: float) -> ReplicaSet:
        """Wait for a replica set to become active."""
        replica_set = self._require(replica_set_id)
        if replica_set.state == ReplicaSetState.ACTIVE:
            return replica_set
        if replica_set.state != ReplicaSetState.PROVISIONING:
            raise DeploymentError(
                operation="provision",
                message=(
                    f"Replica set '{replica_set_id}' is {replica_set.state.value} "
                    "and cannot become active"
                ),
            )
        try:
            activated = await asyncio.wait_for(
                self._activate(replica_set), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise ProvisionTimeoutError(replica_set_id, timeout) from exc
        logger.info(f"Replica set {replica_set_id} is active")
        return activated

    async def drain(self, replica_set_id: str, grace_period: float) -> None:
        """Deregister, wait for connections to drain, then terminate."""
        replica_set = self._require(replica_set_id)
        if replica_set.is_terminated:
            return
        try:
            replica_set = self._update(replica_set, state=ReplicaSetState.DRAINING)
            self._pools.deregister(replica_set.pool, replica_set.endpoints)
        except DeploymentError as exc:
            raise DrainTimeoutError(replica_set_id, exc.message) from exc

        logger.info(
            f"Draining replica set {replica_set_id} for {grace_period:g}s "
            "before termination"
        )
        await asyncio.sleep(grace_period)
        await self.terminate(replica_set_id)

    async def terminate(self, replica_set_id: str) -> None:
        """Terminate a replica set; unknown or terminated sets are a no-op."""
        self._refresh()
        replica_set = self._replica_sets.get(replica_set_id)
        if replica_set is None:
            logger.debug(f"Replica set {replica_set_id} unknown, nothing to terminate")
            return
        if replica_set.is_terminated:
            return
        self._pools.deregister(replica_set.pool, replica_set.endpoints)
        self._update(replica_set, state=ReplicaSetState.TERMINATED, healthy_count=0)
        logger.info(f"Terminated replica set {replica_set_id}")

    async def get(self, replica_set_id: str) -> ReplicaSet:
        """Return a replica set by id."""
        return self._require(replica_set_id)

    async def active_in_pool(self, pool: str) -> ReplicaSet | None:
        """Return the most recently created active replica set in a pool."""
        self._refresh()
        active = [
            rs
            for rs in self._replica_sets.values()
            if rs.pool == pool and rs.state == ReplicaSetState.ACTIVE
        ]
        if not active:
            return None
        return max(active, key=lambda rs: rs.created_at)
