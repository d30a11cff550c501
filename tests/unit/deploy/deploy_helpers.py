"""Fakes and builders for deployment engine tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from shiftdeck.deploy.coordinator import CoordinatorSettings, DeploymentCoordinator
from shiftdeck.deploy.health import HealthProber
from shiftdeck.deploy.pools import TargetPoolRegistry
from shiftdeck.deploy.replicas import InMemoryReplicaSetManager
from shiftdeck.deploy.router import InMemoryTrafficRouter
from shiftdeck.deploy.state import InMemoryDeploymentStore
from shiftdeck.models.deployment import (
    DeploymentRequest,
    PoolPair,
    RetryPolicy,
    RouteConfig,
    TimeoutConfig,
    TrafficStep,
)
from shiftdeck.models.pool import HealthSnapshot, TargetPool
from shiftdeck.models.replica_set import Color, ReplicaSet, ReplicaSpec

PROD = "prod-listener"
TEST = "test-listener"
BLUE = "svc-blue"
GREEN = "svc-green"


def make_request(**overrides: Any) -> DeploymentRequest:
    """Build a deployment request with fast retries and no drain grace."""
    values: dict[str, Any] = {
        "service_id": "checkout",
        "replica_spec": ReplicaSpec(image="registry.local/checkout:2.0.0"),
        "canary_plan": [
            TrafficStep(percentage=20, bake_time=60),
            TrafficStep(percentage=100, bake_time=60),
        ],
        "routes": RouteConfig(production=PROD, test=TEST),
        "pools": PoolPair(blue=BLUE, green=GREEN),
        "timeouts": TimeoutConfig(provision_timeout=5, drain_grace_period=0),
        "retry": RetryPolicy(max_attempts=3, base_delay=0, max_delay=0),
    }
    values.update(overrides)
    return DeploymentRequest(**values)


class ScriptedProber(HealthProber):
    """Prober answering from a script instead of the network.

    ``healthy`` is either a fixed healthy count or a callable receiving the
    probed pool; ``None`` means every registered target is healthy.
    """

    def __init__(
        self,
        healthy: int | Callable[[TargetPool], int] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.healthy = healthy
        self.error = error
        self.calls: list[TargetPool] = []

    async def probe(self, pool: TargetPool) -> HealthSnapshot:
        self.calls.append(pool)
        if self.error is not None:
            raise self.error
        total = len(pool.targets)
        if self.healthy is None:
            healthy = total
        elif callable(self.healthy):
            healthy = self.healthy(pool)
        else:
            healthy = self.healthy
        healthy = min(healthy, total)
        return HealthSnapshot(
            pool=pool.name,
            healthy_count=healthy,
            unhealthy_count=total - healthy,
            total=total,
        )


class ControlledSleep:
    """Bake sleep that returns at once, or blocks forever on a chosen call."""

    def __init__(
        self,
        block_on_call: int | None = None,
        on_call: Callable[[int, float], Any] | None = None,
    ) -> None:
        self.block_on_call = block_on_call
        self.on_call = on_call
        self.calls: list[float] = []
        self.cancelled = 0
        self.entered = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        index = len(self.calls)
        self.calls.append(seconds)
        if self.on_call is not None:
            result = self.on_call(index, seconds)
            if asyncio.iscoroutine(result):
                await result
        if index == self.block_on_call:
            self.entered.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        await asyncio.sleep(0)


@dataclass
class Harness:
    """In-memory collaborators around one coordinator."""

    pools: TargetPoolRegistry
    router: InMemoryTrafficRouter
    replicas: InMemoryReplicaSetManager
    prober: ScriptedProber
    store: InMemoryDeploymentStore
    sleep: ControlledSleep
    blue: ReplicaSet
    coordinator: DeploymentCoordinator

    def rebuild(self, sleep: ControlledSleep | None = None) -> DeploymentCoordinator:
        """Return a fresh coordinator over the same collaborators."""
        self.sleep = sleep or ControlledSleep()
        self.coordinator = make_coordinator(self, self.sleep)
        return self.coordinator


def make_coordinator(harness: Harness, sleep: ControlledSleep) -> DeploymentCoordinator:
    return DeploymentCoordinator(
        router=harness.router,
        replicas=harness.replicas,
        prober=harness.prober,
        pools=harness.pools,
        store=harness.store,
        settings=CoordinatorSettings(
            abort_poll_interval=0.01,
            drain_timeout_margin=1.0,
            cleanup_retry=RetryPolicy(max_attempts=3, base_delay=0, max_delay=0),
        ),
        sleep=sleep,
    )


def build_harness(
    *,
    prober: ScriptedProber | None = None,
    sleep: ControlledSleep | None = None,
    store: InMemoryDeploymentStore | None = None,
    replicas_cls: type[InMemoryReplicaSetManager] = InMemoryReplicaSetManager,
    router_cls: type[InMemoryTrafficRouter] = InMemoryTrafficRouter,
    provision_delay: float = 0.0,
) -> Harness:
    """Wire in-memory collaborators with blue live on both routes."""
    pools = TargetPoolRegistry([TargetPool(name=BLUE), TargetPool(name=GREEN)])
    router = router_cls(
        {
            PROD: {BLUE: 100, GREEN: 0},
            TEST: {BLUE: 100, GREEN: 0},
        }
    )
    replicas = replicas_cls(pools, provision_delay=provision_delay)
    blue = replicas.adopt(
        ReplicaSpec(image="registry.local/checkout:1.0.0"),
        BLUE,
        color=Color.BLUE,
        endpoints=["10.0.0.1:80"],
    )
    harness = Harness(
        pools=pools,
        router=router,
        replicas=replicas,
        prober=prober or ScriptedProber(),
        store=store or InMemoryDeploymentStore(),
        sleep=sleep or ControlledSleep(),
        blue=blue,
        coordinator=None,  # type: ignore[arg-type]
    )
    harness.coordinator = make_coordinator(harness, harness.sleep)
    return harness
