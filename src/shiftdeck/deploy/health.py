"""Health probing for target pools.

An endpoint's classification follows load balancer semantics: a new endpoint
starts ``initial``, becomes ``healthy`` after ``healthy_threshold`` consecutive
passing checks and ``unhealthy`` after ``unhealthy_threshold`` consecutive
failures. Anything in between keeps the previous classification, so a single
blip never flips an endpoint.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

import httpx

from shiftdeck.lib.errors import ProbeUnavailableError
from shiftdeck.lib.logging_config import get_logger
from shiftdeck.models.pool import HealthCheckConfig, HealthSnapshot, TargetPool

logger = get_logger(__name__)


class EndpointStatus(str, Enum):
    """Classification of a single endpoint."""

    INITIAL = "initial"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class EndpointHealthTracker:
    """Consecutive pass/fail counter with hysteresis for one endpoint."""

    healthy_threshold: int
    unhealthy_threshold: int
    status: EndpointStatus = EndpointStatus.INITIAL
    consecutive_passes: int = 0
    consecutive_failures: int = 0

    def record(self, passed: bool) -> EndpointStatus:
        """Record one check result and return the resulting classification."""
        if passed:
            self.consecutive_passes += 1
            self.consecutive_failures = 0
            if self.consecutive_passes >= self.healthy_threshold:
                self.status = EndpointStatus.HEALTHY
        else:
            self.consecutive_failures += 1
            self.consecutive_passes = 0
            if self.consecutive_failures >= self.unhealthy_threshold:
                self.status = EndpointStatus.UNHEALTHY
        return self.status

    @property
    def settled(self) -> bool:
        """Return True once the endpoint has left the initial state."""
        return self.status != EndpointStatus.INITIAL


class HealthProber(ABC):
    """Abstract base class for target pool health probers."""

    @abstractmethod
    async def probe(self, pool: TargetPool) -> HealthSnapshot:
        """Return the aggregate health of a pool's registered endpoints.

        Args:
            pool: Target pool including its health check configuration.

        Returns:
            HealthSnapshot with healthy, unhealthy and total endpoint counts.

        Raises:
            ProbeUnavailableError: If the prober itself cannot determine health.
        """


class HttpHealthProber(HealthProber):
    """Probe endpoints over HTTP with httpx.

    Trackers are kept per pool between calls so hysteresis spans probes.
    A single ``probe`` runs check rounds every ``interval`` seconds until no
    endpoint is still ``initial``, and never runs longer than
    ``timeout * (healthy_threshold + unhealthy_threshold)``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        scheme: str = "http",
        pool_schemes: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the prober.

        Args:
            client: Optional shared client. One is created when omitted.
            scheme: URL scheme used to reach endpoints.
            pool_schemes: Per-pool scheme overrides, keyed by pool name.
        """
        self._client = client
        self._owns_client = client is None
        self._scheme = scheme
        self._pool_schemes = dict(pool_schemes or {})
        self._trackers: dict[str, dict[str, EndpointHealthTracker]] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=False)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this prober created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _trackers_for(self, pool: TargetPool) -> dict[str, EndpointHealthTracker]:
        hc = pool.health_check
        known = self._trackers.setdefault(pool.name, {})
        for endpoint in list(known):
            if endpoint not in pool.targets:
                del known[endpoint]
        for endpoint in pool.targets:
            tracker = known.get(endpoint)
            if (
                tracker is None
                or tracker.healthy_threshold != hc.healthy_threshold
                or tracker.unhealthy_threshold != hc.unhealthy_threshold
            ):
                known[endpoint] = EndpointHealthTracker(
                    healthy_threshold=hc.healthy_threshold,
                    unhealthy_threshold=hc.unhealthy_threshold,
                )
        return known

    async def _check(self, url: str, hc: HealthCheckConfig) -> bool:
        try:
            response = await self._get_client().get(url, timeout=hc.timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug(f"Health check failed for {url}: {exc}")
            return False
        passed = hc.accepts(response.status_code)
        if not passed:
            logger.debug(f"Health check for {url} returned {response.status_code}")
        return passed

    async def _round(self, pool: TargetPool) -> list[bool]:
        hc = pool.health_check
        scheme = self._pool_schemes.get(pool.name, self._scheme)
        try:
            return await asyncio.gather(
                *(
                    self._check(f"{scheme}://{endpoint}{hc.path}", hc)
                    for endpoint in pool.targets
                )
            )
        except RuntimeError as exc:
            raise ProbeUnavailableError(pool.name, str(exc)) from exc

    async def probe(self, pool: TargetPool) -> HealthSnapshot:
        """Probe every registered endpoint of the pool."""
        trackers = self._trackers_for(pool)
        if not pool.targets:
            return HealthSnapshot(pool=pool.name)

        hc = pool.health_check
        loop = asyncio.get_running_loop()
        deadline = loop.time() + hc.probe_budget
        rounds = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                results = await asyncio.wait_for(self._round(pool), timeout=remaining)
            except asyncio.TimeoutError:
                break
            rounds += 1
            for endpoint, passed in zip(pool.targets, results, strict=True):
                trackers[endpoint].record(passed)
            if all(t.settled for t in trackers.values()):
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(hc.interval, remaining))

        snapshot = _snapshot(pool, trackers)
        logger.debug(
            f"Probed pool '{pool.name}' in {rounds} round(s): "
            f"{snapshot.healthy_count}/{snapshot.total} healthy"
        )
        return snapshot


def _snapshot(
    pool: TargetPool, trackers: dict[str, EndpointHealthTracker]
) -> HealthSnapshot:
    statuses = [trackers[e].status for e in pool.targets]
    return HealthSnapshot(
        pool=pool.name,
        healthy_count=statuses.count(EndpointStatus.HEALTHY),
        unhealthy_count=statuses.count(EndpointStatus.UNHEALTHY),
        total=len(statuses),
    )
