"""Blue/green deployment coordinator.

Drives one deployment through its phases::

    requested -> provisioning_green -> shifting_traffic(i) -> baking(i)
      -> validating(i) -> shifting_traffic(i+1) | promoted | rolling_back
    promoted -> draining_blue -> succeeded
    rolling_back -> rolled_back

Every phase is saved to the state store before the side effect it announces
(traffic shift, terminate) and after the side effect when that effect is the
source of truth (health probe). A restarted coordinator resumes from the last
saved phase and re-queries the router before trusting a recorded shift.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from shiftdeck.deploy.health import HealthProber
from shiftdeck.deploy.pools import TargetPoolRegistry
from shiftdeck.deploy.replicas import ReplicaSetManager
from shiftdeck.deploy.retry import retry_async
from shiftdeck.deploy.router import TrafficRouter
from shiftdeck.deploy.state import DEFAULT_RETENTION, DeploymentStore
from shiftdeck.lib.errors import (
    DeploymentError,
    DrainTimeoutError,
    ErrorKind,
    ProbeUnavailableError,
    RouterWriteFailureError,
    ShiftDeckError,
    StaleDeploymentError,
    StoreUnavailableError,
    UnhealthyTargetError,
)
from shiftdeck.lib.logging_config import get_logger
from shiftdeck.models.deployment import (
    Deployment,
    DeploymentErrorInfo,
    DeploymentRequest,
    DeploymentStatus,
    Outcome,
    Phase,
    RetryPolicy,
    TrafficStep,
)
from shiftdeck.models.replica_set import Color

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class _Aborted(Exception):
    """Raised inside a deployment when an operator abort is observed."""


@dataclass
class CoordinatorSettings:
    """Coordinator-wide tuning that is not part of a deployment request.

    Attributes:
        abort_poll_interval: Seconds between store polls for abort requests
            issued by other processes.
        drain_timeout_margin: Seconds a drain may exceed its grace period
            before it is reported as a drain timeout.
        cleanup_retry: Backoff for retrying a failed post-promotion drain.
        retention: Age after which terminal deployments are archived.
    """

    abort_poll_interval: float = 2.0
    drain_timeout_margin: float = 30.0
    cleanup_retry: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(
            max_attempts=5, base_delay=5.0, max_delay=60.0
        )
    )
    retention: timedelta = DEFAULT_RETENTION


class DeploymentCoordinator:
    """Phased blue/green traffic shift coordinator.

    Each deployment runs as one sequential coroutine. Several deployments may
    run concurrently on one coordinator as long as they target different
    routes; route ownership is claimed when a deployment is requested.
    """

    def __init__(
        self,
        *,
        router: TrafficRouter,
        replicas: ReplicaSetManager,
        prober: HealthProber,
        pools: TargetPoolRegistry,
        store: DeploymentStore,
        settings: CoordinatorSettings | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the coordinator with its collaborators.

        Args:
            router: Traffic router for the production and test routes.
            replicas: Replica set manager.
            prober: Health prober for target pools.
            pools: Target pool registry.
            store: Deployment state store.
            settings: Coordinator tuning.
            sleep: Awaitable used for bake waits.
        """
        self.router = router
        self.replicas = replicas
        self.prober = prober
        self.pools = pools
        self.store = store
        self.settings = settings or CoordinatorSettings()
        self._sleep = sleep
        self._abort_events: dict[str, asyncio.Event] = {}
        self._latest: dict[str, Deployment] = {}
        self._cleanup_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self, request: DeploymentRequest) -> Deployment:
        """Record a new deployment in the ``requested`` phase.

        Raises:
            RouteBusyError: If an in-flight deployment owns either route.
            ShiftDeckError: If a route or pool named by the request is unknown.
        """
        for route in request.routes.ids():
            await self.router.get_weights(route)
        self.pools.get(request.pools.blue)
        self.pools.get(request.pools.green)

        deployment = Deployment(
            service_id=request.service_id,
            request=request,
            blue_replica_set_id=request.blue_replica_set_id,
        ).transition(Phase.REQUESTED)
        await self.store.claim(deployment)
        self._latest[deployment.id] = deployment

        logger.info(
            f"Deployment {deployment.id} requested for service "
            f"'{request.service_id}' ({request.replica_spec.image})"
        )
        return deployment

    async def run(self, deployment_id: str) -> Deployment:
        """Drive a deployment until it reaches a terminal phase."""
        return await self._drive(deployment_id, resumed=False)

    async def deploy(self, request: DeploymentRequest) -> Deployment:
        """Request a deployment and drive it to completion."""
        deployment = await self.start(request)
        return await self.run(deployment.id)

    async def resume(self, deployment_id: str) -> Deployment:
        """Continue a deployment from its last saved phase."""
        logger.info(f"Resuming deployment {deployment_id}")
        return await self._drive(deployment_id, resumed=True)

    async def resume_in_flight(self) -> list[Deployment]:
        """Resume every in-flight deployment concurrently.

        Returns:
            Final records of the deployments that could be driven; failures
            are logged and left in the store for operator attention.
        """
        in_flight = await self.store.list_in_flight()
        results = await asyncio.gather(
            *(self.resume(d.id) for d in in_flight), return_exceptions=True
        )
        finished: list[Deployment] = []
        for deployment, result in zip(in_flight, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(f"Deployment {deployment.id} could not resume: {result}")
            else:
                finished.append(result)
        return finished

    async def abort(self, deployment_id: str) -> bool:
        """Request an operator abort.

        Before promotion the deployment rolls back at once, cancelling any
        wait in progress. After promotion green is already fully live, so the
        abort is ignored.

        Returns:
            True if the abort will roll the deployment back.

        Raises:
            DeploymentError: If the deployment already finished.
        """
        deployment = await self.store.load(deployment_id)
        if deployment.is_terminal:
            raise DeploymentError(
                operation="abort",
                message=(
                    f"Deployment '{deployment_id}' already finished "
                    f"({deployment.phase.value})"
                ),
            )
        if not deployment.phase.can_roll_back:
            logger.warning(
                f"Ignoring abort for deployment {deployment_id}: "
                f"already {deployment.phase.value}"
            )
            return False

        self._abort_event(deployment_id).set()
        await self.store.request_abort(deployment_id)
        logger.warning(f"Operator abort requested for deployment {deployment_id}")
        return True

    async def status(self, deployment_id: str) -> DeploymentStatus:
        """Return the status of a deployment."""
        deployment = await self.store.load(deployment_id)
        return deployment.to_status()

    async def archive_terminal(self) -> int:
        """Archive terminal deployments older than the retention window."""
        return await self.store.archive_terminal(self.settings.retention)

    async def wait_for_cleanups(self) -> None:
        """Wait for background post-promotion cleanups to finish."""
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _drive(self, deployment_id: str, *, resumed: bool) -> Deployment:
        deployment = await self.store.load(deployment_id)
        self._latest[deployment_id] = deployment
        handlers: dict[Phase, Callable[[Deployment, bool], Awaitable[Deployment]]] = {
            Phase.REQUESTED: self._on_requested,
            Phase.PROVISIONING_GREEN: self._on_provisioning,
            Phase.SHIFTING_TRAFFIC: self._on_shifting,
            Phase.BAKING: self._on_baking,
            Phase.VALIDATING: self._on_validating,
            Phase.PROMOTED: self._on_promoted,
            Phase.DRAINING_BLUE: self._on_draining,
            Phase.ROLLING_BACK: self._on_rolling_back,
        }

        try:
            while not deployment.is_terminal:
                handler = handlers[deployment.phase]
                try:
                    deployment = await handler(deployment, resumed)
                except (StoreUnavailableError, StaleDeploymentError):
                    raise
                except _Aborted:
                    deployment = await self._begin_rollback(
                        self._latest[deployment_id],
                        ErrorKind.OPERATOR_ABORT,
                        "Aborted by operator",
                    )
                except Exception as exc:
                    deployment = await self._escalate(self._latest[deployment_id], exc)
                resumed = False
        except StoreUnavailableError as exc:
            last = self._latest[deployment_id]
            logger.error(
                f"Deployment {deployment_id} stalled in phase {last.phase.value}: "
                f"{exc.message}"
            )
            raise StoreUnavailableError(
                f"Deployment '{deployment_id}' stalled after phase "
                f"'{last.phase.value}': {exc.message}. Resume once the store "
                "is available."
            ) from exc
        finally:
            self._abort_events.pop(deployment_id, None)

        logger.info(
            f"Deployment {deployment.id} finished: {deployment.exit_status.value}"
            if deployment.exit_status
            else f"Deployment {deployment.id} finished in {deployment.phase.value}"
        )
        return deployment

    async def _escalate(self, deployment: Deployment, exc: Exception) -> Deployment:
        """Turn a pre-promotion failure into a rollback; re-raise otherwise."""
        if not deployment.phase.can_roll_back:
            raise exc

        if isinstance(exc, DeploymentError):
            kind, message = exc.kind, exc.message
        else:
            logger.exception(f"Unexpected error in deployment {deployment.id}")
            kind, message = ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}"
        if kind == ErrorKind.INTERNAL and deployment.phase in (
            Phase.REQUESTED,
            Phase.PROVISIONING_GREEN,
        ):
            kind = ErrorKind.PROVISION_FAILURE
        return await self._begin_rollback(deployment, kind, message)

    async def _on_requested(self, deployment: Deployment, resumed: bool) -> Deployment:
        await self._checkpoint(deployment)
        if deployment.blue_replica_set_id is None:
            blue = await self.replicas.active_in_pool(deployment.request.pools.blue)
            if blue is None:
                logger.warning(
                    f"No active replica set found in blue pool "
                    f"'{deployment.request.pools.blue}'; blue will not be drained"
                )
            else:
                deployment = await self._save(
                    deployment.model_copy(
                        update={
                            "blue_replica_set_id": blue.id,
                            "revision": deployment.revision + 1,
                        }
                    )
                )
        return await self._transition(deployment, Phase.PROVISIONING_GREEN)

    async def _on_provisioning(
        self, deployment: Deployment, resumed: bool
    ) -> Deployment:
        request = deployment.request
        await self._checkpoint(deployment)

        green_id = deployment.green_replica_set_id
        if green_id is not None and resumed:
            try:
                await self.replicas.get(green_id)
            except DeploymentError:
                logger.warning(f"Green replica set {green_id} is gone, recreating it")
                green_id = None

        if green_id is None:
            green = await self.replicas.create(
                request.replica_spec, request.pools.green, color=Color.GREEN
            )
            green_id = green.id
            deployment = await self._save(
                deployment.model_copy(
                    update={
                        "green_replica_set_id": green_id,
                        "revision": deployment.revision + 1,
                    }
                )
            )

        await self._set_all_routes(deployment, 0, guarded=True)
        await self._guard(
            deployment,
            self.replicas.wait_active(green_id, request.timeouts.provision_timeout),
        )
        return await self._transition(deployment, Phase.SHIFTING_TRAFFIC, 0)

    async def _on_shifting(self, deployment: Deployment, resumed: bool) -> Deployment:
        step = self._step(deployment)
        await self._checkpoint(deployment)
        await self._set_all_routes(deployment, step.percentage, guarded=True)
        await self._verify_weight_sum(deployment)
        return await self._transition(deployment, Phase.BAKING, deployment.step_index)

    async def _on_baking(self, deployment: Deployment, resumed: bool) -> Deployment:
        step = self._step(deployment)
        remaining = step.bake_time

        if resumed:
            expected = deployment.request.weights_for(step.percentage)
            observed = {
                route: await self.router.get_weights(route)
                for route in deployment.request.routes.ids()
            }
            if all(_matches(weights, expected) for weights in observed.values()):
                elapsed = (
                    datetime.now(timezone.utc) - deployment.last_transition_at
                ).total_seconds()
                remaining = min(max(step.bake_time - elapsed, 0.0), step.bake_time)
            else:
                logger.warning(
                    f"Deployment {deployment.id}: routes do not reflect step "
                    f"{deployment.step_index} ({observed}), re-issuing the shift"
                )
                await self._set_all_routes(deployment, step.percentage, guarded=True)

        await self._checkpoint(deployment)
        logger.info(
            f"Deployment {deployment.id}: baking step {deployment.step_index} "
            f"at {step.percentage}% for {remaining:g}s"
        )
        await self._guard(deployment, self._sleep(remaining))
        return await self._transition(
            deployment, Phase.VALIDATING, deployment.step_index
        )

    async def _on_validating(
        self, deployment: Deployment, resumed: bool
    ) -> Deployment:
        request = deployment.request
        index = self._step_index(deployment)
        await self._checkpoint(deployment)

        pool = self.pools.get(request.pools.green).model_copy(
            update={"health_check": request.health_check}
        )
        snapshot = await retry_async(
            lambda: self._guard(deployment, self.prober.probe(pool)),
            policy=request.retry,
            retry_on=(ProbeUnavailableError,),
            description=f"Health probe of pool '{pool.name}'",
            sleep=lambda delay: self._guard(deployment, asyncio.sleep(delay)),
        )

        required = request.required_healthy_count
        logger.info(
            f"Deployment {deployment.id}: step {index} health "
            f"{snapshot.healthy_count}/{snapshot.total} healthy "
            f"(required {required})"
        )
        if snapshot.healthy_count < required:
            error = UnhealthyTargetError(pool.name, snapshot.healthy_count, required)
            return await self._begin_rollback(deployment, error.kind, error.message)

        if index == len(request.canary_plan) - 1:
            await self._checkpoint(deployment)
            return await self._transition(deployment, Phase.PROMOTED)
        return await self._transition(deployment, Phase.SHIFTING_TRAFFIC, index + 1)

    async def _on_promoted(self, deployment: Deployment, resumed: bool) -> Deployment:
        try:
            await self._set_all_routes(deployment, 100, guarded=False)
        except ShiftDeckError as exc:
            logger.error(
                f"Deployment {deployment.id}: failed to re-assert 100% green: {exc}"
            )
            deployment = await self._save(
                deployment.model_copy(
                    update={
                        "cleanup_error": str(exc),
                        "revision": deployment.revision + 1,
                    }
                )
            )
        return await self._transition(deployment, Phase.DRAINING_BLUE)

    async def _on_draining(self, deployment: Deployment, resumed: bool) -> Deployment:
        blue_id = deployment.blue_replica_set_id
        drain_failed = False
        if blue_id is None:
            logger.warning(f"Deployment {deployment.id}: no blue replica set to drain")
        else:
            try:
                await self._drain(deployment, blue_id)
            except DeploymentError as exc:
                logger.error(
                    f"Deployment {deployment.id}: draining blue {blue_id} failed, "
                    f"retrying in the background: {exc.message}"
                )
                drain_failed = True
                deployment = deployment.model_copy(
                    update={"cleanup_error": exc.message}
                )

        deployment = await self._transition(deployment, Phase.SUCCEEDED)
        # The retry reloads the record, so it must start after the final save
        if drain_failed and blue_id is not None:
            self._schedule_cleanup(deployment.id, blue_id)
        return deployment

    async def _on_rolling_back(
        self, deployment: Deployment, resumed: bool
    ) -> Deployment:
        try:
            await self._set_all_routes(deployment, 0, guarded=False)
            if deployment.green_replica_set_id is not None:
                await self.replicas.terminate(deployment.green_replica_set_id)
        except (StoreUnavailableError, StaleDeploymentError):
            raise
        except Exception as exc:
            message = str(exc.message if isinstance(exc, DeploymentError) else exc)
            logger.error(f"Deployment {deployment.id}: rollback incomplete: {message}")
            await self._save(
                deployment.model_copy(
                    update={
                        "outcome": Outcome.FAILED,
                        "cleanup_error": message,
                        "revision": deployment.revision + 1,
                    }
                )
            )
            raise DeploymentError(
                operation="rollback",
                message=(
                    f"Rollback of deployment '{deployment.id}' is incomplete: "
                    f"{message}. Resume the deployment to retry."
                ),
            ) from exc
        return await self._transition(deployment, Phase.ROLLED_BACK)

    async def _begin_rollback(
        self, deployment: Deployment, kind: ErrorKind, message: str
    ) -> Deployment:
        logger.warning(
            f"Deployment {deployment.id}: rolling back from "
            f"{deployment.phase.value} ({kind.value}): {message}"
        )
        error = DeploymentErrorInfo(
            kind=kind,
            message=message,
            phase=deployment.phase,
            step_index=deployment.step_index,
        )
        return await self._transition(
            deployment.model_copy(update={"error": error}), Phase.ROLLING_BACK
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _save(self, deployment: Deployment) -> Deployment:
        await self.store.save(deployment)
        self._latest[deployment.id] = deployment
        return deployment

    async def _transition(
        self, deployment: Deployment, phase: Phase, step_index: int | None = None
    ) -> Deployment:
        updated = await self._save(deployment.transition(phase, step_index))
        step = f" step={step_index}" if step_index is not None else ""
        logger.info(f"deployment={updated.id} phase={phase.value}{step}")
        return updated

    @staticmethod
    def _step_index(deployment: Deployment) -> int:
        if deployment.step_index is None:
            raise DeploymentError(
                operation="deploy",
                message=f"Phase {deployment.phase.value} is missing its step index",
            )
        return deployment.step_index

    def _step(self, deployment: Deployment) -> TrafficStep:
        return deployment.request.canary_plan[self._step_index(deployment)]

    async def _set_all_routes(
        self, deployment: Deployment, green_percentage: int, *, guarded: bool
    ) -> None:
        """Apply one weight split to the test route, then the production route."""
        request = deployment.request
        weights = request.weights_for(green_percentage)
        for route in request.routes.ids():

            async def _write(route: str = route) -> None:
                await self.router.set_weights(route, weights)

            await retry_async(
                _write,
                policy=request.retry,
                retry_on=(RouterWriteFailureError,),
                description=f"Weight update on route '{route}'",
                sleep=(
                    (lambda delay: self._guard(deployment, asyncio.sleep(delay)))
                    if guarded
                    else asyncio.sleep
                ),
            )

    async def _verify_weight_sum(self, deployment: Deployment) -> None:
        pools = deployment.request.pools
        for route in deployment.request.routes.ids():
            weights = await self.router.get_weights(route)
            total = weights.get(pools.blue, 0) + weights.get(pools.green, 0)
            if total != 100:
                raise RouterWriteFailureError(
                    route, f"blue and green weights sum to {total}, expected 100"
                )

    async def _drain(self, deployment: Deployment, blue_id: str) -> None:
        grace = deployment.request.timeouts.drain_grace_period
        try:
            await asyncio.wait_for(
                self.replicas.drain(blue_id, grace),
                timeout=grace + self.settings.drain_timeout_margin,
            )
        except asyncio.TimeoutError as exc:
            raise DrainTimeoutError(
                blue_id, f"drain exceeded {grace:g}s grace period"
            ) from exc

    def _schedule_cleanup(self, deployment_id: str, blue_id: str) -> None:
        task = asyncio.create_task(self._retry_cleanup(deployment_id, blue_id))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _retry_cleanup(self, deployment_id: str, blue_id: str) -> None:
        deployment = self._latest[deployment_id]
        try:
            await retry_async(
                lambda: self._drain(deployment, blue_id),
                policy=self.settings.cleanup_retry,
                retry_on=(DeploymentError,),
                description=f"Drain of blue replica set {blue_id}",
            )
        except DeploymentError as exc:
            logger.error(
                f"Deployment {deployment_id}: giving up on draining {blue_id}: "
                f"{exc.message}"
            )
            return

        latest = await self.store.load(deployment_id)
        await self._save(
            latest.model_copy(
                update={"cleanup_error": None, "revision": latest.revision + 1}
            )
        )
        logger.info(f"Deployment {deployment_id}: blue {blue_id} drained on retry")

    def _abort_event(self, deployment_id: str) -> asyncio.Event:
        event = self._abort_events.get(deployment_id)
        if event is None:
            event = asyncio.Event()
            self._abort_events[deployment_id] = event
        return event

    async def _checkpoint(self, deployment: Deployment) -> None:
        """Raise ``_Aborted`` if an abort was requested for the deployment."""
        event = self._abort_event(deployment.id)
        if not event.is_set() and await self.store.abort_requested(deployment.id):
            event.set()
        if event.is_set():
            raise _Aborted()

    async def _watch_abort(self, deployment_id: str) -> None:
        event = self._abort_event(deployment_id)
        while not event.is_set():
            try:
                if await self.store.abort_requested(deployment_id):
                    event.set()
                    return
            except StoreUnavailableError as exc:
                logger.warning(f"Abort poll failed for {deployment_id}: {exc.message}")
            try:
                await asyncio.wait_for(
                    event.wait(), timeout=self.settings.abort_poll_interval
                )
            except asyncio.TimeoutError:
                continue

    async def _guard(
        self, deployment: Deployment, awaitable: Awaitable[T] | Coroutine[Any, Any, T]
    ) -> T:
        """Await ``awaitable`` unless an abort arrives first.

        The awaited operation is cancelled when the abort wins the race.
        """
        task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._watch_abort(deployment.id))
        try:
            done, _ = await asyncio.wait(
                {task, watcher}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            watcher.cancel()
            raise

        if task in done:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise _Aborted()


def _matches(observed: dict[str, int], expected: dict[str, int]) -> bool:
    return all(observed.get(pool, 0) == weight for pool, weight in expected.items())
