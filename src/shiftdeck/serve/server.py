"""Deployment control server.

Provides the FastAPI application factory and server lifecycle management
for inspecting and aborting deployments over HTTP.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query

from shiftdeck import __version__
from shiftdeck.deploy.coordinator import DeploymentCoordinator
from shiftdeck.lib.errors import (
    DeploymentError,
    DeploymentNotFoundError,
    StoreUnavailableError,
)
from shiftdeck.lib.logging_config import get_logger
from shiftdeck.models.deployment import DeploymentStatus
from shiftdeck.serve.models import (
    AbortResponse,
    DeploymentListResponse,
    HealthResponse,
    ServerState,
)

logger = get_logger(__name__)


def _http_error(exc: DeploymentError) -> HTTPException:
    """Map a deployment error to an HTTP error response."""
    if isinstance(exc, DeploymentNotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=503, detail=exc.message)
    return HTTPException(status_code=409, detail=exc.message)


class ControlServer:
    """HTTP server exposing the deployments of one coordinator.

    Attributes:
        coordinator: The coordinator whose deployments are served.
        host: The hostname to bind to.
        port: The port to listen on.
        resume_in_flight: Resume in-flight deployments when started.
        state: The current server state.
    """

    def __init__(
        self,
        coordinator: DeploymentCoordinator,
        host: str = "127.0.0.1",
        port: int = 8100,
        resume_in_flight: bool = False,
    ) -> None:
        """Initialize the control server.

        Args:
            coordinator: Coordinator to serve.
            host: The hostname to bind to (default: 127.0.0.1).
            port: The port to listen on (default: 8100).
            resume_in_flight: Drive interrupted deployments to completion in
                the background once the server starts.
        """
        self.coordinator = coordinator
        self.host = host
        self.port = port
        self.resume_in_flight = resume_in_flight

        if host == "0.0.0.0":  # noqa: S104
            logger.warning(
                "Server binding to 0.0.0.0 exposes the abort endpoint to all "
                "network interfaces. Use 127.0.0.1 for local-only access."
            )

        self.state = ServerState.INITIALIZING
        self._app: FastAPI | None = None
        self._start_time: datetime | None = None
        self._resume_task: asyncio.Task[None] | None = None

    @property
    def is_ready(self) -> bool:
        """Check if the server is ready to accept requests."""
        return self.state in (ServerState.READY, ServerState.RUNNING)

    @property
    def uptime_seconds(self) -> float:
        """Return server uptime in seconds."""
        if self._start_time is None:
            return 0.0
        return (datetime.now(timezone.utc) - self._start_time).total_seconds()

    def create_app(self) -> FastAPI:
        """Create and configure the FastAPI application.

        Returns:
            Configured FastAPI application instance.
        """
        app = FastAPI(
            title="ShiftDeck control server",
            description="Status and abort for blue/green deployments",
            version=__version__,
        )
        self._register_health_endpoints(app)
        self._register_deployment_endpoints(app)

        self._app = app
        self.state = ServerState.READY
        logger.info("FastAPI app created for deployment control")
        return app

    def _register_health_endpoints(self, app: FastAPI) -> None:
        """Register health check endpoints."""

        @app.get("/health", response_model=HealthResponse, tags=["Health"])
        async def health() -> HealthResponse:
            """Basic health check endpoint."""
            try:
                in_flight = len(await self.coordinator.store.list_in_flight())
            except StoreUnavailableError as exc:
                raise _http_error(exc) from exc
            return HealthResponse(
                status="healthy" if self.is_ready else "unhealthy",
                version=__version__,
                in_flight=in_flight,
                uptime_seconds=self.uptime_seconds,
            )

    def _register_deployment_endpoints(self, app: FastAPI) -> None:
        """Register deployment status and abort endpoints."""
        coordinator = self.coordinator

        @app.get(
            "/deployments", response_model=DeploymentListResponse, tags=["Deployments"]
        )
        async def list_deployments(
            include_finished: bool = Query(default=True, alias="all"),
        ) -> DeploymentListResponse:
            """List deployments, newest last."""
            try:
                deployments = (
                    await coordinator.store.list_all()
                    if include_finished
                    else await coordinator.store.list_in_flight()
                )
            except DeploymentError as exc:
                raise _http_error(exc) from exc
            return DeploymentListResponse(
                deployments=[d.to_status() for d in deployments]
            )

        @app.get(
            "/deployments/{deployment_id}",
            response_model=DeploymentStatus,
            tags=["Deployments"],
        )
        async def get_deployment(deployment_id: str) -> DeploymentStatus:
            """Return the status of one deployment."""
            try:
                return await coordinator.status(deployment_id)
            except DeploymentError as exc:
                raise _http_error(exc) from exc

        @app.post(
            "/deployments/{deployment_id}/abort",
            response_model=AbortResponse,
            tags=["Deployments"],
        )
        async def abort_deployment(deployment_id: str) -> AbortResponse:
            """Abort a deployment that has not been promoted yet."""
            try:
                accepted = await coordinator.abort(deployment_id)
                current = await coordinator.status(deployment_id)
            except DeploymentError as exc:
                raise _http_error(exc) from exc
            logger.info(
                f"Abort for {deployment_id} via HTTP: "
                f"{'accepted' if accepted else 'ignored'}"
            )
            return AbortResponse(
                id=deployment_id, accepted=accepted, phase=current.phase
            )

    async def start(self) -> None:
        """Start the server and, if configured, resume in-flight deployments."""
        if self._app is None:
            self.create_app()

        self._start_time = datetime.now(timezone.utc)
        self.state = ServerState.RUNNING

        if self.resume_in_flight:
            self._resume_task = asyncio.create_task(self._resume())

        logger.info(f"Control server started at http://{self.host}:{self.port}")

    async def _resume(self) -> None:
        finished = await self.coordinator.resume_in_flight()
        logger.info(f"Resumed {len(finished)} in-flight deployment(s)")
        await self.coordinator.wait_for_cleanups()

    async def stop(self) -> None:
        """Stop the server.

        Deployments still being driven are cancelled; they stay resumable from
        their last saved phase.
        """
        self.state = ServerState.SHUTTING_DOWN
        if self._resume_task is not None and not self._resume_task.done():
            self._resume_task.cancel()
            await asyncio.gather(self._resume_task, return_exceptions=True)
        self.state = ServerState.STOPPED
        logger.info("Control server stopped")
