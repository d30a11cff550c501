"""Custom exception hierarchy for ShiftDeck configuration and deployments."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Error kinds recorded on a deployment and reported to operators."""

    PROVISION_TIMEOUT = "provision_timeout"
    PROVISION_FAILURE = "provision_failure"
    PROBE_UNAVAILABLE = "probe_unavailable"
    UNHEALTHY_TARGET = "unhealthy_target"
    ROUTE_BUSY = "route_busy"
    ROUTER_WRITE_FAILURE = "router_write_failure"
    DRAIN_TIMEOUT = "drain_timeout"
    STORE_UNAVAILABLE = "store_unavailable"
    OPERATOR_ABORT = "operator_abort"
    INTERNAL = "internal"


class ShiftDeckError(Exception):
    """Base exception for all ShiftDeck errors.

    All ShiftDeck-specific exceptions inherit from this class, enabling
    centralized exception handling and error tracking.
    """

    pass


class ConfigError(ShiftDeckError):
    """Exception raised for configuration errors.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class ValidationError(ShiftDeckError):
    """Exception raised when an argument to a collaborator is invalid.

    Attributes:
        field: The field that failed validation
        message: Description of the validation failure
        expected: Human description of expected value/type
        actual: The actual value that failed validation
    """

    def __init__(
        self,
        field: str,
        message: str,
        expected: str,
        actual: str,
    ) -> None:
        """Initialize ValidationError with detailed information.

        Args:
            field: Field that failed validation (can use dot notation)
            message: Description of what went wrong
            expected: Human-readable description of expected value
            actual: The actual value that failed
        """
        self.field = field
        self.message = message
        self.expected = expected
        self.actual = actual
        full_message = (
            f"Validation error in '{field}': {message}\n"
            f"  Expected: {expected}\n"
            f"  Got: {actual}"
        )
        super().__init__(full_message)


class DeploymentError(ShiftDeckError):
    """Exception raised when a deployment operation fails.

    Every deployment failure surfaced to a user is a DeploymentError (or a
    subclass), so callers never see a raw collaborator exception.

    Attributes:
        operation: Operation that failed (e.g. "deploy", "status", "state")
        message: Human-readable error message
        kind: Error kind recorded on the deployment
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, operation: str, message: str) -> None:
        """Create a deployment error.

        Args:
            operation: Name of the failing operation
            message: Descriptive error message
        """
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed: {message}")


class ProvisionTimeoutError(DeploymentError):
    """Replica set did not reach its desired healthy count in time."""

    kind = ErrorKind.PROVISION_TIMEOUT

    def __init__(self, replica_set_id: str, timeout: float) -> None:
        """Create a provisioning timeout error."""
        self.replica_set_id = replica_set_id
        self.timeout = timeout
        super().__init__(
            operation="provision",
            message=(
                f"Replica set '{replica_set_id}' did not become active "
                f"within {timeout:g}s"
            ),
        )


class ProbeUnavailableError(DeploymentError):
    """The health prober itself failed, so target health is unknown.

    Distinct from an unhealthy target: this means "cannot tell", not
    "the service is broken".
    """

    kind = ErrorKind.PROBE_UNAVAILABLE

    def __init__(self, pool: str, message: str) -> None:
        """Create a probe unavailable error for a target pool."""
        self.pool = pool
        super().__init__(
            operation="probe",
            message=f"Health probe unavailable for pool '{pool}': {message}",
        )


class UnhealthyTargetError(DeploymentError):
    """Target pool reported fewer healthy endpoints than required."""

    kind = ErrorKind.UNHEALTHY_TARGET

    def __init__(self, pool: str, healthy_count: int, required: int) -> None:
        """Create an unhealthy target error."""
        self.pool = pool
        self.healthy_count = healthy_count
        self.required = required
        super().__init__(
            operation="validate",
            message=(
                f"Pool '{pool}' reported {healthy_count} healthy endpoint(s), "
                f"{required} required"
            ),
        )


class RouteBusyError(DeploymentError):
    """Another in-flight deployment already owns the route."""

    kind = ErrorKind.ROUTE_BUSY

    def __init__(self, route: str, owner: str) -> None:
        """Create a route busy error naming the owning deployment."""
        self.route = route
        self.owner = owner
        super().__init__(
            operation="request",
            message=f"Route '{route}' is owned by in-flight deployment '{owner}'",
        )


class RouterWriteFailureError(DeploymentError):
    """The traffic router backend failed to apply a weight change."""

    kind = ErrorKind.ROUTER_WRITE_FAILURE

    def __init__(self, route: str, message: str) -> None:
        """Create a router write failure error."""
        self.route = route
        super().__init__(
            operation="route",
            message=f"Failed to update weights on route '{route}': {message}",
        )


class DrainTimeoutError(DeploymentError):
    """Replica set could not be drained within its bound."""

    kind = ErrorKind.DRAIN_TIMEOUT

    def __init__(self, replica_set_id: str, message: str) -> None:
        """Create a drain timeout error."""
        self.replica_set_id = replica_set_id
        super().__init__(
            operation="drain",
            message=f"Replica set '{replica_set_id}' failed to drain: {message}",
        )


class StoreUnavailableError(DeploymentError):
    """The deployment state store cannot be read or written."""

    kind = ErrorKind.STORE_UNAVAILABLE

    def __init__(self, message: str) -> None:
        """Create a store unavailable error."""
        super().__init__(operation="state", message=message)


class DeploymentNotFoundError(DeploymentError):
    """No deployment record exists for the requested identifier."""

    def __init__(self, deployment_id: str) -> None:
        """Create a not-found error for a deployment id."""
        self.deployment_id = deployment_id
        super().__init__(
            operation="state",
            message=f"Deployment '{deployment_id}' not found",
        )


class StaleDeploymentError(DeploymentError):
    """A save carried a revision older than the stored record."""

    def __init__(self, deployment_id: str, stored: int, attempted: int) -> None:
        """Create a stale revision error."""
        self.deployment_id = deployment_id
        self.stored = stored
        self.attempted = attempted
        super().__init__(
            operation="state",
            message=(
                f"Rejected stale write for deployment '{deployment_id}': "
                f"revision {attempted} is not newer than stored revision {stored}"
            ),
        )
