"""Default configuration values for ShiftDeck."""

import logging

logger = logging.getLogger(__name__)


# Directory holding deployment state when nothing else is configured
DEFAULT_STATE_DIR = ".shiftdeck"

# Health check defaults for target pools
DEFAULT_HEALTH_CHECK: dict[str, int | float | str] = {
    "interval": 5.0,  # seconds
    "path": "/",
    "healthy_threshold": 2,
    "unhealthy_threshold": 3,
    "timeout": 4.0,  # seconds
    "healthy_http_codes": "200",
}

# Canary defaults: shift a share, bake, then shift the rest
DEFAULT_CANARY: dict[str, int | float] = {
    "step_percentage": 20,
    "bake_time": 60.0,  # seconds
}

DEFAULT_TIMEOUTS: dict[str, float] = {
    "provision_timeout": 600.0,  # seconds
    "drain_grace_period": 60.0,  # seconds
}

DEFAULT_RETRY: dict[str, int | float] = {
    "max_attempts": 3,
    "base_delay": 1.0,
    "exponential_base": 2.0,
    "max_delay": 10.0,
}

DEFAULT_ABORT_POLL_INTERVAL = 2.0  # seconds

# Environment variables overriding the values above
ENV_STATE_DIR = "SHIFTDECK_STATE_DIR"
ENV_PROVISION_TIMEOUT = "SHIFTDECK_PROVISION_TIMEOUT"
ENV_ABORT_POLL_INTERVAL = "SHIFTDECK_ABORT_POLL_INTERVAL"
