"""ShiftDeck - Blue/green traffic-shifting deployments.

ShiftDeck moves live traffic from a running replica set ("blue") to a new one
("green") in canary steps gated by health checks, with automatic rollback.

Main features:
- Phased canary plans shifted on a production and a test route together
- Health-gated validation with hysteresis
- Durable deployment state with resume after restart
- Operator abort at any point before promotion
- CLI and HTTP control server
"""

from shiftdeck.config.loader import ConfigLoader
from shiftdeck.lib.errors import (
    ConfigError,
    DeploymentError,
    ShiftDeckError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ConfigLoader",
    "ConfigError",
    "DeploymentError",
    "ShiftDeckError",
    "ValidationError",
]
