"""Configuration loading and validation for ShiftDeck deployment requests.

Main components:
- ConfigLoader: Load and validate request YAML files
- load_request: One-call helper for CLI commands
- Environment variable substitution (${VAR_NAME} pattern) and .env loading
- Default values and environment overrides
"""

from shiftdeck.config.env_loader import get_env_var, load_env_file, substitute_env_vars
from shiftdeck.config.loader import (
    ConfigLoader,
    LoadedRequest,
    load_request,
    resolve_abort_poll_interval,
    resolve_state_dir,
)

__all__ = [
    "ConfigLoader",
    "LoadedRequest",
    "load_request",
    "resolve_abort_poll_interval",
    "resolve_state_dir",
    "substitute_env_vars",
    "get_env_var",
    "load_env_file",
]
