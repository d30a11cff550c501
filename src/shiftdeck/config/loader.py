"""Configuration loader for ShiftDeck deployment requests.

A request file is YAML holding the ``DeploymentRequest`` fields plus an
optional ``backend`` section for the local backend::

    service_id: checkout
    replica_spec:
      image: registry.example.com/checkout:1.4.2
      desired_count: 2
    routes: {production: prod-listener, test: test-listener}
    pools: {blue: checkout-blue, green: checkout-green}
    canary: {type: time_based, step_percentage: 20, bake_time: 60}
    backend:
      blue_endpoints: ["10.0.0.5:8080"]
      green_endpoints: ["10.0.1.5:8080", "10.0.1.6:8080"]

``canary`` is shorthand for ``canary_plan``; a file may use one or the other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from shiftdeck.config.defaults import (
    DEFAULT_ABORT_POLL_INTERVAL,
    DEFAULT_CANARY,
    DEFAULT_HEALTH_CHECK,
    DEFAULT_RETRY,
    DEFAULT_STATE_DIR,
    DEFAULT_TIMEOUTS,
    ENV_ABORT_POLL_INTERVAL,
    ENV_PROVISION_TIMEOUT,
    ENV_STATE_DIR,
)
from shiftdeck.config.env_loader import get_env_var, load_env_file, substitute_env_vars
from shiftdeck.config.validator import flatten_pydantic_errors, parse_positive_float
from shiftdeck.lib.errors import ConfigError
from shiftdeck.models.backend import LocalBackendConfig
from shiftdeck.models.deployment import (
    DeploymentRequest,
    linear_canary,
    time_based_canary,
)

logger = logging.getLogger(__name__)

CANARY_TYPES = {
    "time_based": time_based_canary,
    "linear": linear_canary,
}


@dataclass
class LoadedRequest:
    """A validated deployment request and the backend it runs against.

    Attributes:
        request: The deployment request
        backend: Local backend settings from the ``backend`` section
        source: Resolved path of the request file
    """

    request: DeploymentRequest
    backend: LocalBackendConfig
    source: Path


def _with_defaults(defaults: dict[str, Any], values: Any) -> Any:
    """Overlay a YAML mapping on a defaults mapping; leave non-mappings alone."""
    if values is None:
        return dict(defaults)
    if not isinstance(values, dict):
        return values
    return {**defaults, **values}


def _expand_canary(section: Any) -> list[dict[str, Any]]:
    """Expand the ``canary`` shorthand into explicit ``canary_plan`` steps."""
    if not isinstance(section, dict):
        raise ConfigError("canary", "Expected a mapping with a 'type' key")

    options = {**DEFAULT_CANARY, **section}
    canary_type = options.pop("type", "time_based")
    builder = CANARY_TYPES.get(canary_type)
    if builder is None:
        raise ConfigError(
            "canary.type",
            f"Unknown canary type '{canary_type}'. "
            f"Expected one of: {', '.join(sorted(CANARY_TYPES))}",
        )
    unknown = set(options) - {"step_percentage", "bake_time"}
    if unknown:
        raise ConfigError("canary", f"Unknown canary option(s): {sorted(unknown)}")

    try:
        steps = builder(
            step_percentage=int(options["step_percentage"]),
            bake_time=float(options["bake_time"]),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError("canary", str(e)) from e
    return [step.model_dump() for step in steps]


class ConfigLoader:
    """Loads and validates deployment requests from YAML files.

    This class handles:
    - Environment variable substitution before parsing
    - Expansion of the ``canary`` shorthand
    - Defaults and environment overrides for unset values
    - Converting validation errors into readable ``ConfigError`` messages
    """

    def parse_yaml(self, file_path: str | Path) -> dict[str, Any]:
        """Parse a YAML file with ``${VAR}`` substitution.

        Args:
            file_path: Path to the YAML file

        Returns:
            Parsed mapping, empty for an empty file

        Raises:
            ConfigError: If the file is missing, unreadable or not a mapping
        """
        path = Path(file_path)
        try:
            raw_text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(
                "file",
                f"Request file not found at {file_path}. "
                "Please ensure the file exists at this path.",
            ) from e

        try:
            content = yaml.safe_load(substitute_env_vars(raw_text))
        except yaml.YAMLError as e:
            raise ConfigError(
                "yaml_parse", f"Failed to parse YAML file {file_path}: {e}"
            ) from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigError(
                "yaml_parse", f"Expected a mapping at the top of {file_path}"
            )
        return content

    def load_request_yaml(self, file_path: str | Path) -> LoadedRequest:
        """Load and validate a deployment request file.

        Precedence for timeouts (highest to lowest): explicit values in the
        file, ``SHIFTDECK_PROVISION_TIMEOUT``, built-in defaults.

        Args:
            file_path: Path to the request file

        Returns:
            The validated request and backend settings

        Raises:
            ConfigError: If the file cannot be read or is invalid
        """
        path = Path(file_path).resolve()
        data = self.parse_yaml(path)
        backend_section = data.pop("backend", None) or {}

        if "canary" in data:
            if "canary_plan" in data:
                raise ConfigError(
                    "canary", "Use either 'canary' or 'canary_plan', not both"
                )
            data["canary_plan"] = _expand_canary(data.pop("canary"))

        data["health_check"] = _with_defaults(
            DEFAULT_HEALTH_CHECK, data.get("health_check")
        )
        data["retry"] = _with_defaults(DEFAULT_RETRY, data.get("retry"))
        data["timeouts"] = self._resolve_timeouts(data.get("timeouts"))

        try:
            request = DeploymentRequest(**data)
        except PydanticValidationError as e:
            error_text = "\n".join(flatten_pydantic_errors(e))
            raise ConfigError(
                "request_validation",
                f"Invalid deployment request in {file_path}:\n{error_text}",
            ) from e
        except TypeError as e:
            raise ConfigError("request_validation", str(e)) from e

        try:
            backend = LocalBackendConfig(**backend_section)
        except (PydanticValidationError, TypeError) as e:
            details = (
                "\n".join(flatten_pydantic_errors(e))
                if isinstance(e, PydanticValidationError)
                else str(e)
            )
            raise ConfigError(
                "backend", f"Invalid backend section in {file_path}:\n{details}"
            ) from e

        desired = request.replica_spec.desired_count
        if backend.green_endpoints and len(backend.green_endpoints) < desired:
            raise ConfigError(
                "backend.green_endpoints",
                f"{desired} green replica(s) requested but only "
                f"{len(backend.green_endpoints)} green endpoint(s) declared",
            )

        logger.debug(
            f"Loaded deployment request for '{request.service_id}' from {path}"
        )
        return LoadedRequest(request=request, backend=backend, source=path)

    @staticmethod
    def _resolve_timeouts(values: Any) -> Any:
        timeouts = _with_defaults(DEFAULT_TIMEOUTS, None)
        env_value = get_env_var(ENV_PROVISION_TIMEOUT)
        if env_value is not None:
            try:
                timeouts["provision_timeout"] = parse_positive_float(
                    ENV_PROVISION_TIMEOUT, env_value
                )
            except ValueError as e:
                raise ConfigError(ENV_PROVISION_TIMEOUT, str(e)) from e
        if values is None:
            return timeouts
        if not isinstance(values, dict):
            return values
        return {**timeouts, **values}


def load_request(
    file_path: str | Path, env_file: str | Path | None = None
) -> LoadedRequest:
    """Load ``.env`` and a request file in one call, for CLI commands.

    Args:
        file_path: Path to the request file
        env_file: Optional ``.env`` file; defaults to ``.env`` beside the
            request file

    Returns:
        The validated request and backend settings
    """
    env_path = Path(env_file) if env_file else Path(file_path).parent / ".env"
    if load_env_file(env_path):
        logger.debug(f"Loaded environment from {env_path}")
    return ConfigLoader().load_request_yaml(file_path)


def resolve_state_dir(
    cli_value: str | None = None, backend: LocalBackendConfig | None = None
) -> Path:
    """Resolve the state directory.

    Precedence: CLI flag, ``SHIFTDECK_STATE_DIR``, the request file's
    ``backend.state_dir``, then ``.shiftdeck`` in the working directory.
    """
    for candidate in (
        cli_value,
        get_env_var(ENV_STATE_DIR),
        backend.state_dir if backend else None,
    ):
        if candidate:
            return Path(candidate).expanduser()
    return Path(DEFAULT_STATE_DIR)


def resolve_abort_poll_interval() -> float:
    """Return the abort poll interval, honoring ``SHIFTDECK_ABORT_POLL_INTERVAL``."""
    env_value = get_env_var(ENV_ABORT_POLL_INTERVAL)
    if env_value is None:
        return DEFAULT_ABORT_POLL_INTERVAL
    try:
        return parse_positive_float(ENV_ABORT_POLL_INTERVAL, env_value)
    except ValueError as e:
        raise ConfigError(ENV_ABORT_POLL_INTERVAL, str(e)) from e
