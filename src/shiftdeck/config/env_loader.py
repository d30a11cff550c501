"""Environment variable support for ShiftDeck configuration.

Request files may reference environment variables as ``${VAR_NAME}``. The
values come from the process environment, optionally seeded from a ``.env``
file with python-dotenv.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from dotenv import load_dotenv

from shiftdeck.lib.errors import ConfigError

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute_env_vars(text: str) -> str:
    """Replace ``${VAR_NAME}`` references with environment values.

    Args:
        text: Raw configuration text.

    Returns:
        Text with every reference substituted.

    Raises:
        ConfigError: If a referenced variable is not set.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        value = os.environ.get(name)
        if value is None:
            raise ConfigError(
                name,
                f"Environment variable '{name}' is referenced but not set",
            )
        return value

    return _ENV_PATTERN.sub(_replace, text)


def get_env_var(name: str, default: str | None = None) -> str | None:
    """Return an environment variable, or ``default`` when unset or blank."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value


def load_env_file(path: str | Path | None = None) -> bool:
    """Load a ``.env`` file into the process environment.

    Variables already set in the environment win over the file.

    Args:
        path: File to load. Defaults to ``.env`` in the working directory.

    Returns:
        True if a file was found and loaded.
    """
    env_path = Path(path) if path is not None else Path.cwd() / ".env"
    if not env_path.is_file():
        return False
    return load_dotenv(env_path, override=False)
