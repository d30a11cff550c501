"""Pytest configuration and shared fixtures for ShiftDeck tests."""

import os
from collections.abc import Generator
from typing import Any

import pytest


@pytest.fixture
def isolated_env() -> Generator[dict[str, str]]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.

    Yields:
        Dictionary of original environment variables
    """
    original_env = os.environ.copy()
    for name in list(os.environ):
        if name.startswith("SHIFTDECK_"):
            del os.environ[name]
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


# Configure pytest
def pytest_configure(config: Any) -> None:
    """Configure pytest with marker options."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests",
    )
    config.addinivalue_line(
        "markers",
        "unit: marks tests as unit tests",
    )
