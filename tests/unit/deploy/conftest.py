"""Fixtures for deployment engine tests."""

from __future__ import annotations

import pytest
from deploy_helpers import Harness, build_harness


@pytest.fixture
def harness() -> Harness:
    """Coordinator over healthy in-memory collaborators."""
    return build_harness()
