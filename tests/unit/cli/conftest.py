"""Fixtures for CLI command tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path
from typing import Any

import httpx
import pytest
from click.testing import CliRunner

from shiftdeck.deploy import backend as backend_module
from shiftdeck.lib.logging_config import LOGGER_NAME

REQUEST_YAML = """
service_id: checkout
replica_spec:
  image: registry.local/checkout:2.0.0
routes:
  production: prod-listener
  test: test-listener
pools:
  blue: checkout-blue
  green: checkout-green
canary_plan:
  - {percentage: 50, bake_time: 0}
  - {percentage: 100, bake_time: 0}
health_check:
  interval: 0.05
  timeout: 0.04
  healthy_threshold: 1
  unhealthy_threshold: 1
timeouts:
  drain_grace_period: 0
retry:
  base_delay: 0
  max_delay: 0
backend:
  blue_endpoints: ["10.0.0.1:8080"]
  green_endpoints: ["10.0.1.1:8080"]
  poll_interval: 0.01
"""


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None]:
    """Drop handlers bound to the runner's streams after each command."""
    logger = logging.getLogger(LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    yield
    logger.handlers = handlers
    logger.setLevel(level)


@pytest.fixture
def state_dir(
    tmp_path: Path, isolated_env: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> Path:
    """Empty state directory; green gets two seconds to provision."""
    monkeypatch.setenv("SHIFTDECK_PROVISION_TIMEOUT", "2")
    return tmp_path / "state"


@pytest.fixture
def write_request(tmp_path: Path) -> Any:
    """Write a request file, appending extra YAML lines."""

    def _write(*extra: str) -> Path:
        path = tmp_path / "deploy.yaml"
        path.write_text(REQUEST_YAML + "\n".join(extra) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def endpoint_status(monkeypatch: pytest.MonkeyPatch) -> dict[str, int]:
    """Route health checks to a mock transport answering ``status["code"]``."""
    status = {"code": 200}
    real_open = backend_module.open_local_backend

    async def open_with_mock_client(state_dir: Path, **kwargs: Any) -> Any:
        transport = httpx.MockTransport(lambda request: httpx.Response(status["code"]))
        client = httpx.AsyncClient(transport=transport)
        return await real_open(state_dir, client=client, **kwargs)

    monkeypatch.setattr(
        "shiftdeck.cli.commands.deploy.open_local_backend", open_with_mock_client
    )
    return status
