"""Tests for replica set, pool and backend models."""

import pytest
from pydantic import ValidationError

from shiftdeck.models.backend import LocalBackendConfig
from shiftdeck.models.pool import HealthCheckConfig, HealthSnapshot
from shiftdeck.models.replica_set import Color, ReplicaSet, ReplicaSpec


class TestReplicaModels:
    """Tests for ReplicaSpec and ReplicaSet."""

    def test_image_without_whitespace(self) -> None:
        """Image references may not contain whitespace."""
        with pytest.raises(ValidationError, match="Invalid image reference"):
            ReplicaSpec(image="registry.local/api 2.0")

    def test_replica_set_ids_are_unique(self) -> None:
        """Each replica set gets its own id."""
        spec = ReplicaSpec(image="img:1")
        first = ReplicaSet(color=Color.GREEN, spec=spec, pool="green")
        second = ReplicaSet(color=Color.GREEN, spec=spec, pool="green")

        assert first.id != second.id
        assert first.desired_count == 1


class TestPoolModels:
    """Tests for health check settings and snapshots."""

    def test_health_path_must_be_absolute(self) -> None:
        """Health check paths start with '/'."""
        with pytest.raises(ValidationError, match="Must start with '/'"):
            HealthCheckConfig(path="healthz")

    @pytest.mark.parametrize("codes", ["ok", "200,", "20-300"])
    def test_invalid_http_codes(self, codes: str) -> None:
        """Malformed status code lists are rejected."""
        with pytest.raises(ValidationError, match="Invalid healthy_http_codes"):
            HealthCheckConfig(healthy_http_codes=codes)

    def test_probe_budget(self) -> None:
        """A probe is bounded by timeout times both thresholds."""
        hc = HealthCheckConfig(timeout=2, healthy_threshold=3, unhealthy_threshold=2)

        assert hc.probe_budget == 10

    def test_snapshot_counts_bounded_by_total(self) -> None:
        """Healthy plus unhealthy cannot exceed the total."""
        with pytest.raises(ValidationError, match="exceeds total"):
            HealthSnapshot(pool="green", healthy_count=2, unhealthy_count=1, total=2)


class TestLocalBackendConfig:
    """Tests for local backend settings."""

    def test_duplicate_endpoints_rejected(self) -> None:
        """Endpoints within a side must be unique."""
        with pytest.raises(ValidationError, match="unique"):
            LocalBackendConfig(green_endpoints=["a:80", "a:80"])

    def test_scheme_restricted(self) -> None:
        """Only http and https are supported."""
        with pytest.raises(ValidationError):
            LocalBackendConfig(scheme="ftp")
