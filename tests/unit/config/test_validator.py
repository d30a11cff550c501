"""Tests for validation helpers."""

import pytest
from pydantic import ValidationError

from shiftdeck.config.validator import flatten_pydantic_errors, parse_positive_float
from shiftdeck.models.deployment import RouteConfig, TimeoutConfig, TrafficStep


class TestFlattenPydanticErrors:
    """Tests for flatten_pydantic_errors."""

    def test_one_message_per_field(self) -> None:
        """Each field error becomes one line with its dotted path."""
        with pytest.raises(ValidationError) as exc_info:
            TimeoutConfig(provision_timeout=0, drain_grace_period=-1)

        messages = flatten_pydantic_errors(exc_info.value)

        assert len(messages) == 2
        assert messages[0].startswith("Field 'provision_timeout'")
        assert messages[1].startswith("Field 'drain_grace_period'")

    def test_value_error_includes_input(self) -> None:
        """Custom validator failures echo the rejected input."""
        with pytest.raises(ValidationError) as exc_info:
            RouteConfig(production="same", test="same")

        (message,) = flatten_pydantic_errors(exc_info.value)
        assert "must be different" in message
        assert "received:" in message

    def test_unknown_field(self) -> None:
        """Extra fields are reported by name."""
        with pytest.raises(ValidationError) as exc_info:
            TrafficStep(percentage=10, bake=5)  # type: ignore[call-arg]

        assert flatten_pydantic_errors(exc_info.value) == [
            "Field 'bake': Extra inputs are not permitted"
        ]


class TestParsePositiveFloat:
    """Tests for parse_positive_float."""

    def test_parses(self) -> None:
        """Positive numbers are accepted."""
        assert parse_positive_float("X", "2.5") == 2.5

    @pytest.mark.parametrize("value", ["0", "-1", "abc"])
    def test_rejects(self, value: str) -> None:
        """Zero, negatives and garbage are rejected."""
        with pytest.raises(ValueError):
            parse_positive_float("X", value)
