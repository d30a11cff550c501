"""Validation utilities for ShiftDeck configuration."""

from pydantic import ValidationError as PydanticValidationError


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a Pydantic ValidationError into human-readable messages.

    Args:
        exc: Pydantic ValidationError exception

    Returns:
        One message per field error, prefixed with the dotted field path

    Example:
        >>> from shiftdeck.models.deployment import TrafficStep
        >>> try:
        ...     TrafficStep(percentage=150)
        ... except PydanticValidationError as e:
        ...     flatten_pydantic_errors(e)[0].startswith("Field 'percentage'")
        True
    """
    errors: list[str] = []

    for error in exc.errors():
        loc = error.get("loc", ())
        field_path = ".".join(str(item) for item in loc) if loc else "request"
        msg = error.get("msg", "Unknown error")

        if error.get("type") == "value_error":
            input_val = error.get("input")
            formatted = f"Field '{field_path}': {msg} (received: {input_val!r})"
        else:
            formatted = f"Field '{field_path}': {msg}"
        errors.append(formatted)

    return errors if errors else ["Validation failed with unknown error"]


def parse_positive_float(name: str, value: str) -> float:
    """Parse a positive float setting such as an environment override.

    Raises:
        ValueError: If the value is not a positive number.
    """
    parsed = float(value)
    if parsed <= 0:
        raise ValueError(f"{name} must be positive, got {value!r}")
    return parsed
