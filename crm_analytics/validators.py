"""
Input validation functions for analytics parameters.

All validators raise ValidationError on invalid input.
"""

from typing import Iterable, Optional

from crm_analytics.exceptions import ValidationError


# Maximum allowed values
MAX_LIMIT = 100


def validate_limit(
    value: int,
    field: str = "limit",
    min_value: int = 1,
    max_value: int = MAX_LIMIT
) -> int:
    """
    Validate a limit/count parameter.

    Args:
        value: Limit value to validate
        field: Field name for error messages
        min_value: Minimum allowed value
        max_value: Maximum allowed value

    Returns:
        Validated limit

    Raises:
        ValidationError: If limit is out of range
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(field, "Must be an integer", value)

    if value < min_value:
        raise ValidationError(
            field,
            f"Must be at least {min_value}",
            value
        )

    if value > max_value:
        raise ValidationError(
            field,
            f"Cannot exceed {max_value}",
            value
        )

    return value


def validate_customer_id(value: int, field: str = "customer_id") -> int:
    """Validate a customer or product identifier (positive integer)."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(field, "Must be an integer", value)

    if value <= 0:
        raise ValidationError(field, "Must be a positive integer", value)

    return value


def validate_cache_type(
    value: Optional[str],
    allowed: Iterable[str],
    field: str = "cache_type",
    allow_none: bool = True
) -> Optional[str]:
    """
    Validate a cache type tag.

    Args:
        value: Cache type to validate
        allowed: Known cache type tags
        field: Field name for error messages
        allow_none: Whether None/empty means "all types"

    Returns:
        Normalized cache type or None

    Raises:
        ValidationError: If the tag is unknown
    """
    if value is None or value == "":
        if allow_none:
            return None
        raise ValidationError(field, "Cache type is required")

    if not isinstance(value, str):
        raise ValidationError(field, "Must be a string", value)

    value = value.lower().strip()
    valid = set(allowed)

    if value not in valid:
        raise ValidationError(
            field,
            f"Must be one of: {', '.join(sorted(valid))}",
            value
        )

    return value
