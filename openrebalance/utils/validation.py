"""Input validation utilities for parameter bounds checking."""
from __future__ import annotations
import re
from typing import Any, Iterable, Optional, Set


class ValidationError(ValueError):
    """Raised when parameter validation fails."""
    pass


ETH_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
ZERO_ADDRESS = "0x" + "0" * 40


def validate_positive(value: float, name: str, allow_zero: bool = False) -> float:
    """Validate that a value is positive (optionally allowing zero).

    Args:
        value: Value to validate.
        name: Parameter name for error message.
        allow_zero: If True, allow zero values.

    Returns:
        The validated value.

    Raises:
        ValidationError: If value is not positive.
    """
    val = float(value)
    if allow_zero:
        if val < 0:
            raise ValidationError(f"{name} must be non-negative, got {val}")
    else:
        if val <= 0:
            raise ValidationError(f"{name} must be positive, got {val}")
    return val


def validate_range(value: float, name: str, min_val: Optional[float] = None,
                   max_val: Optional[float] = None, inclusive: bool = True) -> float:
    """Validate that a value is within a specified range.

    Args:
        value: Value to validate.
        name: Parameter name for error message.
        min_val: Minimum allowed value (None for no minimum).
        max_val: Maximum allowed value (None for no maximum).
        inclusive: If True, endpoints are included in range.

    Returns:
        The validated value.

    Raises:
        ValidationError: If value is outside the specified range.
    """
    val = float(value)

    if min_val is not None:
        if inclusive and val < min_val:
            raise ValidationError(f"{name} must be >= {min_val}, got {val}")
        elif not inclusive and val <= min_val:
            raise ValidationError(f"{name} must be > {min_val}, got {val}")

    if max_val is not None:
        if inclusive and val > max_val:
            raise ValidationError(f"{name} must be <= {max_val}, got {val}")
        elif not inclusive and val >= max_val:
            raise ValidationError(f"{name} must be < {max_val}, got {val}")

    return val


def validate_probability(value: float, name: str) -> float:
    """Validate that a value is a fraction in [0, 1]."""
    return validate_range(value, name, min_val=0.0, max_val=1.0, inclusive=True)


def validate_int_range(value: int, name: str, min_val: int, max_val: int) -> int:
    """Validate that an integer lies in [min_val, max_val]."""
    if isinstance(value, bool) or int(value) != value:
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    val = int(value)
    if val < min_val or val > max_val:
        raise ValidationError(f"{name} must be between {min_val} and {max_val}, got {val}")
    return val


def validate_in_set(value: Any, name: str, valid_values: Iterable[Any]) -> Any:
    """Validate that a value is in a set of allowed values.

    Raises:
        ValidationError: If value is not in the allowed set.
    """
    allowed: Set[Any] = set(valid_values)
    if value not in allowed:
        raise ValidationError(
            f"{name} must be one of {sorted(allowed)}, got {value}"
        )
    return value


def validate_eth_address(value: str, name: str = "address") -> str:
    """Validate a 0x-prefixed 20-byte hex address and return it lower-cased."""
    if not isinstance(value, str) or not ETH_ADDRESS_RE.match(value):
        raise ValidationError(f"{name} must be a 0x-prefixed 40 hex char address, got {value!r}")
    return value.lower()


def validate_non_empty(value: str, name: str, max_length: Optional[int] = None) -> str:
    """Validate a non-blank string, optionally bounded in length."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} cannot be empty")
    if max_length is not None and len(value) > max_length:
        raise ValidationError(f"{name} must be at most {max_length} characters, got {len(value)}")
    return value
