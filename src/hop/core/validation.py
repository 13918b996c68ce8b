"""Input validation utilities.

Provides validation for:
- Port numbers
- Port ranges used for hopping

All validators return the validated value or raise ValidationError.
"""

from hop.core.exceptions import ValidationError


MIN_PORT = 1
MAX_PORT = 65535


def validate_port(value: int, name: str = "port") -> int:
    """Validate a port number.

    Args:
        value: Port number to validate
        name: Field name used in the error message

    Returns:
        The validated port number

    Raises:
        ValidationError: If port is out of valid range
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"Invalid {name}: {value!r}",
            hint="Port must be an integer",
        )

    if not MIN_PORT <= value <= MAX_PORT:
        raise ValidationError(
            f"Invalid {name} number: {value}",
            hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
        )

    return value


def validate_port_range(start: int, end: int) -> tuple[int, int]:
    """Validate an inclusive port range.

    A range of a single port (start == end) is valid.

    Args:
        start: First port of the range
        end: Last port of the range

    Returns:
        (start, end) tuple

    Raises:
        ValidationError: If either port is invalid or start > end
    """
    validate_port(start, "range start port")
    validate_port(end, "range end port")

    if start > end:
        raise ValidationError(
            f"Invalid port range: {start}:{end}",
            hint="Range start must not be greater than range end",
        )

    return start, end
