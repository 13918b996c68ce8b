"""Unit tests for the validation module."""

import pytest

from hop.core.validation import (
    validate_port,
    validate_port_range,
    MIN_PORT,
    MAX_PORT,
)
from hop.core.exceptions import ValidationError


class TestValidatePort:
    """Tests for port validation."""

    def test_valid_ports(self):
        """Valid port numbers should pass."""
        assert validate_port(1) == 1
        assert validate_port(443) == 443
        assert validate_port(35000) == 35000
        assert validate_port(65535) == 65535

    def test_boundary_ports(self):
        """Boundary ports (1 and 65535) should pass."""
        validate_port(MIN_PORT)
        validate_port(MAX_PORT)

    def test_port_zero_invalid(self):
        """Port 0 should fail validation."""
        with pytest.raises(ValidationError) as exc:
            validate_port(0)
        assert "Invalid port" in str(exc.value)

    def test_port_too_large_invalid(self):
        """Ports above 65535 should fail validation."""
        with pytest.raises(ValidationError):
            validate_port(65536)

    def test_negative_invalid(self):
        with pytest.raises(ValidationError):
            validate_port(-1)

    def test_non_integer_invalid(self):
        """Strings and bools are not ports."""
        with pytest.raises(ValidationError):
            validate_port("443")
        with pytest.raises(ValidationError):
            validate_port(True)

    def test_name_in_message(self):
        with pytest.raises(ValidationError) as exc:
            validate_port(0, "target port")
        assert "target port" in exc.value.message
        assert exc.value.exit_code == 3


class TestValidatePortRange:
    """Tests for port range validation."""

    def test_valid_range(self):
        assert validate_port_range(35000, 36000) == (35000, 36000)

    def test_single_port_range(self):
        """start == end is a valid one-port range."""
        assert validate_port_range(5000, 5000) == (5000, 5000)

    def test_full_range(self):
        assert validate_port_range(MIN_PORT, MAX_PORT) == (1, 65535)

    def test_reversed_range(self):
        with pytest.raises(ValidationError) as exc:
            validate_port_range(36000, 35000)
        assert exc.value.message == "Invalid port range: 36000:35000"
        assert exc.value.hint

    def test_invalid_endpoint(self):
        with pytest.raises(ValidationError) as exc:
            validate_port_range(0, 100)
        assert "range start" in exc.value.message
