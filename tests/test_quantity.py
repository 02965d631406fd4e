"""Tests for Kubernetes quantity parsing."""

import pytest

from kubetally.utils.quantity import parse_quantity


class TestParseQuantity:
    """Test CPU and memory quantity strings."""

    @pytest.mark.parametrize(
        "quantity,expected",
        [
            ("500m", 0.5),
            ("2", 2.0),
            ("1.5", 1.5),
            ("250000000n", 0.25),
            ("128Mi", 128 * 1024**2),
            ("1Gi", 1024**3),
            ("64Ki", 64 * 1024),
            ("1G", 1e9),
            ("500M", 5e8),
            ("1e3", 1000.0),
        ],
    )
    def test_parses_suffixes(self, quantity, expected):
        """Test binary, decimal and bare quantities."""
        assert parse_quantity(quantity) == pytest.approx(expected)

    @pytest.mark.parametrize("quantity", [None, "", "garbage"])
    def test_empty_or_invalid_is_zero(self, quantity):
        """Test missing or unparsable quantities count as zero."""
        assert parse_quantity(quantity) == 0.0

    def test_numbers_pass_through(self):
        """Test numeric input is returned as float."""
        assert parse_quantity(3) == 3.0
        assert parse_quantity(0.25) == 0.25
