"""Tests for unit parsing and structure helpers."""

import pytest

from berth.utils.structures import merge_dicts, prune_empty
from berth.utils.units import duration_to_ms, parse_duration, parse_size


class TestDurations:
    """Test Compose duration parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("30s", 30.0),
        ("1m30s", 90.0),
        ("1500ms", 1.5),
        ("2h", 7200.0),
        ("10", 10.0),
        (5, 5.0),
    ])
    def test_parse_duration(self, value, expected):
        """Supported duration forms."""
        assert parse_duration(value) == pytest.approx(expected)

    def test_invalid_duration(self):
        """Garbage yields None."""
        assert parse_duration("soon") is None
        assert parse_duration("10x") is None
        assert parse_duration(None) is None

    def test_duration_to_ms(self):
        """Durations convert to whole milliseconds."""
        assert duration_to_ms("1m30s") == 90000
        assert duration_to_ms("250ms") == 250


class TestSizes:
    """Test size parsing."""

    def test_binary_units(self):
        """Single-letter units are binary multiples."""
        assert parse_size("512m") == 512 * 1024 ** 2
        assert parse_size("1g") == 1024 ** 3
        assert parse_size("12.5MiB") == int(12.5 * 1024 ** 2)

    def test_decimal_units(self):
        """Decimal mode applies unless the unit says otherwise."""
        assert parse_size("1.5kB", binary=False) == 1500
        assert parse_size("2MiB", binary=False) == 2 * 1024 ** 2

    def test_plain_numbers(self):
        """Numbers are bytes already."""
        assert parse_size(2048) == 2048
        assert parse_size("100") == 100
        assert parse_size("lots") is None


class TestStructures:
    """Test nested structure helpers."""

    def test_merge_dicts_replaces_lists(self):
        """Dicts merge recursively, lists are replaced."""
        base = {"a": {"b": 1, "c": [1, 2]}, "d": 1}
        result = merge_dicts(base, {"a": {"c": [3]}, "e": 2})

        assert result == {"a": {"b": 1, "c": [3]}, "d": 1, "e": 2}
        assert base["a"]["c"] == [1, 2]

    def test_prune_empty(self):
        """None and empty collections go, False and zero stay."""
        value = {
            "a": None,
            "b": [],
            "c": {"d": {}},
            "e": False,
            "f": 0,
            "g": "",
            "h": [None, "x"],
        }
        assert prune_empty(value) == {"e": False, "f": 0, "g": "", "h": ["x"]}
        assert "g" not in prune_empty(value, drop_empty_strings=True)
