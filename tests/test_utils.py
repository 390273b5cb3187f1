"""Unit tests for utils.py."""

import random

import pytest

from utils import (
    VALID_OBJECT_CHARS,
    merge_maps,
    parse_duration,
    random_object_safe_string,
)


class TestRandomObjectSafeString:
    """Tests for random_object_safe_string."""

    def test_length_and_alphabet(self):
        """Test the string has the requested length and only safe characters."""
        value = random_object_safe_string(32)
        assert len(value) == 32
        assert set(value) <= set(VALID_OBJECT_CHARS)

    def test_zero_length(self):
        """Test a zero length gives an empty string."""
        assert random_object_safe_string(0) == ""

    def test_negative_length(self):
        """Test a negative length is rejected."""
        with pytest.raises(ValueError):
            random_object_safe_string(-1)

    def test_seeded_rng_is_deterministic(self):
        """Test an injected seeded rng gives repeatable output."""
        first = random_object_safe_string(12, rng=random.Random(42))
        second = random_object_safe_string(12, rng=random.Random(42))
        assert first == second


class TestMergeMaps:
    """Tests for merge_maps."""

    def test_overrides_win(self):
        """Test override values replace base values."""
        merged = merge_maps({"a": b"1", "b": b"2"}, {"b": b"3", "c": b"4"})
        assert merged == {"a": b"1", "b": b"3", "c": b"4"}

    def test_inputs_unchanged(self):
        """Test neither input is modified."""
        base = {"a": b"1"}
        overrides = {"a": b"2"}
        merge_maps(base, overrides)
        assert base == {"a": b"1"}
        assert overrides == {"a": b"2"}


class TestParseDuration:
    """Tests for parse_duration."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (0, 0),
            (90, 90),
            (1.5, 1),
            ("45", 45),
            ("30s", 30),
            ("15m", 900),
            ("1h", 3600),
            ("1h30m", 5400),
            ("2h0m10s", 7210),
            (" 5m ", 300),
        ],
    )
    def test_valid(self, value, expected):
        """Test accepted forms."""
        assert parse_duration(value) == expected

    def test_none(self):
        """Test None passes through."""
        assert parse_duration(None) is None

    @pytest.mark.parametrize("value", ["", "abc", "1d", "h1", "1h 30m", "-5", True])
    def test_invalid(self, value):
        """Test malformed values are rejected."""
        with pytest.raises(ValueError):
            parse_duration(value)

    def test_negative_number(self):
        """Test negative numbers are rejected."""
        with pytest.raises(ValueError):
            parse_duration(-1)
