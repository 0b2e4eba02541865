"""Tests for the shared value helpers."""

import math
from datetime import date, datetime, timezone

from gridcore.values import (
    composite_key,
    display_key,
    is_empty,
    is_finite_number,
    is_non_empty,
    normalize_for_key,
    prefer_non_empty,
)


class TestEmptiness:
    def test_empty_values(self):
        assert is_empty(None)
        assert is_empty("")
        assert is_empty(float("nan"))
        assert not is_empty(0)
        assert not is_empty(False)

    def test_non_empty(self):
        assert is_non_empty(0)
        assert not is_non_empty("")
        assert not is_non_empty(None)

    def test_prefer_non_empty(self):
        assert prefer_non_empty(None, 3) == 3
        assert prefer_non_empty(1, 3) == 1
        assert prefer_non_empty("", None) == ""


class TestFiniteNumber:
    def test_booleans_are_not_numbers(self):
        assert not is_finite_number(True)

    def test_non_finite(self):
        assert not is_finite_number(float("inf"))
        assert not is_finite_number(math.nan)

    def test_numbers(self):
        assert is_finite_number(3)
        assert is_finite_number(-2.5)
        assert not is_finite_number("3")


class TestNormalizeForKey:
    def test_strings_are_trimmed_and_lowered(self):
        assert normalize_for_key("  AbC ") == "abc"

    def test_null_is_empty_string(self):
        assert normalize_for_key(None) == ""

    def test_booleans(self):
        assert normalize_for_key(True) == "1"
        assert normalize_for_key(False) == "0"

    def test_integral_float_matches_int(self):
        assert normalize_for_key(1.0) == normalize_for_key(1) == "1"
        assert normalize_for_key(2.5) == "2.5"

    def test_dates_use_epoch_millis(self):
        assert normalize_for_key(date(1970, 1, 2)) == "86400000"
        assert normalize_for_key(datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)) == "1000"

    def test_nested_values_use_canonical_json(self):
        assert normalize_for_key({"b": 2, "a": 1}) == '{"a":1,"b":2}'


def test_composite_key():
    assert composite_key({"a": "X", "b": 1}, ["a", "b"]) == "x||1"
    assert composite_key({"a": "X"}, ["a", "b"]) == "x||"


def test_display_key():
    assert display_key(None) == ""
    assert display_key(3.0) == "3"
    assert display_key(True) == "true"
    assert display_key(date(2025, 1, 2)) == "2025-01-02"
