"""
Tests for amount normalization and scale-tolerant matching.

Verifies:
1. parse_amount strips formatting and rejects non-numeric input
2. Expected-amount shorthand convention
3. compare_amounts recovers dropped thousand separators
4. Tolerance floor and percentage
5. Mismatch at every scale is reported as not ok

Running:
    python -m pytest tests/test_amount_signals.py -v
"""

import pytest

from payproof.signals.amount_signals import (
    AMOUNT_SCALES,
    amount_tolerance,
    compare_amounts,
    format_amount,
    normalize_expected_amount,
    parse_amount,
)


class TestParseAmount:
    """Readings arrive as ints, floats or printed strings."""

    @pytest.mark.parametrize("raw, expected", [
        (45000, 45000),
        (-45000, 45000),
        (12.6, 13),
        ("$ 45.000", 45000),
        ("45,000.00", 4500000),
        ("COP 1'250.000", 1250000),
    ])
    def test_parses(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, True, False, "", "sin monto", float("nan"), float("inf")])
    def test_rejects(self, raw):
        assert parse_amount(raw) is None


class TestExpectedAmount:
    """Normalization of the caller-supplied amount."""

    def test_plain_values(self):
        assert normalize_expected_amount(45000) == 45000
        assert normalize_expected_amount("45.000") == 45000
        assert normalize_expected_amount("$45.000") == 45000

    def test_shorthand_multiplies_small_values(self):
        assert normalize_expected_amount("45", shorthand=True) == 45000
        assert normalize_expected_amount(45, shorthand=True) == 45000

    def test_shorthand_leaves_large_values(self):
        assert normalize_expected_amount(1500, shorthand=True) == 1500

    def test_shorthand_off_by_default(self):
        assert normalize_expected_amount("45") == 45

    @pytest.mark.parametrize("raw", ["45k", "abc", None, True, [45]])
    def test_non_numeric_is_none(self, raw):
        assert normalize_expected_amount(raw) is None


class TestCompareAmounts:
    """Scale recovery against the expected amount."""

    def test_exact_match_prefers_unscaled(self):
        r = compare_amounts(45000, 45000)
        assert r["ok"] is True
        assert r["best_scale"] == 1
        assert r["diff"] == 0

    def test_dropped_thousands_separator(self):
        r = compare_amounts("45", 45000)
        assert r["ok"] is True
        assert r["best_scale"] == 1000
        assert r["best_reading"] == 45000
        assert r["read"] == 45

    def test_all_scales_reported(self):
        r = compare_amounts(45, 45000)
        assert [c["scale"] for c in r["candidates"]] == list(AMOUNT_SCALES)
        assert [c["reading"] for c in r["candidates"]] == [45, 450, 4500, 45000]

    def test_within_tolerance(self):
        r = compare_amounts(45300, 45000)
        assert r["tolerance"] == 450
        assert r["ok"] is True

    def test_outside_tolerance_at_every_scale(self):
        r = compare_amounts(45000, 50000)
        assert r["ok"] is False
        assert not any(c["ok"] for c in r["candidates"])
        assert r["best_scale"] == 1
        assert r["diff"] == 5000


    @pytest.mark.parametrize("read, scale", [(45, 1000), (45000, 1)])
    def test_scale_invariance(self, read, scale):
        r = compare_amounts(read, 45000)
        assert r["ok"] is True
        assert r["best_scale"] == scale

    def test_no_scale_rescues_a_wrong_amount(self):
        r = compare_amounts(30000, 45000)
        assert r["ok"] is False
        assert not any(c["ok"] for c in r["candidates"])
    def test_in_tolerance_scaled_reading_wins_over_near_miss(self):
        # 990 is 9010 away; 9900 is exactly at the 100 floor
        r = compare_amounts(990, 10000)
        assert r["ok"] is True
        assert r["best_scale"] == 10

    def test_unreadable_amount(self):
        r = compare_amounts(None, 45000)
        assert r["ok"] is False
        assert r["read"] is None
        assert r["candidates"] == []

    def test_custom_tolerance(self):
        assert compare_amounts(45300, 45000, tolerance_floor=100, tolerance_pct=0.0)["ok"] is False
        assert compare_amounts(45300, 45000, tolerance_floor=500, tolerance_pct=0.0)["ok"] is True


class TestHelpers:

    def test_tolerance_floor_and_pct(self):
        assert amount_tolerance(5000, 100, 0.01) == 100
        assert amount_tolerance(1000000, 100, 0.01) == 10000

    def test_format_amount(self):
        assert format_amount(45000) == "45.000"
        assert format_amount(1250000) == "1.250.000"
        assert format_amount(None) == "?"
