"""Tests for small-number suppression."""
import pytest

from affiliate_attribution.services.reporting import SUPPRESSED, suppress_row, suppress_small_number


class TestSuppressSmallNumber:
    @pytest.mark.parametrize("count", [1, 3, 4])
    def test_small_counts_masked(self, count):
        assert suppress_small_number(count) == "<5"

    @pytest.mark.parametrize("count", [0, 5, 6, 120])
    def test_zero_and_threshold_shown(self, count):
        assert suppress_small_number(count) == count


class TestSuppressRow:
    def test_masks_correlated_amounts(self):
        row = {"date": "2026-03-01", "conversions": 3, "revenue_cents": 90000, "commission_cents": 9000}
        out = suppress_row(row)
        assert out == {"date": "2026-03-01", "conversions": SUPPRESSED, "revenue_cents": None, "commission_cents": None}
        assert row["conversions"] == 3

    def test_large_rows_unchanged(self):
        row = {"date": "2026-03-01", "conversions": 7, "revenue_cents": 210000, "commission_cents": 21000}
        assert suppress_row(row) == row

    def test_custom_fields(self):
        row = {"clicks": 2, "conversion_rate": 0.5, "other": 1}
        out = suppress_row(row, count_field="clicks", correlated=("conversion_rate",))
        assert out == {"clicks": SUPPRESSED, "conversion_rate": None, "other": 1}

    def test_missing_count_left_alone(self):
        assert suppress_row({"revenue_cents": 10}) == {"revenue_cents": 10}
