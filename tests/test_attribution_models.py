"""Tests for the multi-touch attribution models."""
from datetime import datetime, timedelta, timezone

import pytest

from affiliate_attribution.models import AttributionModel, Confidence
from affiliate_attribution.services.attribution_models import (
    WeightedTouch,
    apply_first_click,
    apply_last_click,
    apply_linear,
    apply_model,
    apply_position,
    apply_time_decay,
    determine_confidence,
    pick_winner,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _touches(*ages_days, affiliates=None):
    affiliates = affiliates or list(range(1, len(ages_days) + 1))
    return [
        WeightedTouch(
            touch_id=i + 1,
            affiliate_id=affiliates[i],
            ref_code=f"CODE{affiliates[i]}",
            created_at=NOW - timedelta(days=age),
        )
        for i, age in enumerate(ages_days)
    ]


class TestWeightSums:
    @pytest.mark.parametrize("model", [m.value for m in AttributionModel])
    @pytest.mark.parametrize("count", [1, 2, 3, 7])
    def test_weights_sum_to_one(self, model, count):
        touches = _touches(*range(count * 2, 0, -2))
        weighted = apply_model(touches, model, now=NOW)
        assert len(weighted) == count
        assert sum(t.weight for t in weighted) == pytest.approx(1.0, abs=1e-9)

    @pytest.mark.parametrize("model", [m.value for m in AttributionModel])
    def test_single_touch_gets_full_credit(self, model):
        weighted = apply_model(_touches(3), model, now=NOW)
        assert weighted[0].weight == pytest.approx(1.0)

    @pytest.mark.parametrize("model", [m.value for m in AttributionModel])
    def test_empty_input_gives_empty_output(self, model):
        assert apply_model([], model, now=NOW) == []

    def test_inputs_are_not_mutated(self):
        touches = _touches(10, 5, 1)
        apply_linear(touches)
        assert all(t.weight == 0.0 for t in touches)


class TestModels:
    def test_first_click(self):
        weights = [t.weight for t in apply_first_click(_touches(10, 5, 1))]
        assert weights == [1.0, 0.0, 0.0]

    def test_last_click(self):
        weights = [t.weight for t in apply_last_click(_touches(10, 5, 1))]
        assert weights == [0.0, 0.0, 1.0]

    def test_linear(self):
        weights = [t.weight for t in apply_linear(_touches(10, 5, 1, 0))]
        assert weights == [pytest.approx(0.25)] * 4

    def test_time_decay_with_fixed_clock(self):
        # 14 days and 7 days old with a 7-day half-life: raw 0.25 and 0.5
        weighted = apply_time_decay(_touches(14, 7), now=NOW)
        assert weighted[0].weight == pytest.approx(0.25 / 0.75, abs=1e-3)
        assert weighted[1].weight == pytest.approx(0.5 / 0.75, abs=1e-3)

    def test_time_decay_one_week_apart(self):
        weighted = apply_time_decay(_touches(7, 0), now=NOW)
        assert [round(t.weight, 3) for t in weighted] == [0.333, 0.667]

    def test_time_decay_half_week_apart(self):
        weighted = apply_time_decay(_touches(3.5, 0), now=NOW)
        assert [round(t.weight, 3) for t in weighted] == [0.414, 0.586]

    def test_time_decay_very_old_touches_split_evenly(self):
        weighted = apply_time_decay(_touches(400_000, 400_000), now=NOW)
        assert [t.weight for t in weighted] == [pytest.approx(0.5), pytest.approx(0.5)]

    def test_position_four_touches(self):
        weights = [t.weight for t in apply_position(_touches(20, 10, 5, 1))]
        assert weights == [pytest.approx(w) for w in (0.4, 0.1, 0.1, 0.4)]

    def test_position_two_touches_split(self):
        weights = [t.weight for t in apply_position(_touches(5, 1))]
        assert weights == [0.5, 0.5]

    def test_unknown_model_falls_back_to_last_click(self):
        weights = [t.weight for t in apply_model(_touches(10, 5, 1), "MYSTERY", now=NOW)]
        assert weights == [0.0, 0.0, 1.0]

    def test_accepts_enum_member(self):
        weights = [t.weight for t in apply_model(_touches(10, 1), AttributionModel.FIRST_CLICK)]
        assert weights == [1.0, 0.0]


class TestPickWinner:
    def test_highest_weight_wins(self):
        weighted = apply_position(_touches(20, 10, 1))
        assert pick_winner(weighted).touch_id == 1

    def test_tie_goes_to_earliest_touch(self):
        weighted = apply_linear(_touches(10, 5, 1))
        assert pick_winner(weighted).touch_id == 1

    def test_empty_has_no_winner(self):
        assert pick_winner([]) is None


class TestConfidence:
    def test_both_identifiers_is_high(self):
        assert determine_confidence(True, True, 1) == Confidence.HIGH

    def test_one_identifier_is_medium(self):
        assert determine_confidence(True, False, 2) == Confidence.MEDIUM
        assert determine_confidence(False, True, 1) == Confidence.MEDIUM

    def test_no_touches_is_low(self):
        assert determine_confidence(True, True, 0) == Confidence.LOW
