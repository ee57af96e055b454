"""Tests for the cost/progress ledger."""

import pytest

from cgi_pipeline.constants import ACTUAL_COSTS
from cgi_pipeline.services.cost_ledger import CostLedger, interpolate_poll_progress


class TestCostLedger:
    """CostLedger is immutable and only moves progress forward."""

    def test_opening_carries_persisted_cost(self):
        ledger = CostLedger.opening(actual_cost=41)

        assert ledger.total_cost == 41
        assert ledger.breakdown() == {"carried_over": 41}

    def test_opening_without_cost_is_empty(self):
        assert CostLedger.opening().entries == ()

    def test_charge_returns_new_ledger(self):
        ledger = CostLedger.opening()

        charged = ledger.charge("prompt_enhancement", ACTUAL_COSTS["prompt_enhancement"])

        assert ledger.total_cost == 0
        assert charged.total_cost == 2

    def test_image_pipeline_total(self):
        ledger = (
            CostLedger.opening()
            .charge("motion_analysis", ACTUAL_COSTS["motion_analysis"])
            .charge("prompt_enhancement", ACTUAL_COSTS["prompt_enhancement"])
            .charge("image_generation", ACTUAL_COSTS["image_generation"])
        )

        assert ledger.total_cost == 44

    def test_negative_charge_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            CostLedger.opening().charge("video_generation", -1)

    def test_advance_never_decreases(self):
        ledger = CostLedger.opening().advance(60)

        assert ledger.advance(25).progress == 60
        assert ledger.advance(25) is ledger
        assert ledger.advance(85).progress == 85

    def test_advance_caps_at_100(self):
        assert CostLedger.opening().advance(140).progress == 100

    def test_charge_keeps_progress(self):
        ledger = CostLedger.opening().advance(80).charge("video_generation", 260)

        assert ledger.progress == 80
        assert ledger.breakdown() == {"video_generation": 260}


class TestInterpolatePollProgress:
    """Poll progress runs 80 -> 95 over the attempt budget."""

    @pytest.mark.parametrize(
        "attempt,expected",
        [(0, 80), (1, 80), (2, 81), (15, 87), (29, 94), (30, 95), (45, 95)],
    )
    def test_default_budget(self, attempt, expected):
        assert interpolate_poll_progress(attempt, 30) == expected

    def test_zero_budget(self):
        assert interpolate_poll_progress(3, 0) == 80
