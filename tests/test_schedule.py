from datetime import datetime, timedelta, timezone

import pytest

from bitcoin_lottery.errors import InvalidSchedule
from bitcoin_lottery.schedule import MarginPolicy, compute_commitment_block

from conftest import NOW


class TestMarginPolicy:
    def test_default_percents(self):
        policy = MarginPolicy()
        assert policy.percent_for("daily") == 5.0
        assert policy.percent_for("weekly") == 10.0
        assert policy.percent_for("standard") == 10.0

    def test_unknown_class_uses_standard(self):
        policy = MarginPolicy(percents={"daily": 5.0, "standard": 20.0})
        assert policy.percent_for("monthly") == 20.0

    def test_clamped(self):
        policy = MarginPolicy(min_blocks=2, max_blocks=6)
        assert policy.margin_for(1, "standard") == 2
        assert policy.margin_for(1000, "standard") == 6
        assert policy.margin_for(40, "standard") == 4


class TestComputeCommitmentBlock:
    def test_standard_lottery_24_hours(self):
        plan = compute_commitment_block(
            800000, NOW + timedelta(hours=24), "standard", now=NOW
        )
        assert plan.blocks_until_close == 144
        assert plan.margin_blocks == 12
        assert plan.target_height == 800156

    def test_daily_lottery_uses_smaller_percent(self):
        plan = compute_commitment_block(800000, NOW + timedelta(hours=24), "daily", now=NOW)
        # ceil(144 * 5%) = 8
        assert plan.margin_blocks == 8
        assert plan.target_height == 800152

    def test_short_lottery_hits_minimum(self):
        plan = compute_commitment_block(800000, NOW + timedelta(hours=1), now=NOW)
        assert plan.blocks_until_close == 6
        assert plan.margin_blocks == 1
        assert plan.target_height == 800007

    def test_partial_block_rounds_up(self):
        plan = compute_commitment_block(
            800000, NOW + timedelta(minutes=30, seconds=1), now=NOW
        )
        assert plan.blocks_until_close == 4

    def test_margin_scales_with_percent(self):
        closing = NOW + timedelta(hours=10)  # 60 blocks
        low = compute_commitment_block(
            1000, closing, policy=MarginPolicy(percents={"standard": 5.0}, max_blocks=100), now=NOW
        )
        high = compute_commitment_block(
            1000, closing, policy=MarginPolicy(percents={"standard": 50.0}, max_blocks=100), now=NOW
        )
        assert low.margin_blocks == 3
        assert high.margin_blocks == 30

    def test_custom_clamp(self):
        policy = MarginPolicy(min_blocks=3, max_blocks=4)
        near = compute_commitment_block(100, NOW + timedelta(minutes=10), policy=policy, now=NOW)
        far = compute_commitment_block(100, NOW + timedelta(days=7), policy=policy, now=NOW)
        assert near.margin_blocks == 3
        assert far.margin_blocks == 4

    @pytest.mark.parametrize("minutes", [1, 9, 10, 61, 60 * 24 * 30])
    def test_target_always_beyond_current(self, minutes):
        plan = compute_commitment_block(800000, NOW + timedelta(minutes=minutes), now=NOW)
        assert plan.target_height > 800000 + plan.blocks_until_close

    def test_estimated_draw_time(self):
        plan = compute_commitment_block(800000, NOW + timedelta(hours=24), now=NOW)
        assert plan.estimated_draw_time == NOW + timedelta(minutes=156 * 10)

    def test_naive_times_are_utc(self):
        naive_now = NOW.replace(tzinfo=None)
        plan = compute_commitment_block(
            800000, naive_now + timedelta(hours=24), now=naive_now
        )
        assert plan.target_height == 800156

    @pytest.mark.parametrize("delta", [timedelta(0), timedelta(seconds=-1), timedelta(days=-3)])
    def test_closing_time_must_be_in_future(self, delta):
        with pytest.raises(InvalidSchedule):
            compute_commitment_block(800000, NOW + delta, now=NOW)

    def test_negative_height_rejected(self):
        with pytest.raises(InvalidSchedule):
            compute_commitment_block(-1, NOW + timedelta(hours=1), now=NOW)

    def test_inconsistent_clamp_rejected(self):
        with pytest.raises(InvalidSchedule):
            compute_commitment_block(
                800000,
                NOW + timedelta(hours=1),
                policy=MarginPolicy(min_blocks=5, max_blocks=2),
                now=NOW,
            )

    def test_defaults_to_wall_clock(self):
        plan = compute_commitment_block(800000, datetime.now(timezone.utc) + timedelta(hours=2))
        assert plan.target_height > 800000
