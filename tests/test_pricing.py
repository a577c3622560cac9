"""
Tests for the fee-aware pricing model.

Covers the compounded break-even formula, the summed/capped requirement,
the spread-aware floor, tick rounding and the full exit plan.
"""

import pytest

from core.pricing import (
    PricingConfig,
    breakeven_price,
    entry_fee_bps_for_order,
    net_after_fees_required_bps,
    plan_exit,
    required_exit_bps,
    round_down_to_increment,
    round_trip_net_bps,
    round_up_to_tick,
    spread_aware_required_bps,
    spread_bps,
    target_sell_price,
)


class TestNetAfterFees:
    def test_symmetric_fees_compound(self):
        """15 + 15 bps fees with 100 bps net needs ~130.37 bps gross"""
        gross = net_after_fees_required_bps(15, 15, 100)
        assert gross == pytest.approx(130.37, abs=0.01)

    def test_zero_fees_equal_net(self):
        assert net_after_fees_required_bps(0, 0, 50) == pytest.approx(50.0)

    def test_monotonic_in_fees_and_net(self):
        base = net_after_fees_required_bps(15, 15, 100)
        assert net_after_fees_required_bps(25, 15, 100) > base
        assert net_after_fees_required_bps(15, 25, 100) > base
        assert net_after_fees_required_bps(15, 15, 120) > base

    def test_inverse_recovers_net(self):
        gross = net_after_fees_required_bps(15, 25, 80)
        assert round_trip_net_bps(gross, 15, 25) == pytest.approx(80.0, abs=1e-6)

    def test_fees_at_or_above_100_percent_return_zero(self):
        assert net_after_fees_required_bps(5000, 5000, 100) == 0.0


class TestRequiredExit:
    def test_components_sum(self):
        assert required_exit_bps(50, 30, 5, 5, 0) == pytest.approx(90.0)

    def test_cap_applies_when_it_covers_costs(self):
        assert required_exit_bps(500, 30, 5, 5, 0, cap_bps=100) == pytest.approx(100.0)

    def test_cap_ignored_below_safety_floor(self):
        """A cap under fees + slippage + buffers would guarantee a loss"""
        assert required_exit_bps(50, 30, 5, 5, 0, cap_bps=20) == pytest.approx(90.0)

    def test_min_gross_floor(self):
        assert required_exit_bps(0, 0, 0, 0, 0, min_gross_take_profit_bps=25) == pytest.approx(25.0)

    def test_spread_aware_raises_requirement(self):
        assert spread_aware_required_bps(40, 80, multiplier=1.0, add_bps=10) == pytest.approx(90.0)
        assert spread_aware_required_bps(40, 10) == pytest.approx(40.0)

    def test_spread_aware_clamps_spread(self):
        assert spread_aware_required_bps(0, 1000, cap_bps=200) == pytest.approx(200.0)
        assert spread_aware_required_bps(0, 1, floor_bps=30) == pytest.approx(30.0)


class TestRounding:
    def test_target_rounds_up_to_tick(self):
        target = target_sell_price(100.0, net_after_fees_required_bps(15, 15, 100), 0.01)
        assert 101.30 <= target <= 101.31
        assert target == pytest.approx(101.31)

    def test_round_up_exact_multiple_unchanged(self):
        assert round_up_to_tick(101.25, 0.05) == pytest.approx(101.25)
        assert round_up_to_tick(101.26, 0.05) == pytest.approx(101.30)

    def test_round_down_increment(self):
        assert round_down_to_increment(0.123456789, 0.0001) == pytest.approx(0.1234)
        assert round_down_to_increment(7.9, 1.0) == pytest.approx(7.0)

    def test_non_positive_increment_is_identity(self):
        assert round_up_to_tick(1.2345, 0) == 1.2345
        assert round_down_to_increment(1.2345, -1) == 1.2345

    def test_breakeven_covers_fees(self):
        price = breakeven_price(100.0, 25, 15, 0.01)
        assert price >= 100.0 * (1 + net_after_fees_required_bps(25, 15, 0) / 10000.0)


class TestSpreadAndFees:
    def test_spread_bps(self):
        assert spread_bps(99.9, 100.1) == pytest.approx(20.0)

    def test_inverted_book_is_infinite(self):
        assert spread_bps(101.0, 100.0) == float("inf")
        assert spread_bps(0.0, 100.0) == float("inf")

    @pytest.mark.parametrize("order_type,tif,post_only,expected", [
        ("limit", "gtc", False, 15.0),
        ("limit", "ioc", False, 25.0),
        ("limit", "fok", False, 25.0),
        ("market", "gtc", False, 25.0),
        ("limit", "ioc", True, 15.0),
    ])
    def test_entry_fee_tier(self, order_type, tif, post_only, expected):
        assert entry_fee_bps_for_order(order_type, tif, post_only, maker_fee_bps=15, taker_fee_bps=25) == expected


class TestPlanExit:
    def setup_method(self):
        self.config = PricingConfig(
            desired_net_bps=100, maker_fee_bps=15, taker_fee_bps=25,
            slippage_bps=0, spread_buffer_bps=0, profit_buffer_bps=0,
            cap_bps=None, min_gross_take_profit_bps=0,
        )

    def test_compounded_requirement_dominates(self):
        plan = plan_exit(100.0, self.config, entry_fee_bps=15)
        assert plan.required_exit_bps == pytest.approx(130.37, abs=0.01)
        assert plan.target_price == pytest.approx(101.31)
        assert plan.fee_bps_round_trip == pytest.approx(30.0)
        assert plan.exit_fee_bps == 15

    def test_target_above_breakeven(self):
        plan = plan_exit(50.0, self.config, entry_fee_bps=25)
        assert plan.target_price > plan.breakeven_price > 50.0

    def test_wide_spread_raises_target(self):
        tight = plan_exit(100.0, self.config, entry_fee_bps=15, current_spread_bps=5)
        wide = plan_exit(100.0, self.config, entry_fee_bps=15, current_spread_bps=180)
        assert wide.required_exit_bps == pytest.approx(180.0)
        assert wide.target_price > tight.target_price

    def test_rejects_non_positive_entry(self):
        with pytest.raises(ValueError):
            plan_exit(0.0, self.config, entry_fee_bps=15)

    def test_from_policy_reads_section(self):
        config = PricingConfig.from_policy({"pricing": {"maker_fee_bps": 10, "cap_bps": None}})
        assert config.maker_fee_bps == 10.0
        assert config.cap_bps is None
        assert config.taker_fee_bps == 25.0
