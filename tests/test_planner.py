"""Tests for the swap planner."""
import dataclasses

import pytest

from openrebalance.config.schemas import PlannerConfig
from openrebalance.domain.models import Portfolio, RebalancePolicy
from openrebalance.rebalancing.planner import SwapPlanner, apply_slippage, to_token_units

from conftest import WALLET

THRESHOLD = RebalancePolicy.THRESHOLD
STRICT = RebalancePolicy.STRICT_PERIODIC


def _volume_by_source(swaps):
    volume = {}
    for s in swaps:
        volume[s.from_asset.symbol] = volume.get(s.from_asset.symbol, 0.0) + s.amount_in_usd
    return volume


def _volume_by_destination(swaps):
    volume = {}
    for s in swaps:
        volume[s.to_asset.symbol] = volume.get(s.to_asset.symbol, 0.0) + s.amount_in_usd
    return volume


def test_balanced_portfolio_yields_empty_plan(planner, make_deviations):
    deviations, total = make_deviations({"WBTC": 500, "WETH": 300, "USDC": 200})
    assert all(d.deviation == pytest.approx(0.0) for d in deviations)
    assert planner.plan(deviations, total, THRESHOLD) == []
    assert planner.plan(deviations, total, STRICT) == []


def test_single_breach_at_boundary_is_not_traded(planner, make_deviations):
    deviations, total = make_deviations({"WBTC": 550, "WETH": 300, "USDC": 150})
    by_symbol = {d.symbol: d for d in deviations}
    assert by_symbol["WBTC"].needs_rebalance is False
    assert by_symbol["USDC"].needs_rebalance is False
    assert planner.plan(deviations, total, THRESHOLD) == []


def test_single_breach_past_threshold_consumes_the_gap(planner, make_deviations):
    deviations, total = make_deviations({"WBTC": 560, "WETH": 300, "USDC": 140})
    swaps = planner.plan(deviations, total, THRESHOLD)

    assert len(swaps) == 1
    swap = swaps[0]
    assert swap.from_asset.symbol == "WBTC"
    assert swap.to_asset.symbol == "USDC"
    assert swap.amount_in_usd == pytest.approx(60.0)
    assert swap.amount_in_tokens == 120_000  # 0.0012 WBTC at 8 decimals
    assert swap.expected_amount_out == 60_000_000  # 60 USDC at 6 decimals
    assert swap.min_amount_out == 59_700_000
    assert swap.priority == pytest.approx(120.0)


def test_strict_three_way_rebalance(planner, make_deviations):
    deviations, total = make_deviations({"WBTC": 600, "WETH": 200, "USDC": 200})
    swaps = planner.plan(deviations, total, STRICT)

    assert len(swaps) == 1
    assert swaps[0].from_asset.symbol == "WBTC"
    assert swaps[0].to_asset.symbol == "WETH"
    assert swaps[0].amount_in_usd == pytest.approx(100.0)
    assert swaps[0].expected_amount_out == 5 * 10 ** 16  # 0.05 WETH


@pytest.mark.parametrize("values", [
    {"WBTC": 550, "WETH": 300, "USDC": 150},
    {"WBTC": 560, "WETH": 300, "USDC": 140},
    {"WBTC": 520, "WETH": 290, "USDC": 190},
    {"WBTC": 300, "WETH": 450, "USDC": 250},
    {"WBTC": 700, "WETH": 100, "USDC": 200},
])
def test_strict_is_at_least_as_aggressive_as_threshold(planner, make_deviations, values):
    deviations, total = make_deviations(values)
    threshold_swaps = planner.plan(deviations, total, THRESHOLD)
    strict_swaps = planner.plan(deviations, total, STRICT)

    assert len(strict_swaps) >= len(threshold_swaps)
    assert sum(s.amount_in_usd for s in strict_swaps) >= sum(s.amount_in_usd for s in threshold_swaps) - 1e-9


@pytest.mark.parametrize("values", [
    {"WBTC": 300, "WETH": 450, "USDC": 250},
    {"WBTC": 700, "WETH": 100, "USDC": 200},
    {"WBTC": 100, "WETH": 100, "USDC": 800},
    {"WBTC": 480, "WETH": 330, "USDC": 190},
])
def test_plan_conserves_value(planner, make_deviations, values):
    deviations, total = make_deviations(values)
    swaps = planner.plan(deviations, total, STRICT)
    gaps = {d.symbol: d.gap_usd for d in deviations}

    for symbol, sold in _volume_by_source(swaps).items():
        assert gaps[symbol] < 0
        assert sold <= -gaps[symbol] + 1e-6
    for symbol, bought in _volume_by_destination(swaps).items():
        assert gaps[symbol] > 0
        assert bought <= gaps[symbol] + 1e-6

    surplus = [d for d in deviations if d.gap_usd < -0.01]
    deficit = [d for d in deviations if d.gap_usd > 0.01]
    assert len(swaps) <= len(surplus) + len(deficit) - 1
    assert sum(s.amount_in_usd for s in swaps) == pytest.approx(sum(-d.gap_usd for d in surplus))


def test_two_sources_feed_one_deficit_in_priority_order(planner, make_deviations):
    deviations, total = make_deviations({"WBTC": 300, "WETH": 450, "USDC": 250})
    swaps = planner.plan(deviations, total, STRICT)

    assert [s.describe() for s in swaps] == ["WETH -> WBTC", "USDC -> WBTC"]
    assert swaps[0].amount_in_usd == pytest.approx(150.0)
    assert swaps[1].amount_in_usd == pytest.approx(50.0)
    assert swaps[0].priority > swaps[1].priority


def test_equal_gaps_are_ordered_by_symbol(planner, make_deviations):
    targets = {"WBTC": 0.25, "WETH": 0.25, "USDC": 0.5}
    deviations, total = make_deviations({"WBTC": 350, "WETH": 350, "USDC": 300}, targets=targets)
    swaps = planner.plan(deviations, total, STRICT)

    assert [s.from_asset.symbol for s in swaps] == ["WBTC", "WETH"]
    assert all(s.to_asset.symbol == "USDC" for s in swaps)


def test_dust_swaps_are_not_emitted(make_deviations):
    planner = SwapPlanner(PlannerConfig(dust_floor_usd=1.0))
    deviations, total = make_deviations({"WBTC": 500.5, "WETH": 299.5, "USDC": 200})
    assert planner.plan(deviations, total, STRICT) == []

    deviations, total = make_deviations({"WBTC": 520, "WETH": 290, "USDC": 190})
    swaps = planner.plan(deviations, total, STRICT)
    assert swaps
    assert all(s.amount_in_usd >= 1.0 for s in swaps)


def test_gaps_within_one_cent_are_ignored(planner, make_deviations):
    deviations, total = make_deviations({"WBTC": 500.004, "WETH": 299.996, "USDC": 200})
    assert planner.plan(deviations, total, STRICT) == []


def test_zero_total_yields_empty_plan(planner, make_deviations):
    deviations, _ = make_deviations({"WBTC": 0, "WETH": 0, "USDC": 0})
    assert planner.plan(deviations, 0.0, STRICT) == []


def test_single_asset_never_trades(planner, make_deviations):
    deviations, total = make_deviations({"USDC": 100}, targets={"USDC": 1.0})
    assert planner.plan(deviations, total, STRICT) == []


def test_unmatched_deficit_is_left_unfilled(planner, make_deviations):
    deviations, _ = make_deviations({"WBTC": 560, "WETH": 300, "USDC": 140})
    # Planning against a larger total than is held leaves only a $10 surplus
    swaps = planner.plan(deviations, 1100.0, STRICT)

    assert len(swaps) == 1
    assert swaps[0].from_asset.symbol == "WBTC"
    assert swaps[0].to_asset.symbol == "USDC"
    assert swaps[0].amount_in_usd == pytest.approx(10.0)


def test_token_amount_capped_at_held_balance(planner, make_deviations):
    deviations, total = make_deviations({"WBTC": 600, "WETH": 200, "USDC": 200})
    wbtc = next(d for d in deviations if d.symbol == "WBTC")
    held = 150_000  # 0.0015 WBTC = $75
    deviations = [dataclasses.replace(d, current_balance_raw=held) if d is wbtc else d for d in deviations]

    swaps = planner.plan(deviations, total, STRICT)

    assert len(swaps) == 1
    assert swaps[0].amount_in_tokens == held
    assert swaps[0].amount_in_usd == pytest.approx(75.0)


def test_asset_without_price_is_excluded(planner, make_deviations):
    deviations, total = make_deviations({"WBTC": 600, "WETH": 200, "USDC": 200})
    deviations = [dataclasses.replace(d, price_usd=0.0) if d.symbol == "WETH" else d for d in deviations]
    assert planner.plan(deviations, total, STRICT) == []


def test_damping_factor_scales_each_gap(make_deviations):
    planner = SwapPlanner(PlannerConfig(damping_factor=0.5))
    deviations, total = make_deviations({"WBTC": 560, "WETH": 300, "USDC": 140})
    swaps = planner.plan(deviations, total, THRESHOLD)

    assert len(swaps) == 1
    assert swaps[0].amount_in_usd == pytest.approx(30.0)


def test_build_plan_wraps_swaps(planner, make_deviations):
    portfolio = Portfolio(owner_address=WALLET, name="Core", rebalance_policy="strict_periodic")
    deviations, total = make_deviations({"WBTC": 600, "WETH": 200, "USDC": 200})
    plan = planner.build_plan(portfolio, deviations, total)

    assert plan.portfolio_id == portfolio.id
    assert plan.policy is STRICT
    assert plan.needs_rebalance
    assert plan.max_deviation == pytest.approx(0.1)
    assert plan.total_swap_usd == pytest.approx(100.0)


def test_token_conversion_rounds_down():
    assert to_token_units(1.0, 3.0, 6) == 333_333
    assert to_token_units(10.0, 0.0, 6) == 0
    assert apply_slippage(1_000_001, 0.005) == 995_000
