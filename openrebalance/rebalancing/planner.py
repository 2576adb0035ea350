"""
Swap Planner.

Turns per-asset deviations into an ordered list of swaps. Over-allocated
assets (surplus) are matched greedily against under-allocated ones (deficit),
largest gap first on both sides, until one side runs out:

    targets 50/30/20 on $1000, holdings $600/$200/$200
    surplus  WBTC $100
    deficit  WETH $100
    -> one swap WBTC -> WETH for $100

Each match consumes the smaller remaining side completely, so the plan has
at most len(surplus) + len(deficit) - 1 swaps and sells exactly what it buys.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Dict, List, Optional, Sequence

from openrebalance.config.schemas import PlannerConfig
from openrebalance.domain.models import (
    DeviationResult,
    Portfolio,
    RebalancePlan,
    RebalancePolicy,
    SwapOperation,
)
from openrebalance.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass
class _Leg:
    result: DeviationResult
    gap: float  # absolute USD gap, after damping
    remaining: float


def to_token_units(amount_usd: float, price_usd: float, decimals: int) -> int:
    """USD -> smallest token unit, always rounded down."""
    if price_usd <= 0:
        return 0
    units = Decimal(str(amount_usd)) / Decimal(str(price_usd)) * (Decimal(10) ** decimals)
    return int(units.to_integral_value(rounding=ROUND_DOWN))


def from_token_units(units: int, price_usd: float, decimals: int) -> float:
    return float(Decimal(int(units)) / (Decimal(10) ** decimals) * Decimal(str(price_usd)))


def apply_slippage(expected_out: int, slippage: float) -> int:
    floor = Decimal(int(expected_out)) * (Decimal(1) - Decimal(str(slippage)))
    return int(floor.to_integral_value(rounding=ROUND_DOWN))


class SwapPlanner:
    """
    Sorted-greedy surplus/deficit matcher shared by both rebalance policies.

    The policies differ only in who participates:
        threshold       assets flagged needs_rebalance
        strict_periodic every asset off target by more than usd_epsilon
    """

    def __init__(self, config: Optional[PlannerConfig] = None):
        self.config = config or PlannerConfig()

    def _participants(self, deviations: Sequence[DeviationResult], total_value_usd: float,
                      policy: RebalancePolicy) -> List[tuple]:
        eps = self.config.usd_epsilon
        selected = []
        for d in deviations:
            gap = total_value_usd * d.target_percentage - d.current_value_usd
            if abs(gap) <= eps:
                continue
            if policy is RebalancePolicy.THRESHOLD and not d.needs_rebalance:
                continue
            if d.price_usd <= 0:
                LOGGER.warning(f"{d.symbol} has no usable price, excluded from plan", extra={"symbol": d.symbol})
                continue
            selected.append((d, gap * self.config.damping_factor))
        return selected

    def plan(self, deviations: Sequence[DeviationResult], total_value_usd: float,
             policy: RebalancePolicy) -> List[SwapOperation]:
        """
        Build the swap list for one cycle, sorted by priority (largest imbalance first).

        Args:
            deviations: Output of the deviation calculator for this cycle.
            total_value_usd: Portfolio value the deviations were computed against.
            policy: Which assets participate.
        """
        if total_value_usd <= 0 or len(deviations) < 2:
            return []

        eps = self.config.usd_epsilon
        participants = self._participants(deviations, total_value_usd, policy)
        surplus = [_Leg(d, -gap, -gap) for d, gap in participants if gap < 0]
        deficit = [_Leg(d, gap, gap) for d, gap in participants if gap > 0]
        surplus.sort(key=lambda leg: (-leg.gap, leg.result.symbol))
        deficit.sort(key=lambda leg: (-leg.gap, leg.result.symbol))

        # Raw units still available per source asset
        available: Dict[str, int] = {leg.result.symbol: leg.result.current_balance_raw for leg in surplus}

        swaps: List[SwapOperation] = []
        i = j = 0
        while i < len(surplus) and j < len(deficit):
            src, dst = surplus[i], deficit[j]
            trade = min(src.remaining, dst.remaining)
            src.remaining -= trade
            dst.remaining -= trade

            swap = self._build_swap(src, dst, trade, available)
            if swap is not None:
                swaps.append(swap)

            if src.remaining <= eps:
                i += 1
            if dst.remaining <= eps:
                j += 1

        if j < len(deficit):
            unfilled = sum(leg.remaining for leg in deficit[j:])
            LOGGER.debug(f"Deficit of ${unfilled:.2f} left unfilled, no surplus remaining")

        swaps.sort(key=lambda s: s.priority, reverse=True)
        return swaps

    def _build_swap(self, src: _Leg, dst: _Leg, trade_usd: float,
                    available: Dict[str, int]) -> Optional[SwapOperation]:
        from_asset = src.result.asset
        to_asset = dst.result.asset
        src_price = src.result.price_usd
        dst_price = dst.result.price_usd

        tokens_in = to_token_units(trade_usd, src_price, from_asset.decimals)
        held = available.get(from_asset.symbol, 0)
        if tokens_in > held:
            tokens_in = held
            trade_usd = from_token_units(tokens_in, src_price, from_asset.decimals)

        if trade_usd < self.config.dust_floor_usd or tokens_in <= 0:
            LOGGER.debug(f"Skipping dust swap {from_asset.symbol} -> {to_asset.symbol} (${trade_usd:.4f})")
            return None

        available[from_asset.symbol] = held - tokens_in
        expected_out = to_token_units(trade_usd, dst_price, to_asset.decimals)
        return SwapOperation(
            from_asset=from_asset,
            to_asset=to_asset,
            amount_in_usd=trade_usd,
            amount_in_tokens=tokens_in,
            expected_amount_out=expected_out,
            min_amount_out=apply_slippage(expected_out, self.config.slippage_tolerance),
            priority=src.gap + dst.gap,
        )

    def build_plan(self, portfolio: Portfolio, deviations: Sequence[DeviationResult],
                   total_value_usd: float) -> RebalancePlan:
        swaps = self.plan(deviations, total_value_usd, portfolio.rebalance_policy)
        return RebalancePlan(
            portfolio_id=portfolio.id,
            policy=portfolio.rebalance_policy,
            total_value_usd=total_value_usd,
            deviations=list(deviations),
            swaps=swaps,
        )
