"""
Deviation Calculator.
Compares current vs. target allocation per asset from the persisted balances.
"""
from typing import Iterable, List

from openrebalance.domain.models import DeviationResult, RebalancePolicy
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Absorbs float noise so that 0.55 - 0.50 is not read as above a 0.05 threshold
THRESHOLD_EPSILON = 1e-9


def exceeds_threshold(deviation: float, threshold: float) -> bool:
    """Strictly-greater test against the tolerance."""
    return deviation > threshold + THRESHOLD_EPSILON


def max_deviation(deviations: Iterable[DeviationResult]) -> float:
    return max((d.deviation for d in deviations), default=0.0)


def requires_action(deviations: Iterable[DeviationResult], policy: RebalancePolicy,
                    usd_epsilon: float = 0.01) -> bool:
    """
    Whether any asset must trade under the policy.

    threshold: some asset is past the tolerance.
    strict_periodic: some asset is off target by more than usd_epsilon.
    """
    deviations = list(deviations)
    if policy is RebalancePolicy.THRESHOLD:
        return any(d.needs_rebalance for d in deviations)
    return any(abs(d.gap_usd) > usd_epsilon for d in deviations)


class DeviationCalculator:
    """
    Reads the balances persisted by the aggregator; never touches the chain.
    """

    def __init__(self, repository: PortfolioRepository):
        self.repository = repository

    def calculate_deviations(self, portfolio_id: str) -> List[DeviationResult]:
        portfolio = self.repository.require_portfolio(portfolio_id)
        total = portfolio.total_value_usd
        threshold = portfolio.rebalance_threshold

        results = []
        for allocation, asset in self.repository.get_allocations_with_assets(portfolio_id):
            current = allocation.current_percentage
            target = allocation.target_percentage
            deviation = abs(current - target)
            results.append(DeviationResult(
                asset=asset,
                target_percentage=target,
                current_percentage=current,
                deviation=deviation,
                needs_rebalance=exceeds_threshold(deviation, threshold),
                current_value_usd=allocation.current_value_usd,
                target_value_usd=total * target,
                price_usd=allocation.current_price_usd,
                current_balance_raw=allocation.balance_raw,
            ))

        flagged = [r.symbol for r in results if r.needs_rebalance]
        LOGGER.debug(f"{portfolio_id} - deviations computed, over threshold: {flagged or 'none'}")
        return results
