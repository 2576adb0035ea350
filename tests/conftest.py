"""
Pytest Configuration and Fixtures
==================================
Shared fixtures and configuration for all tests.
"""
import pytest
from pathlib import Path
import sys

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from openrebalance.broker.paper_venue import PaperSwapVenue
from openrebalance.config.schemas import ExecutorConfig, PlannerConfig
from openrebalance.data.chain_reader import StaticChainReader
from openrebalance.data.oracle import StaticPriceOracle
from openrebalance.domain.models import Allocation, DeviationResult, Portfolio
from openrebalance.monitoring.orchestrator import RebalanceOrchestrator
from openrebalance.portfolio.balances import BalanceAggregator
from openrebalance.rebalancing.deviation import DeviationCalculator, exceeds_threshold
from openrebalance.rebalancing.planner import SwapPlanner, to_token_units
from openrebalance.services.asset_service import AssetService
from openrebalance.storage.audit_trail import AuditTrail
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.trading.confirmation import TransactionWaiter
from openrebalance.trading.swap_executor import SwapExecutor

WALLET = "0x" + "ab" * 20
PRICES = {"WBTC": 50000.0, "WETH": 2000.0, "USDC": 1.0}
TARGETS = {"WBTC": 0.5, "WETH": 0.3, "USDC": 0.2}


class FakeClock:
    """Monotonic clock advanced by the sleep function it hands out."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += max(seconds, 0.001)


@pytest.fixture
def repo():
    """In-memory DuckDB repository."""
    repository = PortfolioRepository(":memory:")
    yield repository
    repository.close()


@pytest.fixture
def assets(repo):
    """Default USDC/WETH/WBTC catalog keyed by symbol."""
    AssetService(repo).seed_default_assets()
    return {a.symbol: a for a in repo.list_assets()}


@pytest.fixture
def oracle() -> StaticPriceOracle:
    return StaticPriceOracle(PRICES)


@pytest.fixture
def chain() -> StaticChainReader:
    return StaticChainReader()


@pytest.fixture
def venue(chain, oracle, assets) -> PaperSwapVenue:
    return PaperSwapVenue(chain, oracle, assets.values())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def waiter(chain, clock) -> TransactionWaiter:
    return TransactionWaiter(chain, timeout_seconds=60, poll_interval_seconds=2, sleep=clock.sleep, clock=clock)


@pytest.fixture
def audit(repo) -> AuditTrail:
    return AuditTrail(repo)


@pytest.fixture
def make_portfolio(repo, assets):
    """Create a portfolio with allocations directly in the repository."""
    def _make(targets=None, policy="threshold", threshold=0.05, owner=WALLET, **kwargs):
        portfolio = Portfolio(owner_address=owner, name=kwargs.pop("name", "Core"),
                              rebalance_policy=policy, rebalance_threshold=threshold, **kwargs)
        repo.add_portfolio(portfolio)
        for symbol, target in (targets or TARGETS).items():
            asset = repo.get_asset_by_symbol(symbol)
            repo.add_allocation(Allocation(portfolio_id=portfolio.id, asset_id=asset.id,
                                           target_percentage=target))
        return portfolio
    return _make


@pytest.fixture
def fund(chain, assets):
    """Set wallet balances from USD values at PRICES."""
    def _fund(values, owner=WALLET):
        for symbol, usd in values.items():
            asset = assets[symbol]
            chain.set_balance(owner, asset.address, to_token_units(usd, PRICES[symbol], asset.decimals))
    return _fund


@pytest.fixture
def make_deviations(assets):
    """Build DeviationResults for a portfolio of known USD values."""
    def _make(values, targets=None, threshold=0.05, prices=None):
        targets = targets or TARGETS
        prices = prices or PRICES
        total = sum(values.values())
        results = []
        for symbol, target in targets.items():
            value = values[symbol]
            current = value / total if total > 0 else 0.0
            deviation = abs(current - target)
            results.append(DeviationResult(
                asset=assets[symbol],
                target_percentage=target,
                current_percentage=current,
                deviation=deviation,
                needs_rebalance=exceeds_threshold(deviation, threshold),
                current_value_usd=value,
                target_value_usd=total * target,
                price_usd=prices[symbol],
                current_balance_raw=to_token_units(value, prices[symbol], assets[symbol].decimals),
            ))
        return results, total
    return _make


@pytest.fixture
def planner() -> SwapPlanner:
    return SwapPlanner(PlannerConfig())


@pytest.fixture
def executor(venue, waiter, repo, audit) -> SwapExecutor:
    return SwapExecutor(venue, waiter, repo, ExecutorConfig(), audit)


@pytest.fixture
def orchestrator(repo, chain, oracle, planner, executor, audit) -> RebalanceOrchestrator:
    return RebalanceOrchestrator(
        repo,
        BalanceAggregator(repo, chain, oracle),
        DeviationCalculator(repo),
        planner,
        executor,
        audit=audit,
    )
