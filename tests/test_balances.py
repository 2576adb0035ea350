"""Tests for balance aggregation."""
import pytest

from openrebalance.domain.errors import PortfolioNotFoundError
from openrebalance.portfolio.balances import BalanceAggregator

from conftest import WALLET


def test_refresh_persists_values_and_shares(repo, chain, oracle, make_portfolio, fund):
    portfolio = make_portfolio()
    fund({"WBTC": 560, "WETH": 300, "USDC": 140})

    snapshot = BalanceAggregator(repo, chain, oracle).refresh_balances(portfolio.id)

    assert snapshot.total_value_usd == pytest.approx(1000.0)
    assert snapshot.failed_symbols == []
    assert snapshot.get("WBTC").balance_raw == 1_120_000
    assert snapshot.get("WBTC").current_percentage == pytest.approx(0.56)

    by_symbol = {a.symbol: al for al, a in repo.get_allocations_with_assets(portfolio.id)}
    assert by_symbol["WBTC"].current_balance == "1120000"
    assert by_symbol["WETH"].current_value_usd == pytest.approx(300.0)
    assert by_symbol["USDC"].current_percentage == pytest.approx(0.14)
    assert by_symbol["USDC"].current_price_usd == 1.0

    stored = repo.get_portfolio(portfolio.id)
    assert stored.total_value_usd == pytest.approx(1000.0)
    assert stored.last_observed_at is not None
    assert stored.last_rebalance_at is None


def test_empty_wallet_has_zero_shares(repo, chain, oracle, make_portfolio):
    portfolio = make_portfolio()
    snapshot = BalanceAggregator(repo, chain, oracle).refresh_balances(portfolio.id)

    assert snapshot.total_value_usd == 0.0
    assert all(b.current_percentage == 0.0 for b in snapshot.balances)


def test_failed_read_degrades_only_that_asset(repo, chain, oracle, assets, make_portfolio, fund):
    portfolio = make_portfolio()
    fund({"WBTC": 500, "WETH": 300, "USDC": 200})
    chain.fail_reads_for(assets["WETH"].address)

    snapshot = BalanceAggregator(repo, chain, oracle).refresh_balances(portfolio.id)

    assert snapshot.failed_symbols == ["WETH"]
    assert snapshot.total_value_usd == pytest.approx(700.0)
    assert snapshot.get("WETH").value_usd == 0.0
    weth = next(al for al, a in repo.get_allocations_with_assets(portfolio.id) if a.symbol == "WETH")
    assert weth.current_balance == "0"


def test_missing_price_degrades_only_that_asset(repo, chain, oracle, make_portfolio, fund):
    portfolio = make_portfolio()
    fund({"WBTC": 500, "WETH": 300, "USDC": 200})
    oracle.remove_price("WBTC")

    snapshot = BalanceAggregator(repo, chain, oracle).refresh_balances(portfolio.id)

    assert snapshot.failed_symbols == ["WBTC"]
    assert snapshot.total_value_usd == pytest.approx(500.0)
    assert snapshot.get("USDC").current_percentage == pytest.approx(0.4)


def test_native_asset_reads_zero_address(repo, chain, oracle, assets, make_portfolio):
    from openrebalance.services.asset_service import AssetService

    AssetService(repo).register_asset("ETH", "0x" + "0" * 40, 18)
    oracle.set_price("ETH", 2000.0)
    portfolio = make_portfolio(targets={"ETH": 0.5, "USDC": 0.5})
    chain.set_balance(WALLET, "0x" + "0" * 40, 10 ** 17)
    chain.set_balance(WALLET, assets["USDC"].address, 200 * 10 ** 6)

    snapshot = BalanceAggregator(repo, chain, oracle).refresh_balances(portfolio.id)

    assert snapshot.get("ETH").value_usd == pytest.approx(200.0)
    assert snapshot.total_value_usd == pytest.approx(400.0)


def test_missing_portfolio_raises(repo, chain, oracle):
    with pytest.raises(PortfolioNotFoundError):
        BalanceAggregator(repo, chain, oracle).refresh_balances("missing")
