"""Balance aggregation: live chain balances x oracle prices -> persisted allocation state."""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional

from openrebalance.data.chain_reader import ChainReader
from openrebalance.data.oracle import PriceOracle
from openrebalance.domain.errors import ChainReadError, PriceUnavailableError
from openrebalance.domain.models import utcnow
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class AssetBalance:
    symbol: str
    balance_raw: int
    balance_formatted: float
    price_usd: float
    value_usd: float
    current_percentage: float


@dataclass
class BalanceSnapshot:
    portfolio_id: str
    total_value_usd: float
    balances: List[AssetBalance] = field(default_factory=list)
    failed_symbols: List[str] = field(default_factory=list)

    def get(self, symbol: str) -> Optional[AssetBalance]:
        for balance in self.balances:
            if balance.symbol == symbol.upper():
                return balance
        return None


class BalanceAggregator:
    """
    Refreshes every allocation of a portfolio from the chain and the oracle.

    A failed balance read or a missing price degrades only that asset: its
    balance is recorded as "0" and its value as 0 USD for this cycle.
    """

    def __init__(self, repository: PortfolioRepository, chain: ChainReader, oracle: PriceOracle):
        self.repository = repository
        self.chain = chain
        self.oracle = oracle

    def _read(self, owner: str, asset) -> tuple:
        balance = self.chain.get_token_balance(owner, asset.address, asset.decimals)
        quote = self.oracle.get_price(asset.symbol)
        if quote is None or quote.price <= 0:
            raise PriceUnavailableError(asset.symbol)
        return balance, quote.price

    def refresh_balances(self, portfolio_id: str) -> BalanceSnapshot:
        portfolio = self.repository.require_portfolio(portfolio_id)
        pairs = self.repository.get_allocations_with_assets(portfolio_id)

        rows = []
        failed: List[str] = []
        for allocation, asset in pairs:
            try:
                balance, price = self._read(portfolio.owner_address, asset)
            except (ChainReadError, PriceUnavailableError) as e:
                LOGGER.warning(
                    f"{portfolio_id} - {asset.symbol} valued at 0 this cycle: {e}",
                    extra={"portfolio_id": portfolio_id, "symbol": asset.symbol, "reason": str(e)},
                )
                failed.append(asset.symbol)
                rows.append((allocation, asset, 0, 0.0, allocation.current_price_usd, 0.0))
                continue
            value = balance.balance_formatted * price
            rows.append((allocation, asset, balance.balance_raw, balance.balance_formatted, price, value))

        total = sum(r[5] for r in rows)
        balances = []
        for allocation, asset, raw, formatted, price, value in rows:
            pct = value / total if total > 0 else 0.0
            self.repository.update_allocation_state(
                allocation.id,
                current_balance=str(raw),
                current_value_usd=value,
                current_percentage=pct,
                current_price_usd=price,
            )
            balances.append(AssetBalance(asset.symbol, raw, formatted, price, value, pct))

        self.repository.record_observation(portfolio_id, total, utcnow())
        LOGGER.info(
            f"{portfolio_id} - balances refreshed: ${total:.2f} across {len(balances)} assets",
            extra={"portfolio_id": portfolio_id, "amount_usd": total},
        )
        return BalanceSnapshot(portfolio_id, total, balances, failed)
