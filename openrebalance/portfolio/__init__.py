"""Portfolio state refresh."""
from .balances import AssetBalance, BalanceAggregator, BalanceSnapshot

__all__ = ["AssetBalance", "BalanceAggregator", "BalanceSnapshot"]
