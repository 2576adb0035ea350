"""Exception taxonomy for the rebalancing engine.

Per-asset read failures (ChainReadError, PriceUnavailableError) are handled
locally by the balance aggregator. Execution failures propagate to the
orchestrator, which decides between a retryable failure and a
FatalResourceError.
"""
from __future__ import annotations
from typing import Any, List, Optional


class RebalanceError(Exception):
    """Base class for all rebalancing errors."""


class PortfolioNotFoundError(RebalanceError):
    def __init__(self, portfolio_id: str):
        super().__init__(f"Portfolio {portfolio_id} not found")
        self.portfolio_id = portfolio_id


class InactivePortfolioError(RebalanceError):
    def __init__(self, portfolio_id: str):
        super().__init__(f"Portfolio {portfolio_id} is inactive")
        self.portfolio_id = portfolio_id


class AssetNotFoundError(RebalanceError):
    def __init__(self, symbol: str):
        super().__init__(f"Asset {symbol} not found or inactive")
        self.symbol = symbol


class ChainReadError(RebalanceError):
    """A balance or receipt read against the chain failed."""

    def __init__(self, message: str, symbol: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol


class PriceUnavailableError(RebalanceError):
    def __init__(self, symbol: str):
        super().__init__(f"No price available for {symbol}")
        self.symbol = symbol


class InvalidSwap(RebalanceError):
    """A swap that must not be dispatched (dust amount, same asset, bad amounts)."""


class SwapExecutionError(RebalanceError):
    """An approval or swap failed or timed out.

    Attributes:
        index: 1-based position of the failing swap in the executed queue.
        reason: Failure reason reported by the venue or the confirmation wait.
        tx_hashes: Hashes of swaps confirmed before the failure.
        swap: The failing SwapOperation, when known.
    """

    def __init__(
        self,
        reason: str,
        index: int = 0,
        tx_hashes: Optional[List[str]] = None,
        swap: Any = None,
    ):
        message = f"Rebalancing stopped at swap {index}: {reason}" if index else reason
        super().__init__(message)
        self.reason = reason
        self.index = index
        self.tx_hashes = list(tx_hashes or [])
        self.swap = swap


class ConfirmationTimeoutError(SwapExecutionError):
    def __init__(self, tx_hash: str, timeout_seconds: float):
        super().__init__(f"Transaction {tx_hash} not confirmed within {timeout_seconds:.0f}s")
        self.tx_hash = tx_hash
        self.timeout_seconds = timeout_seconds


class FatalResourceError(RebalanceError):
    """Unrecoverable resource failure (balance or gas); monitoring is disabled."""

    def __init__(self, portfolio_id: str, reason: str):
        super().__init__(f"Portfolio monitoring disabled due to fatal error: {reason}")
        self.portfolio_id = portfolio_id
        self.reason = reason


class AllocationSumInvariantViolation(RebalanceError):
    def __init__(self, total: float, tolerance: float):
        super().__init__(
            f"Total allocation percentage must equal 100% (got {total * 100:.3f}%, tolerance {tolerance * 100:.1f}%)"
        )
        self.total = total
        self.tolerance = tolerance


class InvalidJobTransition(RebalanceError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move rebalance job from {current} to {requested}")
        self.current = current
        self.requested = requested
