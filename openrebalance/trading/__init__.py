"""Swap execution and confirmation."""
from .confirmation import TransactionWaiter
from .swap_executor import SwapExecutor

__all__ = ["SwapExecutor", "TransactionWaiter"]
