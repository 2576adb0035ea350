"""Bounded wait for a transaction receipt."""
from __future__ import annotations
import time
from typing import Any, Callable, Dict, Optional

from openrebalance.data.chain_reader import ChainReader
from openrebalance.domain.errors import ChainReadError, ConfirmationTimeoutError, SwapExecutionError
from openrebalance.utils.logging import get_logger

LOGGER = get_logger(__name__)


class TransactionWaiter:
    """
    Polls the chain for a receipt until it is mined or the timeout elapses.

    Usage:
        waiter = TransactionWaiter(chain, timeout_seconds=60, poll_interval_seconds=2)
        receipt = waiter.wait(tx_hash)   # raises on revert or timeout
    """

    def __init__(
        self,
        chain: ChainReader,
        timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.chain = chain
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock

    def wait(self, tx_hash: str) -> Dict[str, Any]:
        """
        Returns:
            The mined receipt (status 1).

        Raises:
            SwapExecutionError: The transaction was mined but reverted.
            ConfirmationTimeoutError: No receipt within timeout_seconds.
        """
        deadline = self._clock() + self.timeout_seconds
        while True:
            receipt = self._poll(tx_hash)
            if receipt is not None:
                if int(receipt.get("status", 0)) == 1:
                    return receipt
                raise SwapExecutionError(f"Transaction {tx_hash} reverted")
            if self._clock() >= deadline:
                raise ConfirmationTimeoutError(tx_hash, self.timeout_seconds)
            self._sleep(self.poll_interval_seconds)

    def _poll(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return self.chain.get_transaction_receipt(tx_hash)
        except ChainReadError as e:
            # Transient read failures count against the deadline
            LOGGER.warning(f"Receipt poll failed for {tx_hash}: {e}", extra={"tx_hash": tx_hash})
            return None
