"""Swap Execution.

Dispatches a planned swap list through a swap venue:
- Validation (dust, same asset) before anything is submitted
- Approval of the source token when the allowance is missing
- Quote, precheck and execute of the swap
- Confirmation wait before the next swap is submitted
- Abort on the first failure; the RebalanceJob records the outcome either way
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence

from openrebalance.broker.abstract import SwapVenue
from openrebalance.config.schemas import ExecutorConfig
from openrebalance.domain.errors import InvalidSwap, SwapExecutionError
from openrebalance.domain.models import (
    JobStatus,
    Portfolio,
    RebalanceJob,
    RebalanceType,
    SwapOperation,
)
from openrebalance.storage.audit_trail import AuditTrail
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.trading.confirmation import TransactionWaiter
from openrebalance.utils.logging import get_logger

LOGGER = get_logger(__name__)


class SwapExecutor:
    """
    Strictly sequential swap execution.

    Swaps are never submitted concurrently: a later swap may spend the
    proceeds of an earlier one, so each must confirm before the next starts.
    """

    def __init__(
        self,
        venue: SwapVenue,
        waiter: TransactionWaiter,
        repository: PortfolioRepository,
        config: Optional[ExecutorConfig] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.venue = venue
        self.waiter = waiter
        self.repository = repository
        self.config = config or ExecutorConfig()
        self.audit = audit

    def validate_swap(self, swap: SwapOperation) -> None:
        if swap.amount_in_usd < self.config.dust_floor_usd:
            raise InvalidSwap(
                f"Swap amount ${swap.amount_in_usd:.4f} is below the ${self.config.dust_floor_usd} dust floor"
            )
        if swap.from_asset.symbol == swap.to_asset.symbol or swap.from_asset.address == swap.to_asset.address:
            raise InvalidSwap(f"Cannot swap {swap.from_asset.symbol} to itself")
        if swap.amount_in_tokens <= 0:
            raise InvalidSwap(f"Swap {swap.describe()} moves zero token units")

    def prepare(self, swaps: Sequence[SwapOperation], portfolio: Portfolio) -> List[SwapOperation]:
        """Drop invalid swaps and order the rest by descending priority."""
        queue: List[SwapOperation] = []
        for swap in sorted(swaps, key=lambda s: s.priority, reverse=True):
            try:
                self.validate_swap(swap)
            except InvalidSwap as e:
                LOGGER.warning(f"{portfolio.id} - dropping swap {swap.describe()}: {e}",
                               extra={"portfolio_id": portfolio.id, "reason": str(e)})
                continue
            queue.append(swap)
        return queue

    def execute(
        self,
        swaps: Sequence[SwapOperation],
        portfolio: Portfolio,
        *,
        rebalance_type: Optional[RebalanceType] = None,
        deviation_detected: float = 0.0,
        job: Optional[RebalanceJob] = None,
    ) -> List[str]:
        """
        Execute swaps in descending priority.

        Args:
            swaps: Planned swaps.
            portfolio: Owner of the wallet the swaps spend from.
            rebalance_type: Tag recorded on the job (defaults to the portfolio policy).
            deviation_detected: Max deviation that triggered the rebalance.
            job: Pending job to record into; a new one is created when omitted.

        Returns:
            Confirmed transaction hashes, in execution order. Empty, with no
            job recorded, when no swap passes validation.

        Raises:
            SwapExecutionError: First failure, with its 1-based index and the
                hashes confirmed before it.
        """
        queue = self.prepare(swaps, portfolio)
        if not queue:
            LOGGER.info(f"{portfolio.id} - no executable swap, nothing submitted",
                        extra={"portfolio_id": portfolio.id})
            return []

        if job is None:
            job = RebalanceJob(
                portfolio_id=portfolio.id,
                rebalance_type=rebalance_type or RebalanceType.for_policy(portfolio.rebalance_policy),
                deviation_detected=deviation_detected,
            )
        job.swaps = [s.to_record() for s in queue]
        self.repository.save_job(job)
        job.transition(JobStatus.EXECUTING)
        self.repository.save_job(job)

        context = {
            "delegator": portfolio.owner_address,
            "signing_key_ref": portfolio.signing_key_ref,
        }
        tx_hashes: List[str] = []
        for index, swap in enumerate(queue, start=1):
            LOGGER.info(
                f"{portfolio.id} - swap {index}/{len(queue)} {swap.describe()} ${swap.amount_in_usd:.2f}",
                extra={"portfolio_id": portfolio.id, "job_id": job.id, "swap_index": index,
                       "amount_usd": swap.amount_in_usd},
            )
            try:
                tx_hash = self._execute_one(swap, context, job)
            except Exception as e:
                reason = e.reason if isinstance(e, SwapExecutionError) else str(e)
                error = SwapExecutionError(reason, index=index, tx_hashes=tx_hashes, swap=swap)
                job.tx_hashes = list(tx_hashes)
                job.transition(JobStatus.FAILED, error_message=str(error))
                self.repository.save_job(job)
                if self.audit is not None:
                    self.audit.log_swap_failed(portfolio.id, job.id, str(error),
                                               details={"swap": swap.to_record().to_dict()})
                LOGGER.error(str(error), extra={"portfolio_id": portfolio.id, "job_id": job.id,
                                                "swap_index": index, "reason": reason})
                raise error from e

            tx_hashes.append(tx_hash)
            job.tx_hashes = list(tx_hashes)
            self.repository.save_job(job)

        job.transition(JobStatus.COMPLETED)
        self.repository.save_job(job)
        LOGGER.info(f"{portfolio.id} - {len(tx_hashes)} swap(s) confirmed",
                    extra={"portfolio_id": portfolio.id, "job_id": job.id})
        return tx_hashes

    def _ensure_approval(self, swap: SwapOperation, context: Dict[str, Any]) -> None:
        params = {
            "token_address": swap.from_asset.address,
            "spender": self.venue.spender_address,
            "amount": str(swap.amount_in_tokens * self.config.approval_multiplier),
            "chain_id": swap.from_asset.chain_id,
        }
        check = self.venue.approval_client.precheck(params, context)
        if not check.success:
            raise SwapExecutionError(f"Approval precheck failed: {check.error}")
        if check.result.get("already_approved"):
            return
        response = self.venue.approval_client.execute(params, context)
        if not response.success or not response.tx_hash:
            raise SwapExecutionError(f"Approval failed: {response.error or 'no transaction hash'}")
        LOGGER.info(f"Approval submitted for {swap.from_asset.symbol}: {response.tx_hash}",
                    extra={"symbol": swap.from_asset.symbol, "tx_hash": response.tx_hash})
        self.waiter.wait(response.tx_hash)

    def _execute_one(self, swap: SwapOperation, context: Dict[str, Any], job: RebalanceJob) -> str:
        if not swap.from_asset.is_native:
            self._ensure_approval(swap, context)

        quote = self.venue.get_quote(
            swap.from_asset.address, swap.to_asset.address, swap.amount_in_tokens, context["delegator"]
        )
        params = {
            "token_in": swap.from_asset.address,
            "token_out": swap.to_asset.address,
            "amount_in": str(swap.amount_in_tokens),
            "amount_out_min": str(swap.min_amount_out),
            "recipient": context["delegator"],
            "chain_id": swap.from_asset.chain_id,
            "quote": dict(quote.route, amount_out_raw=quote.amount_out_raw),
        }
        check = self.venue.swap_client.precheck(params, context)
        if not check.success:
            raise SwapExecutionError(check.error or "Swap precheck failed")
        response = self.venue.swap_client.execute(params, context)
        if not response.success or not response.tx_hash:
            raise SwapExecutionError(response.error or "Swap failed without a transaction hash")

        tx_hash = response.tx_hash
        if self.audit is not None:
            self.audit.log_swap_submitted(job.portfolio_id, job.id, tx_hash, swap.amount_in_usd, swap.describe())
        self.waiter.wait(tx_hash)
        if self.audit is not None:
            self.audit.log_swap_confirmed(job.portfolio_id, job.id, tx_hash, swap.amount_in_usd, swap.describe())
        return tx_hash
