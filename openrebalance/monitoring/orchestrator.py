"""
Rebalance Orchestrator.

One monitoring cycle per scheduled tick:

    IDLE -> OBSERVING -> NO_ACTION_NEEDED
                      -> PLANNING -> EXECUTING -> COMPLETED | FAILED
    IDLE -> SKIPPED  (missing, inactive or monitoring-disabled portfolio)

A failed cycle is retried by the next tick from live balances. A failure
matching a fatal class disables monitoring and raises FatalResourceError.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from openrebalance.config.schemas import PlannerConfig
from openrebalance.domain.errors import FatalResourceError, SwapExecutionError
from openrebalance.domain.models import (
    RebalanceJob,
    RebalancePlan,
    RebalanceType,
    utcnow,
)
from openrebalance.portfolio.balances import BalanceAggregator
from openrebalance.rebalancing.deviation import DeviationCalculator, max_deviation, requires_action
from openrebalance.rebalancing.planner import SwapPlanner
from openrebalance.risk.fatal_errors import is_fatal_error
from openrebalance.storage.audit_trail import AuditTrail
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.trading.swap_executor import SwapExecutor
from openrebalance.utils.logging import CycleLogger, get_logger

LOGGER = get_logger(__name__)


class CycleState(Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    NO_ACTION_NEEDED = "no_action_needed"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = {CycleState.NO_ACTION_NEEDED, CycleState.COMPLETED, CycleState.FAILED, CycleState.SKIPPED}


@dataclass
class CycleResult:
    portfolio_id: str
    state: CycleState = CycleState.IDLE
    plan: Optional[RebalancePlan] = None
    tx_hashes: List[str] = field(default_factory=list)
    error: Optional[str] = None
    job_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    transitions: List[CycleState] = field(default_factory=list)

    @property
    def swap_count(self) -> int:
        return len(self.plan.swaps) if self.plan else 0


class RebalanceOrchestrator:
    """
    Ties aggregator, calculator, planner and executor into one cycle.

    Usage:
        orchestrator = RebalanceOrchestrator(repo, aggregator, calculator, planner, executor)
        result = orchestrator.run_monitoring_cycle(portfolio_id)

    `disable_hook` is called with the portfolio id when a fatal error stops
    monitoring; the scheduler wires its own disable() here.
    """

    def __init__(
        self,
        repository: PortfolioRepository,
        aggregator: BalanceAggregator,
        calculator: DeviationCalculator,
        planner: SwapPlanner,
        executor: SwapExecutor,
        audit: Optional[AuditTrail] = None,
        planner_config: Optional[PlannerConfig] = None,
        disable_hook: Optional[Callable[[str], None]] = None,
    ):
        self.repository = repository
        self.aggregator = aggregator
        self.calculator = calculator
        self.planner = planner
        self.executor = executor
        self.audit = audit
        self.planner_config = planner_config or planner.config
        self.disable_hook = disable_hook

    def run_monitoring_cycle(self, portfolio_id: str,
                             rebalance_type: Optional[RebalanceType] = None) -> CycleResult:
        """Scheduler entry point. Runs to completion; raises only FatalResourceError."""
        result = CycleResult(portfolio_id=portfolio_id)
        portfolio = self.repository.get_portfolio(portfolio_id)
        policy = portfolio.rebalance_policy.value if portfolio else ""

        with CycleLogger(LOGGER, portfolio_id, policy) as cycle:
            def move(state: CycleState, reason: str = "") -> None:
                result.state = state
                result.transitions.append(state)
                cycle.log_transition(state.value, reason)
                if self.audit is not None:
                    self.audit.log_transition(portfolio_id, state.value, reason)
                if state in TERMINAL_STATES:
                    result.finished_at = utcnow()

            if portfolio is None:
                move(CycleState.SKIPPED, "portfolio not found")
                return result
            if not portfolio.is_active:
                move(CycleState.SKIPPED, "portfolio inactive")
                return result
            if not portfolio.monitoring_enabled:
                move(CycleState.SKIPPED, "monitoring disabled")
                return result

            if self.audit is not None:
                self.audit.log_cycle_start(portfolio_id, policy)
            move(CycleState.OBSERVING)
            snapshot = self.aggregator.refresh_balances(portfolio_id)
            deviations = self.calculator.calculate_deviations(portfolio_id)
            # Assets that could not be read are not traded this cycle
            tradable = [d for d in deviations if d.symbol not in snapshot.failed_symbols]
            worst = max_deviation(deviations)

            if not requires_action(tradable, portfolio.rebalance_policy, self.planner_config.usd_epsilon):
                move(CycleState.NO_ACTION_NEEDED, f"max deviation {worst:.4f}")
                return result

            move(CycleState.PLANNING, f"max deviation {worst:.4f}")
            portfolio = self.repository.require_portfolio(portfolio_id)
            plan = self.planner.build_plan(portfolio, tradable, snapshot.total_value_usd)
            result.plan = plan
            if self.audit is not None:
                self.audit.log_plan(portfolio_id, [s.to_record().to_dict() for s in plan.swaps], worst)
            if not plan.swaps:
                move(CycleState.NO_ACTION_NEEDED, "no swap above the dust floor")
                return result
            swaps = self.executor.prepare(plan.swaps, portfolio)
            if not swaps:
                move(CycleState.NO_ACTION_NEEDED, "no executable swap")
                return result

            move(CycleState.EXECUTING, f"{len(swaps)} swap(s), ${sum(s.amount_in_usd for s in swaps):.2f}")
            job = RebalanceJob(
                portfolio_id=portfolio_id,
                rebalance_type=rebalance_type or RebalanceType.for_policy(portfolio.rebalance_policy),
                deviation_detected=worst,
            )
            result.job_id = job.id
            try:
                result.tx_hashes = self.executor.execute(
                    swaps, portfolio,
                    rebalance_type=job.rebalance_type, deviation_detected=worst, job=job,
                )
            except SwapExecutionError as e:
                result.tx_hashes = list(e.tx_hashes)
                result.error = str(e)
                move(CycleState.FAILED, e.reason)
                if is_fatal_error(e.reason):
                    self._disable_monitoring(portfolio_id, e.reason)
                    raise FatalResourceError(portfolio_id, e.reason) from e
                return result

            for index, swap in enumerate(swaps[:len(result.tx_hashes)], start=1):
                cycle.log_swap(index, swap.describe(), swap.amount_in_usd, result.tx_hashes[index - 1])
            self.aggregator.refresh_balances(portfolio_id)
            self.repository.mark_rebalanced(portfolio_id)
            move(CycleState.COMPLETED, f"{len(result.tx_hashes)} swap(s) confirmed")
            return result

    def trigger_manual_rebalance(self, portfolio_id: str) -> CycleResult:
        """Run a cycle now, tagging any resulting job as manual."""
        return self.run_monitoring_cycle(portfolio_id, rebalance_type=RebalanceType.MANUAL)

    def _disable_monitoring(self, portfolio_id: str, reason: str) -> None:
        self.repository.set_monitoring_enabled(portfolio_id, False)
        if self.audit is not None:
            self.audit.log_monitoring_disabled(portfolio_id, reason)
        if self.disable_hook is not None:
            self.disable_hook(portfolio_id)
        LOGGER.error(
            f"{portfolio_id} - monitoring disabled: {reason}",
            extra={"portfolio_id": portfolio_id, "reason": reason, "event_type": "monitoring_disabled"},
        )
