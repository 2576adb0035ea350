"""Portfolio lifecycle: creation, allocation updates, settings and deactivation."""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from openrebalance.config.schemas import PlannerConfig, SchedulerConfig
from openrebalance.domain.errors import AssetNotFoundError, InactivePortfolioError
from openrebalance.domain.models import (
    Allocation,
    Asset,
    Portfolio,
    RebalancePolicy,
    check_allocation_sum,
)
from openrebalance.monitoring.scheduler import MonitoringScheduler
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.utils.logging import get_logger
from openrebalance.utils.validation import ValidationError

LOGGER = get_logger(__name__)


@dataclass
class PortfolioDetails:
    portfolio: Portfolio
    allocations: List[Tuple[Allocation, Asset]] = field(default_factory=list)

    def targets(self) -> Dict[str, float]:
        return {asset.symbol: alloc.target_percentage for alloc, asset in self.allocations}

    def to_dict(self) -> Dict[str, Any]:
        p = self.portfolio
        return {
            "id": p.id,
            "owner_address": p.owner_address,
            "name": p.name,
            "is_active": p.is_active,
            "monitoring_enabled": p.monitoring_enabled,
            "rebalance_policy": p.rebalance_policy.value,
            "rebalance_threshold": p.rebalance_threshold,
            "monitoring_frequency": p.monitoring_frequency,
            "total_value_usd": p.total_value_usd,
            "last_rebalance_at": p.last_rebalance_at,
            "last_observed_at": p.last_observed_at,
            "allocations": [
                {
                    "symbol": asset.symbol,
                    "target_percentage": alloc.target_percentage,
                    "current_percentage": alloc.current_percentage,
                    "current_value_usd": alloc.current_value_usd,
                    "current_balance": alloc.current_balance,
                }
                for alloc, asset in self.allocations
            ],
        }


class PortfolioService:
    """
    Usage:
        service = PortfolioService(repo, scheduler)
        details = service.create_portfolio(
            owner_address="0xabc...",
            name="Core",
            allocations={"WBTC": 0.5, "WETH": 0.3, "USDC": 0.2},
        )
    """

    def __init__(
        self,
        repository: PortfolioRepository,
        scheduler: Optional[MonitoringScheduler] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        planner_config: Optional[PlannerConfig] = None,
        signing_key_ref: Optional[str] = None,
    ):
        self.repository = repository
        self.scheduler = scheduler
        self.scheduler_config = scheduler_config or SchedulerConfig()
        self.tolerance = (planner_config or PlannerConfig()).allocation_sum_tolerance
        self.signing_key_ref = signing_key_ref or ""

    def _resolve_allocations(self, portfolio_id: str, targets: Mapping[str, float]) -> List[Allocation]:
        """Validate the target set as a whole before anything is written."""
        check_allocation_sum(targets.values(), self.tolerance)
        allocations = []
        seen = set()
        for symbol, target in targets.items():
            symbol = symbol.strip().upper()
            asset = self.repository.get_asset_by_symbol(symbol, active_only=True)
            if asset is None:
                raise AssetNotFoundError(symbol)
            if asset.id in seen:
                raise ValidationError(f"Asset {symbol} appears more than once in the target set")
            seen.add(asset.id)
            allocations.append(Allocation(portfolio_id=portfolio_id, asset_id=asset.id,
                                          target_percentage=float(target)))
        return allocations

    def _schedule(self, portfolio: Portfolio) -> None:
        if self.scheduler is None or not portfolio.monitoring_enabled:
            return
        try:
            self.scheduler.register(portfolio.id, portfolio.interval_seconds, portfolio.owner_address)
        except Exception as e:
            # The portfolio stays valid; an operator can reschedule it later
            LOGGER.error(f"{portfolio.id} - failed to schedule monitoring: {e}",
                         extra={"portfolio_id": portfolio.id})

    def create_portfolio(
        self,
        owner_address: str,
        name: str,
        allocations: Mapping[str, float],
        rebalance_policy: Optional[str] = None,
        rebalance_threshold: Optional[float] = None,
        monitoring_frequency: Optional[str] = None,
        signing_key_ref: Optional[str] = None,
    ) -> PortfolioDetails:
        portfolio = Portfolio(
            owner_address=owner_address,
            name=name,
            rebalance_policy=rebalance_policy or self.scheduler_config.default_policy,
            rebalance_threshold=(rebalance_threshold if rebalance_threshold is not None
                                 else self.scheduler_config.default_threshold),
            monitoring_frequency=monitoring_frequency or self.scheduler_config.default_frequency,
            signing_key_ref=signing_key_ref or self.signing_key_ref,
        )
        rows = self._resolve_allocations(portfolio.id, allocations)
        with self.repository.transaction():
            self.repository.add_portfolio(portfolio)
            for allocation in rows:
                self.repository.add_allocation(allocation)
        LOGGER.info(f"Created portfolio {portfolio.name} for {portfolio.owner_address}",
                    extra={"portfolio_id": portfolio.id, "policy": portfolio.rebalance_policy.value})
        self._schedule(portfolio)
        return self.get_portfolio_with_allocations(portfolio.id)

    def get_portfolio_with_allocations(self, portfolio_id: str) -> PortfolioDetails:
        portfolio = self.repository.require_portfolio(portfolio_id)
        return PortfolioDetails(portfolio, self.repository.get_allocations_with_assets(portfolio_id))

    def list_user_portfolios(self, owner_address: str) -> List[PortfolioDetails]:
        return [
            self.get_portfolio_with_allocations(p.id)
            for p in self.repository.list_portfolios(owner_address=owner_address, active_only=True)
        ]

    def update_allocations(self, portfolio_id: str, allocations: Mapping[str, float]) -> PortfolioDetails:
        portfolio = self.repository.require_portfolio(portfolio_id)
        if not portfolio.is_active:
            raise InactivePortfolioError(portfolio_id)
        rows = self._resolve_allocations(portfolio_id, allocations)
        self.repository.replace_allocations(portfolio_id, rows)
        LOGGER.info(f"Updated allocations for portfolio {portfolio_id}", extra={"portfolio_id": portfolio_id})
        return self.get_portfolio_with_allocations(portfolio_id)

    def update_settings(
        self,
        portfolio_id: str,
        rebalance_threshold: Optional[float] = None,
        monitoring_frequency: Optional[str] = None,
        rebalance_policy: Optional[str] = None,
        name: Optional[str] = None,
    ) -> PortfolioDetails:
        current = self.repository.require_portfolio(portfolio_id)
        # Rebuild through the constructor so every field is validated again
        updated = Portfolio(
            id=current.id,
            owner_address=current.owner_address,
            name=name if name is not None else current.name,
            rebalance_policy=rebalance_policy or current.rebalance_policy,
            rebalance_threshold=(rebalance_threshold if rebalance_threshold is not None
                                 else current.rebalance_threshold),
            monitoring_frequency=monitoring_frequency or current.monitoring_frequency,
            signing_key_ref=current.signing_key_ref,
            is_active=current.is_active,
            monitoring_enabled=current.monitoring_enabled,
            total_value_usd=current.total_value_usd,
            last_rebalance_at=current.last_rebalance_at,
            last_observed_at=current.last_observed_at,
            created_at=current.created_at,
        )
        self.repository.save_portfolio(updated)
        if updated.is_active and updated.monitoring_frequency != current.monitoring_frequency:
            self._schedule(updated)
        return self.get_portfolio_with_allocations(portfolio_id)

    def deactivate_portfolio(self, portfolio_id: str) -> None:
        """Soft delete: the portfolio and its history are kept, monitoring stops."""
        portfolio = self.repository.require_portfolio(portfolio_id)
        portfolio.is_active = False
        self.repository.save_portfolio(portfolio)
        if self.scheduler is not None:
            self.scheduler.cancel(portfolio_id)
        cancelled = self.repository.cancel_pending_jobs(portfolio_id)
        LOGGER.info(f"Deactivated portfolio {portfolio_id} ({cancelled} pending job(s) cancelled)",
                    extra={"portfolio_id": portfolio_id})

    def enable_monitoring(self, portfolio_id: str) -> PortfolioDetails:
        """Operator re-enable after monitoring was disabled by a fatal error."""
        portfolio = self.repository.require_portfolio(portfolio_id)
        if not portfolio.is_active:
            raise InactivePortfolioError(portfolio_id)
        self.repository.set_monitoring_enabled(portfolio_id, True)
        portfolio.monitoring_enabled = True
        if self.scheduler is not None and self.scheduler.is_registered(portfolio_id):
            self.scheduler.enable(portfolio_id)
        else:
            self._schedule(portfolio)
        LOGGER.info(f"Monitoring re-enabled for portfolio {portfolio_id}", extra={"portfolio_id": portfolio_id})
        return self.get_portfolio_with_allocations(portfolio_id)

    def delete_portfolio(self, portfolio_id: str) -> None:
        """Hard delete; allocations go with the portfolio."""
        if self.scheduler is not None:
            self.scheduler.cancel(portfolio_id)
        self.repository.delete_portfolio(portfolio_id)
        LOGGER.info(f"Deleted portfolio {portfolio_id}", extra={"portfolio_id": portfolio_id})
