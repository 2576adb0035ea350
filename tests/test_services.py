"""Tests for asset and portfolio management services."""
import pytest

from openrebalance.config.schemas import SchedulerConfig
from openrebalance.domain.errors import (
    AllocationSumInvariantViolation,
    AssetNotFoundError,
    InactivePortfolioError,
    PortfolioNotFoundError,
)
from openrebalance.domain.models import JobStatus, RebalanceJob, RebalancePolicy, RebalanceType
from openrebalance.monitoring.scheduler import MonitoringScheduler
from openrebalance.services.asset_service import DEFAULT_ASSETS, AssetService
from openrebalance.services.portfolio_service import PortfolioService
from openrebalance.utils.validation import ValidationError

from conftest import TARGETS, WALLET


@pytest.fixture
def scheduler():
    return MonitoringScheduler(lambda portfolio_id: None)


@pytest.fixture
def service(repo, assets, scheduler):
    return PortfolioService(repo, scheduler)


class TestAssetService:

    def test_seed_is_idempotent(self, repo):
        service = AssetService(repo)
        assert len(service.seed_default_assets()) == len(DEFAULT_ASSETS)
        assert service.seed_default_assets() == []
        assert len(service.list_assets()) == len(DEFAULT_ASSETS)

    def test_price_feed_ids_skip_inactive(self, repo, assets):
        service = AssetService(repo)
        service.set_asset_active("WBTC", False)
        feeds = service.price_feed_ids()
        assert set(feeds) == {"USDC", "WETH"}
        assert all(f.startswith("0x") for f in feeds.values())

    def test_register_validates_address(self, repo):
        with pytest.raises(ValidationError):
            AssetService(repo).register_asset("BAD", "0x1234", 18)

    def test_unknown_asset(self, repo, assets):
        with pytest.raises(AssetNotFoundError):
            AssetService(repo).get_asset("DOGE")


class TestCreate:

    def test_create_with_defaults(self, service, scheduler):
        details = service.create_portfolio(WALLET, "Core", TARGETS)

        portfolio = details.portfolio
        assert portfolio.rebalance_policy is RebalancePolicy.THRESHOLD
        assert portfolio.rebalance_threshold == 0.05
        assert portfolio.monitoring_frequency == "1h"
        assert details.targets() == TARGETS
        job = scheduler.get_job(portfolio.id)
        assert job.interval_seconds == 3600
        assert job.owner_address == WALLET

    def test_defaults_come_from_config(self, repo, assets):
        config = SchedulerConfig(default_frequency="15m", default_threshold=0.1, default_policy="strict_periodic")
        details = PortfolioService(repo, scheduler_config=config).create_portfolio(WALLET, "Core", TARGETS)

        assert details.portfolio.rebalance_policy is RebalancePolicy.STRICT_PERIODIC
        assert details.portfolio.rebalance_threshold == 0.1
        assert details.portfolio.interval_seconds == 900

    @pytest.mark.parametrize("targets", [
        {"WBTC": 0.5, "WETH": 0.3, "USDC": 0.1},
        {"WBTC": 0.5, "WETH": 0.3, "USDC": 0.3},
        {},
    ])
    def test_allocation_sum_is_enforced(self, service, repo, targets):
        with pytest.raises(AllocationSumInvariantViolation):
            service.create_portfolio(WALLET, "Core", targets)
        assert repo.list_portfolios(WALLET) == []

    def test_sum_within_tolerance_is_accepted(self, service):
        details = service.create_portfolio(WALLET, "Core", {"WBTC": 0.5, "WETH": 0.3, "USDC": 0.2005})
        assert len(details.allocations) == 3

    def test_inactive_asset_is_rejected(self, service, repo):
        repo.set_asset_active("WBTC", False)
        with pytest.raises(AssetNotFoundError):
            service.create_portfolio(WALLET, "Core", TARGETS)
        assert repo.list_portfolios(WALLET) == []

    @pytest.mark.parametrize("kwargs", [
        {"rebalance_threshold": 0.0005},
        {"rebalance_threshold": 0.6},
        {"monitoring_frequency": "2h"},
        {"rebalance_policy": "sometimes"},
    ])
    def test_settings_are_validated(self, service, kwargs):
        with pytest.raises(ValidationError):
            service.create_portfolio(WALLET, "Core", TARGETS, **kwargs)

    def test_invalid_owner(self, service):
        with pytest.raises(ValidationError):
            service.create_portfolio("not-an-address", "Core", TARGETS)

    def test_symbols_are_case_insensitive(self, service):
        details = service.create_portfolio(WALLET, "Core", {"wbtc": 0.5, " Weth ": 0.3, "USDC": 0.2})
        assert details.targets() == TARGETS

    def test_same_asset_twice_writes_nothing(self, service, repo, scheduler):
        with pytest.raises(ValidationError):
            service.create_portfolio(WALLET, "Dup", {"WBTC": 0.5, "wbtc": 0.5})
        assert repo.list_portfolios(WALLET) == []
        assert scheduler.list_jobs() == []


class TestUpdate:

    def test_update_allocations_replaces_set(self, service):
        created = service.create_portfolio(WALLET, "Core", TARGETS)
        details = service.update_allocations(created.portfolio.id, {"WETH": 0.6, "USDC": 0.4})
        assert details.targets() == {"WETH": 0.6, "USDC": 0.4}

    def test_invalid_update_keeps_previous_allocations(self, service):
        created = service.create_portfolio(WALLET, "Core", TARGETS)
        with pytest.raises(AllocationSumInvariantViolation):
            service.update_allocations(created.portfolio.id, {"WETH": 0.6, "USDC": 0.3})
        assert service.get_portfolio_with_allocations(created.portfolio.id).targets() == TARGETS

    def test_update_with_same_asset_twice_keeps_previous_allocations(self, service):
        created = service.create_portfolio(WALLET, "Core", TARGETS)
        with pytest.raises(ValidationError):
            service.update_allocations(created.portfolio.id, {"WETH": 0.5, "weth": 0.5})
        assert service.get_portfolio_with_allocations(created.portfolio.id).targets() == TARGETS

    def test_update_settings_reschedules(self, service, scheduler):
        created = service.create_portfolio(WALLET, "Core", TARGETS)
        details = service.update_settings(created.portfolio.id, monitoring_frequency="5m",
                                          rebalance_threshold=0.02, rebalance_policy="strict_periodic")

        assert details.portfolio.rebalance_threshold == 0.02
        assert details.portfolio.rebalance_policy is RebalancePolicy.STRICT_PERIODIC
        assert scheduler.get_job(created.portfolio.id).interval_seconds == 300
        assert len(scheduler.list_jobs()) == 1

    def test_update_settings_validates(self, service):
        created = service.create_portfolio(WALLET, "Core", TARGETS)
        with pytest.raises(ValidationError):
            service.update_settings(created.portfolio.id, rebalance_threshold=0.9)
        assert service.get_portfolio_with_allocations(created.portfolio.id).portfolio.rebalance_threshold == 0.05


class TestLifecycle:

    def test_deactivate_is_soft(self, service, scheduler, repo):
        created = service.create_portfolio(WALLET, "Core", TARGETS)
        pid = created.portfolio.id
        repo.save_job(RebalanceJob(pid, RebalanceType.THRESHOLD, 0.06))

        service.deactivate_portfolio(pid)

        assert repo.get_portfolio(pid).is_active is False
        assert not scheduler.is_registered(pid)
        assert [j.status for j in repo.list_jobs(pid)] == [JobStatus.CANCELLED]
        assert service.list_user_portfolios(WALLET) == []
        with pytest.raises(InactivePortfolioError):
            service.update_allocations(pid, TARGETS)

    def test_enable_monitoring_after_fatal_disable(self, service, scheduler, repo):
        created = service.create_portfolio(WALLET, "Core", TARGETS)
        pid = created.portfolio.id
        repo.set_monitoring_enabled(pid, False)
        scheduler.disable(pid)

        details = service.enable_monitoring(pid)

        assert details.portfolio.monitoring_enabled is True
        assert scheduler.get_job(pid).enabled is True

    def test_delete_is_hard(self, service, scheduler, repo):
        created = service.create_portfolio(WALLET, "Core", TARGETS)
        pid = created.portfolio.id

        service.delete_portfolio(pid)

        assert repo.get_portfolio(pid) is None
        assert not scheduler.is_registered(pid)
        with pytest.raises(PortfolioNotFoundError):
            service.get_portfolio_with_allocations(pid)

    def test_list_user_portfolios(self, service):
        service.create_portfolio(WALLET, "A", TARGETS)
        service.create_portfolio(WALLET, "B", {"USDC": 1.0})
        service.create_portfolio("0x" + "cd" * 20, "C", TARGETS)

        names = sorted(d.portfolio.name for d in service.list_user_portfolios(WALLET.upper()))
        assert names == ["A", "B"]

    def test_details_to_dict(self, service):
        details = service.create_portfolio(WALLET, "Core", TARGETS)
        data = details.to_dict()
        assert data["rebalance_policy"] == "threshold"
        assert {a["symbol"] for a in data["allocations"]} == {"WBTC", "WETH", "USDC"}
