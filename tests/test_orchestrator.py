"""Tests for the monitoring cycle state machine."""
import pytest

from openrebalance.config.schemas import ExecutorConfig
from openrebalance.domain.errors import FatalResourceError
from openrebalance.domain.models import JobStatus, RebalanceType
from openrebalance.monitoring.orchestrator import CycleState
from openrebalance.storage.audit_trail import EventType

OBSERVING = CycleState.OBSERVING
PLANNING = CycleState.PLANNING
EXECUTING = CycleState.EXECUTING


def _values(repo, portfolio_id):
    return {a.symbol: al.current_value_usd for al, a in repo.get_allocations_with_assets(portfolio_id)}


class TestSkipped:

    def test_missing_portfolio(self, orchestrator):
        result = orchestrator.run_monitoring_cycle("missing")
        assert result.state is CycleState.SKIPPED
        assert result.finished_at is not None

    def test_inactive_portfolio(self, orchestrator, make_portfolio, fund, venue):
        fund({"WBTC": 700, "WETH": 200, "USDC": 100})
        portfolio = make_portfolio(is_active=False)
        assert orchestrator.run_monitoring_cycle(portfolio.id).state is CycleState.SKIPPED
        assert venue.swap_calls == 0

    def test_monitoring_disabled(self, orchestrator, make_portfolio, repo):
        portfolio = make_portfolio()
        repo.set_monitoring_enabled(portfolio.id, False)
        result = orchestrator.run_monitoring_cycle(portfolio.id)
        assert result.transitions == [CycleState.SKIPPED]


def test_balanced_portfolio_needs_no_action(orchestrator, make_portfolio, fund, venue, repo):
    portfolio = make_portfolio(policy="strict_periodic")
    fund({"WBTC": 500, "WETH": 300, "USDC": 200})

    result = orchestrator.run_monitoring_cycle(portfolio.id)

    assert result.transitions == [OBSERVING, CycleState.NO_ACTION_NEEDED]
    assert result.plan is None
    assert venue.swap_calls == 0
    assert repo.list_jobs(portfolio.id) == []
    assert repo.get_portfolio(portfolio.id).last_observed_at is not None


def test_drift_within_threshold_needs_no_action(orchestrator, make_portfolio, fund, venue):
    portfolio = make_portfolio(threshold=0.05)
    fund({"WBTC": 550, "WETH": 300, "USDC": 150})

    result = orchestrator.run_monitoring_cycle(portfolio.id)

    assert result.state is CycleState.NO_ACTION_NEEDED
    assert venue.swap_calls == 0


def test_breach_is_rebalanced_and_recorded(orchestrator, make_portfolio, fund, repo, audit):
    portfolio = make_portfolio(threshold=0.05)
    fund({"WBTC": 560, "WETH": 300, "USDC": 140})

    result = orchestrator.run_monitoring_cycle(portfolio.id)

    assert result.transitions == [OBSERVING, PLANNING, EXECUTING, CycleState.COMPLETED]
    assert result.swap_count == 1
    assert result.plan.swaps[0].describe() == "WBTC -> USDC"
    assert result.plan.swaps[0].amount_in_usd == pytest.approx(60.0)
    assert len(result.tx_hashes) == 1

    job = repo.get_job(result.job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.rebalance_type is RebalanceType.THRESHOLD
    assert job.deviation_detected == pytest.approx(0.06)
    assert job.tx_hashes == result.tx_hashes

    values = _values(repo, portfolio.id)
    assert values["WBTC"] == pytest.approx(500.0)
    assert values["USDC"] == pytest.approx(200.0)
    assert repo.get_portfolio(portfolio.id).last_rebalance_at is not None

    states = [e["state"] for e in audit.query(portfolio_id=portfolio.id, event_type=EventType.TRANSITION)]
    assert set(states) == {"observing", "planning", "executing", "completed"}
    assert len(audit.query(portfolio_id=portfolio.id, event_type=EventType.PLAN)) == 1


def test_second_cycle_after_rebalance_is_quiet(orchestrator, make_portfolio, fund, venue):
    portfolio = make_portfolio()
    fund({"WBTC": 560, "WETH": 300, "USDC": 140})

    orchestrator.run_monitoring_cycle(portfolio.id)
    result = orchestrator.run_monitoring_cycle(portfolio.id)

    assert result.state is CycleState.NO_ACTION_NEEDED
    assert venue.swap_calls == 1


def test_manual_trigger_tags_the_job(orchestrator, make_portfolio, fund, repo):
    portfolio = make_portfolio(policy="strict_periodic")
    fund({"WBTC": 600, "WETH": 200, "USDC": 200})

    result = orchestrator.trigger_manual_rebalance(portfolio.id)

    assert result.state is CycleState.COMPLETED
    assert repo.get_job(result.job_id).rebalance_type is RebalanceType.MANUAL


def test_unreadable_asset_is_not_traded(orchestrator, make_portfolio, fund, chain, assets, venue):
    portfolio = make_portfolio()
    fund({"WBTC": 560, "WETH": 300, "USDC": 140})
    chain.fail_reads_for(assets["WETH"].address)

    result = orchestrator.run_monitoring_cycle(portfolio.id)

    assert result.state is CycleState.NO_ACTION_NEEDED
    assert all(s.to_asset.symbol != "WETH" for s in result.plan.swaps)
    assert venue.swap_calls == 0


def test_retryable_failure_leaves_monitoring_on(orchestrator, make_portfolio, fund, repo, venue):
    portfolio = make_portfolio()
    fund({"WBTC": 560, "WETH": 300, "USDC": 140})
    venue.fail_swap(1, "execution reverted: STF")

    result = orchestrator.run_monitoring_cycle(portfolio.id)

    assert result.transitions == [OBSERVING, PLANNING, EXECUTING, CycleState.FAILED]
    assert "swap 1" in result.error
    assert result.tx_hashes == []
    assert repo.get_job(result.job_id).status is JobStatus.FAILED
    assert repo.get_portfolio(portfolio.id).monitoring_enabled is True
    assert repo.get_portfolio(portfolio.id).last_rebalance_at is None

    # The next tick retries from live balances
    retry = orchestrator.run_monitoring_cycle(portfolio.id)
    assert retry.state is CycleState.COMPLETED
    assert len(repo.list_jobs(portfolio.id)) == 2


def test_fatal_failure_disables_monitoring(orchestrator, make_portfolio, fund, repo, venue, audit):
    disabled = []
    orchestrator.disable_hook = disabled.append
    portfolio = make_portfolio()
    fund({"WBTC": 560, "WETH": 300, "USDC": 140})
    venue.fail_swap(1, "insufficient funds for gas * price + value")

    with pytest.raises(FatalResourceError) as exc_info:
        orchestrator.run_monitoring_cycle(portfolio.id)

    assert exc_info.value.portfolio_id == portfolio.id
    assert "insufficient funds" in str(exc_info.value)
    assert disabled == [portfolio.id]
    assert repo.get_portfolio(portfolio.id).monitoring_enabled is False
    assert len(audit.query(portfolio_id=portfolio.id, event_type=EventType.MONITORING_DISABLED)) == 1

    # Later ticks skip the portfolio until it is re-enabled
    assert orchestrator.run_monitoring_cycle(portfolio.id).state is CycleState.SKIPPED
    assert venue.swap_calls == 1


def test_rejected_plan_records_no_job(orchestrator, make_portfolio, fund, repo, venue):
    # Executor floor above the planned $60 swap: nothing is executable
    orchestrator.executor.config = ExecutorConfig(dust_floor_usd=100.0)
    portfolio = make_portfolio()
    fund({"WBTC": 560, "WETH": 300, "USDC": 140})

    result = orchestrator.run_monitoring_cycle(portfolio.id)

    assert result.transitions == [OBSERVING, PLANNING, CycleState.NO_ACTION_NEEDED]
    assert result.job_id is None
    assert len(result.plan.swaps) == 1
    assert venue.swap_calls == 0
    assert repo.list_jobs(portfolio.id) == []
    assert repo.get_portfolio(portfolio.id).last_rebalance_at is None
