#!/usr/bin/env python3
"""
OpenRebalance - monitoring process bootstrap.

Owns the lifecycle of the long-lived services (price oracle poll thread,
monitoring scheduler, database) and wires the rebalancing engine together.
Without a swap venue the process observes and plans but never executes.
"""
from __future__ import annotations
import argparse
import signal
import threading
from dataclasses import dataclass
from typing import Optional

from openrebalance.broker.abstract import SwapVenue
from openrebalance.config import ConfigManager
from openrebalance.data.chain_reader import ChainReader, JsonRpcChainReader
from openrebalance.data.oracle import PriceOracle, PythPriceService
from openrebalance.monitoring.orchestrator import RebalanceOrchestrator
from openrebalance.monitoring.scheduler import MonitoringScheduler
from openrebalance.portfolio.balances import BalanceAggregator
from openrebalance.rebalancing.deviation import DeviationCalculator, max_deviation
from openrebalance.rebalancing.planner import SwapPlanner
from openrebalance.reporting.history import write_history_report
from openrebalance.services.asset_service import AssetService
from openrebalance.services.portfolio_service import PortfolioService
from openrebalance.storage.audit_trail import AuditTrail
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.trading.confirmation import TransactionWaiter
from openrebalance.trading.swap_executor import SwapExecutor
from openrebalance.utils.logging import configure_logging, get_logger

LOGGER = get_logger(__name__)


@dataclass
class Engine:
    repository: PortfolioRepository
    audit: AuditTrail
    oracle: PriceOracle
    chain: ChainReader
    aggregator: BalanceAggregator
    calculator: DeviationCalculator
    planner: SwapPlanner
    scheduler: MonitoringScheduler
    portfolios: PortfolioService
    orchestrator: Optional[RebalanceOrchestrator] = None


def build_engine(manager: ConfigManager, venue: Optional[SwapVenue] = None,
                 chain: Optional[ChainReader] = None, oracle: Optional[PriceOracle] = None) -> Engine:
    cfg = manager.config
    repository = PortfolioRepository(cfg.storage.db_path)
    audit = AuditTrail(repository)
    assets = AssetService(repository, chain_id=cfg.chain.chain_id)
    assets.seed_default_assets()

    if oracle is None:
        on_quotes = None
        if cfg.oracle.record_history:
            def on_quotes(quotes):
                for q in quotes:
                    repository.record_price(q.symbol, q.price, q.confidence)
        oracle = PythPriceService(assets.price_feed_ids(), cfg.oracle, on_quotes=on_quotes)
    chain = chain or JsonRpcChainReader(cfg.chain)

    aggregator = BalanceAggregator(repository, chain, oracle)
    calculator = DeviationCalculator(repository)
    planner = SwapPlanner(cfg.planner)

    orchestrator = None
    if venue is not None:
        waiter = TransactionWaiter(chain, cfg.executor.confirmation_timeout_seconds,
                                   cfg.executor.poll_interval_seconds)
        executor = SwapExecutor(venue, waiter, repository, cfg.executor, audit)
        orchestrator = RebalanceOrchestrator(repository, aggregator, calculator, planner, executor,
                                             audit=audit, planner_config=cfg.planner)
        runner = orchestrator.run_monitoring_cycle
    else:
        def runner(portfolio_id: str):
            return observe(repository, aggregator, calculator, planner, portfolio_id)

    scheduler = MonitoringScheduler(runner, audit=audit)
    if orchestrator is not None:
        orchestrator.disable_hook = scheduler.disable
    portfolios = PortfolioService(repository, scheduler, cfg.scheduler, cfg.planner,
                                  signing_key_ref=cfg.signing_key_ref)
    return Engine(repository, audit, oracle, chain, aggregator, calculator, planner, scheduler,
                  portfolios, orchestrator)


def observe(repository, aggregator, calculator, planner, portfolio_id: str):
    """Refresh balances and log the plan that would be executed."""
    portfolio = repository.get_portfolio(portfolio_id)
    if portfolio is None or not portfolio.is_active or not portfolio.monitoring_enabled:
        return None
    snapshot = aggregator.refresh_balances(portfolio_id)
    deviations = calculator.calculate_deviations(portfolio_id)
    tradable = [d for d in deviations if d.symbol not in snapshot.failed_symbols]
    plan = planner.build_plan(portfolio, tradable, snapshot.total_value_usd)
    LOGGER.info(
        f"{portfolio_id} - ${snapshot.total_value_usd:.2f}, max deviation {max_deviation(deviations):.4f}, "
        f"{len(plan.swaps)} planned swap(s): " + ", ".join(
            f"{s.describe()} ${s.amount_in_usd:.2f}" for s in plan.swaps
        ),
        extra={"portfolio_id": portfolio_id},
    )
    return plan


def main():
    parser = argparse.ArgumentParser(description="OpenRebalance portfolio monitor")
    parser.add_argument("--config", type=str, default="configs/default.yaml", help="YAML config path")
    parser.add_argument("--once", action="store_true", help="Run one cycle per active portfolio and exit")
    parser.add_argument("--report", type=str, default=None, metavar="PORTFOLIO_ID",
                        help="Write a Markdown history report for a portfolio and exit")
    args = parser.parse_args()

    manager = ConfigManager.load(args.config)
    cfg = manager.config
    configure_logging(cfg.logging.level, cfg.logging.log_dir, prefixes=("openrebalance", __name__))
    LOGGER.info(f"Using database {manager.get('storage.db_path')}")
    engine = build_engine(manager)

    if args.report:
        path = write_history_report(engine.repository, args.report)
        print(f"Report written to {path}")
        engine.repository.close()
        return

    portfolios = engine.repository.list_portfolios(active_only=True)
    for portfolio in portfolios:
        if portfolio.monitoring_enabled:
            engine.scheduler.register(portfolio.id, portfolio.interval_seconds, portfolio.owner_address)

    if args.once:
        for portfolio in portfolios:
            engine.scheduler.run_now(portfolio.id)
        engine.repository.close()
        return

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    if isinstance(engine.oracle, PythPriceService):
        engine.oracle.start()
    engine.scheduler.start()
    LOGGER.info(f"Monitoring {len(engine.scheduler.list_jobs())} portfolio(s); Ctrl+C to stop")
    try:
        stop.wait()
    finally:
        engine.scheduler.stop()
        if isinstance(engine.oracle, PythPriceService):
            engine.oracle.stop()
        engine.repository.close()


if __name__ == "__main__":
    main()
