"""Rebalance history as a DataFrame and a Markdown summary per portfolio."""
from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd

from openrebalance.domain.models import JobStatus
from openrebalance.storage.repository import PortfolioRepository

JOB_COLUMNS = [
    "job_id", "status", "rebalance_type", "deviation_detected", "swap_count",
    "traded_usd", "tx_count", "error_message", "created_at", "completed_at",
]


def jobs_frame(repository: PortfolioRepository, portfolio_id: str, limit: Optional[int] = None) -> pd.DataFrame:
    """One row per rebalance job, newest first."""
    rows = []
    for job in repository.list_jobs(portfolio_id, limit=limit):
        rows.append({
            "job_id": job.id,
            "status": job.status.value,
            "rebalance_type": job.rebalance_type.value,
            "deviation_detected": job.deviation_detected,
            "swap_count": len(job.swaps),
            "traded_usd": sum(s.amount_usd for s in job.swaps),
            "tx_count": len(job.tx_hashes),
            "error_message": job.error_message or "",
            "created_at": job.created_at,
            "completed_at": job.completed_at,
        })
    return pd.DataFrame(rows, columns=JOB_COLUMNS)


def allocation_frame(repository: PortfolioRepository, portfolio_id: str) -> pd.DataFrame:
    """Current vs target allocation per asset, as last observed."""
    rows = [
        {
            "symbol": asset.symbol,
            "target_percentage": alloc.target_percentage,
            "current_percentage": alloc.current_percentage,
            "deviation": abs(alloc.current_percentage - alloc.target_percentage),
            "current_value_usd": alloc.current_value_usd,
            "price_usd": alloc.current_price_usd,
        }
        for alloc, asset in repository.get_allocations_with_assets(portfolio_id)
    ]
    return pd.DataFrame(rows, columns=["symbol", "target_percentage", "current_percentage",
                                       "deviation", "current_value_usd", "price_usd"])


def summarize_jobs(jobs: pd.DataFrame) -> dict:
    if jobs.empty:
        return {"jobs": 0, "completed": 0, "failed": 0, "success_rate": 0.0, "traded_usd": 0.0}
    completed = int((jobs["status"] == JobStatus.COMPLETED.value).sum())
    failed = int((jobs["status"] == JobStatus.FAILED.value).sum())
    finished = completed + failed
    return {
        "jobs": int(len(jobs)),
        "completed": completed,
        "failed": failed,
        "success_rate": completed / finished if finished else 0.0,
        "traded_usd": float(jobs.loc[jobs["status"] == JobStatus.COMPLETED.value, "traded_usd"].sum()),
    }


PRICE_COLUMNS = ["ts", "price_usd", "confidence", "source"]


def price_frame(repository: PortfolioRepository, symbol: str, hours: float = 24.0,
                now: Optional[datetime] = None) -> pd.DataFrame:
    """Recorded oracle quotes for one symbol, oldest first."""
    rows = repository.price_history(symbol, hours=hours, now=now)
    frame = pd.DataFrame(rows, columns=["symbol"] + PRICE_COLUMNS)[PRICE_COLUMNS]
    return frame.sort_values("ts").reset_index(drop=True)


def price_stats(prices: pd.DataFrame) -> dict:
    """Min, max, mean, latest price and percent change over the window."""
    if prices.empty:
        return {"min": 0.0, "max": 0.0, "avg": 0.0, "current": 0.0, "change_pct": 0.0}
    series = prices.sort_values("ts")["price_usd"].astype(float)
    first, current = series.iloc[0], series.iloc[-1]
    return {
        "min": float(series.min()),
        "max": float(series.max()),
        "avg": float(series.mean()),
        "current": float(current),
        "change_pct": float((current - first) / first * 100) if first else 0.0,
    }


def write_history_report(
    repository: PortfolioRepository,
    portfolio_id: str,
    out_dir: str | Path = "reports",
    limit: int = 50,
) -> Path:
    """Write a Markdown report and return its path."""
    portfolio = repository.require_portfolio(portfolio_id)
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    report_path = out / f"rebalance_{portfolio_id[:8]}_{ts}.md"

    allocations = allocation_frame(repository, portfolio_id)
    jobs = jobs_frame(repository, portfolio_id, limit=limit)
    stats = summarize_jobs(jobs)

    with report_path.open("w", encoding="utf-8") as f:
        f.write(f"# Rebalance History: {portfolio.name}\n\n")
        f.write(f"Generated: {datetime.now(timezone.utc).isoformat()}\n\n")
        f.write(f"Policy: {portfolio.rebalance_policy.value} "
                f"(threshold {portfolio.rebalance_threshold:.3f}, every {portfolio.monitoring_frequency})\n\n")
        f.write(f"Total value: ${portfolio.total_value_usd:,.2f}\n\n")

        f.write("## Allocations\n")
        f.write("| symbol | target | current | deviation | value_usd |\n")
        f.write("|---|---:|---:|---:|---:|\n")
        for row in allocations.itertuples(index=False):
            f.write(f"| {row.symbol} | {row.target_percentage:.3f} | {row.current_percentage:.3f} | "
                    f"{row.deviation:.3f} | {row.current_value_usd:,.2f} |\n")

        f.write("\n## Prices (24h)\n")
        f.write("| symbol | current | min | max | avg | change_% | fresh |\n")
        f.write("|---|---:|---:|---:|---:|---:|:---:|\n")
        for symbol in allocations["symbol"]:
            p = price_stats(price_frame(repository, symbol))
            fresh = "yes" if repository.is_price_recent(symbol) else "no"
            f.write(f"| {symbol} | {p['current']:,.2f} | {p['min']:,.2f} | {p['max']:,.2f} | "
                    f"{p['avg']:,.2f} | {p['change_pct']:+.2f} | {fresh} |\n")

        f.write("\n## Jobs\n")
        f.write(f"{stats['jobs']} job(s), {stats['completed']} completed, {stats['failed']} failed, "
                f"${stats['traded_usd']:,.2f} traded\n\n")
        if not jobs.empty:
            f.write("| created | status | type | max_dev | swaps | txs | error |\n")
            f.write("|---|:---:|:---:|---:|---:|---:|---|\n")
            for row in jobs.itertuples(index=False):
                f.write(f"| {row.created_at} | {row.status} | {row.rebalance_type} | "
                        f"{row.deviation_detected:.4f} | {row.swap_count} | {row.tx_count} | {row.error_message} |\n")

    return report_path
