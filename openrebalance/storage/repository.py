"""DuckDB-backed persistence for assets, portfolios, allocations and rebalance jobs.

One connection per repository. Calls are serialized with a lock because the
scheduler runs cycles for different portfolios on different threads; record
ownership (one in-flight cycle per portfolio) is the scheduler's concern.
"""
from __future__ import annotations
import json
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import duckdb  # type: ignore

from openrebalance.domain.errors import AssetNotFoundError, PortfolioNotFoundError
from openrebalance.domain.models import (
    Allocation,
    Asset,
    JobStatus,
    Portfolio,
    RebalanceJob,
    RebalancePolicy,
    RebalanceType,
    SwapRecord,
    utcnow,
)
from openrebalance.utils.logging import get_logger
from openrebalance.utils.validation import ValidationError

LOGGER = get_logger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS assets (
        id VARCHAR PRIMARY KEY,
        symbol VARCHAR NOT NULL UNIQUE,
        name VARCHAR,
        address VARCHAR NOT NULL,
        decimals INTEGER NOT NULL,
        chain_id INTEGER NOT NULL,
        is_active BOOLEAN NOT NULL,
        price_feed_id VARCHAR
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS portfolios (
        id VARCHAR PRIMARY KEY,
        owner_address VARCHAR NOT NULL,
        name VARCHAR NOT NULL,
        is_active BOOLEAN NOT NULL,
        monitoring_enabled BOOLEAN NOT NULL,
        rebalance_policy VARCHAR NOT NULL,
        rebalance_threshold DOUBLE NOT NULL,
        monitoring_frequency VARCHAR NOT NULL,
        signing_key_ref VARCHAR,
        total_value_usd DOUBLE NOT NULL,
        last_rebalance_at TIMESTAMP,
        last_observed_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS allocations (
        id VARCHAR PRIMARY KEY,
        portfolio_id VARCHAR NOT NULL,
        asset_id VARCHAR NOT NULL,
        target_percentage DOUBLE NOT NULL,
        current_percentage DOUBLE NOT NULL,
        current_value_usd DOUBLE NOT NULL,
        current_balance VARCHAR NOT NULL,
        current_price_usd DOUBLE NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS rebalance_jobs (
        id VARCHAR PRIMARY KEY,
        portfolio_id VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        rebalance_type VARCHAR NOT NULL,
        deviation_detected DOUBLE NOT NULL,
        swaps VARCHAR,
        tx_hashes VARCHAR,
        error_message VARCHAR,
        created_at TIMESTAMP NOT NULL,
        executed_at TIMESTAMP,
        completed_at TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS price_history (
        symbol VARCHAR NOT NULL,
        price_usd DOUBLE NOT NULL,
        confidence DOUBLE,
        source VARCHAR,
        ts TIMESTAMP NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_portfolios_owner ON portfolios(owner_address);",
    "CREATE INDEX IF NOT EXISTS idx_jobs_portfolio ON rebalance_jobs(portfolio_id);",
    "CREATE INDEX IF NOT EXISTS idx_price_symbol ON price_history(symbol);",
]


def _rows(cursor) -> List[Dict[str, Any]]:
    cols = [d[0] for d in cursor.description]
    return [dict(zip(cols, row)) for row in cursor.fetchall()]


def _asset_from_row(row: Dict[str, Any]) -> Asset:
    return Asset(
        id=row["id"],
        symbol=row["symbol"],
        name=row["name"] or "",
        address=row["address"],
        decimals=int(row["decimals"]),
        chain_id=int(row["chain_id"]),
        is_active=bool(row["is_active"]),
        price_feed_id=row["price_feed_id"],
    )


def _portfolio_from_row(row: Dict[str, Any]) -> Portfolio:
    return Portfolio(
        id=row["id"],
        owner_address=row["owner_address"],
        name=row["name"],
        is_active=bool(row["is_active"]),
        monitoring_enabled=bool(row["monitoring_enabled"]),
        rebalance_policy=RebalancePolicy(row["rebalance_policy"]),
        rebalance_threshold=float(row["rebalance_threshold"]),
        monitoring_frequency=row["monitoring_frequency"],
        signing_key_ref=row["signing_key_ref"] or "",
        total_value_usd=float(row["total_value_usd"]),
        last_rebalance_at=row["last_rebalance_at"],
        last_observed_at=row["last_observed_at"],
        created_at=row["created_at"],
    )


def _allocation_from_row(row: Dict[str, Any]) -> Allocation:
    return Allocation(
        id=row["id"],
        portfolio_id=row["portfolio_id"],
        asset_id=row["asset_id"],
        target_percentage=float(row["target_percentage"]),
        current_percentage=float(row["current_percentage"]),
        current_value_usd=float(row["current_value_usd"]),
        current_balance=row["current_balance"],
        current_price_usd=float(row["current_price_usd"]),
    )


def _job_from_row(row: Dict[str, Any]) -> RebalanceJob:
    swaps = [SwapRecord.from_dict(s) for s in json.loads(row["swaps"] or "[]")]
    return RebalanceJob(
        id=row["id"],
        portfolio_id=row["portfolio_id"],
        status=JobStatus(row["status"]),
        rebalance_type=RebalanceType(row["rebalance_type"]),
        deviation_detected=float(row["deviation_detected"]),
        swaps=swaps,
        tx_hashes=json.loads(row["tx_hashes"] or "[]"),
        error_message=row["error_message"],
        created_at=row["created_at"],
        executed_at=row["executed_at"],
        completed_at=row["completed_at"],
    )


class PortfolioRepository:
    """
    Persistence for the rebalancing engine.

    Usage:
        repo = PortfolioRepository("data/openrebalance.duckdb")
        repo.add_asset(Asset(symbol="USDC", address=..., decimals=6))
        portfolio = repo.get_portfolio(portfolio_id)
        pairs = repo.get_allocations_with_assets(portfolio_id)
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._con = duckdb.connect(self.db_path)
        self._lock = threading.RLock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        for statement in SCHEMA:
            self.execute(statement)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        with self._lock:
            self._con.execute(sql, list(params))

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            return _rows(self._con.execute(sql, list(params)))

    @contextmanager
    def transaction(self):
        """Run the enclosed writes as one unit; any exception rolls all of them back."""
        with self._lock:
            self._con.execute("BEGIN TRANSACTION")
            try:
                yield self
            except BaseException:
                self._con.execute("ROLLBACK")
                raise
            self._con.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self._con.close()

    # ------------------------------------------------------------------ assets

    def add_asset(self, asset: Asset) -> Asset:
        if self.get_asset_by_symbol(asset.symbol) is not None:
            raise ValidationError(f"Asset {asset.symbol} already exists")
        self.execute(
            """
            INSERT INTO assets (id, symbol, name, address, decimals, chain_id, is_active, price_feed_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (asset.id, asset.symbol, asset.name, asset.address, asset.decimals,
             asset.chain_id, asset.is_active, asset.price_feed_id),
        )
        return asset

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        rows = self.query("SELECT * FROM assets WHERE id = ?", (asset_id,))
        return _asset_from_row(rows[0]) if rows else None

    def get_asset_by_symbol(self, symbol: str, active_only: bool = False) -> Optional[Asset]:
        sql = "SELECT * FROM assets WHERE symbol = ?"
        if active_only:
            sql += " AND is_active"
        rows = self.query(sql, (symbol.strip().upper(),))
        return _asset_from_row(rows[0]) if rows else None

    def list_assets(self, active_only: bool = False) -> List[Asset]:
        sql = "SELECT * FROM assets"
        if active_only:
            sql += " WHERE is_active"
        return [_asset_from_row(r) for r in self.query(sql + " ORDER BY symbol")]

    def set_asset_active(self, symbol: str, is_active: bool) -> Asset:
        asset = self.get_asset_by_symbol(symbol)
        if asset is None:
            raise AssetNotFoundError(symbol)
        self.execute("UPDATE assets SET is_active = ? WHERE id = ?", (is_active, asset.id))
        asset.is_active = is_active
        return asset

    # -------------------------------------------------------------- portfolios

    def add_portfolio(self, portfolio: Portfolio) -> Portfolio:
        self.execute(
            """
            INSERT INTO portfolios
            (id, owner_address, name, is_active, monitoring_enabled, rebalance_policy,
             rebalance_threshold, monitoring_frequency, signing_key_ref, total_value_usd,
             last_rebalance_at, last_observed_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (portfolio.id, portfolio.owner_address, portfolio.name, portfolio.is_active,
             portfolio.monitoring_enabled, portfolio.rebalance_policy.value,
             portfolio.rebalance_threshold, portfolio.monitoring_frequency,
             portfolio.signing_key_ref, portfolio.total_value_usd,
             portfolio.last_rebalance_at, portfolio.last_observed_at, portfolio.created_at),
        )
        return portfolio

    def get_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        rows = self.query("SELECT * FROM portfolios WHERE id = ?", (portfolio_id,))
        return _portfolio_from_row(rows[0]) if rows else None

    def require_portfolio(self, portfolio_id: str) -> Portfolio:
        portfolio = self.get_portfolio(portfolio_id)
        if portfolio is None:
            raise PortfolioNotFoundError(portfolio_id)
        return portfolio

    def save_portfolio(self, portfolio: Portfolio) -> Portfolio:
        """Persist every mutable field of an existing portfolio."""
        self.require_portfolio(portfolio.id)
        self.execute(
            """
            UPDATE portfolios SET
                name = ?, is_active = ?, monitoring_enabled = ?, rebalance_policy = ?,
                rebalance_threshold = ?, monitoring_frequency = ?, signing_key_ref = ?,
                total_value_usd = ?, last_rebalance_at = ?, last_observed_at = ?
            WHERE id = ?
            """,
            (portfolio.name, portfolio.is_active, portfolio.monitoring_enabled,
             portfolio.rebalance_policy.value, portfolio.rebalance_threshold,
             portfolio.monitoring_frequency, portfolio.signing_key_ref,
             portfolio.total_value_usd, portfolio.last_rebalance_at,
             portfolio.last_observed_at, portfolio.id),
        )
        return portfolio

    def list_portfolios(self, owner_address: Optional[str] = None, active_only: bool = True) -> List[Portfolio]:
        conditions = []
        params: List[Any] = []
        if owner_address:
            conditions.append("owner_address = ?")
            params.append(owner_address.lower())
        if active_only:
            conditions.append("is_active")
        where_clause = " AND ".join(conditions) if conditions else "1=1"
        rows = self.query(
            f"SELECT * FROM portfolios WHERE {where_clause} ORDER BY created_at DESC", params
        )
        return [_portfolio_from_row(r) for r in rows]

    def record_observation(self, portfolio_id: str, total_value_usd: float,
                           observed_at: Optional[datetime] = None) -> None:
        self.execute(
            "UPDATE portfolios SET total_value_usd = ?, last_observed_at = ? WHERE id = ?",
            (float(total_value_usd), observed_at or utcnow(), portfolio_id),
        )

    def mark_rebalanced(self, portfolio_id: str, at: Optional[datetime] = None) -> None:
        self.execute(
            "UPDATE portfolios SET last_rebalance_at = ? WHERE id = ?",
            (at or utcnow(), portfolio_id),
        )

    def set_monitoring_enabled(self, portfolio_id: str, enabled: bool) -> None:
        self.require_portfolio(portfolio_id)
        self.execute(
            "UPDATE portfolios SET monitoring_enabled = ? WHERE id = ?", (enabled, portfolio_id)
        )

    def delete_portfolio(self, portfolio_id: str) -> None:
        """Hard delete; allocations are removed with the portfolio, jobs are kept for audit."""
        self.require_portfolio(portfolio_id)
        self.execute("DELETE FROM allocations WHERE portfolio_id = ?", (portfolio_id,))
        self.execute("DELETE FROM portfolios WHERE id = ?", (portfolio_id,))

    # ------------------------------------------------------------- allocations

    def add_allocation(self, allocation: Allocation) -> Allocation:
        """Insert an allocation; a portfolio holds at most one per asset."""
        existing = self.query(
            "SELECT id FROM allocations WHERE portfolio_id = ? AND asset_id = ?",
            (allocation.portfolio_id, allocation.asset_id),
        )
        if existing:
            raise ValidationError("Portfolio already holds an allocation for this asset")
        self.execute(
            """
            INSERT INTO allocations
            (id, portfolio_id, asset_id, target_percentage, current_percentage,
             current_value_usd, current_balance, current_price_usd)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (allocation.id, allocation.portfolio_id, allocation.asset_id,
             allocation.target_percentage, allocation.current_percentage,
             allocation.current_value_usd, allocation.current_balance,
             allocation.current_price_usd),
        )
        return allocation

    def replace_allocations(self, portfolio_id: str, allocations: Iterable[Allocation]) -> List[Allocation]:
        allocations = list(allocations)
        with self.transaction():
            self.execute("DELETE FROM allocations WHERE portfolio_id = ?", (portfolio_id,))
            for allocation in allocations:
                self.add_allocation(allocation)
        return allocations

    def get_allocations(self, portfolio_id: str) -> List[Allocation]:
        rows = self.query(
            "SELECT * FROM allocations WHERE portfolio_id = ? ORDER BY target_percentage DESC, id",
            (portfolio_id,),
        )
        return [_allocation_from_row(r) for r in rows]

    def get_allocations_with_assets(self, portfolio_id: str) -> List[Tuple[Allocation, Asset]]:
        pairs = []
        for allocation in self.get_allocations(portfolio_id):
            asset = self.get_asset(allocation.asset_id)
            if asset is None:
                LOGGER.warning(f"Allocation {allocation.id} references unknown asset {allocation.asset_id}")
                continue
            pairs.append((allocation, asset))
        return pairs

    def update_allocation_state(
        self,
        allocation_id: str,
        current_balance: str,
        current_value_usd: float,
        current_percentage: float,
        current_price_usd: float,
    ) -> None:
        self.execute(
            """
            UPDATE allocations SET current_balance = ?, current_value_usd = ?,
                current_percentage = ?, current_price_usd = ?
            WHERE id = ?
            """,
            (str(current_balance), float(current_value_usd), float(current_percentage),
             float(current_price_usd), allocation_id),
        )

    # ---------------------------------------------------------- rebalance jobs

    def save_job(self, job: RebalanceJob) -> RebalanceJob:
        """Insert a new job or update the stored copy."""
        swaps = json.dumps([s.to_dict() for s in job.swaps])
        tx_hashes = json.dumps(job.tx_hashes)
        if self.get_job(job.id) is None:
            self.execute(
                """
                INSERT INTO rebalance_jobs
                (id, portfolio_id, status, rebalance_type, deviation_detected, swaps, tx_hashes,
                 error_message, created_at, executed_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (job.id, job.portfolio_id, job.status.value, job.rebalance_type.value,
                 job.deviation_detected, swaps, tx_hashes, job.error_message,
                 job.created_at, job.executed_at, job.completed_at),
            )
        else:
            self.execute(
                """
                UPDATE rebalance_jobs SET status = ?, swaps = ?, tx_hashes = ?, error_message = ?,
                    executed_at = ?, completed_at = ?
                WHERE id = ?
                """,
                (job.status.value, swaps, tx_hashes, job.error_message,
                 job.executed_at, job.completed_at, job.id),
            )
        return job

    def get_job(self, job_id: str) -> Optional[RebalanceJob]:
        rows = self.query("SELECT * FROM rebalance_jobs WHERE id = ?", (job_id,))
        return _job_from_row(rows[0]) if rows else None

    def list_jobs(self, portfolio_id: str, status: Optional[JobStatus] = None,
                  limit: Optional[int] = None) -> List[RebalanceJob]:
        sql = "SELECT * FROM rebalance_jobs WHERE portfolio_id = ?"
        params: List[Any] = [portfolio_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC"
        if limit:
            sql += f" LIMIT {int(limit)}"
        return [_job_from_row(r) for r in self.query(sql, params)]

    def cancel_pending_jobs(self, portfolio_id: str) -> int:
        """Cancel jobs that never started executing. Returns how many were cancelled."""
        cancelled = 0
        for job in self.list_jobs(portfolio_id, status=JobStatus.PENDING):
            job.transition(JobStatus.CANCELLED, error_message="portfolio deactivated")
            self.save_job(job)
            cancelled += 1
        return cancelled

    # ----------------------------------------------------------- price history

    def record_price(self, symbol: str, price_usd: float, confidence: Optional[float] = None,
                     ts: Optional[datetime] = None, source: str = "pyth") -> None:
        self.execute(
            "INSERT INTO price_history (symbol, price_usd, confidence, source, ts) VALUES (?, ?, ?, ?, ?)",
            (symbol.upper(), float(price_usd), confidence, source, ts or utcnow()),
        )

    def latest_price(self, symbol: str) -> Optional[Dict[str, Any]]:
        rows = self.query(
            "SELECT * FROM price_history WHERE symbol = ? ORDER BY ts DESC LIMIT 1",
            (symbol.upper(),),
        )
        return rows[0] if rows else None

    def price_history(self, symbol: str, hours: float = 24.0, now: Optional[datetime] = None,
                      source: Optional[str] = "pyth") -> List[Dict[str, Any]]:
        """Quotes recorded in the last `hours`, newest first."""
        sql = "SELECT symbol, price_usd, confidence, source, ts FROM price_history WHERE symbol = ? AND ts >= ?"
        params: List[Any] = [symbol.upper(), (now or utcnow()) - timedelta(hours=hours)]
        if source:
            sql += " AND source = ?"
            params.append(source)
        return self.query(sql + " ORDER BY ts DESC", params)

    def is_price_recent(self, symbol: str, max_age_minutes: float = 5.0, now: Optional[datetime] = None) -> bool:
        latest = self.latest_price(symbol)
        if latest is None:
            return False
        return (now or utcnow()) - latest["ts"] <= timedelta(minutes=max_age_minutes)
