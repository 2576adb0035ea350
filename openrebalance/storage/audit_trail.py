"""
Audit Trail Module.

Persistent record of every monitoring decision:
- Cycle start and state transitions (observe, plan, execute)
- Planned swaps
- Swap submissions, confirmations and failures
- Monitoring disabled after a fatal error

Events live in the same DuckDB database as the portfolio data so one file
holds the full history of a portfolio.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from openrebalance.domain.models import utcnow
from openrebalance.storage.repository import PortfolioRepository
from openrebalance.utils.logging import get_logger

LOGGER = get_logger(__name__)


class EventType(Enum):
    """Types of audit events."""
    CYCLE_START = "CYCLE_START"
    TRANSITION = "TRANSITION"  # Cycle moved to a new state
    PLAN = "PLAN"  # Swap plan computed
    SWAP_SUBMITTED = "SWAP_SUBMITTED"
    SWAP_CONFIRMED = "SWAP_CONFIRMED"
    SWAP_FAILED = "SWAP_FAILED"
    MONITORING_DISABLED = "MONITORING_DISABLED"  # Fatal error disabled the job
    ERROR = "ERROR"


@dataclass
class AuditEvent:
    """A single audit event."""
    event_type: EventType
    portfolio_id: str
    timestamp: datetime = field(default_factory=utcnow)
    job_id: Optional[str] = None
    state: Optional[str] = None
    tx_hash: Optional[str] = None
    amount_usd: Optional[float] = None
    message: str = ""
    details: Optional[Dict[str, Any]] = None


class AuditTrail:
    """
    Audit trail for monitoring cycles.

    Usage:
        audit = AuditTrail(repository)
        audit.log_transition(portfolio_id, "PLANNING", "max deviation 0.060")
        audit.log_swap_confirmed(portfolio_id, job_id, "0xabc...", 60.0, "WBTC -> USDC")
        events = audit.query(portfolio_id=portfolio_id, event_type=EventType.SWAP_CONFIRMED)
    """

    COLUMNS = ["id", "event_type", "portfolio_id", "timestamp", "job_id", "state",
               "tx_hash", "amount_usd", "message", "details"]

    def __init__(self, repository: PortfolioRepository):
        self.repository = repository
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.repository.execute("CREATE SEQUENCE IF NOT EXISTS audit_events_id_seq;")
        self.repository.execute("""
            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER DEFAULT nextval('audit_events_id_seq') PRIMARY KEY,
                event_type VARCHAR NOT NULL,
                portfolio_id VARCHAR NOT NULL,
                timestamp TIMESTAMP NOT NULL,
                job_id VARCHAR,
                state VARCHAR,
                tx_hash VARCHAR,
                amount_usd DOUBLE,
                message VARCHAR,
                details VARCHAR
            );
        """)
        self.repository.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_portfolio ON audit_events(portfolio_id);"
        )
        self.repository.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_type ON audit_events(event_type);"
        )

    def log_event(self, event: AuditEvent) -> None:
        """Log a single audit event."""
        self.repository.execute("""
            INSERT INTO audit_events
            (event_type, portfolio_id, timestamp, job_id, state, tx_hash, amount_usd, message, details)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.event_type.value,
            event.portfolio_id,
            event.timestamp,
            event.job_id,
            event.state,
            event.tx_hash,
            event.amount_usd,
            event.message,
            json.dumps(event.details, default=str) if event.details else None,
        ))

    def log_cycle_start(self, portfolio_id: str, policy: str) -> None:
        self.log_event(AuditEvent(
            event_type=EventType.CYCLE_START,
            portfolio_id=portfolio_id,
            message=f"cycle started ({policy})",
        ))

    def log_transition(self, portfolio_id: str, state: str, reason: str = "") -> None:
        """Log a cycle state transition."""
        self.log_event(AuditEvent(
            event_type=EventType.TRANSITION,
            portfolio_id=portfolio_id,
            state=state,
            message=reason,
        ))

    def log_plan(self, portfolio_id: str, swaps: List[Dict[str, Any]], max_deviation: float) -> None:
        """Log the swap plan computed for a cycle."""
        self.log_event(AuditEvent(
            event_type=EventType.PLAN,
            portfolio_id=portfolio_id,
            amount_usd=sum(float(s.get("amount_usd", 0.0)) for s in swaps),
            message=f"{len(swaps)} swap(s), max deviation {max_deviation:.4f}",
            details={"swaps": swaps},
        ))

    def log_swap_submitted(self, portfolio_id: str, job_id: str, tx_hash: str,
                           amount_usd: float, description: str = "") -> None:
        self.log_event(AuditEvent(
            event_type=EventType.SWAP_SUBMITTED,
            portfolio_id=portfolio_id,
            job_id=job_id,
            tx_hash=tx_hash,
            amount_usd=amount_usd,
            message=description,
        ))

    def log_swap_confirmed(self, portfolio_id: str, job_id: str, tx_hash: str,
                           amount_usd: float, description: str = "") -> None:
        self.log_event(AuditEvent(
            event_type=EventType.SWAP_CONFIRMED,
            portfolio_id=portfolio_id,
            job_id=job_id,
            tx_hash=tx_hash,
            amount_usd=amount_usd,
            message=description,
        ))

    def log_swap_failed(self, portfolio_id: str, job_id: str, reason: str,
                        details: Optional[Dict[str, Any]] = None) -> None:
        self.log_event(AuditEvent(
            event_type=EventType.SWAP_FAILED,
            portfolio_id=portfolio_id,
            job_id=job_id,
            message=reason,
            details=details,
        ))

    def log_monitoring_disabled(self, portfolio_id: str, reason: str) -> None:
        self.log_event(AuditEvent(
            event_type=EventType.MONITORING_DISABLED,
            portfolio_id=portfolio_id,
            message=reason,
        ))

    def log_error(self, portfolio_id: str, message: str,
                  details: Optional[Dict[str, Any]] = None) -> None:
        self.log_event(AuditEvent(
            event_type=EventType.ERROR,
            portfolio_id=portfolio_id,
            message=message,
            details=details,
        ))

    def query(
        self,
        portfolio_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        job_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Query audit events with filters, newest first."""
        conditions = []
        params: List[Any] = []

        if portfolio_id:
            conditions.append("portfolio_id = ?")
            params.append(portfolio_id)
        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type.value)
        if job_id:
            conditions.append("job_id = ?")
            params.append(job_id)
        if start_time:
            conditions.append("timestamp >= ?")
            params.append(start_time)
        if end_time:
            conditions.append("timestamp <= ?")
            params.append(end_time)

        where_clause = " AND ".join(conditions) if conditions else "1=1"

        return self.repository.query(f"""
            SELECT {", ".join(self.COLUMNS)} FROM audit_events
            WHERE {where_clause}
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        """, params + [int(limit)])

    def get_summary(self, portfolio_id: Optional[str] = None, days: int = 7) -> Dict[str, int]:
        """Count events per type over the last `days` days."""
        params: List[Any] = [utcnow() - timedelta(days=days)]
        sql = "SELECT event_type, COUNT(*) AS count FROM audit_events WHERE timestamp >= ?"
        if portfolio_id:
            sql += " AND portfolio_id = ?"
            params.append(portfolio_id)
        rows = self.repository.query(sql + " GROUP BY event_type", params)
        return {row["event_type"]: int(row["count"]) for row in rows}
