"""DuckDB persistence: portfolio repository and audit trail."""
from .repository import PortfolioRepository
from .audit_trail import AuditEvent, AuditTrail, EventType

__all__ = ["PortfolioRepository", "AuditTrail", "AuditEvent", "EventType"]
