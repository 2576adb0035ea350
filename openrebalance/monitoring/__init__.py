"""Monitoring cycle orchestration and scheduling."""
from .orchestrator import CycleResult, CycleState, RebalanceOrchestrator
from .scheduler import MonitoringScheduler, ScheduledJob

__all__ = ["CycleResult", "CycleState", "RebalanceOrchestrator", "MonitoringScheduler", "ScheduledJob"]
