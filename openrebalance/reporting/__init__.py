"""Rebalance history reporting."""
from .history import allocation_frame, jobs_frame, summarize_jobs, write_history_report

__all__ = ["allocation_frame", "jobs_frame", "summarize_jobs", "write_history_report"]
