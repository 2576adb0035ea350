"""Background scheduler: one recurring monitoring job per portfolio."""
from __future__ import annotations
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from openrebalance.domain.errors import FatalResourceError
from openrebalance.domain.models import utcnow
from openrebalance.utils.logging import get_logger

if TYPE_CHECKING:
    from openrebalance.storage.audit_trail import AuditTrail

LOGGER = get_logger(__name__)


@dataclass
class ScheduledJob:
    portfolio_id: str
    interval_seconds: float
    owner_address: str = ""
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_state: Optional[str] = None
    last_error: Optional[str] = None
    runs: int = 0
    _thread: Optional[threading.Thread] = field(default=None, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _in_flight: threading.Lock = field(default_factory=threading.Lock, repr=False)


class MonitoringScheduler:
    """
    Runs `runner(portfolio_id)` every interval on a daemon thread per portfolio.

    Jobs are keyed by portfolio id: registering an existing key replaces its
    interval instead of adding a second job. A cycle never overlaps another
    cycle of the same portfolio; different portfolios run concurrently.

    Usage:
        scheduler = MonitoringScheduler(orchestrator.run_monitoring_cycle)
        scheduler.register(portfolio.id, portfolio.interval_seconds, portfolio.owner_address)
        scheduler.start()
    """

    def __init__(self, runner: Callable[[str], Any], audit: Optional[AuditTrail] = None):
        self.runner = runner
        self.audit = audit
        self._jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.RLock()
        self.is_running = False

    # -------------------------------------------------------------- registry

    def register(self, portfolio_id: str, interval_seconds: float, owner_address: str = "") -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        with self._lock:
            job = self._jobs.get(portfolio_id)
            if job is not None:
                self._stop_thread(job)
                job.interval_seconds = interval_seconds
                job.owner_address = owner_address or job.owner_address
                job.enabled = True
                LOGGER.info(f"{portfolio_id} - monitoring rescheduled every {interval_seconds:.0f}s",
                            extra={"portfolio_id": portfolio_id})
            else:
                job = ScheduledJob(portfolio_id, interval_seconds, owner_address.lower())
                self._jobs[portfolio_id] = job
                LOGGER.info(f"{portfolio_id} - monitoring scheduled every {interval_seconds:.0f}s",
                            extra={"portfolio_id": portfolio_id})
            if self.is_running:
                self._start_thread(job)
            return job

    def cancel(self, portfolio_id: str) -> bool:
        with self._lock:
            job = self._jobs.pop(portfolio_id, None)
        if job is None:
            return False
        self._stop_thread(job)
        LOGGER.info(f"{portfolio_id} - monitoring cancelled", extra={"portfolio_id": portfolio_id})
        return True

    def disable(self, portfolio_id: str) -> None:
        """Stop scheduling without forgetting the job (fatal-error path)."""
        with self._lock:
            job = self._jobs.get(portfolio_id)
        if job is None:
            return
        job.enabled = False
        job.next_run_at = None
        self._stop_thread(job)
        LOGGER.warning(f"{portfolio_id} - monitoring job disabled", extra={"portfolio_id": portfolio_id})

    def enable(self, portfolio_id: str) -> None:
        with self._lock:
            job = self._jobs.get(portfolio_id)
            if job is None:
                raise KeyError(portfolio_id)
            job.enabled = True
            job.last_error = None
            if self.is_running:
                self._start_thread(job)

    def is_registered(self, portfolio_id: str) -> bool:
        with self._lock:
            return portfolio_id in self._jobs

    def get_job(self, portfolio_id: str) -> Optional[ScheduledJob]:
        with self._lock:
            return self._jobs.get(portfolio_id)

    def list_jobs(self, owner_address: Optional[str] = None) -> List[ScheduledJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if owner_address:
            jobs = [j for j in jobs if j.owner_address == owner_address.lower()]
        return jobs

    # ------------------------------------------------------------- execution

    def run_now(self, portfolio_id: str) -> Any:
        """Run one cycle for the portfolio on the calling thread.

        Returns the runner's result, or None when the job is missing, disabled,
        already in flight, or the cycle raised.
        """
        job = self.get_job(portfolio_id)
        if job is None or not job.enabled:
            return None
        if not job._in_flight.acquire(blocking=False):
            LOGGER.info(f"{portfolio_id} - cycle already in flight, tick skipped",
                        extra={"portfolio_id": portfolio_id})
            return None
        try:
            result = self.runner(portfolio_id)
            job.last_state = getattr(getattr(result, "state", None), "value", None)
            job.last_error = getattr(result, "error", None)
            return result
        except FatalResourceError as e:
            job.last_state = "failed"
            job.last_error = str(e)
            self.disable(portfolio_id)
            return None
        except Exception as e:
            LOGGER.error(f"{portfolio_id} - monitoring cycle error: {e}", exc_info=True,
                         extra={"portfolio_id": portfolio_id})
            job.last_state = "error"
            job.last_error = str(e)
            if self.audit is not None:
                self.audit.log_error(portfolio_id, f"monitoring cycle error: {e}",
                                     details={"exception": type(e).__name__})
            return None
        finally:
            job.runs += 1
            job.last_run_at = utcnow()
            job._in_flight.release()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                LOGGER.warning("Scheduler already running")
                return
            self.is_running = True
            for job in self._jobs.values():
                if job.enabled:
                    self._start_thread(job)
        LOGGER.info(f"Monitoring scheduler started ({len(self._jobs)} jobs)")

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            self.is_running = False
            jobs = list(self._jobs.values())
        for job in jobs:
            self._stop_thread(job, timeout)
        LOGGER.info("Monitoring scheduler stopped")

    def _start_thread(self, job: ScheduledJob) -> None:
        if job._thread is not None and job._thread.is_alive():
            return
        job._stop_event = threading.Event()
        job._thread = threading.Thread(
            target=self._loop, args=(job, job._stop_event), name=f"monitor-{job.portfolio_id}", daemon=True
        )
        job._thread.start()

    def _stop_thread(self, job: ScheduledJob, timeout: float = 5.0) -> None:
        job._stop_event.set()
        thread = job._thread
        job._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _loop(self, job: ScheduledJob, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.run_now(job.portfolio_id)
            job.next_run_at = utcnow() + timedelta(seconds=job.interval_seconds)
            stop_event.wait(job.interval_seconds)
