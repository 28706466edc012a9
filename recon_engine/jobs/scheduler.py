"""
Scheduler adapter.

The job manager only needs schedule / trigger / cancel; this module provides
that contract and an APScheduler-backed implementation.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from ..exceptions import ConfigurationError
from ..models import utcnow

logger = logging.getLogger(__name__)

JobCallable = Callable[..., Any]


class SchedulerBackend(ABC):
    """Scheduler collaborator used by the job manager."""

    @abstractmethod
    def schedule(self, job_key: str, func: JobCallable, cron: Optional[str] = None,
                 start_at: Optional[datetime] = None, payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Schedule a job.

        With neither cron nor start_at the job is durable: stored, and run
        only when triggered.
        """

    @abstractmethod
    def trigger(self, job_key: str) -> None:
        """Run a scheduled job now."""

    @abstractmethod
    def cancel(self, job_key: str) -> bool:
        """Remove a job; returns False when it was not scheduled."""

    @abstractmethod
    def has_job(self, job_key: str) -> bool:
        pass

    @abstractmethod
    def job_keys(self) -> List[str]:
        pass

    def start(self) -> None:
        pass

    def shutdown(self, wait: bool = True) -> None:
        pass


class APSchedulerBackend(SchedulerBackend):
    """SchedulerBackend on top of an APScheduler BackgroundScheduler."""

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None, timezone: str = "UTC"):
        self._scheduler = scheduler or BackgroundScheduler(timezone=timezone)
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")

    def schedule(self, job_key: str, func: JobCallable, cron: Optional[str] = None,
                 start_at: Optional[datetime] = None, payload: Optional[Dict[str, Any]] = None) -> None:
        kwargs = dict(payload or {})
        trigger = None
        if cron:
            try:
                trigger = CronTrigger.from_crontab(cron, timezone=self._scheduler.timezone)
            except ValueError as e:
                raise ConfigurationError(f"Invalid cron expression for {job_key}: {cron}") from e
        elif start_at:
            trigger = DateTrigger(run_date=start_at)

        with self._lock:
            self._jobs[job_key] = {"func": func, "kwargs": kwargs, "trigger": trigger}
            if trigger is not None:
                self._scheduler.add_job(func, trigger=trigger, id=job_key, kwargs=kwargs,
                                        replace_existing=True, max_instances=1, coalesce=True)

        logger.info(f"Scheduled job {job_key} "
                    f"({'cron ' + cron if cron else start_at.isoformat() if start_at else 'durable'})")

    def trigger(self, job_key: str) -> None:
        with self._lock:
            job = self._jobs.get(job_key)
        if job is None:
            raise ConfigurationError(f"Job not scheduled: {job_key}")
        self._scheduler.add_job(job["func"], trigger=DateTrigger(run_date=utcnow()),
                                id=f"{job_key}#{uuid.uuid4().hex[:8]}", kwargs=job["kwargs"])

    def cancel(self, job_key: str) -> bool:
        with self._lock:
            job = self._jobs.pop(job_key, None)
        if job is None:
            return False
        if job["trigger"] is not None:
            try:
                self._scheduler.remove_job(job_key)
            except JobLookupError:
                logger.debug(f"Job {job_key} already gone from the scheduler")
        return True

    def has_job(self, job_key: str) -> bool:
        with self._lock:
            return job_key in self._jobs

    def job_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._jobs)
