"""
Job Manager for the Reconciliation Engine.

Registers pull and push tasks as jobs keyed by domain and task, prevents
overlapping runs of the same job, runs them through task delegates and
handles cooperative interruption with bounded retries.
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..engine.config_loader import ConfigStore
from ..exceptions import ConfigurationError, JobExecutionError, JobInterruptTimeoutError, ReconEngineError
from ..models import (
    JobExecutionContext,
    PullTask,
    PushTask,
    RunReport,
    SchedTask,
    TaskType,
    utcnow,
)
from .scheduler import APSchedulerBackend, SchedulerBackend
from .task_jobs import TaskJobDelegate

logger = logging.getLogger(__name__)


def job_key_for(domain: str, task_key: str) -> str:
    """Domain-scoped job key; equal task keys in two domains never collide."""
    return f"{domain}:taskJob:{task_key}"


class JobStatus(str, Enum):
    """Lifecycle status of a job execution."""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    INTERRUPTED = "INTERRUPTED"
    ORPHANED = "ORPHANED"


class JobExecution(BaseModel):
    """One execution of a job, kept in the manager's history."""
    job_key: str
    domain: str
    task_key: str
    status: JobStatus
    dry_run: bool = False
    executor: str = "admin"
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    message: Optional[str] = None
    report_count: int = 0


class _RunningJob:
    def __init__(self, context: JobExecutionContext, execution: JobExecution):
        self.context = context
        self.execution = execution
        self.done = threading.Event()
        self.orphaned = False


class JobManager:
    """
    Schedules, runs and interrupts provisioning jobs.

    At most one execution per job key runs at a time.
    """

    def __init__(self, config_store: ConfigStore, delegates: Dict[TaskType, TaskJobDelegate],
                 scheduler: Optional[SchedulerBackend] = None,
                 interrupt_max_retries: Optional[int] = None,
                 interrupt_backoff: float = 0.5):
        """
        Initialize the job manager.

        Args:
            config_store: Source of tasks
            delegates: Delegate running each task type
            scheduler: Scheduler collaborator (APScheduler by default)
            interrupt_max_retries: Default interrupt attempts; taken from the
                configuration when not given
            interrupt_backoff: Seconds waited after the first interrupt
                attempt, doubled on each retry
        """
        self.config_store = config_store
        self.delegates = delegates
        self.scheduler = scheduler or APSchedulerBackend()
        self.interrupt_max_retries = (interrupt_max_retries if interrupt_max_retries is not None
                                      else config_store.config.interrupt_max_retries)
        self.interrupt_backoff = interrupt_backoff
        self._running: Dict[str, _RunningJob] = {}
        self._history: Dict[str, List[JobExecution]] = {}
        self._interrupt_retries: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _domain(self, domain: Optional[str]) -> str:
        return domain or self.config_store.domain

    def _task_type(self, task: SchedTask) -> TaskType:
        if isinstance(task, PullTask):
            return TaskType.PULL
        if isinstance(task, PushTask):
            return TaskType.PUSH
        raise ConfigurationError(f"Unsupported task type: {type(task).__name__}")

    def register(self, task: Union[PullTask, PushTask], start_at: Optional[datetime] = None,
                 interrupt_max_retries: Optional[int] = None, domain: Optional[str] = None,
                 dry_run: bool = False, executor: str = "admin") -> str:
        """
        Schedule a task as a job.

        A job that is currently running is left untouched. Otherwise any
        previous registration is replaced: by the task's cron expression,
        by start_at, or as a durable job that runs only when triggered.

        Returns:
            The job key
        """
        domain = self._domain(domain)
        job_key = job_key_for(domain, task.key)
        if self.is_running(job_key):
            logger.info(f"Job {job_key} is running, not rescheduling")
            return job_key

        self.unregister(job_key)
        if not task.active:
            logger.info(f"Task {task.key} is not active, not scheduled")
            return job_key

        self.scheduler.schedule(
            job_key,
            self._fire,
            cron=task.cron_expression,
            start_at=start_at or task.start_at,
            payload={
                "task_key": task.key,
                "domain": domain,
                "dry_run": dry_run,
                "executor": executor,
            },
        )
        if interrupt_max_retries is not None:
            self._interrupt_retries[job_key] = interrupt_max_retries
        logger.info(f"Registered {self._task_type(task).value} job {job_key}")
        return job_key

    def register_all(self) -> List[str]:
        """Register every configured task."""
        return [self.register(task) for task in self.config_store.list_tasks()]

    def is_running(self, job_key: str) -> bool:
        with self._lock:
            return job_key in self._running

    def _fire(self, task_key: str, domain: str, dry_run: bool = False, executor: str = "admin") -> None:
        try:
            self.run_job(task_key, domain=domain, dry_run=dry_run, executor=executor)
        except JobExecutionError as e:
            logger.error(f"Scheduled job {job_key_for(domain, task_key)} failed: {e}")

    def run_job(self, task_key: str, domain: Optional[str] = None, dry_run: bool = False,
                executor: str = "admin") -> RunReport:
        """
        Run a task now, in the calling thread.

        Raises:
            JobExecutionError: if the job is already running or fails to run
        """
        domain = self._domain(domain)
        job_key = job_key_for(domain, task_key)
        try:
            task = self.config_store.get_task(task_key)
        except ConfigurationError as e:
            raise JobExecutionError(f"Job {job_key} cannot run: {e}") from e
        delegate = self.delegates.get(self._task_type(task))
        if delegate is None:
            raise JobExecutionError(f"No delegate for {self._task_type(task).value} tasks")

        context = JobExecutionContext(domain=domain, task_key=task_key, job_key=job_key,
                                      dry_run=dry_run, executor=executor)
        execution = JobExecution(job_key=job_key, domain=domain, task_key=task_key,
                                 status=JobStatus.RUNNING, dry_run=dry_run, executor=executor)
        running = _RunningJob(context, execution)

        with self._lock:
            if job_key in self._running:
                raise JobExecutionError(f"Job {job_key} is already running")
            self._running[job_key] = running

        logger.info(f"Job {job_key} started (dry_run={dry_run}, executor={executor})")
        try:
            run = delegate.execute(task, context)
            execution.status = JobStatus.INTERRUPTED if run.interrupted else JobStatus.SUCCESS
            execution.report_count = len(run.reports)
            execution.message = run.message
            return run
        except JobExecutionError as e:
            execution.status = JobStatus.FAILURE
            execution.message = str(e)
            raise
        except ConfigurationError as e:
            execution.status = JobStatus.FAILURE
            execution.message = str(e)
            raise JobExecutionError(f"Job {job_key} cannot run: {e}") from e
        except ReconEngineError as e:
            execution.status = JobStatus.FAILURE
            execution.message = str(e)
            raise JobExecutionError(f"Job {job_key} failed: {e}") from e
        finally:
            execution.ended_at = utcnow()
            with self._lock:
                self._running.pop(job_key, None)
                if not running.orphaned:
                    self._record(execution)
            running.done.set()
            logger.info(f"Job {job_key} ended with status {execution.status.value}")

    def trigger(self, job_key: str) -> None:
        self.scheduler.trigger(job_key)

    def interrupt(self, job_key: str, max_retries: Optional[int] = None) -> bool:
        """
        Request cooperative interruption of a running job.

        The request is repeated up to max_retries times, waiting with
        exponential backoff for the job to end.

        Returns:
            True once the job ended, False if it was not running

        Raises:
            JobInterruptTimeoutError: if the job is still running after the
                last retry; it is then recorded as ORPHANED
        """
        with self._lock:
            running = self._running.get(job_key)
        if running is None:
            logger.info(f"Job {job_key} is not running, nothing to interrupt")
            return False

        retries = max_retries
        if retries is None:
            retries = self._interrupt_retries.get(job_key, self.interrupt_max_retries)
        attempts = max(1, retries)
        for attempt in range(1, attempts + 1):
            logger.info(f"Interrupting job {job_key} (attempt {attempt}/{attempts})")
            running.context.request_interrupt()
            if running.done.wait(self.interrupt_backoff * (2 ** (attempt - 1))):
                return True

        with self._lock:
            running.orphaned = True
            running.execution.status = JobStatus.ORPHANED
            running.execution.message = f"Still running after {attempts} interrupt attempts"
            self._record(running.execution.model_copy())
        logger.error(f"Job {job_key} could not be interrupted and is orphaned")
        raise JobInterruptTimeoutError(job_key, attempts)

    def unregister(self, job_key: str) -> None:
        """Remove a job; removing a job that is not scheduled is not an error."""
        self._interrupt_retries.pop(job_key, None)
        if self.scheduler.cancel(job_key):
            logger.info(f"Unregistered job {job_key}")
        else:
            logger.debug(f"Job {job_key} was not scheduled")

    def unregister_task(self, task_key: str, domain: Optional[str] = None) -> None:
        self.unregister(job_key_for(self._domain(domain), task_key))

    def _record(self, execution: JobExecution) -> None:
        self._history.setdefault(execution.job_key, []).append(execution)

    def history(self, job_key: str) -> List[JobExecution]:
        with self._lock:
            return list(self._history.get(job_key, []))

    def list_jobs(self) -> List[str]:
        return self.scheduler.job_keys()

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)
