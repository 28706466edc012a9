"""
Jobs Package for the Reconciliation Engine.
"""

from .job_manager import JobExecution, JobManager, JobStatus, job_key_for
from .scheduler import APSchedulerBackend, SchedulerBackend
from .task_jobs import PullJobDelegate, PushJobDelegate, TaskJobDelegate

__all__ = [
    "APSchedulerBackend",
    "JobExecution",
    "JobManager",
    "JobStatus",
    "PullJobDelegate",
    "PushJobDelegate",
    "SchedulerBackend",
    "TaskJobDelegate",
    "job_key_for",
]
