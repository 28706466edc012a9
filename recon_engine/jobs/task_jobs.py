"""
Pull and push job delegates.

A delegate checks a connector out of the resource's pool, runs the matching
workflow, renders the run report and hands it to the report sink.
"""

import logging
from abc import ABC
from typing import Optional, Type

from ..audit.report_sink import ReportSink
from ..connectors.registry import ConnectorManager
from ..engine.config_loader import ConfigStore
from ..engine.identity_store import IdentityStore
from ..engine.mapping import MappingManager
from ..exceptions import ConnectorError, JobExecutionError
from ..models import JobExecutionContext, RunReport, RunStatus, SchedTask, TaskType, utcnow
from ..workflows.base_workflow import ActionsRegistry, BaseWorkflow, ProvisioningProfile
from ..workflows.helpers import has_failures, render_report, summarize
from ..workflows.pull_workflow import PullWorkflow
from ..workflows.push_workflow import PushWorkflow

logger = logging.getLogger(__name__)


class TaskJobDelegate(ABC):
    """Runs one task execution for the job manager."""

    task_type: TaskType
    workflow_class: Type[BaseWorkflow]

    def __init__(self, config_store: ConfigStore, store: IdentityStore,
                 connector_manager: ConnectorManager, report_sink: Optional[ReportSink] = None,
                 actions_registry: Optional[ActionsRegistry] = None,
                 mapping: Optional[MappingManager] = None):
        self.config_store = config_store
        self.store = store
        self.connector_manager = connector_manager
        self.report_sink = report_sink
        self.actions_registry = actions_registry or ActionsRegistry()
        self.mapping = mapping or MappingManager()

    def execute(self, task: SchedTask, context: JobExecutionContext) -> RunReport:
        """
        Run the task.

        Raises:
            JobExecutionError: if no connector can be obtained or the
                workflow cannot read from the resource; no report is produced
        """
        resource = self.config_store.get_resource(task.resource)
        actions = self.actions_registry.resolve(task.actions)
        started_at = utcnow()

        pool = self.connector_manager.pool_for(resource)
        try:
            connector = pool.acquire()
        except ConnectorError as e:
            raise JobExecutionError(f"No connector for {resource.key}: {e}") from e

        try:
            profile = ProvisioningProfile(resource, task, context, connector, self.store,
                                          self.config_store, self.mapping, actions)
            workflow = self.workflow_class(profile)
            reports = workflow.execute()
        finally:
            if context.is_interrupt_requested():
                logger.info(f"Disposing connector of interrupted job {context.job_key}")
                pool.invalidate(connector)
            else:
                pool.release(connector)

        interrupted = workflow.interrupted
        if interrupted:
            status = RunStatus.INTERRUPTED
        elif has_failures(reports):
            status = RunStatus.FAILURE
        else:
            status = RunStatus.SUCCESS

        counts = summarize(reports)
        run = RunReport(
            domain=context.domain,
            task_key=task.key,
            job_key=context.job_key,
            task_type=self.task_type,
            resource=resource.key,
            executor=context.executor,
            dry_run=context.dry_run,
            interrupted=interrupted,
            status=status,
            started_at=started_at,
            ended_at=utcnow(),
            reports=reports,
            text=render_report(reports, resource.trace_level, context.dry_run, interrupted),
            message="; ".join(f"{any_type}: {sum(c.values())}" for any_type, c in counts.items()) or None,
        )

        if self.report_sink is not None:
            self.report_sink.store(run)
        return run


class PullJobDelegate(TaskJobDelegate):
    task_type = TaskType.PULL
    workflow_class = PullWorkflow


class PushJobDelegate(TaskJobDelegate):
    task_type = TaskType.PUSH
    workflow_class = PushWorkflow
