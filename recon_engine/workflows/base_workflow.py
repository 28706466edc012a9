"""
Base Workflow Classes for the Reconciliation Engine.

This module provides the foundation for pull and push passes: the per-run
provisioning profile, the pluggable actions hooks and the shared reporting
and policy-checking helpers.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from pydantic import SecretStr

from ..connectors.base_connector import Connector
from ..engine.config_loader import ConfigStore
from ..engine.identity_store import IdentityStore
from ..engine.mapping import MappingManager
from ..engine.policy_enforcer import PolicyEnforcer
from ..exceptions import ConfigurationError
from ..models import (
    AnyRecord,
    ExternalResource,
    JobExecutionContext,
    ProvisioningReport,
    ReportStatus,
    ResourceOperation,
    SchedTask,
    SyncDelta,
    UserRecord,
    UserStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class PullActions:
    """
    Hooks around a pull pass. Subclasses override what they need.

    ``preprocess`` may return a modified delta; the before_* hooks may
    modify the candidate record in place.
    """

    def before_all(self, profile: "ProvisioningProfile") -> None:
        pass

    def preprocess(self, profile: "ProvisioningProfile", delta: SyncDelta) -> SyncDelta:
        return delta

    def before_provision(self, profile: "ProvisioningProfile", delta: SyncDelta, record: AnyRecord) -> None:
        pass

    def before_update(self, profile: "ProvisioningProfile", delta: SyncDelta, record: AnyRecord) -> None:
        pass

    def before_delete(self, profile: "ProvisioningProfile", delta: SyncDelta, record: AnyRecord) -> None:
        pass

    def after(self, profile: "ProvisioningProfile", delta: SyncDelta, record: Optional[AnyRecord],
              report: ProvisioningReport) -> None:
        pass

    def after_all(self, profile: "ProvisioningProfile") -> None:
        pass


class PushActions:
    """Hooks around a push pass."""

    def before_all(self, profile: "ProvisioningProfile") -> None:
        pass

    def before_provision(self, profile: "ProvisioningProfile", record: AnyRecord) -> None:
        pass

    def before_update(self, profile: "ProvisioningProfile", record: AnyRecord) -> None:
        pass

    def before_delete(self, profile: "ProvisioningProfile", record: AnyRecord) -> None:
        pass

    def after(self, profile: "ProvisioningProfile", record: AnyRecord, report: ProvisioningReport) -> None:
        pass

    def after_all(self, profile: "ProvisioningProfile") -> None:
        pass


class ActionsRegistry:
    """Maps action keys declared on tasks to factories building hook objects."""

    def __init__(self):
        self._factories: Dict[str, Callable[[], Any]] = {}

    def register(self, key: str, factory: Callable[[], Any]) -> None:
        self._factories[key] = factory

    def resolve(self, keys: List[str]) -> List[Any]:
        actions = []
        for key in keys:
            if key not in self._factories:
                raise ConfigurationError(f"Unknown actions: {key}")
            actions.append(self._factories[key]())
        return actions


class ProvisioningProfile:
    """Everything a single pull or push run works with."""

    def __init__(self, resource: ExternalResource, task: SchedTask, context: JobExecutionContext,
                 connector: Connector, store: IdentityStore, config_store: ConfigStore,
                 mapping: Optional[MappingManager] = None, actions: Optional[List[Any]] = None):
        self.resource = resource
        self.task = task
        self.context = context
        self.connector = connector
        self.store = store
        self.config_store = config_store
        self.mapping = mapping or MappingManager()
        self.actions = actions or []

    @property
    def dry_run(self) -> bool:
        return self.context.dry_run


class BaseWorkflow(ABC):
    """
    Abstract base class for provisioning passes.

    Collects one ProvisioningReport per processed unit and honors
    cooperative interruption between units.
    """

    def __init__(self, profile: ProvisioningProfile):
        """
        Initialize the workflow.

        Args:
            profile: Resource, task, context and collaborators of this run
        """
        self.profile = profile
        self.workflow_id = str(uuid.uuid4())
        self.started_at = None
        self.completed_at = None
        self.reports: List[ProvisioningReport] = []
        self.interrupted = False

        self.enforcer = PolicyEnforcer(suspender=None if profile.dry_run else self._suspend)

        logger.info(f"Initialized {self.__class__.__name__} {self.workflow_id} "
                    f"for task {profile.task.key} on {profile.resource.key}")

    @abstractmethod
    def execute(self) -> List[ProvisioningReport]:
        """
        Run the pass.

        Returns:
            The ordered list of provisioning reports
        """
        pass

    def _interrupt_requested(self) -> bool:
        if self.profile.context.is_interrupt_requested():
            if not self.interrupted:
                logger.warning(f"{self.__class__.__name__} {self.workflow_id} interrupted")
            self.interrupted = True
        return self.interrupted

    def _report(self, status: ReportStatus, operation: ResourceOperation, any_type: Optional[str],
                name: Optional[str], uid_value: Optional[str] = None, key: Optional[str] = None,
                message: Optional[str] = None) -> ProvisioningReport:
        report = ProvisioningReport(key=key, any_type=any_type, name=name, uid_value=uid_value,
                                    status=status, operation=operation, message=message)
        self.reports.append(report)

        if status == ReportStatus.FAILURE:
            logger.error(f"{operation.value} {any_type} {name or uid_value} failed: {message}")
        elif status == ReportStatus.IGNORE:
            logger.debug(f"{operation.value} {any_type} {name or uid_value} ignored: {message}")
        else:
            logger.debug(f"{operation.value} {any_type} {name or uid_value} done")
        return report

    def _check_policies(self, record: AnyRecord, password: Optional[SecretStr] = None) -> None:
        """Raises PolicyViolation when the resource's policies reject the record."""
        config_store = self.profile.config_store
        resource = self.profile.resource
        self.enforcer.check(
            record,
            account_policy=config_store.get_account_policy(resource.account_policy),
            password_policy=config_store.get_password_policy(resource.password_policy),
            password=password,
        )

    def _suspend(self, record: UserRecord) -> None:
        """Suspend the stored user; pending changes on the candidate record are not saved."""
        record.suspended = True
        record.status = UserStatus.SUSPENDED
        stored = self.profile.store.get(record.key) if record.key else None
        if stored is None:
            return
        stored.suspended = True
        stored.status = UserStatus.SUSPENDED
        self.profile.store.save(stored)

    def _start(self) -> None:
        self.started_at = utcnow()

    def _finish(self) -> None:
        self.completed_at = utcnow()

    def get_execution_summary(self) -> Dict[str, Any]:
        """Get summary of workflow execution."""
        counts: Dict[str, int] = {status.value: 0 for status in ReportStatus}
        for report in self.reports:
            counts[report.status.value] += 1

        return {
            "workflow_id": self.workflow_id,
            "workflow_type": self.__class__.__name__,
            "task": self.profile.task.key,
            "resource": self.profile.resource.key,
            "dry_run": self.profile.dry_run,
            "interrupted": self.interrupted,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total": len(self.reports),
            **counts,
        }
