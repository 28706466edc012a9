"""
Push Workflow for the Reconciliation Engine.

Propagates internal records to external resources. PushPropagator computes
and executes the per-resource operations for one internal mutation with
bulkhead semantics; PushWorkflow runs a scheduled push task over the
records of a resource.
"""

import logging
from contextlib import nullcontext
from typing import Callable, ContextManager, Dict, List, Optional, Tuple

from pydantic import SecretStr

from ..connectors.base_connector import AttributeDelta, Connector, PropagationAttempt
from ..engine.mapping import MappingManager
from ..exceptions import ConfigurationError, ReconEngineError
from ..models import (
    AnyRecord,
    ConnectorObject,
    ExternalResource,
    MatchingRule,
    PropagationByResource,
    PropagationStatus,
    ProvisioningReport,
    PushTask,
    ReportStatus,
    ResourceOperation,
    ResourcePropagationResult,
    ResourceProvision,
    UnmatchingRule,
    UserRecord,
)
from ..search.matcher import filter_matching
from .base_workflow import BaseWorkflow, ProvisioningProfile

logger = logging.getLogger(__name__)

ConnectorProvider = Callable[[ExternalResource], ContextManager[Connector]]


def find_remote(connector: Connector, provision: ResourceProvision,
                conn_object_key: Optional[str]) -> Optional[ConnectorObject]:
    """Look up the external object of a record by its connector object key."""
    if conn_object_key is None:
        return None
    key_item = provision.mapping.get_conn_object_key_item()
    return connector.get_object(provision.object_class, key_item.ext_attr_name, conn_object_key,
                                ignore_case=provision.ignore_case_match)


class PushPropagator:
    """
    Computes and executes PropagationByResource for one internal mutation.

    Each resource's connector call is independent: a failure on one resource
    is recorded in its result and never prevents attempts on the others.
    """

    def __init__(self, connector_provider: ConnectorProvider, mapping: Optional[MappingManager] = None):
        """
        Initialize the propagator.

        Args:
            connector_provider: Returns a context manager yielding a
                connector for a resource (e.g. ConnectorManager.checkout)
            mapping: Attribute translation
        """
        self.connector_provider = connector_provider
        self.mapping = mapping or MappingManager()

    def compute(self, record: AnyRecord, operation: ResourceOperation,
                resources: List[ExternalResource], password: Optional[SecretStr] = None,
                changed_schemas: Optional[List[str]] = None
                ) -> Tuple[PropagationByResource, Dict[str, ResourcePropagationResult]]:
        """
        Decide the operation for each resource.

        A resource without the object gets CREATE (nothing, if the local record
        was deleted); an existing object gets DELETE for a deleted record and
        UPDATE otherwise, partial when changed_schemas is given.

        Returns:
            The propagation plan, and results for resources settled while
            computing it (translation/lookup failures, nothing to delete)
        """
        pbr = PropagationByResource()
        settled: Dict[str, ResourcePropagationResult] = {}

        for resource in resources:
            provision = resource.get_provision(record.type)
            if provision is None:
                logger.debug(f"Resource {resource.key} does not provision {record.type}")
                continue

            try:
                key, attributes = self.mapping.to_connector(resource, provision, record, password)
                with self.connector_provider(resource) as connector:
                    existing = find_remote(connector, provision, key)
            except ReconEngineError as e:
                logger.error(f"Cannot compute propagation of {record.get_name()} to {resource.key}: {e}")
                settled[resource.key] = ResourcePropagationResult(
                    resource=resource.key, operation=operation, status=PropagationStatus.FAILURE,
                    message=str(e),
                )
                continue

            if operation == ResourceOperation.DELETE:
                if existing is None:
                    settled[resource.key] = ResourcePropagationResult(
                        resource=resource.key, operation=operation,
                        status=PropagationStatus.NOT_ATTEMPTED, message="Not found on resource",
                    )
                else:
                    pbr.add(ResourceOperation.DELETE, resource.key, {}, existing.uid)
            elif existing is None:
                pbr.add(ResourceOperation.CREATE, resource.key, attributes, key)
            elif changed_schemas is not None:
                _, partial = self.mapping.to_connector(resource, provision, record, password, changed_schemas)
                pbr.add(ResourceOperation.UPDATE, resource.key, partial, existing.uid, partial=True)
            else:
                pbr.add(ResourceOperation.UPDATE, resource.key, attributes, existing.uid)

        logger.debug(f"Propagation of {record.get_name()}: {pbr}")
        return pbr, settled

    def propagate(self, record: AnyRecord, pbr: PropagationByResource,
                  resources: List[ExternalResource],
                  dry_run: bool = False) -> Dict[str, ResourcePropagationResult]:
        """Execute a propagation plan, one independent connector call per resource."""
        by_key = {resource.key: resource for resource in resources}
        results: Dict[str, ResourcePropagationResult] = {}

        for resource_key in pbr.resources():
            operation = pbr.operation_for(resource_key)
            resource = by_key.get(resource_key)
            if resource is None:
                raise ConfigurationError(f"Resource {resource_key} is not among the propagation targets")
            results[resource_key] = self._propagate_one(record, resource, operation, pbr, dry_run)
        return results

    def _propagate_one(self, record: AnyRecord, resource: ExternalResource, operation: ResourceOperation,
                       pbr: PropagationByResource, dry_run: bool) -> ResourcePropagationResult:
        provision = resource.get_provision(record.type)
        attributes = pbr.attributes.get(resource.key, {})
        uid = pbr.conn_object_keys.get(resource.key)
        attempt = PropagationAttempt()

        if dry_run:
            return ResourcePropagationResult(resource=resource.key, operation=operation,
                                             status=PropagationStatus.SUCCESS, conn_object_key=uid,
                                             message="Dry run")
        try:
            with self.connector_provider(resource) as connector:
                if operation == ResourceOperation.CREATE:
                    uid = connector.create(provision.object_class, attributes, propagation_attempt=attempt) or uid
                elif operation == ResourceOperation.DELETE:
                    connector.delete(provision.object_class, uid, propagation_attempt=attempt)
                elif resource.key in pbr.partial:
                    deltas = [AttributeDelta(name=name, values_to_replace=values)
                              for name, values in attributes.items()]
                    uid = connector.update_delta(provision.object_class, uid, deltas,
                                                 propagation_attempt=attempt) or uid
                else:
                    uid = connector.update(provision.object_class, uid, attributes,
                                           propagation_attempt=attempt) or uid
        except Exception as e:
            logger.error(f"{operation.value} of {record.get_name()} on {resource.key} failed: {e}")
            return ResourcePropagationResult(resource=resource.key, operation=operation,
                                             status=PropagationStatus.FAILURE, conn_object_key=uid,
                                             propagation_attempted=attempt.attempted, message=str(e))

        if not attempt.attempted:
            return ResourcePropagationResult(resource=resource.key, operation=operation,
                                             status=PropagationStatus.NOT_ATTEMPTED, conn_object_key=uid,
                                             message=f"{resource.key} does not support {operation.value}")

        logger.info(f"Propagated {operation.value} of {record.type} {record.get_name()} to {resource.key}")
        return ResourcePropagationResult(resource=resource.key, operation=operation,
                                         status=PropagationStatus.SUCCESS, conn_object_key=uid,
                                         propagation_attempted=True)

    def propagate_mutation(self, record: AnyRecord, operation: ResourceOperation,
                           resources: List[ExternalResource], password: Optional[SecretStr] = None,
                           changed_schemas: Optional[List[str]] = None,
                           dry_run: bool = False) -> Dict[str, ResourcePropagationResult]:
        """
        Compute and execute the propagation of one internal mutation.

        Args:
            record: The created, updated or deleted record
            operation: The internal mutation
            resources: Candidate resources
            password: Changed cleartext password, sent only to resources
                marked to receive it
            changed_schemas: Schemas changed by an update
            dry_run: Compute only

        Returns:
            Map from resource key to its outcome
        """
        pbr, results = self.compute(record, operation, resources, password, changed_schemas)
        results.update(self.propagate(record, pbr, resources, dry_run))
        return results


class PushWorkflow(BaseWorkflow):
    """Push (internal to external) propagation of one resource's records."""

    def __init__(self, profile: ProvisioningProfile):
        super().__init__(profile)
        if not isinstance(profile.task, PushTask):
            raise ConfigurationError(f"Task {profile.task.key} is not a push task")
        self.task: PushTask = profile.task
        self.handled = 0
        self.propagator = PushPropagator(lambda resource: nullcontext(profile.connector), profile.mapping)

    def execute(self) -> List[ProvisioningReport]:
        self._start()
        resource = self.profile.resource
        logger.info(f"Push {self.task.key} started on {resource.key} (dry_run={self.profile.dry_run})")

        for action in self.profile.actions:
            action.before_all(self.profile)

        for any_type in self.task.any_types:
            provision = resource.get_provision(any_type)
            if provision is None:
                logger.warning(f"Resource {resource.key} has no provision for {any_type}; skipped")
                continue

            records = self.profile.store.all(any_type)
            cond = self.task.filters.get(any_type)
            if cond is not None:
                records = filter_matching(cond, records)

            for record in records:
                if self._interrupt_requested() or self._limit_reached():
                    break
                self.handled += 1
                self._push_record(record, provision)

        for action in self.profile.actions:
            action.after_all(self.profile)

        self._finish()
        logger.info(f"Push {self.task.key} finished on {resource.key}: {len(self.reports)} report entries")
        return self.reports

    def _limit_reached(self) -> bool:
        return self.task.max_results is not None and self.handled >= self.task.max_results

    def _password_for(self, record: AnyRecord) -> Optional[SecretStr]:
        if isinstance(record, UserRecord) and self.profile.resource.propagate_password:
            return record.password
        return None

    def _push_record(self, record: AnyRecord, provision: ResourceProvision) -> None:
        resource = self.profile.resource
        try:
            key, _ = self.profile.mapping.to_connector(resource, provision, record)
            existing = find_remote(self.profile.connector, provision, key)
            if existing is not None:
                report = self._matched(record, existing.uid)
            else:
                report = self._unmatched(record)
        except ReconEngineError as e:
            report = self._report(ReportStatus.FAILURE, ResourceOperation.NONE, record.type,
                                  record.get_name(), key=record.key, message=str(e))

        for action in self.profile.actions:
            action.after(self.profile, record, report)

    def _execute(self, record: AnyRecord, operation: ResourceOperation,
                 uid: Optional[str] = None) -> ProvisioningReport:
        """Enforce policies on provisioning and updates, then send one operation to the task's resource."""
        resource = self.profile.resource
        provision = resource.get_provision(record.type)
        if operation != ResourceOperation.DELETE:
            self._check_policies(record)

        pbr = PropagationByResource()
        password = self._password_for(record)
        key, attributes = self.profile.mapping.to_connector(resource, provision, record, password)
        pbr.add(operation, resource.key, attributes if operation != ResourceOperation.DELETE else {},
                uid or key)

        result = self.propagator.propagate(record, pbr, [resource], self.profile.dry_run)[resource.key]
        status = {
            PropagationStatus.SUCCESS: ReportStatus.SUCCESS,
            PropagationStatus.FAILURE: ReportStatus.FAILURE,
            PropagationStatus.NOT_ATTEMPTED: ReportStatus.IGNORE,
        }[result.status]
        return self._report(status, operation, record.type, record.get_name(),
                            result.conn_object_key, key=record.key, message=result.message)

    def _relink(self, record: AnyRecord, link: bool) -> None:
        if link:
            record.add_resource(self.profile.resource.key)
        else:
            record.remove_resource(self.profile.resource.key)
        if not self.profile.dry_run:
            self.profile.store.save(record)

    def _matched(self, record: AnyRecord, uid: str) -> ProvisioningReport:
        rule = self.task.matching_rule
        resource_key = self.profile.resource.key

        if rule == MatchingRule.IGNORE:
            return self._report(ReportStatus.IGNORE, ResourceOperation.NONE, record.type,
                                record.get_name(), uid, key=record.key, message="Matching rule IGNORE")
        if rule in (MatchingRule.LINK, MatchingRule.UNLINK):
            self._relink(record, rule == MatchingRule.LINK)
            verb = "Linked to" if rule == MatchingRule.LINK else "Unlinked from"
            return self._report(ReportStatus.SUCCESS, ResourceOperation.NONE, record.type,
                                record.get_name(), uid, key=record.key, message=f"{verb} {resource_key}")

        if rule == MatchingRule.UPDATE:
            if not self.task.perform_update:
                return self._report(ReportStatus.IGNORE, ResourceOperation.UPDATE, record.type,
                                    record.get_name(), uid, key=record.key,
                                    message="Update is not enabled on this task")
            for action in self.profile.actions:
                action.before_update(self.profile, record)
            return self._execute(record, ResourceOperation.UPDATE, uid)

        # DEPROVISION or UNASSIGN
        if not self.task.perform_delete:
            return self._report(ReportStatus.IGNORE, ResourceOperation.DELETE, record.type,
                                record.get_name(), uid, key=record.key,
                                message="Delete is not enabled on this task")
        for action in self.profile.actions:
            action.before_delete(self.profile, record)
        report = self._execute(record, ResourceOperation.DELETE, uid)
        if rule == MatchingRule.UNASSIGN and report.status == ReportStatus.SUCCESS:
            self._relink(record, False)
        return report

    def _unmatched(self, record: AnyRecord) -> ProvisioningReport:
        rule = self.task.unmatching_rule
        resource_key = self.profile.resource.key

        if rule == UnmatchingRule.IGNORE:
            return self._report(ReportStatus.IGNORE, ResourceOperation.NONE, record.type,
                                record.get_name(), key=record.key, message="Unmatching rule IGNORE")
        if rule == UnmatchingRule.UNLINK:
            self._relink(record, False)
            return self._report(ReportStatus.SUCCESS, ResourceOperation.NONE, record.type,
                                record.get_name(), key=record.key, message=f"Unlinked from {resource_key}")

        if not self.task.perform_create:
            return self._report(ReportStatus.IGNORE, ResourceOperation.CREATE, record.type,
                                record.get_name(), key=record.key,
                                message="Create is not enabled on this task")
        for action in self.profile.actions:
            action.before_provision(self.profile, record)
        report = self._execute(record, ResourceOperation.CREATE)
        if rule == UnmatchingRule.ASSIGN and report.status == ReportStatus.SUCCESS:
            self._relink(record, True)
        return report
