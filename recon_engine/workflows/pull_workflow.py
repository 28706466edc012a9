"""
Pull Workflow for the Reconciliation Engine.

Consumes external changes from a connector, correlates each one with the
internal records, resolves conflicts, enforces policies and applies the
result to the identity store. Every delta yields at least one report entry.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import SecretStr

from ..exceptions import (
    ConfigurationError,
    ConnectorError,
    CorrelationAmbiguityError,
    JobExecutionError,
    ReconEngineError,
)
from ..models import (
    AnyRecord,
    AnyType,
    AnyTypeKind,
    ConflictResolutionAction,
    ConnectorObject,
    MatchingRule,
    ProvisioningReport,
    PullMode,
    PullTask,
    ReportStatus,
    ResourceOperation,
    ResourceProvision,
    SyncDelta,
    SyncDeltaType,
    UnmatchingRule,
    UserRecord,
)
from ..engine.mapping import resolve_any_type
from ..search.correlation import CorrelationRule, build_rule, correlation_cond
from .base_workflow import BaseWorkflow, ProvisioningProfile

logger = logging.getLogger(__name__)

_KIND_ORDER = {AnyTypeKind.USER: 0, AnyTypeKind.GROUP: 1, AnyTypeKind.ANY_OBJECT: 2}


class PullWorkflow(BaseWorkflow):
    """
    Pull (external to internal) reconciliation of one resource.

    Provisions are pulled users first, then groups, then other any types.
    """

    def __init__(self, profile: ProvisioningProfile):
        super().__init__(profile)
        if not isinstance(profile.task, PullTask):
            raise ConfigurationError(f"Task {profile.task.key} is not a pull task")
        self.task: PullTask = profile.task
        self.handled = 0
        self._latest_token: Optional[str] = None
        self._token_frozen = False

    def execute(self) -> List[ProvisioningReport]:
        """
        Run the pull pass.

        Raises:
            JobExecutionError: if a sync or search stream cannot be consumed
        """
        self._start()
        resource = self.profile.resource
        logger.info(f"Pull {self.task.key} started on {resource.key} "
                    f"(mode={self.task.pull_mode.value}, dry_run={self.profile.dry_run})")

        for action in self.profile.actions:
            action.before_all(self.profile)

        provisions = sorted(
            resource.provisions,
            key=lambda p: _KIND_ORDER[resolve_any_type(p.any_type).kind],
        )
        for provision in provisions:
            if self._interrupt_requested() or self._limit_reached():
                break
            self._pull_provision(provision)

        for action in self.profile.actions:
            action.after_all(self.profile)

        self._finish()
        logger.info(f"Pull {self.task.key} finished on {resource.key}: {len(self.reports)} report entries")
        return self.reports

    def _limit_reached(self) -> bool:
        return self.task.max_results is not None and self.handled >= self.task.max_results

    def _pull_provision(self, provision: ResourceProvision) -> None:
        any_type = resolve_any_type(provision.any_type)
        rule = build_rule(self.profile.resource.correlation_rules.get(provision.any_type), provision)
        options = self.profile.mapping.build_operation_options(provision)
        connector = self.profile.connector

        def on_delta(delta: SyncDelta) -> bool:
            return self._on_delta(delta, provision, any_type, rule)

        def on_object(connector_object: ConnectorObject) -> bool:
            delta = SyncDelta(delta_type=SyncDeltaType.CREATE_OR_UPDATE, uid=connector_object.uid,
                              connector_object=connector_object)
            return self._on_delta(delta, provision, any_type, rule)

        try:
            if self.task.pull_mode == PullMode.INCREMENTAL:
                self._latest_token = None
                self._token_frozen = False
                token = self.profile.config_store.get_sync_token(self.profile.resource.key, provision.any_type)
                logger.debug(f"Syncing {provision.object_class} from token {token}")
                connector.sync(provision.object_class, token, on_delta, options)
                self._store_token(provision)
            elif self.task.pull_mode == PullMode.FILTERED_RECONCILIATION:
                if self.task.recon_filter is None:
                    raise ConfigurationError(f"Task {self.task.key} has no reconciliation filter")
                connector.search(provision.object_class, self.task.recon_filter, on_object, options)
            else:
                connector.search(provision.object_class, None, on_object, options)
        except ConnectorError as e:
            raise JobExecutionError(
                f"Cannot read {provision.object_class} from {self.profile.resource.key}: {e}"
            ) from e

    def _store_token(self, provision: ResourceProvision) -> None:
        if self._latest_token is None:
            return
        if self.profile.dry_run:
            logger.info(f"Dry run: sync token for {provision.any_type} left unchanged")
            return
        self.profile.config_store.set_sync_token(self.profile.resource.key, provision.any_type,
                                                 self._latest_token)

    def _on_delta(self, delta: SyncDelta, provision: ResourceProvision, any_type: AnyType,
                  rule: Optional[CorrelationRule]) -> bool:
        """Sync/search handler; returns False to stop the stream."""
        if self._limit_reached():
            return False

        self.handled += 1
        succeeded = self._handle_delta(delta, provision, any_type, rule)

        if not succeeded:
            self._token_frozen = True
        elif not self._token_frozen and delta.token is not None:
            self._latest_token = delta.token

        if self._interrupt_requested():
            return False
        return not self._limit_reached()

    def _handle_delta(self, delta: SyncDelta, provision: ResourceProvision, any_type: AnyType,
                      rule: Optional[CorrelationRule]) -> bool:
        """Process one delta; returns False if any report entry for it is a FAILURE."""
        first_report = len(self.reports)
        try:
            for action in self.profile.actions:
                delta = action.preprocess(self.profile, delta)

            cond = correlation_cond(rule, provision, delta.connector_object)
            matches = self.profile.store.find(any_type.key, cond)
            logger.debug(f"{delta.delta_type.value} {delta.uid}: {len(matches)} match(es)")

            if not matches:
                if delta.delta_type == SyncDeltaType.DELETE:
                    self._report(ReportStatus.IGNORE, ResourceOperation.NONE, any_type.key,
                                 delta.connector_object.name, delta.uid,
                                 message="No internal match for delete")
                else:
                    self._unmatched(delta, provision, any_type)
            else:
                for record in self._resolve_conflict(delta, any_type, matches):
                    self._matched(delta, provision, any_type, record)
        except ReconEngineError as e:
            self._report(ReportStatus.FAILURE, ResourceOperation.NONE, any_type.key,
                         delta.connector_object.name, delta.uid, message=str(e))

        return all(r.status != ReportStatus.FAILURE for r in self.reports[first_report:])

    def _resolve_conflict(self, delta: SyncDelta, any_type: AnyType,
                          matches: List[AnyRecord]) -> List[AnyRecord]:
        if len(matches) == 1:
            return matches

        action = self.profile.resource.conflict_resolution_action
        ambiguity = CorrelationAmbiguityError(delta.uid, matches)
        if action == ConflictResolutionAction.IGNORE:
            logger.warning(f"{ambiguity}; ignoring")
            self._report(ReportStatus.IGNORE, ResourceOperation.NONE, any_type.key,
                         delta.connector_object.name, delta.uid, message=str(ambiguity))
            return []
        if action == ConflictResolutionAction.FIRSTMATCH:
            logger.warning(f"{ambiguity}; using the first")
            return matches[:1]
        if action == ConflictResolutionAction.LASTMATCH:
            logger.warning(f"{ambiguity}; using the last")
            return matches[-1:]
        return matches

    # Unmatched

    def _unmatched(self, delta: SyncDelta, provision: ResourceProvision, any_type: AnyType) -> None:
        rule = self.task.unmatching_rule
        name = delta.connector_object.name

        if rule not in (UnmatchingRule.PROVISION, UnmatchingRule.ASSIGN):
            if rule != UnmatchingRule.IGNORE:
                logger.warning(f"Unmatching rule {rule.value} does not apply to pull; ignoring {delta.uid}")
            self._report(ReportStatus.IGNORE, ResourceOperation.NONE, any_type.key, name, delta.uid,
                         message=f"Unmatching rule {rule.value}")
            return
        if not self.task.perform_create:
            self._report(ReportStatus.IGNORE, ResourceOperation.CREATE, any_type.key, name, delta.uid,
                         message="Create is not enabled on this task")
            return

        record = None
        try:
            values = self.profile.mapping.to_internal(provision, delta.connector_object)
            record = self.profile.mapping.new_record(any_type, values, delta.connector_object,
                                                     self.task.destination_realm)
            if rule == UnmatchingRule.ASSIGN:
                record.add_resource(self.profile.resource.key)

            for action in self.profile.actions:
                action.before_provision(self.profile, delta, record)

            self._check_policies(record, self._password_of(values))

            key = None
            if not self.profile.dry_run:
                record = self.profile.store.save(record)
                key = record.key
            report = self._report(ReportStatus.SUCCESS, ResourceOperation.CREATE, any_type.key,
                                  record.get_name(), delta.uid, key=key)
        except ReconEngineError as e:
            report = self._report(ReportStatus.FAILURE, ResourceOperation.CREATE, any_type.key,
                                  record.get_name() if record else name, delta.uid, message=str(e))

        for action in self.profile.actions:
            action.after(self.profile, delta, record, report)

    # Matched

    def _matched(self, delta: SyncDelta, provision: ResourceProvision, any_type: AnyType,
                 record: AnyRecord) -> None:
        if delta.delta_type == SyncDeltaType.DELETE:
            report = self._delete(delta, any_type, record)
        else:
            report = self._apply_matching_rule(delta, provision, any_type, record)

        for action in self.profile.actions:
            action.after(self.profile, delta, record, report)

    def _delete(self, delta: SyncDelta, any_type: AnyType, record: AnyRecord) -> ProvisioningReport:
        if not self.task.perform_delete:
            return self._report(ReportStatus.IGNORE, ResourceOperation.DELETE, any_type.key,
                                record.get_name(), delta.uid, key=record.key,
                                message="Delete is not enabled on this task")
        try:
            for action in self.profile.actions:
                action.before_delete(self.profile, delta, record)
            if not self.profile.dry_run:
                self.profile.store.delete(record.key)
            return self._report(ReportStatus.SUCCESS, ResourceOperation.DELETE, any_type.key,
                                record.get_name(), delta.uid, key=record.key)
        except ReconEngineError as e:
            return self._report(ReportStatus.FAILURE, ResourceOperation.DELETE, any_type.key,
                                record.get_name(), delta.uid, key=record.key, message=str(e))

    def _apply_matching_rule(self, delta: SyncDelta, provision: ResourceProvision, any_type: AnyType,
                             record: AnyRecord) -> ProvisioningReport:
        rule = self.task.matching_rule
        resource_key = self.profile.resource.key

        if rule in (MatchingRule.IGNORE, MatchingRule.DEPROVISION):
            if rule != MatchingRule.IGNORE:
                logger.warning(f"Matching rule {rule.value} does not apply to pull; ignoring {delta.uid}")
            return self._report(ReportStatus.IGNORE, ResourceOperation.NONE, any_type.key,
                                record.get_name(), delta.uid, key=record.key,
                                message=f"Matching rule {rule.value}")
        if not self.task.perform_update:
            return self._report(ReportStatus.IGNORE, ResourceOperation.UPDATE, any_type.key,
                                record.get_name(), delta.uid, key=record.key,
                                message="Update is not enabled on this task")

        try:
            message = None
            if rule == MatchingRule.UPDATE:
                values = self.profile.mapping.to_internal(provision, delta.connector_object)
                self._apply_values(record, values)
                for action in self.profile.actions:
                    action.before_update(self.profile, delta, record)
                self._check_policies(record, self._password_of(values))
            elif rule == MatchingRule.LINK:
                record.add_resource(resource_key)
                message = f"Linked to {resource_key}"
            elif rule == MatchingRule.UNLINK:
                record.remove_resource(resource_key)
                message = f"Unlinked from {resource_key}"
            elif rule == MatchingRule.UNASSIGN:
                record.remove_resource(resource_key)
                if not self.profile.dry_run:
                    self.profile.connector.delete(provision.object_class, delta.uid)
                message = f"Unassigned from {resource_key}"

            if not self.profile.dry_run:
                record = self.profile.store.save(record)
            return self._report(ReportStatus.SUCCESS, ResourceOperation.UPDATE, any_type.key,
                                record.get_name(), delta.uid, key=record.key, message=message)
        except ReconEngineError as e:
            return self._report(ReportStatus.FAILURE, ResourceOperation.UPDATE, any_type.key,
                                record.get_name(), delta.uid, key=record.key, message=str(e))

    @staticmethod
    def _password_of(values: Dict[str, List[Any]]) -> Optional[SecretStr]:
        passwords = values.get("password")
        if not passwords:
            return None
        password = passwords[0]
        return password if isinstance(password, SecretStr) else SecretStr(str(password))

    @staticmethod
    def _apply_values(record: AnyRecord, values: Dict[str, List[Any]]) -> None:
        if isinstance(record, UserRecord) and values.get("password") and record.password is not None:
            new_password = PullWorkflow._password_of(values).get_secret_value()
            old_password = record.password.get_secret_value()
            if new_password != old_password:
                record.password_history.append(old_password)
        for schema, schema_values in values.items():
            record.set_values(schema, schema_values)
