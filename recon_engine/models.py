"""
Core data models for the Reconciliation Engine.

This module defines the Pydantic models used throughout the system for
resources and mappings, connector objects and sync deltas, internal
identity records, provisioning reports and scheduled tasks.
"""

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, SecretStr, model_validator

from .search.cond import SearchCond

UID_ATTR = "__UID__"
NAME_ATTR = "__NAME__"
PASSWORD_ATTR = "__PASSWORD__"
ENABLE_ATTR = "__ENABLE__"

MASTER_DOMAIN = "Master"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnyTypeKind(str, Enum):
    """Kinds of managed identity objects."""
    USER = "USER"
    GROUP = "GROUP"
    ANY_OBJECT = "ANY_OBJECT"


class AnyType(BaseModel):
    """A kind of managed identity object, selecting schema and mapping."""
    model_config = ConfigDict(frozen=True)

    key: str
    kind: AnyTypeKind


USER_TYPE = AnyType(key="USER", kind=AnyTypeKind.USER)
GROUP_TYPE = AnyType(key="GROUP", kind=AnyTypeKind.GROUP)


class MappingPurpose(str, Enum):
    """Direction(s) in which a mapping item is used."""
    PULL = "PULL"
    PUSH = "PUSH"
    BOTH = "BOTH"
    NONE = "NONE"


class Item(BaseModel):
    """Maps one internal schema name to one connector attribute name."""
    int_attr_name: str = Field(..., description="Internal schema name")
    ext_attr_name: str = Field(..., description="Connector attribute name")
    conn_object_key: bool = Field(False, description="Unique key of the connector object")
    password: bool = False
    mandatory: bool = False
    multivalued: bool = False
    purpose: MappingPurpose = MappingPurpose.BOTH

    def is_inbound(self) -> bool:
        return self.purpose in (MappingPurpose.PULL, MappingPurpose.BOTH)

    def is_outbound(self) -> bool:
        return self.purpose in (MappingPurpose.PUSH, MappingPurpose.BOTH)


class Mapping(BaseModel):
    """Ordered set of items translating internal attributes to connector attributes."""
    items: List[Item] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_single_conn_object_key(self) -> "Mapping":
        keys = [item for item in self.items if item.conn_object_key]
        if self.items and len(keys) != 1:
            raise ValueError(f"Exactly one conn_object_key item is required, found {len(keys)}")
        return self

    def get_conn_object_key_item(self) -> Optional[Item]:
        for item in self.items:
            if item.conn_object_key:
                return item
        return None

    def inbound_items(self) -> List[Item]:
        return [item for item in self.items if item.is_inbound()]

    def outbound_items(self) -> List[Item]:
        return [item for item in self.items if item.is_outbound()]


class ResourceProvision(BaseModel):
    """Binds an any type to an object class and mapping on a resource."""
    any_type: str
    object_class: str
    mapping: Mapping = Field(default_factory=Mapping)
    aux_classes: List[str] = Field(default_factory=list)
    sync_token: Optional[str] = Field(None, description="Token to resume incremental pulls")
    ignore_case_match: bool = False


class ConflictResolutionAction(str, Enum):
    """What to do when correlation yields more than one internal match."""
    IGNORE = "IGNORE"
    FIRSTMATCH = "FIRSTMATCH"
    LASTMATCH = "LASTMATCH"
    ALL = "ALL"


class TraceLevel(str, Enum):
    """Detail level of the rendered run report."""
    NONE = "NONE"
    SUMMARY = "SUMMARY"
    FAILURES = "FAILURES"
    ALL = "ALL"


class ConnectorCapability(str, Enum):
    """Operations a connector instance declares to support."""
    AUTHENTICATE = "AUTHENTICATE"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    UPDATE_DELTA = "UPDATE_DELTA"
    DELETE = "DELETE"
    SEARCH = "SEARCH"
    SYNC = "SYNC"


class PoolConfig(BaseModel):
    """Bounded connector pool settings; YAML keys keep their camelCase names."""
    model_config = ConfigDict(populate_by_name=True)

    max_objects: int = Field(10, alias="maxObjects", ge=1)
    max_idle: int = Field(2, alias="maxIdle", ge=0)
    min_idle: int = Field(0, alias="minIdle", ge=0)
    max_wait: float = Field(30.0, alias="maxWait", ge=0, description="Seconds to wait on checkout")
    min_evictable_idle_time_millis: int = Field(120000, alias="minEvictableIdleTimeMillis", ge=0)


class CorrelationRuleConf(BaseModel):
    """Correlation rule: either internal schemas to match on, or an explicit template."""
    schemas: List[str] = Field(default_factory=list)
    template: Optional[SearchCond] = None

    @model_validator(mode="after")
    def check_one_form(self) -> "CorrelationRuleConf":
        if bool(self.schemas) == (self.template is not None):
            raise ValueError("Correlation rule needs exactly one of 'schemas' or 'template'")
        return self


class ExternalResource(BaseModel):
    """A configured target/source system."""
    key: str
    connector: str = Field(..., description="Connector implementation key in the registry")
    connector_config: Dict[str, Any] = Field(default_factory=dict)
    capabilities: Optional[List[ConnectorCapability]] = None
    pool: PoolConfig = Field(default_factory=PoolConfig)
    provisions: List[ResourceProvision] = Field(default_factory=list)
    correlation_rules: Dict[str, CorrelationRuleConf] = Field(default_factory=dict)
    conflict_resolution_action: ConflictResolutionAction = ConflictResolutionAction.IGNORE
    account_policy: Optional[str] = None
    password_policy: Optional[str] = None
    propagate_password: bool = Field(False, description="Whether changed passwords are sent here")
    trace_level: TraceLevel = TraceLevel.ALL

    def get_provision(self, any_type: str) -> Optional[ResourceProvision]:
        for provision in self.provisions:
            if provision.any_type == any_type:
                return provision
        return None

    def get_provision_by_object_class(self, object_class: str) -> Optional[ResourceProvision]:
        for provision in self.provisions:
            if provision.object_class == object_class:
                return provision
        return None


class SyncDeltaType(str, Enum):
    """Kind of external change."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    CREATE_OR_UPDATE = "CREATE_OR_UPDATE"
    DELETE = "DELETE"


class ConnectorObject(BaseModel):
    """Snapshot of an object on an external system."""
    object_class: str
    uid: str
    name: Optional[str] = None
    attributes: Dict[str, List[Any]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def default_name(self) -> "ConnectorObject":
        if self.name is None:
            self.name = self.uid
        return self

    def get_values(self, attr_name: str) -> List[Any]:
        if attr_name == UID_ATTR:
            return [self.uid]
        if attr_name == NAME_ATTR:
            return [self.name]
        return list(self.attributes.get(attr_name, []))

    def get_value(self, attr_name: str) -> Optional[Any]:
        values = self.get_values(attr_name)
        return values[0] if values else None


class SyncDelta(BaseModel):
    """One external change event produced by a connector's sync stream."""
    token: Optional[str] = None
    delta_type: SyncDeltaType
    uid: str
    connector_object: ConnectorObject
    previous_uid: Optional[str] = None

    @property
    def object_class(self) -> str:
        return self.connector_object.object_class


class ResourceOperation(str, Enum):
    """Operation performed on a record."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    NONE = "NONE"


class ReportStatus(str, Enum):
    """Outcome of processing one record."""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    IGNORE = "IGNORE"


class ProvisioningReport(BaseModel):
    """Per-record outcome of a pull or push pass."""
    key: Optional[str] = Field(None, description="Internal identifier, if assigned")
    any_type: Optional[str] = None
    name: Optional[str] = None
    uid_value: Optional[str] = Field(None, description="External unique id")
    status: ReportStatus
    operation: ResourceOperation
    message: Optional[str] = None


class PropagationStatus(str, Enum):
    """Outcome of propagating to a single resource."""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    NOT_ATTEMPTED = "NOT_ATTEMPTED"


class ResourcePropagationResult(BaseModel):
    """Outcome of one resource's connector call during push."""
    resource: str
    operation: ResourceOperation
    status: PropagationStatus
    conn_object_key: Optional[str] = None
    propagation_attempted: bool = False
    message: Optional[str] = None


class PropagationByResource:
    """
    Per-operation partition of resource keys, with the attribute set to push.

    A resource belongs to at most one operation at a time: adding it to one
    operation removes it from the others.
    """

    def __init__(self):
        self._by_operation: Dict[ResourceOperation, Set[str]] = {
            ResourceOperation.CREATE: set(),
            ResourceOperation.UPDATE: set(),
            ResourceOperation.DELETE: set(),
        }
        self.attributes: Dict[str, Dict[str, List[Any]]] = {}
        self.conn_object_keys: Dict[str, Optional[str]] = {}
        self.partial: Set[str] = set()

    def add(self, operation: ResourceOperation, resource: str,
            attributes: Optional[Dict[str, List[Any]]] = None,
            conn_object_key: Optional[str] = None, partial: bool = False) -> None:
        if operation not in self._by_operation:
            raise ValueError(f"Cannot propagate operation {operation}")
        for op, resources in self._by_operation.items():
            if op != operation:
                resources.discard(resource)
        self._by_operation[operation].add(resource)
        self.attributes[resource] = dict(attributes or {})
        self.conn_object_keys[resource] = conn_object_key
        if partial:
            self.partial.add(resource)
        else:
            self.partial.discard(resource)

    def remove(self, resource: str) -> None:
        for resources in self._by_operation.values():
            resources.discard(resource)
        self.attributes.pop(resource, None)
        self.conn_object_keys.pop(resource, None)
        self.partial.discard(resource)

    def get(self, operation: ResourceOperation) -> Set[str]:
        return set(self._by_operation.get(operation, set()))

    def operation_for(self, resource: str) -> Optional[ResourceOperation]:
        for op, resources in self._by_operation.items():
            if resource in resources:
                return op
        return None

    def resources(self) -> List[str]:
        return sorted(set().union(*self._by_operation.values()))

    def is_empty(self) -> bool:
        return not any(self._by_operation.values())

    def to_dict(self) -> Dict[str, Any]:
        return {op.value: sorted(resources) for op, resources in self._by_operation.items()}

    def __repr__(self):
        return f"PropagationByResource({self.to_dict()})"


class UserStatus(str, Enum):
    """Status of an internal user."""
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class AnyRecordBase(BaseModel):
    """Fields shared by every any-type record variant."""
    key: Optional[str] = None
    type: str
    realm: str = "/"
    aux_classes: List[str] = Field(default_factory=list)
    plain_attrs: Dict[str, List[str]] = Field(default_factory=dict)
    vir_attrs: Dict[str, List[str]] = Field(default_factory=dict)
    resources: List[str] = Field(default_factory=list)
    memberships: List[str] = Field(default_factory=list, description="Group keys")
    entitlements: List[str] = Field(default_factory=list, description="Role/entitlement keys")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_name(self) -> str:
        return self.key or ""

    def _special_values(self, schema: str) -> Optional[List[Any]]:
        if schema == "key":
            return [self.key] if self.key else []
        if schema == "realm":
            return [self.realm]
        return None

    def get_values(self, schema: str) -> List[Any]:
        """Current values of an internal schema (plain, then virtual)."""
        special = self._special_values(schema)
        if special is not None:
            return special
        if schema in self.plain_attrs:
            return list(self.plain_attrs[schema])
        return list(self.vir_attrs.get(schema, []))

    def set_values(self, schema: str, values: List[Any]) -> None:
        if schema == "realm":
            self.realm = str(values[0]) if values else "/"
        elif values:
            self.plain_attrs[schema] = [str(v) for v in values]
        else:
            self.plain_attrs.pop(schema, None)

    def add_resource(self, resource: str) -> None:
        if resource not in self.resources:
            self.resources.append(resource)

    def remove_resource(self, resource: str) -> None:
        if resource in self.resources:
            self.resources.remove(resource)


class UserRecord(AnyRecordBase):
    """Internal user."""
    kind: Literal["USER"] = "USER"
    type: str = "USER"
    username: str
    password: Optional[SecretStr] = None
    status: UserStatus = UserStatus.ACTIVE
    suspended: bool = False
    failed_logins: int = 0
    password_history: List[str] = Field(default_factory=list, repr=False)

    def get_name(self) -> str:
        return self.username

    def _special_values(self, schema: str) -> Optional[List[Any]]:
        if schema == "username":
            return [self.username]
        if schema == "status":
            return [self.status.value]
        return super()._special_values(schema)

    def set_values(self, schema: str, values: List[Any]) -> None:
        if schema == "username":
            if values:
                self.username = str(values[0])
        elif schema == "password":
            if not values:
                self.password = None
            elif isinstance(values[0], SecretStr):
                self.password = values[0]
            else:
                self.password = SecretStr(str(values[0]))
        else:
            super().set_values(schema, values)


class GroupRecord(AnyRecordBase):
    """Internal group."""
    kind: Literal["GROUP"] = "GROUP"
    type: str = "GROUP"
    name: str

    def get_name(self) -> str:
        return self.name

    def _special_values(self, schema: str) -> Optional[List[Any]]:
        if schema == "name":
            return [self.name]
        return super()._special_values(schema)

    def set_values(self, schema: str, values: List[Any]) -> None:
        if schema == "name":
            if values:
                self.name = str(values[0])
        else:
            super().set_values(schema, values)


class AnyObjectRecord(AnyRecordBase):
    """Internal object of any other any type (printer, device, ...)."""
    kind: Literal["ANY_OBJECT"] = "ANY_OBJECT"
    name: str

    def get_name(self) -> str:
        return self.name

    def _special_values(self, schema: str) -> Optional[List[Any]]:
        if schema == "name":
            return [self.name]
        return super()._special_values(schema)

    def set_values(self, schema: str, values: List[Any]) -> None:
        if schema == "name":
            if values:
                self.name = str(values[0])
        else:
            super().set_values(schema, values)


AnyRecord = Annotated[Union[UserRecord, GroupRecord, AnyObjectRecord], Field(discriminator="kind")]


def build_user(username: str, password: Optional[str] = None, realm: str = "/",
               plain_attrs: Optional[Dict[str, List[str]]] = None,
               resources: Optional[List[str]] = None,
               memberships: Optional[List[str]] = None,
               entitlements: Optional[List[str]] = None,
               aux_classes: Optional[List[str]] = None) -> UserRecord:
    """Build a new (unsaved) user record."""
    return UserRecord(
        username=username,
        password=SecretStr(password) if password is not None else None,
        realm=realm,
        plain_attrs=dict(plain_attrs or {}),
        resources=list(resources or []),
        memberships=list(memberships or []),
        entitlements=list(entitlements or []),
        aux_classes=list(aux_classes or []),
    )


def build_group(name: str, realm: str = "/",
                plain_attrs: Optional[Dict[str, List[str]]] = None,
                resources: Optional[List[str]] = None) -> GroupRecord:
    """Build a new (unsaved) group record."""
    return GroupRecord(
        name=name,
        realm=realm,
        plain_attrs=dict(plain_attrs or {}),
        resources=list(resources or []),
    )


def build_any_object(any_type: str, name: str, realm: str = "/",
                     plain_attrs: Optional[Dict[str, List[str]]] = None,
                     resources: Optional[List[str]] = None) -> AnyObjectRecord:
    """Build a new (unsaved) record of a custom any type."""
    return AnyObjectRecord(
        type=any_type,
        name=name,
        realm=realm,
        plain_attrs=dict(plain_attrs or {}),
        resources=list(resources or []),
    )


def build_record(any_type: AnyType, name: str, realm: str = "/") -> Union[UserRecord, GroupRecord, AnyObjectRecord]:
    """Build an empty record of the given any type, keyed by its name."""
    if any_type.kind == AnyTypeKind.USER:
        return build_user(name, realm=realm)
    if any_type.kind == AnyTypeKind.GROUP:
        return build_group(name, realm=realm)
    return build_any_object(any_type.key, name, realm=realm)


class PullMode(str, Enum):
    """How a pull task reads the external system."""
    FULL_RECONCILIATION = "FULL_RECONCILIATION"
    FILTERED_RECONCILIATION = "FILTERED_RECONCILIATION"
    INCREMENTAL = "INCREMENTAL"


class MatchingRule(str, Enum):
    """Action taken when a record is matched."""
    UPDATE = "UPDATE"
    DEPROVISION = "DEPROVISION"
    UNASSIGN = "UNASSIGN"
    LINK = "LINK"
    UNLINK = "UNLINK"
    IGNORE = "IGNORE"


class UnmatchingRule(str, Enum):
    """Action taken when a record is not matched."""
    PROVISION = "PROVISION"
    ASSIGN = "ASSIGN"
    UNLINK = "UNLINK"
    IGNORE = "IGNORE"


class TaskType(str, Enum):
    """Kinds of scheduled tasks."""
    PULL = "PULL"
    PUSH = "PUSH"


class SchedTask(BaseModel):
    """A scheduled provisioning task bound to a resource."""
    key: str
    resource: str
    description: Optional[str] = None
    cron_expression: Optional[str] = None
    start_at: Optional[datetime] = None
    active: bool = True
    actions: List[str] = Field(default_factory=list, description="Action keys from the registry")
    matching_rule: MatchingRule = MatchingRule.UPDATE
    unmatching_rule: UnmatchingRule = UnmatchingRule.PROVISION
    perform_create: bool = True
    perform_update: bool = True
    perform_delete: bool = True


class PullTask(SchedTask):
    """Scheduled pull (external to internal) reconciliation."""
    type: Literal["PULL"] = "PULL"
    pull_mode: PullMode = PullMode.FULL_RECONCILIATION
    destination_realm: str = "/"
    recon_filter: Optional[SearchCond] = None
    max_results: Optional[int] = Field(None, ge=1, description="Stop after this many deltas")


class PushTask(SchedTask):
    """Scheduled push (internal to external) propagation."""
    type: Literal["PUSH"] = "PUSH"
    any_types: List[str] = Field(default_factory=lambda: ["USER"])
    filters: Dict[str, SearchCond] = Field(default_factory=dict)
    max_results: Optional[int] = Field(None, ge=1)


class JobExecutionContext(BaseModel):
    """Per-execution context handed through a job run."""
    domain: str = MASTER_DOMAIN
    task_key: str
    job_key: Optional[str] = None
    dry_run: bool = False
    executor: str = "admin"
    data: Dict[str, Any] = Field(default_factory=dict, description="Scratch values between job phases")

    _interrupt: threading.Event = PrivateAttr(default_factory=threading.Event)

    def request_interrupt(self) -> None:
        self._interrupt.set()

    def is_interrupt_requested(self) -> bool:
        return self._interrupt.is_set()


class RunStatus(str, Enum):
    """Status of a whole job run."""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    INTERRUPTED = "INTERRUPTED"


class RunReport(BaseModel):
    """A finished run, as handed to the report sink."""
    domain: str
    task_key: str
    job_key: Optional[str] = None
    task_type: TaskType
    resource: str
    executor: str = "admin"
    dry_run: bool = False
    interrupted: bool = False
    status: RunStatus = RunStatus.SUCCESS
    started_at: datetime
    ended_at: Optional[datetime] = None
    reports: List[ProvisioningReport] = Field(default_factory=list)
    text: Optional[str] = Field(None, description="Rendered report, per resource trace level")
    message: Optional[str] = None
