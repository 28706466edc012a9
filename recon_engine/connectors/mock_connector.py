"""
In-memory connector.

Backs a resource with an InMemoryDirectory that keeps objects per object
class and a changelog of deltas with increasing integer tokens. Useful for
demos, dry runs against fixtures and tests.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import ConnectorError, ConnectorErrorCategory
from ..models import (
    NAME_ATTR,
    PASSWORD_ATTR,
    UID_ATTR,
    ConnectorObject,
    ExternalResource,
    SyncDelta,
    SyncDeltaType,
)
from ..search.cond import SearchCond
from ..search.matcher import filter_matching
from .base_connector import (
    AttributeInfo,
    Connector,
    ObjectClassInfo,
    OperationOptions,
    SyncResultsHandler,
)

logger = logging.getLogger(__name__)


class InMemoryDirectory:
    """Thread-safe object store shared by all connector instances of one resource."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self.objects: Dict[str, Dict[str, ConnectorObject]] = {}
        self.changelog: List[SyncDelta] = []
        self.passwords: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._sequence = 0

    def _record(self, delta_type: SyncDeltaType, connector_object: ConnectorObject) -> SyncDelta:
        self._sequence += 1
        delta = SyncDelta(
            token=str(self._sequence),
            delta_type=delta_type,
            uid=connector_object.uid,
            connector_object=connector_object.model_copy(deep=True),
        )
        self.changelog.append(delta)
        return delta

    def put(self, connector_object: ConnectorObject,
            delta_type: SyncDeltaType = SyncDeltaType.CREATE_OR_UPDATE) -> SyncDelta:
        """Store an object as an external change, recording it in the changelog."""
        with self._lock:
            self.objects.setdefault(connector_object.object_class, {})[connector_object.uid] = connector_object
            return self._record(delta_type, connector_object)

    def remove(self, object_class: str, uid: str) -> SyncDelta:
        with self._lock:
            connector_object = self.objects.get(object_class, {}).pop(uid, None)
            if connector_object is None:
                raise ConnectorError(ConnectorErrorCategory.NOT_FOUND, f"{object_class} {uid} not found")
            self.passwords.pop(uid, None)
            return self._record(SyncDeltaType.DELETE, connector_object)

    def get(self, object_class: str, uid: str) -> Optional[ConnectorObject]:
        with self._lock:
            return self.objects.get(object_class, {}).get(uid)

    def list_objects(self, object_class: str) -> List[ConnectorObject]:
        with self._lock:
            return sorted(self.objects.get(object_class, {}).values(), key=lambda o: o.uid)

    def deltas_after(self, object_class: str, token: Optional[str]) -> List[SyncDelta]:
        start = int(token) if token else 0
        with self._lock:
            return [
                delta for delta in self.changelog
                if int(delta.token) > start and delta.object_class == object_class
            ]

    def latest_token(self) -> Optional[str]:
        with self._lock:
            return str(self._sequence) if self._sequence else None

    def seed(self, objects: List[Dict[str, Any]]) -> None:
        """Load objects from configuration dictionaries."""
        for data in objects:
            self.put(ConnectorObject(**data), SyncDeltaType.CREATE)


class InMemoryConnector(Connector):
    """
    Connector over an InMemoryDirectory.

    ``connector_config`` keys:
        objects: list of objects to seed the directory with
        fail_operations: mapping of operation name to error category, to
            simulate a failing backend (e.g. ``{"create": "CONNECT"}``)
    """

    def __init__(self, resource: ExternalResource, directory: Optional[InMemoryDirectory] = None):
        super().__init__(resource)
        if directory is None:
            directory = InMemoryDirectory(resource.key)
            directory.seed(self.config.get("objects", []))
        self.directory = directory
        self.fail_operations: Dict[str, str] = dict(self.config.get("fail_operations", {}))

    def _maybe_fail(self, operation: str) -> None:
        category = self.fail_operations.get(operation)
        if category:
            raise ConnectorError(ConnectorErrorCategory(category),
                                 f"Simulated {operation} failure", self.resource_key)

    def _check_open(self) -> None:
        if self.disposed:
            raise ConnectorError(ConnectorErrorCategory.CONNECT, "Connector was disposed",
                                 self.resource_key)

    @staticmethod
    def _split(attributes: Dict[str, List[Any]]) -> Tuple[Dict[str, List[Any]], Optional[str], Optional[str]]:
        attrs = dict(attributes)
        names = attrs.pop(NAME_ATTR, None)
        passwords = attrs.pop(PASSWORD_ATTR, None)
        attrs.pop(UID_ATTR, None)
        name = str(names[0]) if names else None
        password = passwords[0] if passwords else None
        if password is not None and hasattr(password, "get_secret_value"):
            password = password.get_secret_value()
        return attrs, name, password

    def _do_authenticate(self, object_class, username, password, options) -> str:
        self._check_open()
        self._maybe_fail("authenticate")
        for connector_object in self.directory.list_objects(object_class):
            if connector_object.name == username:
                if self.directory.passwords.get(connector_object.uid) == password.get_secret_value():
                    return connector_object.uid
                break
        raise ConnectorError(ConnectorErrorCategory.AUTH, f"Invalid credentials for {username}")

    def _do_create(self, object_class, attributes, options) -> str:
        self._check_open()
        self._maybe_fail("create")
        attrs, name, password = self._split(attributes)
        if not name:
            raise ConnectorError(ConnectorErrorCategory.UNKNOWN, f"{NAME_ATTR} is required to create")
        if self.directory.get(object_class, name) is not None:
            raise ConnectorError(ConnectorErrorCategory.ALREADY_EXISTS, f"{object_class} {name} already exists")

        self.directory.put(
            ConnectorObject(object_class=object_class, uid=name, name=name, attributes=attrs),
            SyncDeltaType.CREATE,
        )
        if password is not None:
            self.directory.passwords[name] = password
        logger.debug(f"Created {object_class} {name} on {self.resource_key}")
        return name

    def _do_update(self, object_class, uid, attributes, options) -> str:
        self._check_open()
        self._maybe_fail("update")
        current = self.directory.get(object_class, uid)
        if current is None:
            raise ConnectorError(ConnectorErrorCategory.NOT_FOUND, f"{object_class} {uid} not found")

        attrs, name, password = self._split(attributes)
        merged = dict(current.attributes)
        for attr_name, values in attrs.items():
            if values:
                merged[attr_name] = list(values)
            else:
                merged.pop(attr_name, None)

        self.directory.put(
            ConnectorObject(object_class=object_class, uid=uid, name=name or current.name,
                            attributes=merged),
            SyncDeltaType.UPDATE,
        )
        if password is not None:
            self.directory.passwords[uid] = password
        return uid

    def _do_delete(self, object_class, uid, options) -> None:
        self._check_open()
        self._maybe_fail("delete")
        self.directory.remove(object_class, uid)

    def _do_sync(self, object_class: str, token: Optional[str], handler: SyncResultsHandler,
                 options: OperationOptions) -> None:
        self._check_open()
        self._maybe_fail("sync")
        for delta in self.directory.deltas_after(object_class, token):
            if not handler(delta):
                logger.debug(f"Sync on {self.resource_key} stopped by handler at token {delta.token}")
                return

    def _do_get_latest_sync_token(self, object_class: str) -> Optional[str]:
        self._check_open()
        return self.directory.latest_token()

    def _do_search_page(self, object_class: str, cond: Optional[SearchCond],
                        options: OperationOptions) -> Tuple[List[ConnectorObject], Optional[str]]:
        self._check_open()
        self._maybe_fail("search")
        objects = self.directory.list_objects(object_class)
        if cond is not None:
            objects = filter_matching(cond, objects)

        start = int(options.paged_results_cookie) if options.paged_results_cookie else 0
        end = start + (options.page_size or len(objects) or 1)
        cookie = str(end) if end < len(objects) else None
        return objects[start:end], cookie

    def _do_get_object_class_info(self) -> List[ObjectClassInfo]:
        infos = []
        for object_class in sorted(self.directory.objects):
            names = set()
            for connector_object in self.directory.list_objects(object_class):
                names.update(connector_object.attributes)
            infos.append(ObjectClassInfo(
                object_class=object_class,
                attributes=[AttributeInfo(name=NAME_ATTR, required=True)]
                + [AttributeInfo(name=name) for name in sorted(names)],
            ))
        return infos

    def _do_test(self) -> None:
        self._check_open()
        self._maybe_fail("test")


class InMemoryConnectorFactory:
    """
    Builds InMemoryConnector instances that share one directory per resource.

    Registered in the connector registry under the ``memory`` key.
    """

    def __init__(self):
        self.directories: Dict[str, InMemoryDirectory] = {}
        self._lock = threading.Lock()

    def directory_for(self, resource: ExternalResource) -> InMemoryDirectory:
        with self._lock:
            directory = self.directories.get(resource.key)
            if directory is None:
                directory = InMemoryDirectory(resource.key)
                directory.seed(resource.connector_config.get("objects", []))
                self.directories[resource.key] = directory
            return directory

    def __call__(self, resource: ExternalResource) -> InMemoryConnector:
        return InMemoryConnector(resource, self.directory_for(resource))
