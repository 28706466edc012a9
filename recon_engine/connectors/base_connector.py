"""
Base Connector Classes for the Reconciliation Engine.

This module provides the contract every external-system connector fulfils:
identity CRUD, streaming change sync, paged search and schema discovery.
Public methods are template methods: they check the declared capability,
record whether propagation was attempted and normalize failures into
ConnectorError; concrete connectors implement the ``_do_*`` hooks.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, SecretStr

from ..exceptions import ConnectorError, ConnectorErrorCategory
from ..models import (
    NAME_ATTR,
    ConnectorCapability,
    ConnectorObject,
    ExternalResource,
    SyncDelta,
)
from ..search.cond import SearchCond, attr_eq

logger = logging.getLogger(__name__)

ResultsHandler = Callable[[ConnectorObject], bool]
SyncResultsHandler = Callable[[SyncDelta], bool]

DEFAULT_PAGE_SIZE = 100


class OperationOptions(BaseModel):
    """Options recognized by connector operations."""
    attributes_to_get: Optional[List[str]] = None
    object_class: Optional[str] = None
    page_size: Optional[int] = Field(None, ge=1)
    paged_results_cookie: Optional[str] = None


class SearchResult(BaseModel):
    """Outcome of a (possibly paged) search."""
    paged_results_cookie: Optional[str] = None
    stopped: bool = False
    handled: int = 0


class AttributeDelta(BaseModel):
    """Partial change of a single connector attribute."""
    name: str
    values_to_add: List[Any] = Field(default_factory=list)
    values_to_remove: List[Any] = Field(default_factory=list)
    values_to_replace: Optional[List[Any]] = None


class AttributeInfo(BaseModel):
    name: str
    type: str = "string"
    required: bool = False
    multivalued: bool = False


class ObjectClassInfo(BaseModel):
    """Schema of one object class, as discovered from the external system."""
    object_class: str
    attributes: List[AttributeInfo] = Field(default_factory=list)


class PropagationAttempt:
    """Output flag telling callers whether the remote call was actually issued."""

    def __init__(self):
        self.attempted = False

    def __bool__(self):
        return self.attempted

    def __repr__(self):
        return f"PropagationAttempt(attempted={self.attempted})"


class Connector(ABC):
    """
    Abstract base class for all connectors.

    A connector instance is bound to one ExternalResource and is not safe for
    unsynchronized concurrent use; the engine checks instances out of a pool.
    """

    def __init__(self, resource: ExternalResource):
        """
        Initialize the connector.

        Args:
            resource: Resource whose connector_config and capabilities apply
        """
        self.resource = resource
        self.resource_key = resource.key
        self.config: Dict[str, Any] = dict(resource.connector_config)
        if resource.capabilities is not None:
            self.capabilities: Set[ConnectorCapability] = set(resource.capabilities)
        else:
            self.capabilities = self.default_capabilities()
        self.disposed = False

        logger.debug(f"Initialized {self.__class__.__name__} for resource {self.resource_key}")

    @classmethod
    def default_capabilities(cls) -> Set[ConnectorCapability]:
        return set(ConnectorCapability)

    def has_capability(self, capability: ConnectorCapability) -> bool:
        return capability in self.capabilities

    def _unsupported(self, capability: ConnectorCapability, operation: str) -> None:
        logger.info(
            f"Resource {self.resource_key} does not support {capability.value}: {operation} skipped"
        )

    def _invoke(self, operation: str, func: Callable, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConnectorError as e:
            if e.resource is None:
                e.resource = self.resource_key
            raise
        except Exception as e:
            logger.error(f"{operation} failed on {self.resource_key}: {e}")
            raise ConnectorError(ConnectorErrorCategory.UNKNOWN, str(e), self.resource_key) from e

    # Mutating operations

    def authenticate(self, object_class: str, username: str, password: SecretStr,
                     options: Optional[OperationOptions] = None) -> Optional[str]:
        """
        Authenticate a user against the external system.

        Returns:
            The Uid of the authenticated object, None if the capability is missing
        """
        if not self.has_capability(ConnectorCapability.AUTHENTICATE):
            self._unsupported(ConnectorCapability.AUTHENTICATE, f"authenticate {username}")
            return None
        return self._invoke("authenticate", self._do_authenticate, object_class, username,
                            password, options or OperationOptions())

    def create(self, object_class: str, attributes: Dict[str, List[Any]],
               options: Optional[OperationOptions] = None,
               propagation_attempt: Optional[PropagationAttempt] = None) -> Optional[str]:
        """
        Create an object.

        Args:
            object_class: Target object class
            attributes: Connector attributes, including __NAME__
            options: Operation options
            propagation_attempt: Set to attempted once the remote call is issued

        Returns:
            Uid of the created object, None if the capability is missing
        """
        if not self.has_capability(ConnectorCapability.CREATE):
            self._unsupported(ConnectorCapability.CREATE, f"create {attributes.get(NAME_ATTR)}")
            return None
        if propagation_attempt is not None:
            propagation_attempt.attempted = True
        return self._invoke("create", self._do_create, object_class, attributes,
                            options or OperationOptions())

    def update(self, object_class: str, uid: str, attributes: Dict[str, List[Any]],
               options: Optional[OperationOptions] = None,
               propagation_attempt: Optional[PropagationAttempt] = None) -> Optional[str]:
        """Replace the given attributes of an object; returns the (possibly new) Uid."""
        if not self.has_capability(ConnectorCapability.UPDATE):
            self._unsupported(ConnectorCapability.UPDATE, f"update {uid}")
            return None
        if propagation_attempt is not None:
            propagation_attempt.attempted = True
        return self._invoke("update", self._do_update, object_class, uid, attributes,
                            options or OperationOptions())

    def update_delta(self, object_class: str, uid: str, deltas: List[AttributeDelta],
                     options: Optional[OperationOptions] = None,
                     propagation_attempt: Optional[PropagationAttempt] = None) -> Optional[str]:
        """Apply partial attribute changes to an object."""
        if not self.has_capability(ConnectorCapability.UPDATE_DELTA):
            self._unsupported(ConnectorCapability.UPDATE_DELTA, f"update delta {uid}")
            return None
        if propagation_attempt is not None:
            propagation_attempt.attempted = True
        return self._invoke("update_delta", self._do_update_delta, object_class, uid, deltas,
                            options or OperationOptions())

    def delete(self, object_class: str, uid: str,
               options: Optional[OperationOptions] = None,
               propagation_attempt: Optional[PropagationAttempt] = None) -> None:
        if not self.has_capability(ConnectorCapability.DELETE):
            self._unsupported(ConnectorCapability.DELETE, f"delete {uid}")
            return
        if propagation_attempt is not None:
            propagation_attempt.attempted = True
        self._invoke("delete", self._do_delete, object_class, uid, options or OperationOptions())

    # Streaming operations

    def sync(self, object_class: str, token: Optional[str], handler: SyncResultsHandler,
             options: Optional[OperationOptions] = None) -> None:
        """
        Stream changes newer than token to handler.

        The handler returns False to stop the stream; no further deltas are
        delivered after that.
        """
        if not self.has_capability(ConnectorCapability.SYNC):
            self._unsupported(ConnectorCapability.SYNC, f"sync {object_class}")
            return
        self._invoke("sync", self._do_sync, object_class, token, handler,
                     options or OperationOptions())

    def get_latest_sync_token(self, object_class: str) -> Optional[str]:
        if not self.has_capability(ConnectorCapability.SYNC):
            self._unsupported(ConnectorCapability.SYNC, f"latest sync token {object_class}")
            return None
        return self._invoke("get_latest_sync_token", self._do_get_latest_sync_token, object_class)

    def search(self, object_class: str, cond: Optional[SearchCond], handler: ResultsHandler,
               options: Optional[OperationOptions] = None) -> SearchResult:
        """
        Search objects, streaming results to handler.

        With an explicit page size a single page is fetched. Otherwise pages
        of DEFAULT_PAGE_SIZE are requested until no cookie remains or the
        handler returns False.
        """
        if not self.has_capability(ConnectorCapability.SEARCH):
            self._unsupported(ConnectorCapability.SEARCH, f"search {object_class}")
            return SearchResult()

        options = options or OperationOptions()
        single_page = options.page_size is not None
        page_options = options if single_page else options.model_copy(
            update={"page_size": DEFAULT_PAGE_SIZE}
        )

        result = SearchResult()
        while True:
            objects, cookie = self._invoke("search", self._do_search_page, object_class, cond,
                                           page_options)
            result.paged_results_cookie = cookie
            for connector_object in objects:
                result.handled += 1
                if not handler(connector_object):
                    result.stopped = True
                    return result
            if single_page or cookie is None:
                return result
            page_options = page_options.model_copy(update={"paged_results_cookie": cookie})

    # Lookups and checks

    def get_object(self, object_class: str, key_attr_name: str, key_value: str,
                   ignore_case: bool = False,
                   options: Optional[OperationOptions] = None) -> Optional[ConnectorObject]:
        """Point lookup by key attribute; None when not found."""
        found: List[ConnectorObject] = []

        def collect(connector_object: ConnectorObject) -> bool:
            found.append(connector_object)
            return False

        self.search(object_class, attr_eq(key_attr_name, key_value, ignore_case), collect, options)
        return found[0] if found else None

    def get_object_class_info(self) -> List[ObjectClassInfo]:
        return self._invoke("get_object_class_info", self._do_get_object_class_info)

    def validate(self) -> None:
        """Check the configuration without contacting the external system."""
        self._do_validate()

    def test(self) -> None:
        """Check connectivity; raises ConnectorError when unreachable."""
        self._invoke("test", self._do_test)

    def dispose(self) -> None:
        """Release remote sessions; safe to call more than once."""
        if self.disposed:
            return
        try:
            self._do_dispose()
        finally:
            self.disposed = True
            logger.debug(f"Disposed {self.__class__.__name__} for resource {self.resource_key}")

    # Hooks

    def _do_authenticate(self, object_class: str, username: str, password: SecretStr,
                         options: OperationOptions) -> str:
        raise ConnectorError(ConnectorErrorCategory.UNKNOWN,
                             f"{self.__class__.__name__} cannot authenticate")

    @abstractmethod
    def _do_create(self, object_class: str, attributes: Dict[str, List[Any]],
                   options: OperationOptions) -> str:
        pass

    @abstractmethod
    def _do_update(self, object_class: str, uid: str, attributes: Dict[str, List[Any]],
                   options: OperationOptions) -> str:
        pass

    def _do_update_delta(self, object_class: str, uid: str, deltas: List[AttributeDelta],
                         options: OperationOptions) -> str:
        current = self.get_object(object_class, "__UID__", uid)
        if current is None:
            raise ConnectorError(ConnectorErrorCategory.NOT_FOUND, f"{object_class} {uid} not found")

        attributes: Dict[str, List[Any]] = {}
        for delta in deltas:
            if delta.values_to_replace is not None:
                values = list(delta.values_to_replace)
            else:
                values = [v for v in current.get_values(delta.name) if v not in delta.values_to_remove]
                values.extend(v for v in delta.values_to_add if v not in values)
            attributes[delta.name] = values
        return self._do_update(object_class, uid, attributes, options)

    @abstractmethod
    def _do_delete(self, object_class: str, uid: str, options: OperationOptions) -> None:
        pass

    @abstractmethod
    def _do_sync(self, object_class: str, token: Optional[str], handler: SyncResultsHandler,
                 options: OperationOptions) -> None:
        pass

    @abstractmethod
    def _do_get_latest_sync_token(self, object_class: str) -> Optional[str]:
        pass

    @abstractmethod
    def _do_search_page(self, object_class: str, cond: Optional[SearchCond],
                        options: OperationOptions) -> Tuple[List[ConnectorObject], Optional[str]]:
        """Return one page of results and the cookie of the next page (None on the last)."""
        pass

    @abstractmethod
    def _do_get_object_class_info(self) -> List[ObjectClassInfo]:
        pass

    def _do_validate(self) -> None:
        pass

    @abstractmethod
    def _do_test(self) -> None:
        pass

    def _do_dispose(self) -> None:
        pass
