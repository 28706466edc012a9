"""
Connector registry and per-resource pool management.

Connector implementations are looked up by the key declared in each
resource's ``connector`` setting; the registry is populated explicitly at
startup.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from ..exceptions import ConfigurationError
from ..models import ExternalResource
from .base_connector import Connector
from .mock_connector import InMemoryConnectorFactory
from .pool import ConnectorFactory, ConnectorPool
from .rest_connector import RestConnector

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Maps connector implementation keys to factories."""

    def __init__(self):
        self._factories: Dict[str, ConnectorFactory] = {}

    def register(self, key: str, factory: ConnectorFactory) -> None:
        if key in self._factories:
            logger.warning(f"Replacing connector factory for '{key}'")
        self._factories[key] = factory

    def get_factory(self, key: str) -> ConnectorFactory:
        try:
            return self._factories[key]
        except KeyError:
            raise ConfigurationError(
                f"Unknown connector '{key}'; available: {', '.join(sorted(self._factories))}"
            ) from None

    def create(self, resource: ExternalResource) -> Connector:
        return self.get_factory(resource.connector)(resource)

    def keys(self) -> List[str]:
        return sorted(self._factories)


def default_registry() -> ConnectorRegistry:
    """Registry with the built-in ``memory`` and ``rest`` connectors."""
    registry = ConnectorRegistry()
    registry.register("memory", InMemoryConnectorFactory())
    registry.register("rest", RestConnector)
    return registry


class ConnectorManager:
    """Owns one ConnectorPool per resource."""

    def __init__(self, registry: Optional[ConnectorRegistry] = None):
        self.registry = registry or default_registry()
        self._pools: Dict[str, ConnectorPool] = {}
        self._lock = threading.Lock()

    def pool_for(self, resource: ExternalResource) -> ConnectorPool:
        with self._lock:
            pool = self._pools.get(resource.key)
            if pool is None:
                pool = ConnectorPool(resource, self.registry.get_factory(resource.connector))
                self._pools[resource.key] = pool
                logger.info(
                    f"Created connector pool for {resource.key} "
                    f"(connector={resource.connector}, maxObjects={resource.pool.max_objects})"
                )
            return pool

    @contextmanager
    def checkout(self, resource: ExternalResource) -> Iterator[Connector]:
        with self.pool_for(resource).checkout() as connector:
            yield connector

    def remove(self, resource_key: str) -> None:
        """Close and forget the pool of a resource that was removed from configuration."""
        with self._lock:
            pool = self._pools.pop(resource_key, None)
        if pool is not None:
            pool.close()

    def evict_idle(self) -> int:
        with self._lock:
            pools = list(self._pools.values())
        return sum(pool.evict_idle() for pool in pools)

    def close(self) -> None:
        with self._lock:
            pools, self._pools = list(self._pools.values()), {}
        for pool in pools:
            pool.close()
