"""
Connectors Package for the Reconciliation Engine.

This package provides the connector contract, the built-in in-memory and
REST connectors, the bounded connector pool and the explicit registry.
"""

from .base_connector import (
    AttributeDelta,
    Connector,
    ObjectClassInfo,
    OperationOptions,
    PropagationAttempt,
    SearchResult,
)
from .mock_connector import InMemoryConnector, InMemoryConnectorFactory, InMemoryDirectory
from .pool import ConnectorPool
from .registry import ConnectorManager, ConnectorRegistry, default_registry
from .rest_connector import RestConnector

__all__ = [
    "AttributeDelta",
    "Connector",
    "ConnectorManager",
    "ConnectorPool",
    "ConnectorRegistry",
    "InMemoryConnector",
    "InMemoryConnectorFactory",
    "InMemoryDirectory",
    "ObjectClassInfo",
    "OperationOptions",
    "PropagationAttempt",
    "RestConnector",
    "SearchResult",
    "default_registry",
]
