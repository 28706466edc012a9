"""
Shared fixtures for the Reconciliation Engine tests.

Resources are backed by the in-memory connector; every test gets its own
connector factory, so directories never leak between tests.
"""

import pytest

from recon_engine.connectors import ConnectorManager, ConnectorRegistry, InMemoryConnectorFactory
from recon_engine.engine import ConfigStore, EngineConfig, IdentityStore
from recon_engine.jobs import PullJobDelegate, PushJobDelegate, job_key_for
from recon_engine.models import JobExecutionContext
from recon_engine.workflows import ActionsRegistry


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end tests across components")


@pytest.fixture
def connector_factory():
    return InMemoryConnectorFactory()


@pytest.fixture
def connector_manager(connector_factory):
    registry = ConnectorRegistry()
    registry.register("memory", connector_factory)
    manager = ConnectorManager(registry)
    yield manager
    manager.close()


@pytest.fixture
def store():
    return IdentityStore()


@pytest.fixture
def actions_registry():
    return ActionsRegistry()


@pytest.fixture
def make_config_store():
    def _make(resources, pull_tasks=(), push_tasks=(), **kwargs) -> ConfigStore:
        config = EngineConfig(resources=list(resources), pull_tasks=list(pull_tasks),
                              push_tasks=list(push_tasks), **kwargs)
        return ConfigStore(config=config)
    return _make


@pytest.fixture
def run_task(store, connector_manager, actions_registry):
    """Run a configured task once through its job delegate."""
    def _run(config_store: ConfigStore, task_key: str, dry_run: bool = False):
        task = config_store.get_task(task_key)
        delegate_class = PullJobDelegate if task.type == "PULL" else PushJobDelegate
        delegate = delegate_class(config_store, store, connector_manager,
                                  actions_registry=actions_registry)
        context = JobExecutionContext(task_key=task_key, dry_run=dry_run,
                                      job_key=job_key_for(config_store.domain, task_key))
        return delegate.execute(task, context)
    return _run
