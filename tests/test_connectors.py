"""
Tests for the connector contract, the in-memory connector and the registry.
"""

import pytest
from pydantic import SecretStr

from factories import account, make_resource
from recon_engine.connectors import (
    AttributeDelta,
    ConnectorManager,
    ConnectorRegistry,
    InMemoryConnector,
    InMemoryConnectorFactory,
    OperationOptions,
    PropagationAttempt,
    RestConnector,
    default_registry,
)
from recon_engine.exceptions import ConfigurationError, ConnectorError, ConnectorErrorCategory
from recon_engine.models import NAME_ATTR, PASSWORD_ATTR, ConnectorCapability, SyncDeltaType
from recon_engine.search import attr_eq


def seeded(count: int, **kwargs) -> InMemoryConnector:
    objects = [account(f"user{i:03d}", mail=f"user{i:03d}@example.com") for i in range(count)]
    return InMemoryConnector(make_resource(objects=objects, **kwargs))


class TestInMemoryConnector:
    """Test cases for InMemoryConnector."""

    def test_create_and_get(self):
        connector = InMemoryConnector(make_resource())

        uid = connector.create("__ACCOUNT__", {NAME_ATTR: ["jdoe"], "mail": ["jdoe@example.com"],
                                               PASSWORD_ATTR: [SecretStr("s3cret!")]})

        found = connector.get_object("__ACCOUNT__", NAME_ATTR, "jdoe")
        assert uid == "jdoe"
        assert found.get_value("mail") == "jdoe@example.com"
        assert PASSWORD_ATTR not in found.attributes
        assert connector.authenticate("__ACCOUNT__", "jdoe", SecretStr("s3cret!")) == "jdoe"

    def test_create_existing(self):
        connector = seeded(1)

        with pytest.raises(ConnectorError) as exc_info:
            connector.create("__ACCOUNT__", {NAME_ATTR: ["user000"]})

        assert exc_info.value.category == ConnectorErrorCategory.ALREADY_EXISTS
        assert exc_info.value.resource == "ldap"

    def test_update_merges_attributes(self):
        connector = seeded(1)

        connector.update("__ACCOUNT__", "user000", {"givenName": ["User"]})

        found = connector.get_object("__ACCOUNT__", "__UID__", "user000")
        assert found.get_value("givenName") == "User"
        assert found.get_value("mail") == "user000@example.com"

    def test_update_delta(self):
        connector = InMemoryConnector(make_resource(objects=[account("jdoe", groups=["a", "b"])]))

        connector.update_delta("__ACCOUNT__", "jdoe", [
            AttributeDelta(name="groups", values_to_add=["c"], values_to_remove=["a"]),
        ])

        assert connector.get_object("__ACCOUNT__", "__UID__", "jdoe").get_values("groups") == ["b", "c"]

    def test_delete_missing(self):
        with pytest.raises(ConnectorError) as exc_info:
            InMemoryConnector(make_resource()).delete("__ACCOUNT__", "ghost")
        assert exc_info.value.category == ConnectorErrorCategory.NOT_FOUND

    def test_search_pages_until_exhausted(self):
        connector = seeded(250)
        seen = []

        result = connector.search("__ACCOUNT__", None, lambda obj: seen.append(obj.uid) or True)

        assert len(seen) == 250
        assert result.handled == 250
        assert not result.stopped
        assert result.paged_results_cookie is None

    def test_search_single_page(self):
        connector = seeded(30)
        seen = []

        result = connector.search("__ACCOUNT__", None, lambda obj: seen.append(obj.uid) or True,
                                  OperationOptions(page_size=10))

        assert len(seen) == 10
        assert result.paged_results_cookie == "10"

    def test_search_stops_when_handler_declines(self):
        connector = seeded(5)
        seen = []

        def handler(obj):
            seen.append(obj.uid)
            return len(seen) < 2

        result = connector.search("__ACCOUNT__", None, handler)

        assert seen == ["user000", "user001"]
        assert result.stopped

    def test_search_with_condition(self):
        connector = seeded(5)
        seen = []

        connector.search("__ACCOUNT__", attr_eq("mail", "user003@example.com"),
                         lambda obj: seen.append(obj.uid) or True)

        assert seen == ["user003"]

    def test_sync_from_token(self):
        connector = seeded(3)
        connector.delete("__ACCOUNT__", "user001")
        deltas = []

        connector.sync("__ACCOUNT__", "2", lambda delta: deltas.append(delta) or True)

        assert [(d.token, d.delta_type) for d in deltas] == [
            ("3", SyncDeltaType.CREATE),
            ("4", SyncDeltaType.DELETE),
        ]
        assert connector.get_latest_sync_token("__ACCOUNT__") == "4"

    def test_simulated_failure(self):
        connector = InMemoryConnector(make_resource(connector_config={"fail_operations": {"test": "CONNECT"}}))

        with pytest.raises(ConnectorError) as exc_info:
            connector.test()

        assert exc_info.value.category == ConnectorErrorCategory.CONNECT

    def test_schema_discovery(self):
        infos = seeded(2).get_object_class_info()

        assert [info.object_class for info in infos] == ["__ACCOUNT__"]
        assert [a.name for a in infos[0].attributes] == [NAME_ATTR, "mail"]

    def test_dispose_is_idempotent(self):
        connector = seeded(1)
        connector.dispose()
        connector.dispose()

        with pytest.raises(ConnectorError):
            connector.test()


class TestCapabilities:
    """A missing capability turns the operation into a logged no-op."""

    @pytest.fixture
    def read_only(self):
        return InMemoryConnector(make_resource(
            objects=[account("jdoe")],
            capabilities=[ConnectorCapability.SEARCH, ConnectorCapability.SYNC],
        ))

    def test_create_is_not_attempted(self, read_only):
        attempt = PropagationAttempt()

        assert read_only.create("__ACCOUNT__", {NAME_ATTR: ["new"]}, propagation_attempt=attempt) is None
        assert not attempt.attempted
        assert read_only.get_object("__ACCOUNT__", NAME_ATTR, "new") is None

    def test_delete_is_not_attempted(self, read_only):
        attempt = PropagationAttempt()

        read_only.delete("__ACCOUNT__", "jdoe", propagation_attempt=attempt)

        assert not attempt
        assert read_only.get_object("__ACCOUNT__", NAME_ATTR, "jdoe") is not None

    def test_supported_operation_marks_attempt(self):
        connector = InMemoryConnector(make_resource())
        attempt = PropagationAttempt()

        connector.create("__ACCOUNT__", {NAME_ATTR: ["new"]}, propagation_attempt=attempt)

        assert attempt.attempted


class TestRegistry:
    """Test cases for ConnectorRegistry and ConnectorManager."""

    def test_default_registry(self):
        registry = default_registry()

        assert registry.keys() == ["memory", "rest"]
        assert registry.get_factory("rest") is RestConnector

    def test_unknown_connector(self):
        with pytest.raises(ConfigurationError, match="Unknown connector"):
            ConnectorRegistry().get_factory("ldap")

    def test_memory_factory_shares_directory(self):
        factory = InMemoryConnectorFactory()
        resource = make_resource()

        factory(resource).create("__ACCOUNT__", {NAME_ATTR: ["jdoe"]})

        assert factory(resource).get_object("__ACCOUNT__", NAME_ATTR, "jdoe") is not None

    def test_manager_keeps_one_pool_per_resource(self, connector_manager):
        resource = make_resource()

        assert connector_manager.pool_for(resource) is connector_manager.pool_for(resource)
        with connector_manager.checkout(resource) as connector:
            assert isinstance(connector, InMemoryConnector)
        assert connector_manager.pool_for(resource).idle_count == 1

    def test_manager_remove_closes_pool(self):
        manager = ConnectorManager()
        resource = make_resource()
        with manager.checkout(resource) as connector:
            pass

        manager.remove(resource.key)

        assert connector.disposed
