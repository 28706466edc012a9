"""
Tests for the MappingManager.
"""

import pytest
from pydantic import SecretStr

from factories import make_resource, user_provision
from recon_engine.engine import MappingManager, resolve_any_type
from recon_engine.exceptions import MappingError
from recon_engine.models import (
    NAME_ATTR,
    PASSWORD_ATTR,
    AnyTypeKind,
    ConnectorObject,
    GroupRecord,
    UserRecord,
    build_user,
)


class TestInbound:
    """Connector object to internal values."""

    @pytest.fixture
    def mapping(self):
        return MappingManager()

    def test_unmapped_attributes_are_ignored(self, mapping):
        obj = ConnectorObject(object_class="__ACCOUNT__", uid="jdoe",
                              attributes={"mail": ["jdoe@example.com"], "shoeSize": ["44"]})

        values = mapping.to_internal(user_provision(), obj)

        assert values == {"username": ["jdoe"], "email": ["jdoe@example.com"]}

    def test_missing_mandatory_attribute(self, mapping):
        obj = ConnectorObject(object_class="__ACCOUNT__", uid="jdoe")

        with pytest.raises(MappingError, match="mail"):
            mapping.to_internal(user_provision(mandatory_mail=True), obj)

    def test_new_record_uses_any_type(self, mapping):
        obj = ConnectorObject(object_class="__ACCOUNT__", uid="jdoe",
                              attributes={"givenName": ["John"], "__PASSWORD__": ["s3cret"]})
        values = mapping.to_internal(user_provision(), obj)

        record = mapping.new_record(resolve_any_type("USER"), values, obj, realm="/staff")

        assert isinstance(record, UserRecord)
        assert record.username == "jdoe"
        assert record.realm == "/staff"
        assert record.get_values("firstname") == ["John"]
        assert record.password.get_secret_value() == "s3cret"
        assert record.key is None

    def test_resolve_any_type(self):
        assert resolve_any_type("GROUP").kind == AnyTypeKind.GROUP
        assert resolve_any_type("PRINTER").kind == AnyTypeKind.ANY_OBJECT


class TestOutbound:
    """Internal record to connector attributes."""

    @pytest.fixture
    def mapping(self):
        return MappingManager()

    @pytest.fixture
    def user(self):
        return build_user("jdoe", password="s3cret!",
                          plain_attrs={"email": ["jdoe@example.com"], "firstname": ["John"]})

    def test_key_item_becomes_name(self, mapping, user):
        key, attributes = mapping.to_connector(make_resource(), user_provision(), user)

        assert key == "jdoe"
        assert attributes[NAME_ATTR] == ["jdoe"]
        assert attributes["mail"] == ["jdoe@example.com"]
        assert PASSWORD_ATTR not in attributes

    def test_password_only_for_marked_resources(self, mapping, user):
        password = SecretStr("s3cret!")

        _, plain = mapping.to_connector(make_resource(), user_provision(), user, password)
        _, marked = mapping.to_connector(make_resource(propagate_password=True), user_provision(),
                                         user, password)

        assert PASSWORD_ATTR not in plain
        assert marked[PASSWORD_ATTR] == [password]

    def test_changed_schemas_restrict_output(self, mapping, user):
        _, attributes = mapping.to_connector(make_resource(), user_provision(), user,
                                             changed_schemas=["firstname"])

        assert attributes == {NAME_ATTR: ["jdoe"], "givenName": ["John"]}

    def test_missing_key_value(self, mapping):
        group = GroupRecord(name="staff")

        with pytest.raises(MappingError, match="username"):
            mapping.to_connector(make_resource(), user_provision(), group)

    def test_operation_options(self, mapping):
        options = mapping.build_operation_options(user_provision())

        assert options.object_class == "__ACCOUNT__"
        assert options.attributes_to_get == ["__PASSWORD__", "givenName", "mail"]
