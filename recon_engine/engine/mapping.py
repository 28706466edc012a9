"""
Mapping Manager for the Reconciliation Engine.

Translates between internal record values and connector attributes using a
resource provision's mapping items.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import SecretStr

from ..connectors.base_connector import OperationOptions
from ..exceptions import MappingError
from ..models import (
    GROUP_TYPE,
    NAME_ATTR,
    UID_ATTR,
    USER_TYPE,
    AnyRecord,
    AnyType,
    AnyTypeKind,
    ConnectorObject,
    ExternalResource,
    Item,
    ResourceProvision,
    build_record,
)

logger = logging.getLogger(__name__)


def resolve_any_type(key: str) -> AnyType:
    """Any type for a key: USER and GROUP are built in, anything else is an any object."""
    if key == USER_TYPE.key:
        return USER_TYPE
    if key == GROUP_TYPE.key:
        return GROUP_TYPE
    return AnyType(key=key, kind=AnyTypeKind.ANY_OBJECT)


def name_schema(any_type: AnyType) -> str:
    return "username" if any_type.kind == AnyTypeKind.USER else "name"


class MappingManager:
    """Inbound and outbound attribute translation."""

    def _inbound_values(self, item: Item, connector_object: ConnectorObject) -> List[Any]:
        values = [v for v in connector_object.get_values(item.ext_attr_name) if v is not None]
        if not values and item.conn_object_key:
            values = [connector_object.uid]
        if not item.multivalued:
            values = values[:1]
        return values

    def to_internal(self, provision: ResourceProvision,
                    connector_object: ConnectorObject) -> Dict[str, List[Any]]:
        """
        Translate connector attributes into internal schema values.

        Connector attributes without a mapping item are ignored.

        Raises:
            MappingError: if a mandatory item has no value
        """
        values: Dict[str, List[Any]] = {}
        for item in provision.mapping.inbound_items():
            item_values = self._inbound_values(item, connector_object)
            if not item_values:
                if item.mandatory:
                    raise MappingError(
                        f"Mandatory attribute '{item.ext_attr_name}' missing for {connector_object.uid}"
                    )
                continue
            values[item.int_attr_name] = item_values
        return values

    def new_record(self, any_type: AnyType, values: Dict[str, List[Any]],
                   connector_object: ConnectorObject, realm: str = "/") -> AnyRecord:
        """Build an unsaved record from inbound values."""
        names = values.get(name_schema(any_type)) or [connector_object.name]
        record = build_record(any_type, str(names[0]), realm=realm)
        self.apply_inbound(record, values)
        return record

    def apply_inbound(self, record: AnyRecord, values: Dict[str, List[Any]]) -> AnyRecord:
        for schema, schema_values in values.items():
            record.set_values(schema, schema_values)
        return record

    def to_connector(self, resource: ExternalResource, provision: ResourceProvision,
                     record: AnyRecord, password: Optional[SecretStr] = None,
                     changed_schemas: Optional[List[str]] = None
                     ) -> Tuple[Optional[str], Dict[str, List[Any]]]:
        """
        Translate a record into connector attributes.

        Args:
            resource: Target resource
            provision: Provision of the record's any type on the resource
            record: Source record
            password: Cleartext password to send, only honored when the
                resource is marked to receive passwords
            changed_schemas: Restrict output to these schemas (plus the key)

        Returns:
            Tuple of connector object key value and attributes
        """
        attributes: Dict[str, List[Any]] = {}
        conn_object_key = None

        for item in provision.mapping.outbound_items():
            if item.password:
                if password is not None and resource.propagate_password:
                    attributes[item.ext_attr_name] = [password]
                continue

            values = record.get_values(item.int_attr_name)
            if not item.multivalued:
                values = values[:1]

            if item.conn_object_key:
                if not values:
                    raise MappingError(
                        f"No value for key attribute '{item.int_attr_name}' of {record.get_name()}"
                    )
                conn_object_key = str(values[0])
                attributes[NAME_ATTR] = [conn_object_key]
                if item.ext_attr_name in (NAME_ATTR, UID_ATTR):
                    continue
            elif changed_schemas is not None and item.int_attr_name not in changed_schemas:
                continue

            if not values and item.mandatory:
                raise MappingError(
                    f"Mandatory attribute '{item.int_attr_name}' missing for {record.get_name()}"
                )
            attributes[item.ext_attr_name] = values

        return conn_object_key, attributes

    def build_operation_options(self, provision: ResourceProvision) -> OperationOptions:
        """Options fetching only the attributes the mapping reads."""
        names = sorted({item.ext_attr_name for item in provision.mapping.inbound_items()
                        if item.ext_attr_name not in (UID_ATTR, NAME_ATTR)})
        return OperationOptions(attributes_to_get=names or None, object_class=provision.object_class)
