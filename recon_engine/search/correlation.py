"""
Correlation rules: turning an inbound connector object into a store lookup.
"""

import logging
import re
from typing import List, Optional

from ..exceptions import ConfigurationError
from ..models import UID_ATTR, ConnectorObject, CorrelationRuleConf, ResourceProvision
from .cond import AttrCond, AttrCondType, SearchCond, and_of, attr_eq, leaf

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class CorrelationRule:
    """
    A condition template parameterized by connector object attributes.

    Attribute condition expressions may reference ``${attr}`` placeholders,
    including ``${__UID__}`` and ``${__NAME__}``. A leaf whose placeholder
    has no value becomes an ISNULL test on the same schema.
    """

    def __init__(self, template: SearchCond):
        if not template.is_valid():
            raise ConfigurationError(f"Invalid correlation template: {template}")
        self.template = template

    def build(self, connector_object: ConnectorObject) -> SearchCond:
        return self._substitute(self.template, connector_object)

    def _substitute(self, cond: SearchCond, connector_object: ConnectorObject) -> SearchCond:
        if not cond.is_leaf():
            return cond.model_copy(update={
                "left": self._substitute(cond.left, connector_object),
                "right": self._substitute(cond.right, connector_object),
            })

        attr_cond = cond.attr_cond
        if attr_cond is None or not attr_cond.expression:
            return cond

        missing = False

        def replace(match):
            nonlocal missing
            value = connector_object.get_value(match.group(1))
            if value is None:
                missing = True
                return ""
            return str(value)

        expression = PLACEHOLDER.sub(replace, attr_cond.expression)
        if missing:
            new_attr = AttrCond(schema_name=attr_cond.schema_name, type=AttrCondType.ISNULL)
        else:
            new_attr = attr_cond.model_copy(update={"expression": expression})
        return cond.model_copy(update={"attr_cond": new_attr})

    @classmethod
    def from_schemas(cls, schemas: List[str], provision: ResourceProvision) -> "SchemaCorrelationRule":
        return SchemaCorrelationRule(schemas, provision)


class SchemaCorrelationRule(CorrelationRule):
    """AND of equality tests between internal schemas and their mapped external values."""

    def __init__(self, schemas: List[str], provision: ResourceProvision):
        self.schemas = list(schemas)
        self.provision = provision
        self.ext_names = {}
        for schema in self.schemas:
            item = next((i for i in provision.mapping.inbound_items() if i.int_attr_name == schema), None)
            if item is None:
                raise ConfigurationError(
                    f"Correlation schema '{schema}' is not mapped for {provision.any_type}"
                )
            self.ext_names[schema] = item.ext_attr_name

    def build(self, connector_object: ConnectorObject) -> SearchCond:
        conds = []
        for schema in self.schemas:
            value = connector_object.get_value(self.ext_names[schema])
            conds.append(attr_eq(schema, value, ignore_case=self.provision.ignore_case_match))
        return and_of(conds)


def default_correlation_cond(provision: ResourceProvision,
                             connector_object: ConnectorObject) -> SearchCond:
    """
    Match by the connector object key item.

    The external value is read from the key item's attribute, falling back to
    the object's Uid.
    """
    key_item = provision.mapping.get_conn_object_key_item()
    if key_item is None:
        raise ConfigurationError(f"No connector object key item for {provision.any_type}")

    value = connector_object.get_value(key_item.ext_attr_name)
    if value is None:
        value = connector_object.get_value(UID_ATTR)
    return attr_eq(key_item.int_attr_name, value, ignore_case=provision.ignore_case_match)


def build_rule(conf: Optional[CorrelationRuleConf],
               provision: ResourceProvision) -> Optional[CorrelationRule]:
    """Build the configured correlation rule, or None to use the key item fallback."""
    if conf is None:
        return None
    if conf.template is not None:
        return CorrelationRule(conf.template)
    return CorrelationRule.from_schemas(conf.schemas, provision)


def correlation_cond(rule: Optional[CorrelationRule], provision: ResourceProvision,
                     connector_object: ConnectorObject) -> SearchCond:
    if rule is None:
        return default_correlation_cond(provision, connector_object)
    cond = rule.build(connector_object)
    logger.debug(f"Correlation condition for {connector_object.uid}: {cond}")
    return cond
