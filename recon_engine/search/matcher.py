"""
Evaluation of condition trees against records and connector objects.
"""

import logging
import re
from typing import Any, Iterable, List

from ..exceptions import InvalidSearchCondError
from .cond import (
    AttrCond,
    AttrCondType,
    EntitlementCond,
    MembershipCond,
    ResourceCond,
    SearchCond,
    SearchCondType,
)

logger = logging.getLogger(__name__)


def _like_to_regex(expression: str) -> str:
    parts = []
    for char in expression:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "^" + "".join(parts) + "$"


def _compare(value: Any, expression: str) -> int:
    """Numeric comparison when both sides parse as numbers, string comparison otherwise."""
    try:
        left, right = float(value), float(expression)
    except (TypeError, ValueError):
        left, right = str(value), str(expression)
    return (left > right) - (left < right)


def _match_attr(cond: AttrCond, values: List[Any]) -> bool:
    values = [v for v in values if v is not None and v != ""]

    if cond.type == AttrCondType.ISNULL:
        return not values
    if cond.type == AttrCondType.ISNOTNULL:
        return bool(values)

    expression = cond.expression if cond.expression is not None else ""
    if cond.type == AttrCondType.EQ:
        return any(str(v) == expression for v in values)
    if cond.type == AttrCondType.IEQ:
        return any(str(v).lower() == expression.lower() for v in values)
    if cond.type == AttrCondType.NEQ:
        return not any(str(v) == expression for v in values)
    if cond.type == AttrCondType.INEQ:
        return not any(str(v).lower() == expression.lower() for v in values)
    if cond.type in (AttrCondType.LIKE, AttrCondType.ILIKE):
        flags = re.IGNORECASE if cond.type == AttrCondType.ILIKE else 0
        pattern = re.compile(_like_to_regex(expression), flags)
        return any(pattern.match(str(v)) for v in values)
    if cond.type == AttrCondType.GT:
        return any(_compare(v, expression) > 0 for v in values)
    if cond.type == AttrCondType.GE:
        return any(_compare(v, expression) >= 0 for v in values)
    if cond.type == AttrCondType.LT:
        return any(_compare(v, expression) < 0 for v in values)
    if cond.type == AttrCondType.LE:
        return any(_compare(v, expression) <= 0 for v in values)

    raise InvalidSearchCondError(f"Unsupported attribute condition type: {cond.type}")


def _collection(subject: Any, name: str) -> Iterable[str]:
    return getattr(subject, name, None) or []


def _match_leaf(cond: SearchCond, subject: Any) -> bool:
    leaf_cond = cond.get_leaf_cond()
    if isinstance(leaf_cond, AttrCond):
        matched = _match_attr(leaf_cond, subject.get_values(leaf_cond.schema_name))
    elif isinstance(leaf_cond, MembershipCond):
        matched = leaf_cond.group in _collection(subject, "memberships")
    elif isinstance(leaf_cond, ResourceCond):
        matched = leaf_cond.resource in _collection(subject, "resources")
    elif isinstance(leaf_cond, EntitlementCond):
        matched = leaf_cond.entitlement in _collection(subject, "entitlements")
    else:
        raise InvalidSearchCondError(f"Leaf without a condition: {cond!r}")

    return not matched if cond.type == SearchCondType.NOT_LEAF else matched


def _evaluate(cond: SearchCond, subject: Any) -> bool:
    if cond.is_leaf():
        return _match_leaf(cond, subject)
    if cond.type == SearchCondType.AND:
        return _evaluate(cond.left, subject) and _evaluate(cond.right, subject)
    return _evaluate(cond.left, subject) or _evaluate(cond.right, subject)


def matches(cond: SearchCond, subject: Any) -> bool:
    """
    Evaluate a condition tree against a subject.

    The subject must provide ``get_values(schema)``; membership, resource and
    entitlement leaves read the matching list attributes when present.

    Raises:
        InvalidSearchCondError: if the tree is not valid
    """
    if not cond.is_valid():
        raise InvalidSearchCondError(f"Refusing to evaluate invalid condition: {cond}")
    return _evaluate(cond, subject)


def filter_matching(cond: SearchCond, subjects: Iterable[Any]) -> List[Any]:
    """Return the subjects matching the condition, in input order."""
    if not cond.is_valid():
        raise InvalidSearchCondError(f"Refusing to evaluate invalid condition: {cond}")
    return [subject for subject in subjects if _evaluate(cond, subject)]
