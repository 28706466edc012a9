"""
Condition tree used for correlation and store search.

A SearchCond is a binary tree: leaves carry exactly one concrete condition
(attribute, membership, resource or entitlement), optionally negated, and
inner nodes combine two children with AND/OR. Trees are immutable once built.
"""

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict


class AttrCondType(str, Enum):
    """Comparison operators for attribute conditions."""
    EQ = "EQ"
    IEQ = "IEQ"
    NEQ = "NEQ"
    INEQ = "INEQ"
    GT = "GT"
    GE = "GE"
    LT = "LT"
    LE = "LE"
    LIKE = "LIKE"
    ILIKE = "ILIKE"
    ISNULL = "ISNULL"
    ISNOTNULL = "ISNOTNULL"


class AttrCond(BaseModel):
    """Compare the values of an internal schema with an expression."""
    model_config = ConfigDict(frozen=True)

    schema_name: str
    type: AttrCondType = AttrCondType.EQ
    expression: Optional[str] = None


class MembershipCond(BaseModel):
    """Record is a member of the given group key."""
    model_config = ConfigDict(frozen=True)

    group: str


class ResourceCond(BaseModel):
    """Record is assigned to the given resource."""
    model_config = ConfigDict(frozen=True)

    resource: str


class EntitlementCond(BaseModel):
    """Record holds the given entitlement."""
    model_config = ConfigDict(frozen=True)

    entitlement: str


LeafCond = Union[AttrCond, MembershipCond, ResourceCond, EntitlementCond]


class SearchCondType(str, Enum):
    """Node kinds of the condition tree."""
    LEAF = "LEAF"
    NOT_LEAF = "NOT_LEAF"
    AND = "AND"
    OR = "OR"


class SearchCond(BaseModel):
    """A node of the condition tree."""
    model_config = ConfigDict(frozen=True)

    type: SearchCondType
    attr_cond: Optional[AttrCond] = None
    membership_cond: Optional[MembershipCond] = None
    resource_cond: Optional[ResourceCond] = None
    entitlement_cond: Optional[EntitlementCond] = None
    left: Optional["SearchCond"] = None
    right: Optional["SearchCond"] = None

    def leaf_conds(self) -> List[LeafCond]:
        return [
            cond for cond in (self.attr_cond, self.membership_cond,
                              self.resource_cond, self.entitlement_cond)
            if cond is not None
        ]

    def get_leaf_cond(self) -> Optional[LeafCond]:
        conds = self.leaf_conds()
        return conds[0] if len(conds) == 1 else None

    def is_valid(self) -> bool:
        """
        Check the tree shape.

        Leaves must carry exactly one condition and no children; AND/OR nodes
        must carry no condition and two valid children.
        """
        if self.type in (SearchCondType.LEAF, SearchCondType.NOT_LEAF):
            return len(self.leaf_conds()) == 1 and self.left is None and self.right is None

        if self.leaf_conds() or self.left is None or self.right is None:
            return False
        return self.left.is_valid() and self.right.is_valid()

    def is_leaf(self) -> bool:
        return self.type in (SearchCondType.LEAF, SearchCondType.NOT_LEAF)

    def __str__(self):
        if self.is_leaf():
            prefix = "NOT " if self.type == SearchCondType.NOT_LEAF else ""
            return f"{prefix}{self.get_leaf_cond()!r}"
        return f"({self.left} {self.type.value} {self.right})"


SearchCond.model_rebuild()


def _leaf_fields(cond: LeafCond) -> dict:
    if isinstance(cond, AttrCond):
        return {"attr_cond": cond}
    if isinstance(cond, MembershipCond):
        return {"membership_cond": cond}
    if isinstance(cond, ResourceCond):
        return {"resource_cond": cond}
    if isinstance(cond, EntitlementCond):
        return {"entitlement_cond": cond}
    raise TypeError(f"Unsupported leaf condition: {type(cond).__name__}")


def leaf(cond: LeafCond) -> SearchCond:
    return SearchCond(type=SearchCondType.LEAF, **_leaf_fields(cond))


def not_leaf(cond: LeafCond) -> SearchCond:
    return SearchCond(type=SearchCondType.NOT_LEAF, **_leaf_fields(cond))


def and_(left: SearchCond, right: SearchCond) -> SearchCond:
    return SearchCond(type=SearchCondType.AND, left=left, right=right)


def or_(left: SearchCond, right: SearchCond) -> SearchCond:
    return SearchCond(type=SearchCondType.OR, left=left, right=right)


def _fold(conds: List[SearchCond], node_type: SearchCondType) -> SearchCond:
    if not conds:
        raise ValueError(f"Cannot build {node_type.value} of no conditions")
    if len(conds) == 1:
        return conds[0]
    middle = (len(conds) + 1) // 2
    return SearchCond(
        type=node_type,
        left=_fold(conds[:middle], node_type),
        right=_fold(conds[middle:], node_type),
    )


def and_of(conds: List[SearchCond]) -> SearchCond:
    """
    Combine conditions with AND into a balanced tree.

    Operand order is preserved left to right; the left half takes the extra
    operand when the count is odd.
    """
    return _fold(list(conds), SearchCondType.AND)


def or_of(conds: List[SearchCond]) -> SearchCond:
    """Combine conditions with OR into a balanced tree."""
    return _fold(list(conds), SearchCondType.OR)


def attr_eq(schema_name: str, value: Optional[str], ignore_case: bool = False) -> SearchCond:
    """Shortcut for the common equality leaf, or ISNULL when value is None."""
    if value is None:
        return leaf(AttrCond(schema_name=schema_name, type=AttrCondType.ISNULL))
    cond_type = AttrCondType.IEQ if ignore_case else AttrCondType.EQ
    return leaf(AttrCond(schema_name=schema_name, type=cond_type, expression=str(value)))
