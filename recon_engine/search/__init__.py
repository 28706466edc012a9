"""
Condition tree, evaluation and correlation rules.
"""

from .cond import (
    AttrCond,
    AttrCondType,
    EntitlementCond,
    MembershipCond,
    ResourceCond,
    SearchCond,
    SearchCondType,
    and_,
    and_of,
    attr_eq,
    leaf,
    not_leaf,
    or_,
    or_of,
)
from .matcher import filter_matching, matches

__all__ = [
    "AttrCond",
    "AttrCondType",
    "EntitlementCond",
    "MembershipCond",
    "ResourceCond",
    "SearchCond",
    "SearchCondType",
    "and_",
    "and_of",
    "attr_eq",
    "leaf",
    "not_leaf",
    "or_",
    "or_of",
    "filter_matching",
    "matches",
]
