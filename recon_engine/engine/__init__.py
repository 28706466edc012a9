"""
Engine components: identity store, mapping, policy enforcement and configuration.
"""

from .config_loader import ConfigStore, EngineConfig, load_config
from .identity_store import IdentityStore
from .mapping import MappingManager, resolve_any_type
from .policy_enforcer import AccountPolicySpec, PasswordPolicySpec, PolicyEnforcer

__all__ = [
    "AccountPolicySpec",
    "ConfigStore",
    "EngineConfig",
    "IdentityStore",
    "MappingManager",
    "PasswordPolicySpec",
    "PolicyEnforcer",
    "load_config",
    "resolve_any_type",
]
