"""
Identity Reconciliation Engine (Recon Engine)

Keeps an internal identity store and external resources consistent.
Pull tasks read change streams from external systems and apply them to the
store; push tasks propagate store records out to the resources.

The engine provides connector pooling, correlation and conflict resolution,
account/password policy enforcement and scheduled, interruptible jobs.
"""

__version__ = "1.0.0"
__author__ = "Recon Engine Team"
__email__ = "team@example.com"

from .engine.config_loader import ConfigStore
from .engine.identity_store import IdentityStore
from .engine.mapping import MappingManager
from .engine.policy_enforcer import PolicyEnforcer
from .jobs.job_manager import JobManager
from .workflows.pull_workflow import PullWorkflow
from .workflows.push_workflow import PushPropagator, PushWorkflow

__all__ = [
    "ConfigStore",
    "IdentityStore",
    "MappingManager",
    "PolicyEnforcer",
    "JobManager",
    "PullWorkflow",
    "PushWorkflow",
    "PushPropagator",
]
