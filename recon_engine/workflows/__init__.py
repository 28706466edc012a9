"""
Workflows Package for the Reconciliation Engine.

Pull reconciliation, push propagation and report rendering.
"""

from .base_workflow import ActionsRegistry, BaseWorkflow, ProvisioningProfile, PullActions, PushActions
from .helpers import render_report, summarize
from .pull_workflow import PullWorkflow
from .push_workflow import PushPropagator, PushWorkflow

__all__ = [
    "ActionsRegistry",
    "BaseWorkflow",
    "ProvisioningProfile",
    "PullActions",
    "PullWorkflow",
    "PushActions",
    "PushPropagator",
    "PushWorkflow",
    "render_report",
    "summarize",
]
