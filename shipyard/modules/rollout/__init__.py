"""
Rollout Module - Black Box Interface

Purpose: Deploy to Kubernetes and keep deployments in their declared state
Interface: RolloutCoordinator.deploy(), Reconciler.diff(), Reconciler.reconcile()
Hidden: kubectl invocation, rollout state machine, health polling, namespace locking
"""

from .coordinator import (
    InvalidTransitionError,
    Rollout,
    RolloutCoordinator,
    RolloutFailure,
    RolloutState,
)
from .health import HealthChecker, HealthResult
from .kubectl import KubectlClient, KubectlError
from .reconcile import Drift, ReconcileReport, Reconciler

__all__ = [
    "Drift",
    "HealthChecker",
    "HealthResult",
    "InvalidTransitionError",
    "KubectlClient",
    "KubectlError",
    "ReconcileReport",
    "Reconciler",
    "Rollout",
    "RolloutCoordinator",
    "RolloutFailure",
    "RolloutState",
]
