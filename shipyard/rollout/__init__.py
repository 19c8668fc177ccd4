"""Staged rollout with health-gated promotion and automatic rollback."""

from .approvals import ApprovalGate
from .controller import CancelToken, RolloutController

__all__ = ["ApprovalGate", "CancelToken", "RolloutController"]
