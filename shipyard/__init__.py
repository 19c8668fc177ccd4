"""Shipyard: staged-rollout pipeline orchestration with brokered credentials."""

from .cache import CacheStore, get_cache_store
from .contracts import (
    PipelineRun,
    ReasonCode,
    RolloutPlan,
    RolloutState,
    RunNotification,
    RunStatus,
    Stage,
    plan_from_stages,
)
from .coordinator import RunCoordinator
from .notifications import get_notification_sink
from .persistence import get_repository
from .rollout import ApprovalGate, CancelToken, RolloutController
from .security import CredentialBroker, build_broker

__version__ = "0.1.0"
__all__ = [
    "ApprovalGate",
    "CacheStore",
    "CancelToken",
    "CredentialBroker",
    "PipelineRun",
    "ReasonCode",
    "RolloutController",
    "RolloutPlan",
    "RolloutState",
    "RunCoordinator",
    "RunNotification",
    "RunStatus",
    "Stage",
    "build_broker",
    "get_cache_store",
    "get_notification_sink",
    "get_repository",
    "plan_from_stages",
]
