"""Core contracts for shipyard pipeline runs and rollouts."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, FrozenSet, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import (
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_HEALTH_TIMEOUT_SECONDS,
    DEFAULT_ISSUE_TIMEOUT_SECONDS,
    DEFAULT_STAGE_SCOPE,
)
from .exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReasonCode(str, Enum):
    """Machine-readable reasons attached to failed or cancelled runs."""

    BUILD_FAILED = "build_failed"
    CREDENTIAL_DENIED = "credential_denied"
    DEPLOY_FAILED = "deploy_failed"
    HEALTH_CHECK_FAILED = "health_check_failed"
    HEALTH_CHECK_TIMEOUT = "health_check_timeout"
    APPROVAL_TIMEOUT = "approval_timeout"
    APPROVAL_REJECTED = "approval_rejected"
    ROLLBACK_FAILED = "rollback_failed"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    INTERNAL_ERROR = "internal_error"


# ----------------------------------------------------------------------
# Rollout plan


class HealthCheckPolicy(BaseModel):
    """How a stage's health is judged.

    The probe runs every ``interval_seconds`` until it has passed
    ``success_threshold`` times in a row (pass) or failed
    ``failure_threshold`` times in a row (fail). The whole check is bounded by
    ``timeout_seconds``.
    """

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(default=DEFAULT_HEALTH_TIMEOUT_SECONDS, gt=0)
    interval_seconds: float = Field(default=DEFAULT_HEALTH_INTERVAL_SECONDS, ge=0)
    success_threshold: int = Field(default=1, ge=1)
    failure_threshold: int = Field(default=1, ge=1)


class Stage(BaseModel):
    """One step of a rollout plan targeting a named environment."""

    model_config = ConfigDict(frozen=True)

    environment: str
    traffic_percent: int = Field(default=100, ge=0, le=100)
    health: HealthCheckPolicy = HealthCheckPolicy()
    requires_approval: bool = False
    approval_timeout_seconds: float = Field(default=DEFAULT_APPROVAL_TIMEOUT_SECONDS, gt=0)
    max_attempts: int = Field(default=1, ge=1)
    retry_backoff_seconds: float = Field(default=0.0, ge=0)
    scope: FrozenSet[str] = DEFAULT_STAGE_SCOPE
    credential_timeout_seconds: float = Field(default=DEFAULT_ISSUE_TIMEOUT_SECONDS, gt=0)

    @field_validator("environment")
    @classmethod
    def _ensure_environment(cls, v: str) -> str:
        if not v:
            raise ValueError("environment must be a non-empty string")
        return v


class RolloutPlan(BaseModel):
    """Ordered, immutable sequence of stages."""

    model_config = ConfigDict(frozen=True)

    stages: Tuple[Stage, ...]

    @field_validator("stages")
    @classmethod
    def _ensure_stages(cls, v: Tuple[Stage, ...]) -> Tuple[Stage, ...]:
        if not v:
            raise ValueError("a rollout plan needs at least one stage")
        return v

    def __len__(self) -> int:
        return len(self.stages)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RolloutPlan":
        """Load a plan from a YAML document with a top-level ``stages`` list."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)


# ----------------------------------------------------------------------
# Rollout state


class RolloutPhase(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"


class StageOutcome(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class RolloutDisposition(str, Enum):
    IN_PROGRESS = "in_progress"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class StageTransition(BaseModel):
    """Audit trail entry for one state-machine step."""

    stage_index: int
    environment: str
    phase: RolloutPhase
    attempt: int
    at: datetime = Field(default_factory=_utcnow)
    reason: Optional[str] = None


class RolloutState(BaseModel):
    """Progress of one run through its rollout plan.

    Only the rollout controller mutates this. Stage indices only move forward;
    a retry re-enters ``pending`` for the current index.
    """

    run_id: str
    plan: RolloutPlan
    stage_index: int = 0
    phase: RolloutPhase = RolloutPhase.PENDING
    outcomes: List[StageOutcome] = Field(default_factory=list)
    attempts: List[int] = Field(default_factory=list)
    disposition: RolloutDisposition = RolloutDisposition.IN_PROGRESS
    reason_code: Optional[ReasonCode] = None
    reason: Optional[str] = None
    failed_stage: Optional[int] = None
    rollback_failed: bool = False
    history: List[StageTransition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _init_stage_slots(self) -> "RolloutState":
        if not self.outcomes:
            self.outcomes = [StageOutcome.PENDING] * len(self.plan.stages)
        if not self.attempts:
            self.attempts = [0] * len(self.plan.stages)
        return self

    @property
    def current_stage(self) -> Stage:
        return self.plan.stages[self.stage_index]

    @property
    def is_terminal(self) -> bool:
        return self.disposition != RolloutDisposition.IN_PROGRESS

    def _guard(self) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"rollout for run {self.run_id} already {self.disposition.value}"
            )

    def _record(self, phase: RolloutPhase, reason: Optional[str] = None) -> None:
        self.phase = phase
        self.history.append(
            StageTransition(
                stage_index=self.stage_index,
                environment=self.current_stage.environment,
                phase=phase,
                attempt=self.attempts[self.stage_index],
                reason=reason,
            )
        )

    def enter_pending(self, reason: Optional[str] = None) -> int:
        """Begin a new attempt at the current stage; returns the attempt number."""
        self._guard()
        if self.outcomes[self.stage_index] == StageOutcome.PASSED:
            raise InvalidTransitionError("cannot revisit a promoted stage")
        if self.attempts[self.stage_index] >= self.current_stage.max_attempts:
            raise InvalidTransitionError(
                f"stage {self.current_stage.environment} has no attempts left"
            )
        self.attempts[self.stage_index] += 1
        self._record(RolloutPhase.PENDING, reason)
        return self.attempts[self.stage_index]

    def enter(self, phase: RolloutPhase) -> None:
        """Move to ``deploying`` or ``health_checking`` within the current stage."""
        self._guard()
        allowed = {
            RolloutPhase.DEPLOYING: RolloutPhase.PENDING,
            RolloutPhase.HEALTH_CHECKING: RolloutPhase.DEPLOYING,
        }
        if allowed.get(phase) != self.phase:
            raise InvalidTransitionError(f"cannot enter {phase.value} from {self.phase.value}")
        self._record(phase)

    def promote(self) -> None:
        """Mark the current stage promoted and advance, or finish the rollout."""
        self._guard()
        if self.phase != RolloutPhase.HEALTH_CHECKING:
            raise InvalidTransitionError("only a health-checked stage can be promoted")
        self.outcomes[self.stage_index] = StageOutcome.PASSED
        self._record(RolloutPhase.PROMOTED)
        if self.stage_index + 1 < len(self.plan.stages):
            self.stage_index += 1
            self.phase = RolloutPhase.PENDING
        else:
            self.disposition = RolloutDisposition.PROMOTED

    def roll_back(self, code: ReasonCode, reason: Optional[str] = None) -> None:
        """Terminate the rollout at the current stage."""
        self._guard()
        self.outcomes[self.stage_index] = StageOutcome.FAILED
        self.reason_code = code
        self.reason = reason or code.value
        self.failed_stage = self.stage_index
        self._record(RolloutPhase.ROLLED_BACK, self.reason)
        self.disposition = RolloutDisposition.ROLLED_BACK

    def cancel(self) -> None:
        """Stop without rolling anything back. Promoted stages stay promoted."""
        self._guard()
        self.reason_code = ReasonCode.CANCELLED
        self.reason = "cancelled"
        self.disposition = RolloutDisposition.CANCELLED


# ----------------------------------------------------------------------
# Pipeline runs


class RunStatus(str, Enum):
    QUEUED = "queued"
    BUILDING = "building"
    DEPLOYING = "deploying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class PipelineRun(BaseModel):
    """One execution of a pipeline, owned by the run coordinator."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_ref: str
    concurrency_group: str
    status: RunStatus = RunStatus.QUEUED
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    cache_key: Optional[str] = None
    artifact_hash: Optional[str] = None
    cache_hit: Optional[bool] = None
    reason_code: Optional[ReasonCode] = None
    failed_stage: Optional[str] = None
    rollout: Optional[RolloutState] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        status: RunStatus,
        reason_code: Optional[ReasonCode] = None,
        failed_stage: Optional[str] = None,
    ) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"run {self.run_id} is already {self.status.value}"
            )
        logger.debug(f"Run {self.run_id}: {self.status.value} -> {status.value}")
        self.status = status
        if reason_code is not None:
            self.reason_code = reason_code
        if failed_stage is not None:
            self.failed_stage = failed_stage
        if status.is_terminal:
            self.finished_at = _utcnow()


class RunNotification(BaseModel):
    """Terminal run status forwarded to the notification sink.

    Carries only identifiers and a reason code, never error detail.
    """

    run_id: str
    status: RunStatus
    stage: Optional[str] = None
    reason_code: Optional[ReasonCode] = None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "RunNotification":
        return cls.model_validate_json(data)

    @classmethod
    def for_run(cls, run: PipelineRun) -> "RunNotification":
        return cls(
            run_id=run.run_id,
            status=run.status,
            stage=run.failed_stage,
            reason_code=run.reason_code,
        )


def plan_from_stages(stages: List[dict[str, Any]]) -> RolloutPlan:
    """Build a plan from a list of stage mappings."""
    return RolloutPlan(stages=tuple(Stage(**stage) for stage in stages))
