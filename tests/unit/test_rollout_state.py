import pytest
from pydantic import ValidationError

from shipyard.contracts import (
    PipelineRun,
    ReasonCode,
    RolloutDisposition,
    RolloutPhase,
    RolloutPlan,
    RolloutState,
    RunNotification,
    RunStatus,
    StageOutcome,
    plan_from_stages,
)
from shipyard.exceptions import InvalidTransitionError


def _plan(*envs, max_attempts=1):
    return plan_from_stages([{"environment": e, "max_attempts": max_attempts} for e in envs])


def _pass_stage(state: RolloutState) -> None:
    state.enter_pending()
    state.enter(RolloutPhase.DEPLOYING)
    state.enter(RolloutPhase.HEALTH_CHECKING)
    state.promote()


def test_plan_requires_stages_and_valid_traffic():
    with pytest.raises(ValidationError):
        RolloutPlan(stages=())
    with pytest.raises(ValidationError):
        plan_from_stages([{"environment": "canary", "traffic_percent": 150}])
    with pytest.raises(ValidationError):
        plan_from_stages([{"environment": ""}])


def test_plan_from_yaml(tmp_path):
    path = tmp_path / "plan.yaml"
    path.write_text(
        """
stages:
  - environment: staging
  - environment: canary
    traffic_percent: 10
    requires_approval: true
    health:
      timeout_seconds: 30
      success_threshold: 3
"""
    )
    plan = RolloutPlan.from_yaml(path)
    assert [s.environment for s in plan.stages] == ["staging", "canary"]
    assert plan.stages[0].traffic_percent == 100
    assert plan.stages[1].requires_approval
    assert plan.stages[1].health.success_threshold == 3
    assert plan.stages[1].scope == frozenset({"deploy", "rollback"})


def test_stages_advance_in_order_to_promoted():
    state = RolloutState(run_id="r", plan=_plan("staging", "canary", "production"))
    visited = []
    while not state.is_terminal:
        visited.append(state.stage_index)
        _pass_stage(state)

    assert visited == [0, 1, 2]
    assert state.disposition == RolloutDisposition.PROMOTED
    assert state.outcomes == [StageOutcome.PASSED] * 3


def test_phase_order_is_enforced():
    state = RolloutState(run_id="r", plan=_plan("staging"))
    with pytest.raises(InvalidTransitionError):
        state.enter(RolloutPhase.HEALTH_CHECKING)
    state.enter_pending()
    with pytest.raises(InvalidTransitionError):
        state.promote()


def test_roll_back_is_terminal_and_keeps_promoted_stages():
    state = RolloutState(run_id="r", plan=_plan("staging", "canary", "production"))
    _pass_stage(state)
    state.enter_pending()
    state.enter(RolloutPhase.DEPLOYING)
    state.enter(RolloutPhase.HEALTH_CHECKING)
    state.roll_back(ReasonCode.HEALTH_CHECK_FAILED)

    assert state.disposition == RolloutDisposition.ROLLED_BACK
    assert state.outcomes == [StageOutcome.PASSED, StageOutcome.FAILED, StageOutcome.PENDING]
    assert state.failed_stage == 1
    with pytest.raises(InvalidTransitionError):
        state.promote()
    with pytest.raises(InvalidTransitionError):
        state.enter_pending()


def test_retries_are_bounded_by_max_attempts():
    state = RolloutState(run_id="r", plan=_plan("staging", max_attempts=2))
    assert state.enter_pending() == 1
    assert state.enter_pending("retry") == 2
    with pytest.raises(InvalidTransitionError):
        state.enter_pending("retry")


def test_cancel_leaves_promoted_stages():
    state = RolloutState(run_id="r", plan=_plan("staging", "production"))
    _pass_stage(state)
    state.cancel()
    assert state.disposition == RolloutDisposition.CANCELLED
    assert state.outcomes == [StageOutcome.PASSED, StageOutcome.PENDING]
    assert state.reason_code == ReasonCode.CANCELLED


def test_pipeline_run_terminal_status_is_final():
    run = PipelineRun(source_ref="abc123", concurrency_group="main")
    run.transition(RunStatus.BUILDING)
    assert run.finished_at is None
    run.transition(RunStatus.FAILED, reason_code=ReasonCode.BUILD_FAILED)
    assert run.finished_at is not None
    with pytest.raises(InvalidTransitionError):
        run.transition(RunStatus.SUCCEEDED)


def test_notification_carries_only_identifiers():
    run = PipelineRun(source_ref="abc123", concurrency_group="main")
    run.transition(
        RunStatus.FAILED, reason_code=ReasonCode.HEALTH_CHECK_FAILED, failed_stage="canary"
    )
    notification = RunNotification.for_run(run)

    assert set(notification.model_dump()) == {"run_id", "status", "stage", "reason_code"}
    assert RunNotification.from_json(notification.to_json()) == notification
