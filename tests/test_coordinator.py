import asyncio
from typing import Dict, List, Tuple

import pytest

from shipyard import RunCoordinator
from shipyard.cache import CacheStore
from shipyard.contracts import (
    ReasonCode,
    RolloutDisposition,
    RunNotification,
    RunStatus,
    StageOutcome,
    plan_from_stages,
)
from shipyard.exceptions import RunNotFound
from shipyard.executors import BuildResult, CallableExecutor
from shipyard.notifications import BaseNotificationSink, InMemoryNotificationSink
from shipyard.persistence import InMemoryRunRepository
from shipyard.rollout import ApprovalGate, RolloutController
from shipyard.security import (
    CredentialBroker,
    CredentialSigner,
    PolicyEngine,
    RunIdentityProvider,
    ScopePolicy,
    StaticKeyProvider,
    StaticTrustAnchor,
)

IDENTITY_SECRET = b"identity-secret-for-tests-0123456789"
BROKER_SECRET = b"broker-signing-secret-for-tests-0123"
FAST_HEALTH = {"timeout_seconds": 1, "interval_seconds": 0}


class BrokenSink(BaseNotificationSink):
    async def publish(self, notification: RunNotification) -> None:
        raise ConnectionError("alerting is down")


class Pipeline:
    """A coordinator wired to in-process executors that record their calls."""

    def __init__(self, policies=None, notifier=None) -> None:
        if policies is None:
            policies = {env: {"deploy", "rollback"} for env in ("staging", "canary", "production")}
        identity_keys = StaticKeyProvider(IDENTITY_SECRET, kid="identity")
        self.broker = CredentialBroker(
            signer=CredentialSigner(
                StaticKeyProvider(BROKER_SECRET, kid="broker"), issuer="shipyard"
            ),
            trust_anchor=StaticTrustAnchor(identity_keys),
            policies=PolicyEngine(
                ScopePolicy(environment=env, allowed_scope=frozenset(scope))
                for env, scope in policies.items()
            ),
        )
        self.identity = RunIdentityProvider(identity_keys)
        self.cache = CacheStore()
        self.repository = InMemoryRunRepository()
        self.notifier = notifier or InMemoryNotificationSink()

        self.builds: List[str] = []
        self.deploys: List[Tuple[str, str]] = []
        self.build_ok = True
        self.unhealthy: set = set()
        self.rollback_ok = True
        self.gates: Dict[str, asyncio.Event] = {}
        self.approvals = ApprovalGate()

        self.controller = RolloutController(
            self.cache,
            self.broker,
            deploy=CallableExecutor(self._deploy),
            health=CallableExecutor(self._health),
            rollback=CallableExecutor(self._rollback),
            approvals=self.approvals,
        )
        self.coordinator = RunCoordinator(
            self.cache,
            self.controller,
            builder=CallableExecutor(self._build),
            assertion_factory=self.identity.mint,
            repository=self.repository,
            notifier=self.notifier,
        )

    async def _build(self, request):
        self.builds.append(request.run_id)
        if not self.build_ok:
            return BuildResult(success=False, detail="compiler error")
        return f"artifact for {request.source_ref}".encode()

    async def _deploy(self, request):
        self.deploys.append((request.run_id, request.environment))
        gate = self.gates.get(request.run_id)
        if gate is not None:
            await gate.wait()
        return True

    async def _health(self, request):
        return request.environment not in self.unhealthy

    async def _rollback(self, request):
        return self.rollback_ok

    def block(self, run_id: str) -> asyncio.Event:
        self.gates[run_id] = asyncio.Event()
        return self.gates[run_id]


def three_stage_plan():
    return plan_from_stages(
        [
            {"environment": "staging", "health": FAST_HEALTH},
            {"environment": "canary", "traffic_percent": 10, "health": FAST_HEALTH},
            {"environment": "production", "health": FAST_HEALTH},
        ]
    )


async def _wait_for_deploy(pipeline: Pipeline, run_id: str) -> None:
    while not any(r == run_id for r, _ in pipeline.deploys):
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_successful_run_is_archived_and_notified():
    pipeline = Pipeline()
    coordinator = pipeline.coordinator

    run_id = await coordinator.trigger("abc123", "main", plan=three_stage_plan())
    run = await coordinator.wait(run_id, timeout=5)

    assert run.status == RunStatus.SUCCEEDED
    assert run.cache_hit is False
    assert run.artifact_hash is not None
    assert run.finished_at is not None
    assert run.rollout.disposition == RolloutDisposition.PROMOTED
    assert coordinator.runs() == []
    assert await pipeline.repository.get_run(run_id) == run
    assert pipeline.notifier.notifications == [
        RunNotification(run_id=run_id, status=RunStatus.SUCCEEDED)
    ]


@pytest.mark.asyncio
async def test_cache_hit_skips_build():
    pipeline = Pipeline()
    coordinator = pipeline.coordinator

    first = await coordinator.wait(await coordinator.trigger("abc123", "a"), timeout=5)
    second = await coordinator.wait(await coordinator.trigger("abc123", "b"), timeout=5)
    third = await coordinator.wait(
        await coordinator.trigger("abc123", "c", inputs={"target": "arm64"}), timeout=5
    )

    assert pipeline.builds == [first.run_id, third.run_id]
    assert second.cache_hit is True
    assert second.artifact_hash == first.artifact_hash
    assert third.cache_hit is False


@pytest.mark.asyncio
async def test_build_only_run_succeeds_without_rollout():
    pipeline = Pipeline()
    run = await pipeline.coordinator.wait(
        await pipeline.coordinator.trigger("abc123", "main"), timeout=5
    )
    assert run.status == RunStatus.SUCCEEDED
    assert run.rollout is None
    assert pipeline.deploys == []


@pytest.mark.asyncio
async def test_build_failure_fails_run():
    pipeline = Pipeline()
    pipeline.build_ok = False

    run_id = await pipeline.coordinator.trigger("abc123", "main", plan=three_stage_plan())
    run = await pipeline.coordinator.wait(run_id, timeout=5)

    assert run.status == RunStatus.FAILED
    assert run.reason_code == ReasonCode.BUILD_FAILED
    assert pipeline.deploys == []
    assert await pipeline.cache.lookup(run.cache_key) is None


@pytest.mark.asyncio
async def test_rollout_failure_reports_stage_and_reason_only():
    pipeline = Pipeline()
    pipeline.unhealthy = {"canary"}

    run_id = await pipeline.coordinator.trigger("abc123", "main", plan=three_stage_plan())
    run = await pipeline.coordinator.wait(run_id, timeout=5)

    assert run.status == RunStatus.FAILED
    assert run.reason_code == ReasonCode.HEALTH_CHECK_FAILED
    assert run.failed_stage == "canary"
    assert run.rollout.outcomes == [
        StageOutcome.PASSED,
        StageOutcome.FAILED,
        StageOutcome.PENDING,
    ]
    assert pipeline.notifier.notifications == [
        RunNotification(
            run_id=run_id,
            status=RunStatus.FAILED,
            stage="canary",
            reason_code=ReasonCode.HEALTH_CHECK_FAILED,
        )
    ]


@pytest.mark.asyncio
async def test_credential_denial_fails_run():
    pipeline = Pipeline(policies={"staging": {"deploy", "rollback"}})

    run_id = await pipeline.coordinator.trigger("abc123", "main", plan=three_stage_plan())
    run = await pipeline.coordinator.wait(run_id, timeout=5)

    assert run.status == RunStatus.FAILED
    assert run.reason_code == ReasonCode.CREDENTIAL_DENIED
    assert run.failed_stage == "canary"


@pytest.mark.asyncio
async def test_failed_rollback_is_reported():
    pipeline = Pipeline()
    pipeline.unhealthy = {"staging"}
    pipeline.rollback_ok = False

    run_id = await pipeline.coordinator.trigger("abc123", "main", plan=three_stage_plan())
    run = await pipeline.coordinator.wait(run_id, timeout=5)

    assert run.status == RunStatus.FAILED
    assert run.reason_code == ReasonCode.ROLLBACK_FAILED
    assert run.failed_stage == "staging"


@pytest.mark.asyncio
async def test_trigger_supersedes_run_in_same_group():
    pipeline = Pipeline()
    coordinator = pipeline.coordinator

    old_id = await coordinator.trigger("abc123", "main", plan=three_stage_plan())
    release = pipeline.block(old_id)
    await _wait_for_deploy(pipeline, old_id)

    new_id = await coordinator.trigger("def456", "main", plan=three_stage_plan())
    old = await coordinator.status(old_id)
    assert old.status == RunStatus.CANCELLED
    assert old.reason_code == ReasonCode.SUPERSEDED

    # the new run builds but may not deploy while the old deploy is in flight
    await asyncio.sleep(0.05)
    assert (await coordinator.status(new_id)).status == RunStatus.BUILDING
    assert all(run_id == old_id for run_id, _ in pipeline.deploys)

    release.set()
    new = await coordinator.wait(new_id, timeout=5)
    old = await coordinator.wait(old_id, timeout=5)

    assert new.status == RunStatus.SUCCEEDED
    assert old.status == RunStatus.CANCELLED
    # the in-flight stage finished; later stages were never started
    assert old.rollout.disposition == RolloutDisposition.CANCELLED
    assert old.rollout.outcomes[0] == StageOutcome.PASSED
    assert [env for run_id, env in pipeline.deploys if run_id == old_id] == ["staging"]

    statuses = {n.run_id: n for n in pipeline.notifier.notifications}
    assert statuses[old_id].reason_code == ReasonCode.SUPERSEDED
    assert statuses[new_id].status == RunStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_superseded_run_waiting_for_approval_stops_at_once():
    pipeline = Pipeline()
    coordinator = pipeline.coordinator
    gated = plan_from_stages(
        [
            {
                "environment": "staging",
                "health": FAST_HEALTH,
                "requires_approval": True,
                "approval_timeout_seconds": 30,
            }
        ]
    )

    old_id = await coordinator.trigger("abc123", "main", plan=gated)
    while not pipeline.approvals.pending():
        await asyncio.sleep(0.005)

    new_id = await coordinator.trigger("def456", "main", plan=three_stage_plan())
    new = await coordinator.wait(new_id, timeout=2)
    old = await coordinator.wait(old_id, timeout=2)

    assert new.status == RunStatus.SUCCEEDED
    assert old.status == RunStatus.CANCELLED
    assert old.reason_code == ReasonCode.SUPERSEDED
    assert old.rollout.disposition == RolloutDisposition.CANCELLED
    assert old.rollout.reason_code == ReasonCode.CANCELLED
    assert all(run_id == new_id for run_id, _ in pipeline.deploys)
    assert pipeline.approvals.pending() == []
    assert len(coordinator._table._locks) == 0


@pytest.mark.asyncio
async def test_runs_in_different_groups_are_independent():
    pipeline = Pipeline()
    coordinator = pipeline.coordinator

    first = await coordinator.trigger("abc123", "main", plan=three_stage_plan())
    second = await coordinator.trigger("abc123", "release", plan=three_stage_plan())

    results = await asyncio.gather(coordinator.wait(first, 5), coordinator.wait(second, 5))
    assert [r.status for r in results] == [RunStatus.SUCCEEDED, RunStatus.SUCCEEDED]


@pytest.mark.asyncio
async def test_explicit_cancel():
    pipeline = Pipeline()
    coordinator = pipeline.coordinator

    run_id = await coordinator.trigger("abc123", "main", plan=three_stage_plan())
    release = pipeline.block(run_id)
    await _wait_for_deploy(pipeline, run_id)

    snapshot = await coordinator.cancel(run_id)
    assert snapshot.status == RunStatus.CANCELLED
    release.set()

    run = await coordinator.wait(run_id, timeout=5)
    assert run.status == RunStatus.CANCELLED
    assert run.reason_code == ReasonCode.CANCELLED
    # cancelling again is a no-op on the archived run
    assert (await coordinator.cancel(run_id)).status == RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_status_returns_snapshots():
    pipeline = Pipeline()
    coordinator = pipeline.coordinator

    run_id = await coordinator.trigger("abc123", "main", plan=three_stage_plan())
    release = pipeline.block(run_id)
    await _wait_for_deploy(pipeline, run_id)

    snapshot = await coordinator.status(run_id)
    assert snapshot.status == RunStatus.DEPLOYING
    snapshot.status = RunStatus.FAILED
    assert (await coordinator.status(run_id)).status == RunStatus.DEPLOYING
    assert [r.run_id for r in coordinator.runs()] == [run_id]

    release.set()
    await coordinator.wait(run_id, timeout=5)
    with pytest.raises(RunNotFound):
        await coordinator.status("no-such-run")


@pytest.mark.asyncio
async def test_notification_failure_does_not_change_run():
    pipeline = Pipeline(notifier=BrokenSink())

    run_id = await pipeline.coordinator.trigger("abc123", "main", plan=three_stage_plan())
    run = await pipeline.coordinator.wait(run_id, timeout=5)

    assert run.status == RunStatus.SUCCEEDED
    assert (await pipeline.repository.get_run(run_id)).status == RunStatus.SUCCEEDED
