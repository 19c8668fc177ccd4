"""Staged rollout state machine."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from ..cache import Artifact, CacheStore
from ..contracts import (
    ReasonCode,
    RolloutDisposition,
    RolloutPhase,
    RolloutPlan,
    RolloutState,
    Stage,
)
from ..exceptions import (
    ApprovalRejected,
    ApprovalTimeout,
    CredentialDenied,
    DeployActionFailure,
    HealthCheckFailure,
    HealthCheckTimeout,
    StageFailure,
)
from ..executors import (
    ActionResult,
    DeployRequest,
    Executor,
    HealthCheckRequest,
    RollbackRequest,
)
from ..security import Credential, CredentialBroker, CredentialSubject
from ..utils.retry import compute_backoff
from .approvals import ApprovalGate

logger = logging.getLogger(__name__)

AssertionSource = Callable[[], str]


class CancelToken:
    """Cooperative cancellation flag shared by a run and its rollout."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[ReasonCode] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: ReasonCode = ReasonCode.CANCELLED) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep until cancelled or ``timeout`` elapses; returns ``cancelled``."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


class RolloutController:
    """Drives an artifact through the stages of a rollout plan.

    Each stage runs ``pending -> deploying -> health_checking`` and ends
    promoted or rolled back. Only the failing stage is rolled back; stages
    promoted earlier stay as they are. Cancellation is honoured between
    actions, never during a deploy or health check.
    """

    def __init__(
        self,
        cache: CacheStore,
        broker: CredentialBroker,
        deploy: Executor,
        health: Executor,
        rollback: Optional[Executor] = None,
        approvals: Optional[ApprovalGate] = None,
    ) -> None:
        self.cache = cache
        self.broker = broker
        self.deploy = deploy
        self.health = health
        self.rollback = rollback
        self.approvals = approvals or ApprovalGate()

    async def execute(
        self,
        run_id: str,
        plan: RolloutPlan,
        artifact: Artifact,
        assertion: AssertionSource,
        cancel: Optional[CancelToken] = None,
        state: Optional[RolloutState] = None,
    ) -> RolloutState:
        """Run the plan to a terminal disposition and return the final state.

        Args:
            run_id: Run the rollout belongs to.
            plan: Stages to walk through, in order.
            artifact: Build output to deploy; pinned in the cache meanwhile.
            assertion: Returns a fresh run-identity token for the broker.
            cancel: Token checked at every safe boundary.
            state: Pre-created state to mutate, so callers can observe progress.
        """
        state = state or RolloutState(run_id=run_id, plan=plan)
        cancel = cancel or CancelToken()
        retry_reason: Optional[str] = None

        try:
            async with self.cache.pinned(artifact):
                while not state.is_terminal:
                    if cancel.cancelled:
                        state.cancel()
                        logger.info(
                            f"Rollout for run {run_id} cancelled before stage "
                            f"{state.current_stage.environment}"
                        )
                        break
                    retry_reason = await self._run_attempt(
                        state, artifact, assertion, cancel, retry_reason
                    )
        finally:
            self.approvals.forget(run_id)

        if state.disposition == RolloutDisposition.PROMOTED:
            logger.info(f"Rollout for run {run_id} promoted through {len(plan)} stages")
        elif state.disposition == RolloutDisposition.ROLLED_BACK:
            logger.warning(
                f"Rollout for run {run_id} rolled back at stage {state.failed_stage}: {state.reason}"
            )
        return state

    async def _run_attempt(
        self,
        state: RolloutState,
        artifact: Artifact,
        assertion: AssertionSource,
        cancel: CancelToken,
        retry_reason: Optional[str],
    ) -> Optional[str]:
        """Run one attempt at the current stage.

        Returns a retry reason when the stage should be attempted again.
        """
        stage = state.current_stage
        attempt = state.enter_pending(retry_reason)
        logger.info(
            f"Run {state.run_id}: stage {state.stage_index} ({stage.environment}, "
            f"{stage.traffic_percent}%) attempt {attempt}/{stage.max_attempts}"
        )

        if stage.requires_approval and attempt == 1:
            try:
                await self.approvals.wait(
                    state.run_id, stage.environment, stage.approval_timeout_seconds, cancel
                )
            except (ApprovalTimeout, ApprovalRejected) as exc:
                state.roll_back(ReasonCode(exc.reason_code), str(exc))
                return None
            if cancel.cancelled:
                return None

        credential = await self._credential(state, stage, stage.scope, assertion)
        if credential is None or cancel.cancelled:
            return None

        state.enter(RolloutPhase.DEPLOYING)
        deploy_request = DeployRequest(
            run_id=state.run_id,
            environment=stage.environment,
            traffic_percent=stage.traffic_percent,
            artifact=artifact,
            attempt=attempt,
            credential=credential,
        )
        try:
            await self._deploy(deploy_request)
            state.enter(RolloutPhase.HEALTH_CHECKING)
            await self._check_health(
                stage,
                HealthCheckRequest(
                    run_id=state.run_id,
                    environment=stage.environment,
                    traffic_percent=stage.traffic_percent,
                    artifact=artifact,
                    attempt=attempt,
                ),
            )
        except StageFailure as exc:
            logger.warning(
                f"Run {state.run_id}: stage {stage.environment} attempt {attempt} "
                f"failed: {exc.reason_code}"
            )
            await self._roll_back_stage(state, stage, artifact, attempt, assertion)
            if attempt < stage.max_attempts and not cancel.cancelled:
                if stage.retry_backoff_seconds:
                    await cancel.wait(compute_backoff(attempt, stage.retry_backoff_seconds))
                return f"retry after {exc.reason_code}"
            state.roll_back(ReasonCode(exc.reason_code), exc.detail)
            return None

        state.promote()
        logger.info(f"Run {state.run_id}: stage {stage.environment} promoted")
        return None

    async def _credential(
        self,
        state: RolloutState,
        stage: Stage,
        scope: frozenset,
        assertion: AssertionSource,
    ) -> Optional[Credential]:
        try:
            return await self.broker.issue(
                CredentialSubject(run_id=state.run_id, environment=stage.environment),
                scope,
                assertion(),
                timeout=stage.credential_timeout_seconds,
            )
        except CredentialDenied as exc:
            state.roll_back(ReasonCode.CREDENTIAL_DENIED, f"credential denied: {exc.reason}")
            return None

    async def _deploy(self, request: DeployRequest) -> None:
        try:
            result = await self.deploy.execute(request)
        except Exception as exc:
            raise DeployActionFailure(str(exc)) from exc
        if not result.success:
            raise DeployActionFailure(result.detail)

    async def _check_health(self, stage: Stage, request: HealthCheckRequest) -> None:
        policy = stage.health
        try:
            await asyncio.wait_for(self._probe(stage, request), timeout=policy.timeout_seconds)
        except asyncio.TimeoutError:
            raise HealthCheckTimeout(
                f"{stage.environment} not healthy within {policy.timeout_seconds}s"
            ) from None

    async def _probe(self, stage: Stage, request: HealthCheckRequest) -> None:
        policy = stage.health
        passes = failures = 0
        while True:
            try:
                result = await self.health.execute(request)
            except Exception as exc:
                logger.warning(f"Health probe for {stage.environment} raised: {exc}")
                result = ActionResult(success=False, detail=str(exc))
            if result.success:
                passes, failures = passes + 1, 0
            else:
                passes, failures = 0, failures + 1
            if passes >= policy.success_threshold:
                return
            if failures >= policy.failure_threshold:
                raise HealthCheckFailure(result.detail or f"{stage.environment} unhealthy")
            await asyncio.sleep(policy.interval_seconds)

    async def _roll_back_stage(
        self,
        state: RolloutState,
        stage: Stage,
        artifact: Artifact,
        attempt: int,
        assertion: AssertionSource,
    ) -> None:
        """Undo the current stage only, with a freshly issued rollback credential."""
        if self.rollback is None:
            logger.warning(f"No rollback executor configured for {stage.environment}")
            return
        try:
            credential = await self.broker.issue(
                CredentialSubject(run_id=state.run_id, environment=stage.environment),
                {"rollback"},
                assertion(),
                timeout=stage.credential_timeout_seconds,
            )
        except CredentialDenied as exc:
            logger.error(f"Cannot roll back {stage.environment}: credential denied ({exc.reason})")
            state.rollback_failed = True
            return

        request = RollbackRequest(
            run_id=state.run_id,
            environment=stage.environment,
            traffic_percent=stage.traffic_percent,
            artifact=artifact,
            attempt=attempt,
            credential=credential,
        )
        try:
            result = await self.rollback.execute(request)
        except Exception as exc:
            result = ActionResult(success=False, detail=str(exc))
        if result.success:
            logger.info(f"Run {state.run_id}: rolled back stage {stage.environment}")
        else:
            logger.error(f"Rollback of {stage.environment} failed: {result.detail}")
            state.rollback_failed = True
