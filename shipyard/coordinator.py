"""Run coordinator: sequences build, cache and rollout for pipeline runs."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from .cache import Artifact, CacheStore, compute_cache_key
from .contracts import (
    PipelineRun,
    ReasonCode,
    RolloutDisposition,
    RolloutPlan,
    RolloutState,
    RunNotification,
    RunStatus,
)
from .exceptions import BuildFailure, RunNotFound
from .executors import BuildRequest, BuildResult, Executor
from .notifications import BaseNotificationSink, LoggingNotificationSink
from .persistence import InMemoryRunRepository, RunRepository
from .rollout import CancelToken, RolloutController
from .utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

AssertionFactory = Callable[[str], str]


class RunHandle:
    """Live bookkeeping for one non-archived run."""

    def __init__(self, run: PipelineRun) -> None:
        self.run = run
        self.cancel = CancelToken()
        self.task: Optional[asyncio.Task] = None


class RunTable:
    """Process-wide table of live runs, indexed by concurrency group.

    Entries are added on trigger and removed once the run is archived. Access
    for one concurrency group is serialized through that group's lock.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunHandle] = {}
        self._groups: Dict[str, List[str]] = defaultdict(list)
        self._locks = KeyedLocks()

    def lock(self, group: str) -> AsyncContextManager[None]:
        return self._locks.hold(group)

    def add(self, handle: RunHandle) -> None:
        self._runs[handle.run.run_id] = handle
        self._groups[handle.run.concurrency_group].append(handle.run.run_id)

    def get(self, run_id: str) -> Optional[RunHandle]:
        return self._runs.get(run_id)

    def active(self, group: str) -> List[RunHandle]:
        """Live handles in ``group`` whose run is not yet terminal."""
        return [
            self._runs[run_id]
            for run_id in self._groups.get(group, [])
            if not self._runs[run_id].run.is_terminal
        ]

    def remove(self, run_id: str) -> None:
        handle = self._runs.pop(run_id, None)
        if handle is None:
            return
        members = self._groups.get(handle.run.concurrency_group, [])
        if run_id in members:
            members.remove(run_id)
        if not members:
            self._groups.pop(handle.run.concurrency_group, None)

    def __iter__(self):
        return iter(list(self._runs.values()))


class RunCoordinator:
    """Top-level entry point for pipeline runs.

    ``trigger`` supersedes any live run in the same concurrency group: the
    older run is marked cancelled at once, its rollout stops at the next safe
    boundary, and the new run does not start deploying until the older one has
    stopped. Each run executes build -> cache -> rollout sequentially in its own
    task; runs in different groups proceed concurrently.
    """

    def __init__(
        self,
        cache: CacheStore,
        controller: RolloutController,
        builder: Executor,
        assertion_factory: AssertionFactory,
        repository: Optional[RunRepository] = None,
        notifier: Optional[BaseNotificationSink] = None,
        lookup_wait: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.controller = controller
        self.builder = builder
        self.assertion_factory = assertion_factory
        self.repository = repository or InMemoryRunRepository()
        self.notifier = notifier or LoggingNotificationSink()
        self.lookup_wait = lookup_wait
        self._table = RunTable()

    # ------------------------------------------------------------------
    # Public API
    async def trigger(
        self,
        source_ref: str,
        concurrency_group: str,
        inputs: Optional[Dict[str, Any]] = None,
        plan: Optional[RolloutPlan] = None,
    ) -> str:
        """Start a run and return its id.

        Args:
            source_ref: Commit or tag to build.
            concurrency_group: Runs sharing this key supersede each other.
            inputs: Extra build inputs; together with ``source_ref`` they
                form the cache key.
            plan: Rollout to perform. ``None`` means build only.
        """
        run = PipelineRun(source_ref=source_ref, concurrency_group=concurrency_group)
        handle = RunHandle(run)

        async with self._table.lock(concurrency_group):
            superseded = self._table.active(concurrency_group)
            for older in superseded:
                logger.info(
                    f"Run {run.run_id} supersedes run {older.run.run_id} "
                    f"in group {concurrency_group}"
                )
                self._cancel(older, ReasonCode.SUPERSEDED)
            self._table.add(handle)
            await self.repository.save_run(run)
            predecessors = [h.task for h in superseded if h.task is not None]
            handle.task = asyncio.create_task(
                self._execute(handle, inputs or {}, plan, predecessors),
                name=f"shipyard-run-{run.run_id}",
            )

        logger.info(f"Triggered run {run.run_id} for {source_ref} in group {concurrency_group}")
        return run.run_id

    async def status(self, run_id: str) -> PipelineRun:
        """Return a snapshot of the run; safe while the run is in flight."""
        handle = self._table.get(run_id)
        if handle is not None:
            return handle.run.model_copy(deep=True)
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def cancel(self, run_id: str) -> PipelineRun:
        """Cancel a live run. Already-terminal runs are returned unchanged."""
        handle = self._table.get(run_id)
        if handle is None:
            return await self.status(run_id)
        async with self._table.lock(handle.run.concurrency_group):
            if not handle.run.is_terminal:
                self._cancel(handle, ReasonCode.CANCELLED)
        return handle.run.model_copy(deep=True)

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> PipelineRun:
        """Wait for a run to finish and return its final snapshot."""
        handle = self._table.get(run_id)
        if handle is not None and handle.task is not None:
            await asyncio.wait_for(asyncio.shield(handle.task), timeout=timeout)
        return await self.status(run_id)

    def runs(self) -> List[PipelineRun]:
        """Snapshots of all live runs."""
        return [handle.run.model_copy(deep=True) for handle in self._table]

    # ------------------------------------------------------------------
    def _cancel(self, handle: RunHandle, reason: ReasonCode) -> None:
        handle.run.transition(RunStatus.CANCELLED, reason_code=reason)
        handle.cancel.cancel(reason)

    async def _execute(
        self,
        handle: RunHandle,
        inputs: Dict[str, Any],
        plan: Optional[RolloutPlan],
        predecessors: List[asyncio.Task],
    ) -> None:
        run = handle.run
        try:
            await self._run_pipeline(handle, inputs, plan, predecessors)
        except BuildFailure as exc:
            logger.error(f"Build failed for run {run.run_id}: {exc}")
            if not run.is_terminal:
                run.transition(RunStatus.FAILED, reason_code=ReasonCode.BUILD_FAILED)
        except Exception:
            logger.exception(f"Run {run.run_id} failed unexpectedly")
            if not run.is_terminal:
                run.transition(RunStatus.FAILED, reason_code=ReasonCode.INTERNAL_ERROR)
        finally:
            await self._finish(handle)

    async def _run_pipeline(
        self,
        handle: RunHandle,
        inputs: Dict[str, Any],
        plan: Optional[RolloutPlan],
        predecessors: List[asyncio.Task],
    ) -> None:
        run = handle.run
        if handle.cancel.cancelled:
            return
        run.transition(RunStatus.BUILDING)
        artifact = await self._obtain_artifact(run, inputs)
        run.artifact_hash = artifact.content_hash

        if handle.cancel.cancelled:
            return
        if plan is None:
            run.transition(RunStatus.SUCCEEDED)
            return

        if predecessors:
            logger.info(f"Run {run.run_id} waiting for {len(predecessors)} superseded runs to stop")
            await asyncio.wait(predecessors)
        if handle.cancel.cancelled:
            return

        state = RolloutState(run_id=run.run_id, plan=plan)
        run.rollout = state
        run.transition(RunStatus.DEPLOYING)
        await self.controller.execute(
            run.run_id,
            plan,
            artifact,
            assertion=lambda: self.assertion_factory(run.run_id),
            cancel=handle.cancel,
            state=state,
        )
        if run.is_terminal:
            return

        failed_stage = (
            plan.stages[state.failed_stage].environment
            if state.failed_stage is not None
            else None
        )
        if state.disposition == RolloutDisposition.PROMOTED:
            run.transition(RunStatus.SUCCEEDED)
        elif state.disposition == RolloutDisposition.CANCELLED:
            run.transition(RunStatus.CANCELLED, reason_code=ReasonCode.CANCELLED)
        elif state.rollback_failed:
            run.transition(
                RunStatus.FAILED,
                reason_code=ReasonCode.ROLLBACK_FAILED,
                failed_stage=failed_stage,
            )
        else:
            run.transition(
                RunStatus.FAILED, reason_code=state.reason_code, failed_stage=failed_stage
            )

    async def _obtain_artifact(self, run: PipelineRun, inputs: Dict[str, Any]) -> Artifact:
        key = compute_cache_key({"source_ref": run.source_ref, **inputs})
        run.cache_key = key
        artifact = await self.cache.lookup(key, wait=self.lookup_wait)
        if artifact is not None:
            run.cache_hit = True
            logger.info(f"Run {run.run_id} reusing cached artifact {artifact.content_hash[:12]}")
            return artifact

        run.cache_hit = False
        async with self.cache.producing(key):
            result: BuildResult = await self.builder.execute(
                BuildRequest(run_id=run.run_id, source_ref=run.source_ref, inputs=inputs)
            )
            if not result.success or result.data is None:
                raise BuildFailure(result.detail or "build produced no artifact")
            return await self.cache.store(key, result.data, produced_by=run.run_id)

    async def _finish(self, handle: RunHandle) -> None:
        run = handle.run
        if not run.is_terminal:
            # Only reachable when the run was cancelled before its first step.
            run.transition(RunStatus.CANCELLED, reason_code=ReasonCode.CANCELLED)
        logger.info(
            f"Run {run.run_id} finished: {run.status.value}"
            + (f" ({run.reason_code.value})" if run.reason_code else "")
        )
        try:
            await self.repository.save_run(run)
        except Exception:
            logger.exception(f"Failed to archive run {run.run_id}")
        else:
            self._table.remove(run.run_id)
        try:
            await self.notifier.publish(RunNotification.for_run(run))
        except Exception:
            logger.exception(f"Failed to publish notification for run {run.run_id}")
