"""Manual approval signals for gated rollout stages."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from ..exceptions import ApprovalRejected, ApprovalTimeout

if TYPE_CHECKING:
    from .controller import CancelToken

logger = logging.getLogger(__name__)

ApprovalKey = Tuple[str, str]


class ApprovalGate:
    """Collects approve/reject decisions per (run id, environment).

    A decision may arrive before the controller starts waiting for it. Entries
    for a run are dropped by :meth:`forget` once its rollout ends.
    """

    def __init__(self, auto_approve: bool = False) -> None:
        self.auto_approve = auto_approve
        self._events: Dict[ApprovalKey, asyncio.Event] = {}
        self._decisions: Dict[ApprovalKey, bool] = {}
        self._waiting: set[ApprovalKey] = set()

    def _event(self, key: ApprovalKey) -> asyncio.Event:
        return self._events.setdefault(key, asyncio.Event())

    def approve(self, run_id: str, environment: str) -> None:
        self._decide((run_id, environment), True)

    def reject(self, run_id: str, environment: str) -> None:
        self._decide((run_id, environment), False)

    def _decide(self, key: ApprovalKey, approved: bool) -> None:
        if key in self._decisions:
            logger.warning(f"Ignoring repeated decision for run {key[0]} in {key[1]}")
            return
        self._decisions[key] = approved
        self._event(key).set()
        logger.info(
            f"Stage {key[1]} of run {key[0]} {'approved' if approved else 'rejected'}"
        )

    def pending(self) -> List[ApprovalKey]:
        """Return the stages currently blocked on a decision."""
        return sorted(self._waiting)

    def forget(self, run_id: str) -> None:
        """Drop decisions and signals recorded for ``run_id``."""
        for key in [k for k in self._events if k[0] == run_id]:
            del self._events[key]
        for key in [k for k in self._decisions if k[0] == run_id]:
            del self._decisions[key]

    async def wait(
        self,
        run_id: str,
        environment: str,
        timeout: float,
        cancel: Optional["CancelToken"] = None,
    ) -> None:
        """Block until the stage is approved or ``cancel`` fires.

        Returns without a decision when the run is cancelled; callers check
        the token afterwards.

        Raises:
            ApprovalTimeout: No decision arrived within ``timeout`` seconds.
            ApprovalRejected: The stage was explicitly rejected.
        """
        if self.auto_approve:
            return
        key = (run_id, environment)
        waiters = [asyncio.ensure_future(self._event(key).wait())]
        if cancel is not None:
            waiters.append(asyncio.ensure_future(cancel.wait()))
        self._waiting.add(key)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
            self._waiting.discard(key)

        if cancel is not None and cancel.cancelled:
            logger.info(f"Approval wait for run {run_id} in {environment} cancelled")
            return
        if not done:
            raise ApprovalTimeout(f"no approval for {environment} within {timeout}s")
        if not self._decisions.get(key):
            raise ApprovalRejected(f"{environment} rejected")
