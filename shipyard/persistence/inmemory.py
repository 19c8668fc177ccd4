"""In-memory implementation of the run repository."""

from __future__ import annotations

from typing import Dict, Optional

from ..contracts import PipelineRun
from .repository import RunRepository


class InMemoryRunRepository(RunRepository):
    """Store runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, PipelineRun] = {}

    async def save_run(self, run: PipelineRun) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> PipelineRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, concurrency_group: Optional[str] = None) -> list[PipelineRun]:
        runs = [
            r
            for r in self._runs.values()
            if concurrency_group is None or r.concurrency_group == concurrency_group
        ]
        return sorted(
            (r.model_copy(deep=True) for r in runs), key=lambda r: r.started_at
        )
