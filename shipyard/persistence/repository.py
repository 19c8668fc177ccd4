"""Repository abstraction for archived pipeline runs."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import PipelineRun


class RunRepository(Protocol):
    """Protocol for run persistence backends."""

    async def save_run(self, run: PipelineRun) -> None:
        """Insert or replace the stored copy of ``run``."""

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """Retrieve a run by id."""

    async def list_runs(self, concurrency_group: Optional[str] = None) -> list[PipelineRun]:
        """Return stored runs, oldest first, optionally for one group."""
