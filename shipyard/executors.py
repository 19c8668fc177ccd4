"""Pluggable executors for build, deploy, health-check and rollback actions.

Every external action goes through the same interface, ``execute(request)``,
and returns a typed result. The coordinator and controller never look past
that interface.
"""

from __future__ import annotations

import abc
import asyncio
import inspect
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

from .cache.models import Artifact
from .constants import ENV_PREFIX
from .security.context import Credential

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT")
ResultT = TypeVar("ResultT")

_DETAIL_LIMIT = 500


class BuildRequest(BaseModel):
    run_id: str
    source_ref: str
    inputs: Dict[str, Any] = Field(default_factory=dict)

    def as_env(self) -> Dict[str, str]:
        return {
            f"{ENV_PREFIX}RUN_ID": self.run_id,
            f"{ENV_PREFIX}SOURCE_REF": self.source_ref,
        }


class BuildResult(BaseModel):
    success: bool
    data: Optional[bytes] = None
    detail: Optional[str] = None


class ActionRequest(BaseModel):
    """Common fields of requests sent for one stage of a rollout."""

    run_id: str
    environment: str
    traffic_percent: int
    artifact: Artifact
    attempt: int = 1

    def as_env(self) -> Dict[str, str]:
        return {
            f"{ENV_PREFIX}RUN_ID": self.run_id,
            f"{ENV_PREFIX}ENVIRONMENT": self.environment,
            f"{ENV_PREFIX}TRAFFIC_PERCENT": str(self.traffic_percent),
            f"{ENV_PREFIX}ARTIFACT_HASH": self.artifact.content_hash,
            f"{ENV_PREFIX}ARTIFACT_LOCATION": self.artifact.location or "",
            f"{ENV_PREFIX}ATTEMPT": str(self.attempt),
        }


class DeployRequest(ActionRequest):
    credential: Credential

    def as_env(self) -> Dict[str, str]:
        env = super().as_env()
        env[f"{ENV_PREFIX}CREDENTIAL"] = self.credential.token
        return env


class RollbackRequest(DeployRequest):
    pass


class HealthCheckRequest(ActionRequest):
    pass


class ActionResult(BaseModel):
    success: bool
    detail: Optional[str] = None


class Executor(Generic[RequestT, ResultT], metaclass=abc.ABCMeta):
    """A single capability: run one action and report its result."""

    @abc.abstractmethod
    async def execute(self, request: RequestT) -> ResultT:
        raise NotImplementedError


class CallableExecutor(Executor[Any, Any]):
    """Adapts a plain or async function into an executor.

    ``bool`` return values become :class:`ActionResult`, ``bytes`` become a
    successful :class:`BuildResult`.
    """

    def __init__(self, fn: Callable[[Any], Any]) -> None:
        self._fn = fn

    async def execute(self, request: Any) -> Any:
        result = self._fn(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, bool):
            return ActionResult(success=result)
        if isinstance(result, (bytes, bytearray)):
            return BuildResult(success=True, data=bytes(result))
        return result


async def _run_command(
    argv: Sequence[str],
    env: Dict[str, str],
    timeout: Optional[float],
    cwd: Optional[str],
) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_exec(
        *argv,
        env={**os.environ, **env},
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, f"command timed out after {timeout}s"
    return proc.returncode, stderr.decode(errors="replace")[-_DETAIL_LIMIT:]


class CommandExecutor(Executor[ActionRequest, ActionResult]):
    """Runs an external command; exit code 0 means success.

    Request fields are passed as ``SHIPYARD_*`` environment variables.
    """

    def __init__(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> None:
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = list(argv)
        self.timeout = timeout
        self.cwd = cwd

    async def execute(self, request: ActionRequest) -> ActionResult:
        logger.info(f"Running {self.argv[0]} for run {request.run_id} in {request.environment}")
        try:
            code, detail = await _run_command(self.argv, request.as_env(), self.timeout, self.cwd)
        except OSError as exc:
            return ActionResult(success=False, detail=str(exc))
        return ActionResult(success=code == 0, detail=detail or None)


class CommandBuildExecutor(Executor[BuildRequest, BuildResult]):
    """Runs a build command and reads the artifact it writes to ``artifact_path``."""

    def __init__(
        self,
        argv: Sequence[str],
        artifact_path: str | Path,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> None:
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = list(argv)
        self.artifact_path = Path(artifact_path)
        self.timeout = timeout
        self.cwd = cwd

    async def execute(self, request: BuildRequest) -> BuildResult:
        logger.info(f"Building {request.source_ref} for run {request.run_id}")
        try:
            code, detail = await _run_command(self.argv, request.as_env(), self.timeout, self.cwd)
        except OSError as exc:
            return BuildResult(success=False, detail=str(exc))
        if code != 0:
            return BuildResult(success=False, detail=detail or f"exit code {code}")
        try:
            data = await asyncio.to_thread(self.artifact_path.read_bytes)
        except OSError as exc:
            return BuildResult(success=False, detail=f"artifact not readable: {exc}")
        return BuildResult(success=True, data=data)
