"""Error kinds raised by shipyard components.

A cache miss is not an error: :meth:`CacheStore.lookup` returns ``None``.
"""

from __future__ import annotations

from typing import Optional


class ShipyardError(Exception):
    """Base class for all shipyard errors."""


class InvalidTransitionError(ShipyardError):
    """Raised when a run or rollout is asked to leave a terminal state."""


class RunNotFound(ShipyardError):
    """No live or archived run with the requested id."""


class CacheWriteFailure(ShipyardError):
    """Blob storage rejected a write. Soft: callers proceed uncached."""


class BuildFailure(ShipyardError):
    """The build executor reported failure or produced no artifact."""


class InvalidAssertion(ShipyardError):
    """A run-identity assertion did not validate against the trust anchor."""


class CredentialDenied(ShipyardError):
    """The broker refused to issue a credential."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class CredentialRejected(ShipyardError):
    """A consumer refused a presented credential (expired, out of scope, ...)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StageFailure(ShipyardError):
    """A rollout stage could not be promoted."""

    reason_code = "stage_failed"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.reason_code)
        self.detail = detail


class DeployActionFailure(StageFailure):
    reason_code = "deploy_failed"


class HealthCheckFailure(StageFailure):
    reason_code = "health_check_failed"


class HealthCheckTimeout(StageFailure):
    reason_code = "health_check_timeout"


class ApprovalTimeout(StageFailure):
    reason_code = "approval_timeout"


class ApprovalRejected(StageFailure):
    reason_code = "approval_rejected"
