"""Scope policies bound to deployment environments."""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from ..config import PolicyConfig
from .context import CredentialSubject


class ScopePolicy(BaseModel):
    """Actions an environment's credentials may carry."""

    model_config = ConfigDict(frozen=True)

    environment: str
    allowed_scope: FrozenSet[str]
    max_lifetime_seconds: Optional[int] = None


class PolicyEngine:
    """Resolves the policy bound to a credential subject.

    There is no default policy: an environment without a binding resolves to
    ``None`` and callers must deny.
    """

    def __init__(self, policies: Iterable[ScopePolicy] = ()) -> None:
        self._policies: Dict[str, ScopePolicy] = {}
        for policy in policies:
            self.bind(policy)

    @classmethod
    def from_config(cls, policies: Mapping[str, PolicyConfig]) -> "PolicyEngine":
        return cls(
            ScopePolicy(
                environment=env,
                allowed_scope=frozenset(conf.scopes),
                max_lifetime_seconds=conf.max_lifetime_seconds,
            )
            for env, conf in policies.items()
        )

    def bind(self, policy: ScopePolicy) -> None:
        self._policies[policy.environment] = policy

    def policy_for(self, subject: CredentialSubject) -> Optional[ScopePolicy]:
        return self._policies.get(subject.environment)
