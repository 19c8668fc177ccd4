"""Credential broker issuing short-lived, least-privilege deploy credentials."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from ..config import ShipyardConfig, load_config
from ..constants import (
    DEFAULT_CREDENTIAL_LIFETIME_SECONDS,
    DEFAULT_ISSUE_TIMEOUT_SECONDS,
    MAX_CREDENTIAL_LIFETIME_SECONDS,
)
from ..exceptions import CredentialDenied, CredentialRejected, InvalidAssertion
from .audit import AuditLog, InMemoryAuditLog
from .context import AuditOutcome, Credential, CredentialSubject
from .jws import CredentialSigner
from .keys import KeyProvider, generate_signing_key
from .policy import PolicyEngine, ScopePolicy
from .tokens import JwksTrustAnchor, TrustAnchor

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialBroker:
    """Issues credentials scoped to one run and one environment.

    A request is granted only when the run-identity assertion validates against
    the trust anchor, a policy is bound to the environment and the requested
    scope intersects the policy's allowed scope. The credential carries exactly
    that intersection. There is no revocation: lifetimes are capped at
    ``max_lifetime`` seconds and consumers check expiry through :meth:`verify`.
    Every :meth:`issue` call appends one record to the audit log.
    """

    def __init__(
        self,
        signer: CredentialSigner,
        trust_anchor: TrustAnchor,
        policies: PolicyEngine,
        audit: Optional[AuditLog] = None,
        default_lifetime: int = DEFAULT_CREDENTIAL_LIFETIME_SECONDS,
        max_lifetime: int = MAX_CREDENTIAL_LIFETIME_SECONDS,
        issue_timeout: float = DEFAULT_ISSUE_TIMEOUT_SECONDS,
        clock: Optional[Clock] = None,
    ) -> None:
        if max_lifetime <= 0:
            raise ValueError("max_lifetime must be positive")
        self.signer = signer
        self.trust_anchor = trust_anchor
        self.policies = policies
        self.audit = audit or InMemoryAuditLog()
        self.max_lifetime = max_lifetime
        self.default_lifetime = min(default_lifetime, max_lifetime)
        self.issue_timeout = issue_timeout
        self._clock = clock or _utcnow

    @classmethod
    def from_config(
        cls,
        config: ShipyardConfig,
        trust_anchor: Optional[TrustAnchor] = None,
        key_provider: Optional[KeyProvider] = None,
        audit: Optional[AuditLog] = None,
    ) -> "CredentialBroker":
        broker_conf = config.broker
        if trust_anchor is None:
            trust_anchor = JwksTrustAnchor(broker_conf.trust)
        signer = CredentialSigner(key_provider or generate_signing_key(), broker_conf.issuer)
        return cls(
            signer=signer,
            trust_anchor=trust_anchor,
            policies=PolicyEngine.from_config(broker_conf.policies),
            audit=audit,
            default_lifetime=broker_conf.default_lifetime_seconds,
            max_lifetime=broker_conf.max_lifetime_seconds,
            issue_timeout=broker_conf.issue_timeout_seconds,
        )

    # ------------------------------------------------------------------
    async def issue(
        self,
        subject: CredentialSubject,
        requested_scope: Iterable[str],
        trust_assertion: str,
        lifetime: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Credential:
        """Issue a credential or raise :class:`CredentialDenied`.

        Args:
            subject: Run and environment the credential is for.
            requested_scope: Actions the caller wants to perform.
            trust_assertion: Run-identity token whose ``sub`` is the run id.
            lifetime: Requested lifetime in seconds, clamped to policy limits.
            timeout: Bound on the whole call; defaults to ``issue_timeout``.
        """
        if lifetime is not None and lifetime <= 0:
            raise ValueError("credential lifetime must be positive")
        requested = frozenset(requested_scope)
        bound = self.issue_timeout if timeout is None else timeout
        try:
            credential = await asyncio.wait_for(
                self._issue(subject, requested, trust_assertion, lifetime), timeout=bound
            )
        except CredentialDenied as exc:
            await self.audit.record(
                subject, AuditOutcome.DENIED, requested_scope=requested, reason=exc.reason
            )
            logger.warning(f"Denied credential for {subject}: {exc.reason}")
            raise
        except asyncio.TimeoutError:
            reason = "issuance timeout"
            await self.audit.record(
                subject, AuditOutcome.DENIED, requested_scope=requested, reason=reason
            )
            logger.warning(f"Denied credential for {subject}: {reason} after {bound}s")
            raise CredentialDenied(reason) from None

        await self.audit.record(
            subject,
            AuditOutcome.GRANTED,
            requested_scope=requested,
            scope_granted=credential.scope,
        )
        logger.info(
            f"Issued credential for {subject} scope={sorted(credential.scope)} "
            f"expires_at={credential.expires_at.isoformat()}"
        )
        return credential

    async def _issue(
        self,
        subject: CredentialSubject,
        requested: frozenset,
        trust_assertion: str,
        lifetime: Optional[int],
    ) -> Credential:
        try:
            claims = await asyncio.to_thread(self.trust_anchor.validate, trust_assertion)
        except InvalidAssertion as exc:
            logger.debug(f"Assertion for {subject} rejected: {exc}")
            raise CredentialDenied("invalid trust assertion") from exc
        if claims.get("sub") != subject.run_id:
            raise CredentialDenied("assertion subject mismatch")

        policy = self.policies.policy_for(subject)
        if policy is None:
            raise CredentialDenied("no policy bound")
        granted = requested & policy.allowed_scope
        if not granted:
            raise CredentialDenied("scope not permitted")

        seconds = self._lifetime(lifetime, policy)
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=seconds)
        token = self.signer.sign(
            {
                "sub": str(subject),
                "aud": subject.environment,
                "run_id": subject.run_id,
                "scope": " ".join(sorted(granted)),
                "iat": int(issued_at.timestamp()),
                "exp": int(expires_at.timestamp()),
                "jti": uuid.uuid4().hex,
            }
        )
        return Credential(
            subject=subject,
            scope=granted,
            issued_at=issued_at,
            expires_at=expires_at,
            token=token,
        )

    def _lifetime(self, requested: Optional[int], policy: ScopePolicy) -> int:
        seconds = min(requested or self.default_lifetime, self.max_lifetime)
        if policy.max_lifetime_seconds:
            seconds = min(seconds, policy.max_lifetime_seconds)
        return seconds

    # ------------------------------------------------------------------
    def verify(
        self, credential: Union[Credential, str], action: str, environment: str
    ) -> Mapping[str, Any]:
        """Consumer-side check of a presented credential.

        Raises :class:`CredentialRejected` when the token is forged, bound to
        another environment, expired or does not permit ``action``.
        """
        token = credential.token if isinstance(credential, Credential) else credential
        claims = self.signer.verify(token, audience=environment)
        now = self._clock()
        if now.timestamp() >= claims["exp"]:
            raise CredentialRejected("credential expired")
        if action not in claims.get("scope", "").split():
            raise CredentialRejected(f"action {action!r} not in credential scope")
        return claims


def build_broker(
    config: Optional[ShipyardConfig] = None,
    trust_anchor: Optional[TrustAnchor] = None,
    key_provider: Optional[KeyProvider] = None,
) -> CredentialBroker:
    """Factory function to build a broker from configuration.

    Audit records go to ``broker.audit_database_url`` when it is set and stay
    in memory otherwise.
    """

    config = config or load_config()
    audit: Optional[AuditLog] = None
    if config.broker.audit_database_url:
        from ..db import SQLAuditLog

        audit = SQLAuditLog(config.broker.audit_database_url)
    return CredentialBroker.from_config(
        config, trust_anchor=trust_anchor, key_provider=key_provider, audit=audit
    )
