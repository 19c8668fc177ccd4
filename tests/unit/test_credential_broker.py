import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from shipyard.exceptions import CredentialDenied, CredentialRejected
from shipyard.security import (
    AuditOutcome,
    CredentialBroker,
    CredentialSigner,
    CredentialSubject,
    PolicyEngine,
    RunIdentityProvider,
    ScopePolicy,
    StaticKeyProvider,
    StaticTrustAnchor,
    TrustAnchor,
)

IDENTITY_SECRET = b"identity-secret-for-tests-0123456789"
BROKER_SECRET = b"broker-signing-secret-for-tests-0123"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SlowTrustAnchor(TrustAnchor):
    def validate(self, token):
        time.sleep(0.2)
        return {"sub": token}


def make_broker(policies=None, clock=None, trust_anchor=None, **kwargs):
    identity_keys = StaticKeyProvider(IDENTITY_SECRET, kid="identity")
    if policies is None:
        policies = {"staging": {"deploy", "read", "rollback"}}
    broker = CredentialBroker(
        signer=CredentialSigner(StaticKeyProvider(BROKER_SECRET, kid="broker"), issuer="shipyard"),
        trust_anchor=trust_anchor or StaticTrustAnchor(identity_keys),
        policies=PolicyEngine(
            ScopePolicy(environment=env, allowed_scope=frozenset(scope))
            for env, scope in policies.items()
        ),
        clock=clock,
        **kwargs,
    )
    return broker, RunIdentityProvider(identity_keys)


@pytest.mark.asyncio
async def test_grants_intersection_of_request_and_policy():
    broker, identity = make_broker({"staging": {"deploy", "read"}})
    subject = CredentialSubject(run_id="run-1", environment="staging")

    credential = await broker.issue(subject, {"deploy"}, identity.mint("run-1"))

    assert credential.scope == frozenset({"deploy"})
    assert credential.subject == subject
    claims = broker.verify(credential, "deploy", "staging")
    assert claims["scope"] == "deploy"
    assert claims["run_id"] == "run-1"


@pytest.mark.asyncio
async def test_request_beyond_policy_is_narrowed():
    broker, identity = make_broker({"staging": {"deploy"}})
    subject = CredentialSubject(run_id="run-1", environment="staging")

    credential = await broker.issue(subject, {"deploy", "admin"}, identity.mint("run-1"))
    assert credential.scope == frozenset({"deploy"})


@pytest.mark.asyncio
async def test_no_policy_bound_fails_closed():
    broker, identity = make_broker({"staging": {"deploy"}})
    subject = CredentialSubject(run_id="run-1", environment="production")

    with pytest.raises(CredentialDenied) as exc_info:
        await broker.issue(subject, {"deploy"}, identity.mint("run-1"))
    assert exc_info.value.reason == "no policy bound"

    records = await broker.audit.records(subject)
    assert len(records) == 1
    assert records[0].outcome == AuditOutcome.DENIED
    assert records[0].reason == "no policy bound"
    assert records[0].scope_granted == frozenset()


@pytest.mark.asyncio
async def test_disjoint_scope_is_denied():
    broker, identity = make_broker({"staging": {"read"}})
    subject = CredentialSubject(run_id="run-1", environment="staging")

    with pytest.raises(CredentialDenied) as exc_info:
        await broker.issue(subject, {"deploy"}, identity.mint("run-1"))
    assert exc_info.value.reason == "scope not permitted"


@pytest.mark.asyncio
async def test_invalid_assertion_is_denied():
    broker, _ = make_broker()
    forged = RunIdentityProvider(StaticKeyProvider(b"x" * 40, kid="identity")).mint("run-1")
    subject = CredentialSubject(run_id="run-1", environment="staging")

    for assertion in ("not-a-token", forged):
        with pytest.raises(CredentialDenied) as exc_info:
            await broker.issue(subject, {"deploy"}, assertion)
        assert exc_info.value.reason == "invalid trust assertion"


@pytest.mark.asyncio
async def test_assertion_for_other_run_is_denied():
    broker, identity = make_broker()
    subject = CredentialSubject(run_id="run-1", environment="staging")

    with pytest.raises(CredentialDenied) as exc_info:
        await broker.issue(subject, {"deploy"}, identity.mint("run-2"))
    assert exc_info.value.reason == "assertion subject mismatch"


@pytest.mark.asyncio
async def test_lifetime_is_bounded():
    broker, identity = make_broker(default_lifetime=300, max_lifetime=600)
    subject = CredentialSubject(run_id="run-1", environment="staging")

    default = await broker.issue(subject, {"deploy"}, identity.mint("run-1"))
    assert default.expires_at > default.issued_at
    assert default.lifetime_seconds == 300

    long = await broker.issue(subject, {"deploy"}, identity.mint("run-1"), lifetime=86400)
    assert long.lifetime_seconds == 600

    with pytest.raises(ValueError):
        await broker.issue(subject, {"deploy"}, identity.mint("run-1"), lifetime=0)


@pytest.mark.asyncio
async def test_policy_lifetime_cap_applies():
    identity_keys = StaticKeyProvider(IDENTITY_SECRET, kid="identity")
    broker = CredentialBroker(
        signer=CredentialSigner(StaticKeyProvider(BROKER_SECRET, kid="broker"), issuer="shipyard"),
        trust_anchor=StaticTrustAnchor(identity_keys),
        policies=PolicyEngine(
            [ScopePolicy(environment="prod", allowed_scope=frozenset({"deploy"}), max_lifetime_seconds=60)]
        ),
    )
    subject = CredentialSubject(run_id="run-1", environment="prod")
    credential = await broker.issue(
        subject, {"deploy"}, RunIdentityProvider(identity_keys).mint("run-1")
    )
    assert credential.lifetime_seconds == 60


@pytest.mark.asyncio
async def test_expired_credential_is_rejected():
    clock = FakeClock()
    broker, identity = make_broker(clock=clock)
    subject = CredentialSubject(run_id="run-1", environment="staging")
    credential = await broker.issue(subject, {"deploy"}, identity.mint("run-1"))

    broker.verify(credential, "deploy", "staging")
    clock.advance(credential.lifetime_seconds)

    with pytest.raises(CredentialRejected) as exc_info:
        broker.verify(credential, "deploy", "staging")
    assert exc_info.value.reason == "credential expired"


@pytest.mark.asyncio
async def test_credential_is_bound_to_environment_and_scope():
    broker, identity = make_broker({"staging": {"deploy"}, "production": {"deploy"}})
    subject = CredentialSubject(run_id="run-1", environment="staging")
    credential = await broker.issue(subject, {"deploy"}, identity.mint("run-1"))

    with pytest.raises(CredentialRejected):
        broker.verify(credential, "deploy", "production")
    with pytest.raises(CredentialRejected):
        broker.verify(credential, "rollback", "staging")
    with pytest.raises(CredentialRejected):
        broker.verify(credential.token + "x", "deploy", "staging")


@pytest.mark.asyncio
async def test_issuance_timeout_is_denied_and_audited():
    broker, _ = make_broker(trust_anchor=SlowTrustAnchor())
    subject = CredentialSubject(run_id="run-1", environment="staging")

    with pytest.raises(CredentialDenied) as exc_info:
        await broker.issue(subject, {"deploy"}, "run-1", timeout=0.01)
    assert exc_info.value.reason == "issuance timeout"

    records = await broker.audit.records(subject)
    assert [r.reason for r in records] == ["issuance timeout"]


@pytest.mark.asyncio
async def test_every_issue_call_is_audited_in_order():
    broker, identity = make_broker({"staging": {"deploy"}})
    staging = CredentialSubject(run_id="run-1", environment="staging")
    missing = CredentialSubject(run_id="run-1", environment="qa")

    calls = []
    for i in range(5):
        calls.append(broker.issue(staging, {"deploy"}, identity.mint("run-1")))
        calls.append(broker.issue(missing, {"deploy"}, identity.mint("run-1")))
    results = await asyncio.gather(*calls, return_exceptions=True)

    assert sum(isinstance(r, CredentialDenied) for r in results) == 5
    records = await broker.audit.records()
    assert len(records) == 10
    assert [r.sequence for r in records] == list(range(1, 11))
    for subject in (staging, missing):
        own = await broker.audit.records(subject)
        assert len(own) == 5
        assert [r.timestamp for r in own] == sorted(r.timestamp for r in own)


@pytest.mark.asyncio
async def test_token_never_in_repr():
    broker, identity = make_broker()
    subject = CredentialSubject(run_id="run-1", environment="staging")
    credential = await broker.issue(subject, {"deploy"}, identity.mint("run-1"))
    assert credential.token not in repr(credential)
    assert credential.token not in str(credential)
