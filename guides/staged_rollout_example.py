"""Example showing a staging -> canary -> production rollout in one process."""

import asyncio
import random

from shipyard import RolloutController, RunCoordinator, plan_from_stages
from shipyard.cache import CacheStore
from shipyard.executors import ActionResult, CallableExecutor
from shipyard.notifications import InMemoryNotificationSink
from shipyard.security import (
    CredentialBroker,
    CredentialSigner,
    PolicyEngine,
    RunIdentityProvider,
    ScopePolicy,
    StaticTrustAnchor,
    generate_signing_key,
)


async def build(request):
    # Stand-in for a real build; the bytes become the cached artifact
    return f"app-{request.source_ref}".encode()


async def deploy(request):
    print(
        f"🚀 Deploying {request.artifact.content_hash[:12]} to {request.environment} "
        f"at {request.traffic_percent}% (scope: {sorted(request.credential.scope)})"
    )
    return True


async def health(request):
    # A flaky canary, to show automatic rollback
    healthy = request.environment != "canary" or random.random() > 0.5
    return ActionResult(success=healthy, detail=None if healthy else "error rate above 2%")


async def rollback(request):
    print(f"↩️  Rolling back {request.environment}")
    return True


async def main():
    """Staged rollout example."""
    identity_key = generate_signing_key()
    broker = CredentialBroker(
        signer=CredentialSigner(generate_signing_key(), issuer="shipyard"),
        trust_anchor=StaticTrustAnchor(identity_key),
        policies=PolicyEngine(
            ScopePolicy(environment=env, allowed_scope=frozenset({"deploy", "rollback"}))
            for env in ("staging", "canary", "production")
        ),
    )
    identity = RunIdentityProvider(identity_key)

    cache = CacheStore()
    controller = RolloutController(
        cache,
        broker,
        deploy=CallableExecutor(deploy),
        health=CallableExecutor(health),
        rollback=CallableExecutor(rollback),
    )
    notifications = InMemoryNotificationSink()
    coordinator = RunCoordinator(
        cache,
        controller,
        builder=CallableExecutor(build),
        assertion_factory=identity.mint,
        notifier=notifications,
    )

    plan = plan_from_stages(
        [
            {"environment": "staging", "health": {"interval_seconds": 0}},
            {"environment": "canary", "traffic_percent": 10, "health": {"interval_seconds": 0}},
            {"environment": "production", "health": {"interval_seconds": 0}},
        ]
    )

    run_id = await coordinator.trigger("v1.4.0", "main", plan=plan)
    run = await coordinator.wait(run_id, timeout=30)

    print(f"📋 Run {run.run_id}: {run.status.value}")
    for stage, outcome in zip(plan.stages, run.rollout.outcomes):
        print(f"   {stage.environment}: {outcome.value}")
    print(f"🔔 Notification: {notifications.notifications[-1].to_json()}")


if __name__ == "__main__":
    asyncio.run(main())
