"""Command line interface for running and inspecting Shipyard pipelines."""

from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from shipyard import (
    ApprovalGate,
    RolloutController,
    RunCoordinator,
    RunStatus,
    build_broker,
    get_cache_store,
    get_notification_sink,
    get_repository,
)
from shipyard.cli_utils.plan import _load_plan, _parse_inputs
from shipyard.config import load_config
from shipyard.contracts import PipelineRun
from shipyard.executors import CommandBuildExecutor, CommandExecutor
from shipyard.security import (
    CredentialSubject,
    RunIdentityProvider,
    StaticTrustAnchor,
    generate_signing_key,
)

app = typer.Typer(help="CLI for Shipyard pipelines")

# Command groups
run_app = typer.Typer(help="Inspect archived pipeline runs")
plan_app = typer.Typer(help="Work with rollout plan files")
audit_app = typer.Typer(help="Inspect the credential audit log")

app.add_typer(run_app, name="run")
app.add_typer(plan_app, name="plan")
app.add_typer(audit_app, name="audit")


@app.callback()
def main() -> None:
    """Shipyard CLI entry point."""
    pass


def _echo_run(run: PipelineRun) -> None:
    typer.echo(f"Run {run.run_id}: {run.status.value}")
    typer.echo(f"Source: {run.source_ref} (group {run.concurrency_group})")
    if run.reason_code:
        typer.echo(f"Reason: {run.reason_code.value}")
    if run.failed_stage:
        typer.echo(f"Failed stage: {run.failed_stage}")
    if run.artifact_hash:
        cached = " (cache hit)" if run.cache_hit else ""
        typer.echo(f"Artifact: {run.artifact_hash}{cached}")
    if run.rollout is None:
        return
    for index, stage in enumerate(run.rollout.plan.stages):
        typer.echo(
            f"- {stage.environment} ({stage.traffic_percent}%): "
            f"{run.rollout.outcomes[index].value}, attempts {run.rollout.attempts[index]}"
        )


@run_app.command("list")
def run_list(
    group: Optional[str] = typer.Option(None, help="Only show runs of this concurrency group"),
) -> None:
    """
    List archived runs with their terminal status.

    Example:
        shipyard run list
        shipyard run list --group main
        # Output: 1f0c...    main    succeeded
        #         9a3e...    main    cancelled    superseded
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(concurrency_group=group))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        line = f"{run.run_id}\t{run.concurrency_group}\t{run.status.value}"
        if run.reason_code:
            line += f"\t{run.reason_code.value}"
        typer.echo(line)


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show one run with its per-stage rollout outcomes."""
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    _echo_run(run)


@plan_app.command("validate")
def plan_validate(plan_path: Path) -> None:
    """
    Check a rollout plan file and print its stages.

    Example:
        shipyard plan validate rollout.yaml
        # Output: Plan OK: 3 stages
        #         1. staging 100% health<=60.0s
        #         2. canary 10% health<=60.0s approval
    """
    if not plan_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        plan = _load_plan(plan_path, load_config().rollout)
    except (ValueError, ValidationError) as exc:
        typer.secho(f"Invalid plan: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Plan OK: {len(plan)} stages")
    for index, stage in enumerate(plan.stages, start=1):
        flags = " approval" if stage.requires_approval else ""
        if stage.max_attempts > 1:
            flags += f" attempts={stage.max_attempts}"
        typer.echo(
            f"{index}. {stage.environment} {stage.traffic_percent}% "
            f"health<={stage.health.timeout_seconds}s{flags}"
        )


async def _trigger(
    plan_path: Path,
    source_ref: str,
    group: str,
    build_cmd: str,
    artifact_path: Path,
    deploy_cmd: str,
    health_cmd: str,
    rollback_cmd: Optional[str],
    inputs: dict,
    auto_approve: bool,
) -> PipelineRun:
    config = load_config()
    plan = _load_plan(plan_path, config.rollout)

    # Local runs have no CI identity provider; mint assertions with a key
    # generated for this invocation and trust only that key.
    identity_key = generate_signing_key()
    trust = config.broker.trust
    identity = RunIdentityProvider(identity_key, audience=trust.audience, issuer=trust.issuer)
    broker = build_broker(
        config,
        trust_anchor=StaticTrustAnchor(
            identity_key, audience=trust.audience, issuer=trust.issuer, leeway=trust.leeway
        ),
    )

    cache = get_cache_store(config)
    controller = RolloutController(
        cache,
        broker,
        deploy=CommandExecutor(shlex.split(deploy_cmd)),
        health=CommandExecutor(shlex.split(health_cmd)),
        rollback=CommandExecutor(shlex.split(rollback_cmd)) if rollback_cmd else None,
        approvals=ApprovalGate(auto_approve=auto_approve),
    )
    coordinator = RunCoordinator(
        cache,
        controller,
        builder=CommandBuildExecutor(shlex.split(build_cmd), artifact_path),
        assertion_factory=lambda run_id: identity.mint(run_id),
        repository=get_repository(),
        notifier=get_notification_sink(config=config),
    )
    run_id = await coordinator.trigger(source_ref, group, inputs=inputs, plan=plan)
    return await coordinator.wait(run_id)


@app.command("trigger")
def trigger(
    plan_path: Path,
    source_ref: str = typer.Option(..., help="Commit or tag to build"),
    group: str = typer.Option("default", help="Concurrency group of the run"),
    build_cmd: str = typer.Option(..., help="Command that builds the artifact"),
    artifact_path: Path = typer.Option(..., help="File the build command writes"),
    deploy_cmd: str = typer.Option(..., help="Command deploying one stage"),
    health_cmd: str = typer.Option(..., help="Command probing one stage's health"),
    rollback_cmd: Optional[str] = typer.Option(None, help="Command undoing one stage"),
    build_input: List[str] = typer.Option([], "--input", help="Extra build input as key=value"),
    auto_approve: bool = typer.Option(False, help="Approve gated stages automatically"),
    log_level: str = typer.Option("INFO", help="Logging level"),
) -> None:
    """
    Build an artifact and roll it out through the stages of a plan.

    Commands receive the run context as SHIPYARD_* environment variables;
    deploy and rollback commands also get SHIPYARD_CREDENTIAL. Credential
    scopes come from the ``broker.policies`` section of the configuration.

    Example:
        shipyard trigger rollout.yaml --source-ref v1.4.0 --group main \\
            --build-cmd "make dist" --artifact-path dist/app.tar.gz \\
            --deploy-cmd "./deploy.sh" --health-cmd "./probe.sh" --auto-approve
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not plan_path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        inputs = _parse_inputs(build_input)
        run = asyncio.run(
            _trigger(
                plan_path,
                source_ref,
                group,
                build_cmd,
                artifact_path,
                deploy_cmd,
                health_cmd,
                rollback_cmd,
                inputs,
                auto_approve,
            )
        )
    except (ValueError, ValidationError) as exc:
        typer.secho(f"Invalid input: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    _echo_run(run)
    if run.status != RunStatus.SUCCEEDED:
        raise typer.Exit(code=1)


async def _audit_records(database_url: str, subject: Optional[CredentialSubject]):
    from shipyard.db import SQLAuditLog

    audit = SQLAuditLog(database_url)
    try:
        return await audit.records(subject)
    finally:
        await audit.close()


@audit_app.command("list")
def audit_list(
    run_id: Optional[str] = typer.Option(None, help="Only show records for this run"),
    environment: Optional[str] = typer.Option(None, help="Environment, used with --run-id"),
) -> None:
    """
    List credential issuance decisions in append order.

    Requires ``broker.audit_database_url`` in the configuration.
    """
    config = load_config()
    if not config.broker.audit_database_url:
        typer.secho("No audit database configured", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    subject = None
    if run_id and environment:
        subject = CredentialSubject(run_id=run_id, environment=environment)
    records = asyncio.run(_audit_records(config.broker.audit_database_url, subject))
    if run_id and subject is None:
        records = [r for r in records if r.subject.run_id == run_id]
    if not records:
        typer.echo("No audit records found")
        return
    for record in records:
        granted = ",".join(sorted(record.scope_granted)) or "-"
        typer.echo(
            f"{record.sequence}\t{record.timestamp.isoformat()}\t{record.subject}\t"
            f"{record.outcome.value}\t{granted}"
            + (f"\t{record.reason}" if record.reason else "")
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
