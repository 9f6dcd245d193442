"""CLI entry point for the orchestration engine."""

import asyncio
import json
import os
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import click
import structlog

from repo_conductor.config.settings import ConductorSettings
from repo_conductor.engine.watchdog import Watchdog
from repo_conductor.exceptions import ConductorError
from repo_conductor.models.domain import GateDecision
from repo_conductor.models.stages import LEGACY_ALIASES, Stage
from repo_conductor.providers.command import CommandCollaborator
from repo_conductor.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

STAGE_CHOICE = click.Choice([s.value for s in Stage] + sorted(LEGACY_ALIASES), case_sensitive=False)


@click.group()
@click.option("--config", default="conductor.yaml", help="Path to configuration file")
@click.option("--log-level", default=None, help="Logging level (overrides the configuration)")
@click.option("--state-root", type=click.Path(path_type=Path), default=None, help="Override the state root")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str | None, state_root: Path | None) -> None:
    """repo-conductor: multi-repo work item orchestration."""
    config_path = Path(config)
    try:
        if config_path.exists():
            settings = ConductorSettings.from_yaml(str(config_path))
        else:
            settings = ConductorSettings()
        if state_root is not None:
            settings = settings.model_copy(update={"state_root": state_root})
    except ConductorError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    configure_logging(log_level or settings.log_level, json_output=settings.log_json)
    if not config_path.exists():
        log.debug("config_file_absent", path=str(config_path))
    ctx.obj = {"settings": settings}


def _execute(command: str, coro: Coroutine[Any, Any, int]) -> None:
    """Run ``coro`` and exit with its return code, mapping errors to exit codes."""
    try:
        code = asyncio.run(coro)
    except ConductorError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{command}_unexpected", exc_info=True)
        sys.exit(1)
    if code:
        sys.exit(code)


def _watchdog(ctx: click.Context) -> Watchdog:
    settings: ConductorSettings = ctx.obj["settings"]
    return Watchdog(settings, CommandCollaborator(settings.collaborators))


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _echo_decision(decision: GateDecision) -> int:
    _echo_json(
        {
            "ok": decision.ok,
            "gate": decision.gate,
            "status": decision.status,
            "message": decision.message,
            "reason_codes": decision.reason_codes,
            "record": decision.record_path,
        }
    )
    return 0 if decision.ok else 1


@cli.command()
@click.option("--work-id", default=None, help="Only process this work item")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum items this run")
@click.option("--stop-at", type=STAGE_CHOICE, default=None, help="Pre-PR stage to stop at")
@click.option("--max-minutes", type=click.FloatRange(min=0, min_open=True), default=None, help="Time budget")
@click.option("--dry-run", is_flag=True, help="Compute the schedule without changing anything")
@click.option("--ci/--no-ci", "ci_enabled", default=None, help="Dispatch CI promotion")
@click.option("--prepr/--no-prepr", "prepr_enabled", default=None, help="Drive the pre-PR pipeline")
@click.pass_context
def run(
    ctx: click.Context,
    work_id: str | None,
    limit: int | None,
    stop_at: str | None,
    max_minutes: float | None,
    dry_run: bool,
    ci_enabled: bool | None,
    prepr_enabled: bool | None,
) -> None:
    """Run the watchdog once over the scheduled work items."""
    settings: ConductorSettings = ctx.obj["settings"]

    async def _run() -> int:
        options = settings.run_options(
            work_id=work_id,
            limit=limit,
            stop_at=stop_at,
            max_minutes=max_minutes,
            dry_run=dry_run or None,
            ci_enabled=ci_enabled,
            prepr_enabled=prepr_enabled,
        )
        result = await _watchdog(ctx).run(options)
        _echo_json(result.to_dict())
        return 0 if result.ok else 1

    _execute("run", _run())


@cli.command()
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum items to select")
@click.option("--order-by", type=click.Choice(["queue", "created_at", "priority"]), default=None)
@click.option("--dry-run", is_flag=True, help="Do not write SCHEDULE.json or META.json")
@click.pass_context
def schedule(ctx: click.Context, limit: int | None, order_by: str | None, dry_run: bool) -> None:
    """Compute and print the schedule for the next run."""
    settings: ConductorSettings = ctx.obj["settings"]

    async def _schedule() -> int:
        options = settings.run_options(limit=limit, dry_run=dry_run or None)
        watchdog = _watchdog(ctx)
        if options.dry_run:
            computed = await watchdog.scheduler.compute_schedule(options, order_by=order_by)
        else:
            # A written schedule must not race a run computing its own.
            async with watchdog.locks.hold(watchdog.paths.global_lock, {"scope": "schedule", "pid": os.getpid()}):
                computed = await watchdog.scheduler.compute_schedule(options, order_by=order_by)
        _echo_json(computed.to_dict())
        return 0

    _execute("schedule", _schedule())


@cli.command()
@click.argument("work_id", required=False)
@click.pass_context
def status(ctx: click.Context, work_id: str | None) -> None:
    """Show a work item's status snapshot, or list every work item."""

    async def _status() -> int:
        watchdog = _watchdog(ctx)
        if work_id:
            item = await watchdog.store.get(work_id)
            if item is None:
                click.echo(f"Error: No status for work item {work_id}", err=True)
                return 1
            _echo_json(item.to_snapshot())
            return 0
        ids = await watchdog.store.list_ids()
        if not ids:
            click.echo("No work items.")
        for wid in ids:
            item = await watchdog.store.get(wid)
            stage = item.current_stage.value if item else "(missing)"
            blocked = f" blocked:{item.blocking_reason}" if item and item.blocked else ""
            click.echo(f"{wid}\t{stage}{blocked}")
        return 0

    _execute("status", _status())


@cli.group("apply-approval")
def apply_approval() -> None:
    """Apply approval gate."""


@apply_approval.command("request")
@click.argument("work_id")
@click.option("--dry-run", is_flag=True, help="Evaluate without writing the decision")
@click.pass_context
def apply_request(ctx: click.Context, work_id: str, dry_run: bool) -> None:
    """Evaluate and record an apply approval decision."""

    async def _request() -> int:
        watchdog = _watchdog(ctx)
        async with watchdog.locks.hold(watchdog.paths.work_lock(work_id), {"work_id": work_id, "scope": "cli"}):
            return _echo_decision(await watchdog.apply_gate.request(work_id, dry_run=dry_run))

    _execute("apply_approval_request", _request())


@apply_approval.command("approve")
@click.argument("work_id")
@click.option("--by", "approved_by", default="human", help="Approver name")
@click.option("--notes", default=None, help="Approval notes")
@click.pass_context
def apply_approve(ctx: click.Context, work_id: str, approved_by: str, notes: str | None) -> None:
    """Manually approve a pending apply approval."""

    async def _approve() -> int:
        watchdog = _watchdog(ctx)
        async with watchdog.locks.hold(watchdog.paths.work_lock(work_id), {"work_id": work_id, "scope": "cli"}):
            return _echo_decision(await watchdog.apply_gate.approve(work_id, approved_by, notes))

    _execute("apply_approval_approve", _approve())


@cli.group("merge-approval")
def merge_approval() -> None:
    """Merge approval gate."""


@merge_approval.command("request")
@click.argument("work_id")
@click.pass_context
def merge_request(ctx: click.Context, work_id: str) -> None:
    """Request merge approval for a CI_GREEN work item."""

    async def _request() -> int:
        watchdog = _watchdog(ctx)
        async with watchdog.locks.hold(watchdog.paths.work_lock(work_id), {"work_id": work_id, "scope": "cli"}):
            return _echo_decision(await watchdog.merge_gate.request(work_id))

    _execute("merge_approval_request", _request())


@merge_approval.command("approve")
@click.argument("work_id")
@click.option("--by", "approved_by", default="human", help="Approver name")
@click.option("--notes", default=None, help="Approval notes")
@click.pass_context
def merge_approve(ctx: click.Context, work_id: str, approved_by: str, notes: str | None) -> None:
    """Approve a merge if CI is still green for the pinned commit."""

    async def _approve() -> int:
        watchdog = _watchdog(ctx)
        async with watchdog.locks.hold(watchdog.paths.work_lock(work_id), {"work_id": work_id, "scope": "cli"}):
            return _echo_decision(await watchdog.merge_gate.approve(work_id, approved_by, notes))

    _execute("merge_approval_approve", _approve())


@cli.command()
@click.argument("work_id", required=False)
@click.option("--global", "global_lock", is_flag=True, help="Release the global run lock")
@click.pass_context
def unlock(ctx: click.Context, work_id: str | None, global_lock: bool) -> None:
    """Release a work item lock (or the global lock) left behind by a crash."""
    if not work_id and not global_lock:
        click.echo("Error: Give a WORK_ID or --global", err=True)
        sys.exit(1)

    async def _unlock() -> int:
        watchdog = _watchdog(ctx)
        path = watchdog.paths.global_lock if global_lock else watchdog.paths.work_lock(work_id or "")
        holder = await watchdog.locks.read_holder(path)
        await watchdog.locks.release(path)
        await watchdog.ledger.append("lock_released_manually", work_id=work_id, path=str(path), previous_holder=holder)
        click.echo(f"Released {path}")
        return 0

    _execute("unlock", _unlock())


if __name__ == "__main__":
    cli()
