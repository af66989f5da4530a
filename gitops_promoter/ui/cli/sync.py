"""
CLI commands for reconciliation status — thin wrappers over the sync controller.
"""

from __future__ import annotations

import json

import click

from gitops_promoter.core.errors import PromotionError
from gitops_promoter.core.models.sync import SyncStatus
from gitops_promoter.ui.cli.common import fail, get_context

_STATUS_STYLE = {
    SyncStatus.SYNCED: ("💚", "green"),
    SyncStatus.OUT_OF_SYNC: ("🟡", "yellow"),
    SyncStatus.PROGRESSING: ("🔄", "cyan"),
    SyncStatus.DEGRADED: ("🔴", "red"),
}


@click.command()
@click.option("--env", "environment", default=None, help="One environment (default: all).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, environment: str | None, as_json: bool) -> None:
    """Show desired vs live state per environment."""
    ectx = get_context(ctx, as_json)
    names = [environment] if environment else ectx.environments.names

    try:
        states = [ectx.engine.query_sync_state(name) for name in names]
    except PromotionError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps([s.model_dump(mode="json") for s in states], indent=2))
        return

    click.echo()
    for state in states:
        icon, color = _STATUS_STYLE.get(state.status, ("❔", "white"))
        click.secho(f"   {icon} {state.environment}: {state.status}", fg=color, bold=True)
        desired = (state.desired_revision or "-")[:12]
        live = (state.live_revision or "-")[:12]
        click.echo(f"      desired {desired}  live {live}")
        if state.message and ctx.obj.get("verbose"):
            click.echo(f"      {state.message}")
    click.echo()


@click.command()
@click.option("--env", "environment", required=True, help="Environment to sync.")
@click.option("--force", is_flag=True, help="Force-replace resources.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def sync(ctx: click.Context, environment: str, force: bool, as_json: bool) -> None:
    """Apply an environment's desired state now."""
    ectx = get_context(ctx, as_json)
    try:
        ectx.environments.get(environment)
        state = ectx.engine.sync_controller.sync(environment, force=force)
    except PromotionError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps(state.model_dump(mode="json"), indent=2))
        return
    icon, color = _STATUS_STYLE.get(state.status, ("❔", "white"))
    click.secho(f"{icon} {environment}: {state.status}", fg=color, bold=True)


@click.command()
@click.option("--env", "environment", required=True, help="Environment to diff.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def diff(ctx: click.Context, environment: str, as_json: bool) -> None:
    """Show the difference between desired and live state."""
    ectx = get_context(ctx, as_json)
    try:
        ectx.environments.get(environment)
        text = ectx.engine.sync_controller.diff(environment)
    except PromotionError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps({"environment": environment, "diff": text, "in_sync": not text}, indent=2))
        return
    if not text:
        click.secho(f"✓ {environment}: no differences", fg="green")
        return
    for line in text.splitlines():
        color = "green" if line.startswith("+") else "red" if line.startswith("-") else None
        click.secho(line, fg=color)
