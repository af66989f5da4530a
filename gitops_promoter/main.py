"""
GitOps Promoter — CLI entrypoint.

Usage:
    promoter --help
    promoter config check
    promoter promote --commit <sha> --env dev
    python -m gitops_promoter.main status
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from gitops_promoter import __version__
from gitops_promoter.core.observability.logging_config import setup_from_environment


@click.group()
@click.version_option(version=__version__, prog_name="promoter")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to promotion.yml (default: auto-detect).",
)
@click.option("--mock", is_flag=True, help="In-memory registry and sync controller (no network).")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    mock: bool,
) -> None:
    """GitOps Promoter — promote builds through environments."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["mock"] = mock

    setup_from_environment(debug=debug, verbose=verbose, quiet=quiet)


@cli.group()
def config() -> None:
    """Promotion configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate promotion.yml and the overlays it points at."""
    from gitops_promoter.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid:
        assert result.config is not None  # guaranteed when valid
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   Project: {result.config.project}")
        click.echo(f"   Services: {len(result.config.services)}")
        click.echo(f"   Environments: {len(result.config.environments)}")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def envs(ctx: click.Context, as_json: bool) -> None:
    """List environments, their sync policy and the tags on trunk."""
    from gitops_promoter.core.engine.overlay import read_image_tags
    from gitops_promoter.core.errors import PromotionError
    from gitops_promoter.ui.cli.common import get_context

    ectx = get_context(ctx, as_json)
    registry = ectx.environments

    rows = []
    for env in registry:
        services = registry.services_for(env)
        path = registry.overlay_path(env)
        text = ectx.store.read_file(path)
        try:
            tags = read_image_tags(text, {s.name: s.repository for s in services}, path) if text else {}
        except PromotionError:
            tags = {}
        rows.append({
            "name": env.name,
            "namespace": env.namespace,
            "sync": env.sync_mode,
            "approver_groups": sorted(env.approver_groups),
            "required_approvals": env.required_approvals,
            "tag_prefix": env.tag_prefix,
            "overlay": path,
            "tags": {s.name: tags.get(s.name) for s in services},
        })

    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return

    click.echo()
    for row in rows:
        policy = row["sync"]
        if row["approver_groups"]:
            policy += f" (approvers: {', '.join(row['approver_groups'])})"
        click.secho(f"   • {row['name']}", fg="cyan", bold=True, nl=False)
        click.echo(f"  [{policy}]  → {row['overlay']}")
        for service, tag in row["tags"].items():
            click.echo(f"       {service}: {tag or '?'}")
    click.echo()


@cli.command()
@click.option("-n", "count", default=20, type=int, help="Number of entries.")
@click.option("--env", "environment", default=None, help="Only this environment.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, count: int, environment: str | None, as_json: bool) -> None:
    """Show recent promotion attempts from the audit ledger."""
    from gitops_promoter.ui.cli.common import get_context

    entries = get_context(ctx, as_json).audit.read_recent(count, environment)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.echo("No promotions recorded yet.")
        return

    status_color = {"failed": "red", "review_opened": "cyan", "already_promoted": "white"}
    click.echo()
    for entry in reversed(entries):
        click.echo(f"   {entry.timestamp[:19]}  {entry.environment:<10} ", nl=False)
        click.secho(f"{entry.status:<17}", fg=status_color.get(entry.status, "green"), nl=False)
        target = entry.source_commit[:7] or entry.review_id or ""
        click.echo(f" {entry.operation_type:<8} {target}  ({entry.duration_ms}ms)")
        if entry.error:
            click.echo(f"        │ [{entry.error_kind}] {entry.error}")
    click.echo()


# ── Register CLI groups ─────────────────────────────────────────

from gitops_promoter.ui.cli.promote import plan, promote, revert  # noqa: E402
from gitops_promoter.ui.cli.review import review  # noqa: E402
from gitops_promoter.ui.cli.sync import diff, status, sync  # noqa: E402

cli.add_command(plan)
cli.add_command(promote)
cli.add_command(revert)
cli.add_command(review)
cli.add_command(status)
cli.add_command(sync)
cli.add_command(diff)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
