"""
CLI commands for planning and promoting builds.

The CI trigger interface:

    promoter promote --commit <sha> --env <environment> [--json]
"""

from __future__ import annotations

import json
import signal
import sys
import threading

import click
from pydantic import ValidationError

from gitops_promoter.core.errors import PromotionError
from gitops_promoter.core.models.promotion import PromotionRequest
from gitops_promoter.ui.cli.common import (
    EXIT_FATAL,
    default_requester,
    echo_result,
    fail,
    get_context,
)


def _request(commit: str, environment: str, requested_by: str, as_json: bool) -> PromotionRequest:
    try:
        return PromotionRequest(
            source_commit=commit,
            target_environment=environment,
            requested_by=requested_by,
        )
    except ValidationError as e:
        message = e.errors()[0]["msg"]
        if as_json:
            click.echo(json.dumps({"ok": False, "error": {"kind": "invalid_request", "message": message}}, indent=2))
        else:
            click.secho(f"❌ {message}", fg="red", err=True)
        sys.exit(EXIT_FATAL)


@click.command()
@click.option("--commit", "commit", required=True, help="Source commit SHA of the build.")
@click.option("--env", "environment", required=True, help="Target environment.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(ctx: click.Context, commit: str, environment: str, as_json: bool) -> None:
    """Show the edits a promotion would make, without writing anything."""
    request = _request(commit, environment, "", as_json)
    engine = get_context(ctx, as_json).engine

    try:
        mutation = engine.plan(request.source_commit, request.target_environment)
    except PromotionError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps({"ok": True, **mutation.to_dict()}, indent=2))
        return

    click.secho(f"\n📋 Plan: {request.source_commit[:12]} → {mutation.environment}", fg="cyan", bold=True)
    if mutation.is_noop:
        click.secho("   ✓ Already promoted — nothing to change", fg="green")
        click.echo()
        return
    for edit in mutation.edits:
        if edit.is_noop:
            click.echo(f"   = {edit.key}: {edit.new_value}")
        else:
            click.secho(f"   ~ {edit.key}: ", fg="yellow", nl=False)
            click.echo(f"{edit.old_value} → {edit.new_value}")
    click.echo(f"   File: {', '.join(mutation.files)}")
    click.echo(f"   Fingerprint: {mutation.fingerprint}")
    click.echo()


@click.command()
@click.option("--commit", "commit", required=True, help="Source commit SHA of the build.")
@click.option("--env", "environment", required=True, help="Target environment.")
@click.option("--requested-by", default=None, help="Requester identity (default: $GITHUB_ACTOR or $USER).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def promote(
    ctx: click.Context,
    commit: str,
    environment: str,
    requested_by: str | None,
    as_json: bool,
) -> None:
    """Promote a build into an environment.

    Auto-sync environments get a commit on trunk; manual-sync
    environments get a review request.

    Examples:

        promoter promote --commit 3f9c2a1 --env dev

        promoter promote --commit 3f9c2a1 --env staging --json
    """
    request = _request(commit, environment, requested_by or default_requester(), as_json)
    engine = get_context(ctx, as_json).engine

    # A cancelled CI job sends SIGTERM; stop before the next stage
    cancel = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda *_: cancel.set())
    try:
        result = engine.promote(request, cancel=cancel)
    except PromotionError as e:
        fail(e, as_json)
    finally:
        signal.signal(signal.SIGTERM, previous)

    echo_result(result, as_json, extra={"source_commit": request.source_commit})


@click.command()
@click.argument("revision")
@click.option("--env", "environment", required=True, help="Environment the commit promoted.")
@click.option("--requested-by", default=None, help="Requester identity (default: $GITHUB_ACTOR or $USER).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def revert(
    ctx: click.Context,
    revision: str,
    environment: str,
    requested_by: str | None,
    as_json: bool,
) -> None:
    """Revert a promotion commit on trunk (explicit compensating action)."""
    engine = get_context(ctx, as_json).engine
    try:
        result = engine.revert(revision, environment, requested_by or default_requester())
    except PromotionError as e:
        fail(e, as_json)
    echo_result(result, as_json)
