"""
CLI commands for review requests of manual-sync environments.
"""

from __future__ import annotations

import json
import sys

import click

from gitops_promoter.core.errors import PolicyViolation, PromotionError
from gitops_promoter.ui.cli.common import (
    EXIT_FATAL,
    default_requester,
    echo_result,
    fail,
    get_context,
)


@click.group()
def review() -> None:
    """Review requests — approval status, merge, close."""


@review.command("status")
@click.argument("review_id")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def review_status(ctx: click.Context, review_id: str, as_json: bool) -> None:
    """Show whether a review has collected its required approvals."""
    engine = get_context(ctx, as_json).engine
    try:
        status = engine.check_approvals(review_id)
    except PromotionError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps({
            "review_id": review_id,
            "satisfied": status.satisfied,
            "missing_groups": sorted(status.missing_groups),
            "approvals_needed": status.approvals_needed,
            "changes_requested_by": sorted(status.blocked_by),
        }, indent=2))
        return

    if status.satisfied:
        click.secho(f"✅ Review {review_id}: approved", fg="green", bold=True)
    else:
        click.secho(f"⏳ Review {review_id}: {status.describe()}", fg="yellow", bold=True)


@review.command("watch")
@click.argument("review_id")
@click.option("--interval", default=30.0, type=float, help="Seconds between polls.")
@click.pass_context
def review_watch(ctx: click.Context, review_id: str, interval: float) -> None:
    """Poll a review until it is approved or reaches a final state."""
    engine = get_context(ctx).engine
    if engine.gate is None:
        fail(PolicyViolation("No review system configured"), False)
    try:
        for status in engine.gate.watch(review_id, interval=interval):
            click.echo(f"   {status.describe()}")
    except PromotionError as e:
        fail(e, False)
    except KeyboardInterrupt:
        click.echo()
        sys.exit(EXIT_FATAL)


@review.command("merge")
@click.argument("review_id")
@click.option("--env", "environment", required=True, help="Environment the review targets.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def review_merge(ctx: click.Context, review_id: str, environment: str, as_json: bool) -> None:
    """Merge an approved review into trunk."""
    engine = get_context(ctx, as_json).engine
    try:
        result = engine.complete_review(review_id, environment, default_requester())
    except PromotionError as e:
        fail(e, as_json)
    echo_result(result, as_json)


@review.command("close")
@click.argument("review_id")
@click.option("--env", "environment", required=True, help="Environment the review targets.")
@click.option("--reason", default="", help="Comment left on the review.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def review_close(ctx: click.Context, review_id: str, environment: str, reason: str, as_json: bool) -> None:
    """Close a review without merging."""
    engine = get_context(ctx, as_json).engine
    try:
        result = engine.close_review(review_id, environment, reason)
    except PromotionError as e:
        fail(e, as_json)
    echo_result(result, as_json, exit_on_failure=False)
