"""
Shared CLI plumbing — engine construction, result and error output.

Exit codes (what a CI trigger acts on):

    0   success, including "already promoted"
    1   fatal: fix something before retrying
    75  retryable (EX_TEMPFAIL): registry down, environment busy
"""

from __future__ import annotations

import json
import os
import sys
from typing import Any, NoReturn

import click

from gitops_promoter.core.config.loader import ConfigError
from gitops_promoter.core.errors import PromotionError
from gitops_promoter.core.models.promotion import PublishResult

EXIT_FATAL = 1
EXIT_RETRYABLE = 75

_STATUS_STYLE = {
    "committed": ("✅", "green"),
    "merged": ("✅", "green"),
    "review_opened": ("📝", "cyan"),
    "already_promoted": ("✓", "green"),
    "rejected": ("❌", "red"),
    "closed": ("⊘", "yellow"),
}


def get_context(ctx: click.Context, as_json: bool = False):
    """Build (once per invocation) the engine for the selected promotion.yml."""
    from gitops_promoter.core.use_cases.engine import build_engine

    if "engine_ctx" not in ctx.obj:
        try:
            ctx.obj["engine_ctx"] = build_engine(
                config_path=ctx.obj.get("config_path"),
                mock=ctx.obj.get("mock", False),
            )
        except ConfigError as e:
            fail_config(e, as_json)
    return ctx.obj["engine_ctx"]


def default_requester() -> str:
    """Who is asking: the CI actor when running in CI, else the local user."""
    return os.environ.get("GITHUB_ACTOR") or os.environ.get("USER") or ""


def fail(error: PromotionError, as_json: bool) -> NoReturn:
    """Report a promotion error and exit with its code."""
    if as_json:
        click.echo(json.dumps({"ok": False, "error": error.to_dict()}, indent=2))
    else:
        click.secho(f"❌ [{error.kind}] {error.message}", fg="red", err=True)
        if error.retryable:
            click.secho("   (retryable — try again later)", fg="yellow", err=True)
    sys.exit(EXIT_RETRYABLE if error.retryable else EXIT_FATAL)


def fail_config(error: ConfigError, as_json: bool) -> NoReturn:
    if as_json:
        click.echo(json.dumps({"ok": False, "error": {"kind": "config_error", "message": str(error)}}, indent=2))
    else:
        click.secho(f"❌ {error}", fg="red", err=True)
    sys.exit(EXIT_FATAL)


def echo_result(
    result: PublishResult,
    as_json: bool,
    extra: dict[str, Any] | None = None,
    exit_on_failure: bool = True,
) -> None:
    """Print a publish result; exit non-zero for rejected reviews."""
    if as_json:
        click.echo(json.dumps({"ok": result.ok, **result.model_dump(mode="json"), **(extra or {})}, indent=2))
    else:
        icon, color = _STATUS_STYLE.get(result.status, ("•", "white"))
        click.secho(f"{icon} {result.environment}: {result.status}", fg=color, bold=True)
        if result.revision:
            click.echo(f"   Revision: {result.revision}")
        if result.review_id:
            click.echo(f"   Review: {result.review_id}")
        if result.message:
            click.echo(f"   {result.message}")
    if exit_on_failure and not result.ok:
        sys.exit(EXIT_FATAL)
