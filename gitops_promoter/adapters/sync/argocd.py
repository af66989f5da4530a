"""
ArgoCD sync controller — reconciliation status through the ``argocd`` CLI.

The engine never writes to ArgoCD's desired state; it only reads
status, asks for a sync of a manual environment, or renders a diff.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from typing import Any

from gitops_promoter.adapters.base import SyncController
from gitops_promoter.core.config.loader import EnvironmentRegistry
from gitops_promoter.core.errors import ExternalToolError
from gitops_promoter.core.models.sync import SyncState, SyncStatus

logger = logging.getLogger(__name__)


def run_argocd(*args: str, timeout: int = 60) -> subprocess.CompletedProcess[str]:
    """Run an argocd command and return the result."""
    try:
        return subprocess.run(
            ["argocd", *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise ExternalToolError("argocd CLI is not installed", tool="argocd") from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(f"argocd {args[0]} timed out after {timeout}s", tool="argocd") from e


def to_sync_state(environment: str, app: dict[str, Any]) -> SyncState:
    """Map an ``argocd app get -o json`` document onto a SyncState."""
    status = app.get("status") or {}
    sync = status.get("sync") or {}
    health = (status.get("health") or {}).get("status", "")
    operation = status.get("operationState") or {}
    history = status.get("history") or []

    live = (operation.get("syncResult") or {}).get("revision")
    if not live and history:
        live = history[-1].get("revision")

    if health in ("Degraded", "Missing"):
        state = SyncStatus.DEGRADED
    elif health == "Progressing" or operation.get("phase") == "Running":
        state = SyncStatus.PROGRESSING
    elif sync.get("status") == "Synced":
        state = SyncStatus.SYNCED
    else:
        state = SyncStatus.OUT_OF_SYNC

    return SyncState(
        environment=environment,
        desired_revision=sync.get("revision"),
        live_revision=live,
        status=state,
        message=operation.get("message", "") or health,
    )


class ArgoCDSyncController(SyncController):
    """SyncController over ArgoCD applications (one per environment)."""

    def __init__(self, environments: EnvironmentRegistry, sync_timeout: int = 300):
        self._environments = environments
        self._sync_timeout = sync_timeout

    @property
    def name(self) -> str:
        return "argocd"

    def is_available(self) -> bool:
        return shutil.which("argocd") is not None

    def _app(self, environment: str) -> str:
        env = self._environments.get(environment)
        return env.argocd_app or env.namespace

    def _argocd(self, *args: str, timeout: int = 60, ok_codes: tuple[int, ...] = (0,)) -> str:
        r = run_argocd(*args, timeout=timeout)
        if r.returncode not in ok_codes:
            raise ExternalToolError(
                f"argocd {' '.join(args[:2])} failed: {r.stderr.strip() or r.stdout.strip()}",
                tool="argocd",
            )
        return r.stdout

    def get(self, environment: str) -> SyncState:
        app = self._app(environment)
        out = self._argocd("app", "get", app, "-o", "json")
        try:
            data = json.loads(out)
        except json.JSONDecodeError as e:
            raise ExternalToolError(f"Unreadable argocd output for {app}: {e}", tool="argocd") from e
        return to_sync_state(environment, data)

    def sync(self, environment: str, force: bool = False) -> SyncState:
        app = self._app(environment)
        args = ["app", "sync", app, "--prune", "--timeout", str(self._sync_timeout)]
        if force:
            args.append("--force")
        logger.info("Syncing %s (%s)%s", environment, app, " [force]" if force else "")
        self._argocd(*args, timeout=self._sync_timeout + 30)
        return self.get(environment)

    def diff(self, environment: str) -> str:
        # Exit code 1 means "differences found", not failure
        return self._argocd("app", "diff", self._app(environment), ok_codes=(0, 1))
