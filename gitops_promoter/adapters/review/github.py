"""
GitHub review system — pull requests through the ``gh`` CLI.

Review requests are pull requests from ``promote/<env>/<sha>`` branches
into trunk. The promotion metadata (environment, fingerprint, base
values) rides in a hidden HTML comment in the PR body, so the engine
can rebuild a ReviewRequest from GitHub alone.

Approver groups are not GitHub teams: an approval counts for every
group in ``approver_groups`` (promotion.yml) its author belongs to.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable

from gitops_promoter.adapters.base import ConfigStore, ReviewSystem
from gitops_promoter.core.errors import ExternalToolError, ReviewNotFound
from gitops_promoter.core.models.review import Approval, ReviewRequest, ReviewState

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"<!--\s*promoter:\s*(\{.*?\})\s*-->", re.DOTALL)
_PR_FIELDS = "number,state,headRefName,title,body,url,reviews,mergeCommit"


def run_gh(
    *args: str,
    cwd: Path,
    timeout: int = 30,
    stdin: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a gh CLI command and return the result."""
    try:
        return subprocess.run(
            ["gh", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            input=stdin,
        )
    except FileNotFoundError as e:
        raise ExternalToolError("gh CLI is not installed", tool="gh") from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(f"gh {args[0]} timed out after {timeout}s", tool="gh") from e


def parse_marker(body: str) -> dict[str, Any]:
    """Promotion metadata embedded in a PR body, or {} if absent."""
    match = _MARKER_RE.search(body or "")
    if not match:
        return {}
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError:
        logger.warning("Unreadable promoter marker in PR body")
        return {}
    return data if isinstance(data, dict) else {}


def _environment_from_branch(branch: str) -> str:
    # promote/<env>/<short-sha>
    parts = branch.split("/")
    return parts[1] if len(parts) >= 3 and parts[0] == "promote" else ""


class GitHubReviewSystem(ReviewSystem):
    """ReviewSystem backed by GitHub pull requests.

    Args:
        repo_root: Local clone the ``gh`` CLI runs in.
        store: Config store to refresh after a merge lands on GitHub.
        groups_of: reviewer login → approver groups.
    """

    def __init__(
        self,
        repo_root: Path,
        store: ConfigStore,
        groups_of: Callable[[str], frozenset[str]],
    ):
        self.repo_root = Path(repo_root)
        self._store = store
        self._groups_of = groups_of

    @property
    def name(self) -> str:
        return "github"

    def is_available(self) -> bool:
        if shutil.which("gh") is None:
            return False
        return run_gh("auth", "status", cwd=self.repo_root).returncode == 0

    # ── Helpers ──────────────────────────────────────────────────

    def _gh(self, *args: str, stdin: str | None = None, review_id: str | None = None) -> str:
        r = run_gh(*args, cwd=self.repo_root, stdin=stdin)
        if r.returncode != 0:
            err = r.stderr.strip() or r.stdout.strip()
            if review_id is not None and ("no pull requests found" in err.lower() or "could not resolve" in err.lower()):
                raise ReviewNotFound(f"No pull request #{review_id}", review_id=review_id)
            raise ExternalToolError(f"gh {' '.join(args[:2])} failed: {err}", tool="gh")
        return r.stdout

    def to_review(self, data: dict[str, Any]) -> ReviewRequest:
        """Build a ReviewRequest from ``gh pr view/list --json`` output."""
        meta = parse_marker(data.get("body", ""))
        branch = data.get("headRefName", "")

        # Latest review per author decides; earlier ones are superseded
        latest: dict[str, str] = {}
        for review in data.get("reviews") or []:
            login = (review.get("author") or {}).get("login", "")
            if login and review.get("state") in ("APPROVED", "CHANGES_REQUESTED", "DISMISSED"):
                latest[login] = review["state"]
        approvals = tuple(
            Approval(reviewer=login, groups=self._groups_of(login))
            for login, state in sorted(latest.items())
            if state == "APPROVED"
        )
        # A change request keeps the PR open on GitHub, so it blocks the gate
        # instead of ending the review.
        changes_requested = tuple(
            login for login, state in sorted(latest.items()) if state == "CHANGES_REQUESTED"
        )

        gh_state = data.get("state", "OPEN")
        if gh_state == "MERGED":
            state = ReviewState.MERGED
        elif gh_state == "CLOSED":
            state = ReviewState.CLOSED
        elif approvals and not changes_requested:
            state = ReviewState.APPROVED
        else:
            state = ReviewState.OPEN

        merge_commit = data.get("mergeCommit") or {}
        return ReviewRequest(
            review_id=str(data["number"]),
            environment=meta.get("environment") or _environment_from_branch(branch),
            branch=branch,
            title=data.get("title", ""),
            body=data.get("body", ""),
            fingerprint=meta.get("fingerprint", ""),
            state=state,
            approvals=approvals,
            changes_requested=changes_requested,
            base_values=meta.get("base") or {},
            merge_revision=merge_commit.get("oid"),
            url=data.get("url", ""),
        )

    # ── ReviewSystem ─────────────────────────────────────────────

    def open_review(
        self,
        *,
        environment: str,
        branch: str,
        base: str,
        title: str,
        body: str,
        fingerprint: str,
        base_values: dict[str, str | None],
    ) -> ReviewRequest:
        out = self._gh(
            "pr", "create",
            "--base", base,
            "--head", branch,
            "--title", title,
            "--body-file", "-",
            stdin=body,
        )
        url = out.strip().splitlines()[-1] if out.strip() else ""
        number = url.rstrip("/").rsplit("/", 1)[-1]
        if not number.isdigit():
            raise ExternalToolError(f"Unexpected gh pr create output: {out.strip()}", tool="gh")
        logger.info("Opened PR #%s for %s: %s", number, environment, url)
        return self.get_review(number)

    def get_review(self, review_id: str) -> ReviewRequest:
        out = self._gh("pr", "view", review_id, "--json", _PR_FIELDS, review_id=review_id)
        return self.to_review(json.loads(out))

    def list_open(self, environment: str) -> list[ReviewRequest]:
        out = self._gh(
            "pr", "list",
            "--state", "open",
            "--base", self._store.trunk,
            "--limit", "100",
            "--json", _PR_FIELDS,
        )
        prefix = f"promote/{environment}/"
        return [
            self.to_review(pr)
            for pr in json.loads(out or "[]")
            if pr.get("headRefName", "").startswith(prefix)
        ]

    def merge_review(self, review_id: str) -> str:
        self._gh("pr", "merge", review_id, "--merge", "--delete-branch", review_id=review_id)
        review = self.get_review(review_id)
        if not review.merge_revision:
            raise ExternalToolError(
                f"PR #{review_id} was accepted but not merged yet (merge queue?)", tool="gh"
            )
        self._store.refresh()
        return review.merge_revision

    def close_review(self, review_id: str, reason: str = "") -> None:
        review = self.get_review(review_id)
        if review.state.terminal:
            return
        args = ["pr", "close", review_id, "--delete-branch"]
        if reason:
            args += ["--comment", reason]
        self._gh(*args, review_id=review_id)
        logger.info("Closed PR #%s: %s", review_id, reason or "no reason given")
