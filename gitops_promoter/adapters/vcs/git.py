"""
Git configuration store — the versioned tree on a real repository.

Commits are built with plumbing against a throwaway index, so the
working tree and the user's index are never touched:

    read-tree parent → hash-object + update-index → write-tree
    → commit-tree → update-ref <new> <parent>      (compare-and-swap)
    → push (if a remote is configured)              (rejected → rollback)

A concurrent writer shows up either as a failed ``update-ref`` (local)
or as a rejected push (remote); both surface as PublishConflict.
Run it against a dedicated clone: refs move underneath any checkout.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path

from gitops_promoter.adapters.base import Commit, ConfigStore
from gitops_promoter.core.errors import ExternalToolError, PublishConflict

logger = logging.getLogger(__name__)

_DEFAULT_NAME = "gitops-promoter"
_DEFAULT_EMAIL = "gitops-promoter@localhost"


def run_git(
    *args: str,
    cwd: Path,
    timeout: int = 30,
    stdin: str | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the result."""
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
            input=stdin,
            env={**os.environ, **env} if env else None,
        )
    except FileNotFoundError as e:
        raise ExternalToolError("git is not installed", tool="git") from e
    except subprocess.TimeoutExpired as e:
        raise ExternalToolError(f"git {args[0]} timed out after {timeout}s", tool="git") from e


class GitConfigStore(ConfigStore):
    """ConfigStore over a local git repository, optionally pushing to a remote.

    Args:
        repo_root: Repository directory.
        trunk: Branch the sync controller watches.
        remote: Remote to push to and fetch from; None keeps everything local.
    """

    def __init__(self, repo_root: Path, trunk: str = "main", remote: str | None = None):
        self.repo_root = Path(repo_root)
        self.trunk = trunk
        self.remote = remote
        self._identity: dict[str, str] | None = None

    @property
    def name(self) -> str:
        return "git"

    def is_available(self) -> bool:
        if shutil.which("git") is None:
            return False
        return run_git("rev-parse", "--git-dir", cwd=self.repo_root).returncode == 0

    # ── Helpers ──────────────────────────────────────────────────

    def _git(self, *args: str, stdin: str | None = None, env: dict[str, str] | None = None) -> str:
        """Run git and return stdout; raise ExternalToolError on failure."""
        r = run_git(*args, cwd=self.repo_root, stdin=stdin, env=env)
        if r.returncode != 0:
            raise ExternalToolError(
                f"git {args[0]} failed: {r.stderr.strip() or r.stdout.strip()}",
                tool="git",
                args=list(args),
            )
        return r.stdout

    def _rev(self, ref: str) -> str | None:
        r = run_git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", cwd=self.repo_root)
        return r.stdout.strip() if r.returncode == 0 else None

    def _identity_env(self, author: str = "") -> dict[str, str]:
        """Author/committer environment; falls back to a tool identity."""
        if self._identity is None:
            configured = run_git("config", "user.email", cwd=self.repo_root).returncode == 0
            self._identity = {} if configured else {
                "GIT_AUTHOR_NAME": _DEFAULT_NAME,
                "GIT_AUTHOR_EMAIL": _DEFAULT_EMAIL,
                "GIT_COMMITTER_NAME": _DEFAULT_NAME,
                "GIT_COMMITTER_EMAIL": _DEFAULT_EMAIL,
            }
        env = dict(self._identity)
        if author:
            env["GIT_AUTHOR_NAME"] = author
        return env

    def _write_commit(
        self,
        parent: str,
        message: str,
        *,
        files: dict[str, str] | None = None,
        removed: list[str] | None = None,
        extra_parents: tuple[str, ...] = (),
        tree: str | None = None,
        author: str = "",
    ) -> str:
        """Create a commit object on top of ``parent`` without touching any ref."""
        if tree is None:
            with tempfile.TemporaryDirectory(prefix="promoter-index-") as tmp:
                index_env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
                self._git("read-tree", parent, env=index_env)
                for path, content in (files or {}).items():
                    blob = self._git("hash-object", "-w", "--stdin", stdin=content).strip()
                    self._git("update-index", "--add", "--cacheinfo", f"100644,{blob},{path}", env=index_env)
                for path in removed or []:
                    self._git("update-index", "--force-remove", path, env=index_env)
                tree = self._git("write-tree", env=index_env).strip()

        args = ["commit-tree", tree, "-p", parent]
        for extra in extra_parents:
            args += ["-p", extra]
        return self._git(*args, stdin=message, env=self._identity_env(author)).strip()

    def _advance(self, branch: str, new: str, old: str) -> None:
        """Move ``branch`` from ``old`` to ``new`` and publish it."""
        ref = f"refs/heads/{branch}"
        r = run_git("update-ref", ref, new, old, cwd=self.repo_root)
        if r.returncode != 0:
            raise PublishConflict(
                f"Branch '{branch}' moved concurrently: {r.stderr.strip()}", branch=branch
            )
        if self.remote is None:
            return

        push = ["push", "--porcelain", self.remote, f"{new}:{ref}"]
        if branch != self.trunk:
            push.insert(1, "--force")
        r = run_git(*push, cwd=self.repo_root, timeout=60)
        if r.returncode != 0:
            run_git("update-ref", ref, old, new, cwd=self.repo_root)
            message = f"{r.stdout.strip()}\n{r.stderr.strip()}".strip()
            if "rejected" in message or "non-fast-forward" in message or "fetch first" in message:
                raise PublishConflict(
                    f"Push of '{branch}' rejected; remote moved ahead", branch=branch
                )
            raise ExternalToolError(f"git push failed: {message}", tool="git")
        logger.debug("Pushed %s → %s/%s", new[:12], self.remote, branch)

    # ── ConfigStore ──────────────────────────────────────────────

    def head(self, branch: str | None = None) -> str | None:
        return self._rev(f"refs/heads/{branch or self.trunk}")

    def read_file(self, path: str, ref: str | None = None) -> str | None:
        r = run_git("show", f"{ref or self.trunk}:{path}", cwd=self.repo_root)
        if r.returncode != 0:
            return None
        return r.stdout

    def commit(
        self,
        files: dict[str, str],
        message: str,
        *,
        branch: str | None = None,
        expected: dict[str, str | None] | None = None,
        author: str = "",
    ) -> str:
        branch = branch or self.trunk
        parent = self.head(branch)
        if parent is None:
            raise PublishConflict(f"Branch '{branch}' does not exist", branch=branch)

        for path, content in (expected or {}).items():
            if self.read_file(path, parent) != content:
                raise PublishConflict(f"{path} changed on '{branch}' since it was read", path=path)

        sha = self._write_commit(parent, message, files=files, author=author)
        self._advance(branch, sha, parent)
        logger.info("Committed %s on %s", sha[:12], branch)
        return sha

    def create_branch(self, branch: str, from_ref: str | None = None) -> None:
        sha = self._rev(from_ref or f"refs/heads/{self.trunk}")
        if sha is None:
            raise ExternalToolError(f"Unknown ref: {from_ref or self.trunk}", tool="git")
        self._git("update-ref", f"refs/heads/{branch}", sha)

    def delete_branch(self, branch: str) -> None:
        if branch == self.trunk or self.head(branch) is None:
            return
        self._git("update-ref", "-d", f"refs/heads/{branch}")
        if self.remote is not None:
            r = run_git("push", self.remote, "--delete", branch, cwd=self.repo_root, timeout=60)
            if r.returncode != 0:
                logger.warning("Could not delete %s/%s: %s", self.remote, branch, r.stderr.strip())

    def merge(self, branch: str, message: str, *, into: str | None = None) -> str:
        into = into or self.trunk
        theirs = self.head(branch)
        ours = self.head(into)
        if theirs is None or ours is None:
            raise PublishConflict(f"Cannot merge '{branch}' into '{into}': missing branch")

        r = run_git("merge-tree", "--write-tree", ours, theirs, cwd=self.repo_root)
        if r.returncode == 1:
            raise PublishConflict(f"Merge conflict between '{branch}' and '{into}'", branch=branch)
        if r.returncode != 0:
            raise ExternalToolError(f"git merge-tree failed: {r.stderr.strip()}", tool="git")
        tree = r.stdout.splitlines()[0].strip()

        sha = self._write_commit(ours, message, tree=tree, extra_parents=(theirs,))
        self._advance(into, sha, ours)
        logger.info("Merged %s into %s: %s", branch, into, sha[:12])
        return sha

    def revert(self, sha: str, message: str = "") -> str:
        target = self._rev(sha)
        if target is None:
            raise ExternalToolError(f"Unknown revision: {sha}", tool="git")
        before = self._rev(f"{target}^")
        if before is None:
            raise PublishConflict(f"Cannot revert root commit {target[:7]}")

        head = self.head()
        assert head is not None
        changed = [
            p for p in self._git("diff-tree", "--no-commit-id", "--name-only", "-r", target).splitlines() if p
        ]
        files: dict[str, str] = {}
        removed: list[str] = []
        for path in changed:
            if self.read_file(path, head) != self.read_file(path, target):
                raise PublishConflict(f"{path} changed after {target[:7]}; revert by hand", path=path)
            previous = self.read_file(path, before)
            if previous is None:
                removed.append(path)
            else:
                files[path] = previous

        subject = self._git("log", "-1", "--format=%s", target).strip()
        new = self._write_commit(
            head,
            message or f'Revert "{subject}"\n\nThis reverts commit {target}.\n',
            files=files,
            removed=removed,
        )
        self._advance(self.trunk, new, head)
        return new

    def refresh(self) -> None:
        """Fetch trunk and move the local branch to the remote tip."""
        if self.remote is None:
            return
        tracking = f"refs/remotes/{self.remote}/{self.trunk}"
        self._git("fetch", "--quiet", self.remote, f"+refs/heads/{self.trunk}:{tracking}")
        remote_head = self._rev(tracking)
        local_head = self.head()
        if remote_head is None or remote_head == local_head:
            return
        if local_head is not None:
            r = run_git("merge-base", "--is-ancestor", local_head, remote_head, cwd=self.repo_root)
            if r.returncode != 0:
                logger.warning("Local %s diverged from %s; resetting to remote", self.trunk, self.remote)
        self._git("update-ref", f"refs/heads/{self.trunk}", remote_head)
        logger.debug("Refreshed %s to %s", self.trunk, remote_head[:12])

    def log(self, n: int = 10, branch: str | None = None) -> list[Commit]:
        ref = f"refs/heads/{branch or self.trunk}"
        if self._rev(ref) is None:
            return []
        out = self._git("log", f"-{n}", "--name-only", "--format=%x1e%H%x1f%an%x1f%P%x1f%s", ref)
        commits = []
        for record in out.split("\x1e"):
            lines = record.strip("\n").splitlines()
            if not lines:
                continue
            sha, author, parents, subject = (lines[0].split("\x1f") + ["", "", ""])[:4]
            commits.append(Commit(
                sha=sha,
                message=subject,
                author=author,
                parents=tuple(parents.split()),
                files=tuple(line for line in lines[1:] if line.strip()),
            ))
        return commits


def detect_remote(repo_root: Path, preferred: str = "origin") -> str | None:
    """The remote to publish to, or None when the repository has none."""
    r = run_git("remote", cwd=repo_root)
    if r.returncode != 0:
        return None
    remotes = r.stdout.split()
    if preferred in remotes:
        return preferred
    return remotes[0] if remotes else None


def repo_slug(repo_root: Path, remote: str = "origin") -> str | None:
    """Get the GitHub owner/repo slug from a git remote."""
    r = run_git("remote", "get-url", remote, cwd=repo_root)
    if r.returncode != 0:
        return None
    url = r.stdout.strip()
    # Handle SSH: git@github.com:owner/repo.git
    if url.startswith("git@"):
        url = url.split(":", 1)[1]
    # Handle HTTPS: https://github.com/owner/repo.git
    elif "github.com/" in url:
        url = url.split("github.com/", 1)[1]
    else:
        return None
    return url.removesuffix(".git")
