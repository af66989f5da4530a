"""
In-memory adapters — test doubles and ``--mock`` mode.

    InMemoryArtifactRegistry  — tags per repository; can fail or stall on demand
    InMemoryConfigStore       — append-only commit log with branches
    InMemoryReviewSystem      — review requests over an InMemoryConfigStore
    InMemorySyncController    — reconciler reading the latest trunk snapshot

The config store is the reference model of the versioned tree: every
commit is an immutable snapshot, branches are pointers, and the sync
controller only ever reads the newest trunk snapshot.
"""

from __future__ import annotations

import difflib
import hashlib
import itertools
import threading
import time
from dataclasses import dataclass, field

from gitops_promoter.adapters.base import (
    ArtifactRegistry,
    Commit,
    ConfigStore,
    ReviewSystem,
    SyncController,
)
from gitops_promoter.core.config.loader import EnvironmentRegistry
from gitops_promoter.core.errors import (
    PublishConflict,
    RegistryUnavailableError,
    ReviewNotFound,
)
from gitops_promoter.core.models.environment import AutoSync
from gitops_promoter.core.models.review import Approval, ReviewRequest, ReviewState, can_transition
from gitops_promoter.core.models.sync import SyncState, SyncStatus


# ═══════════════════════════════════════════════════════════════════
#  Artifact registry
# ═══════════════════════════════════════════════════════════════════


class InMemoryArtifactRegistry(ArtifactRegistry):
    """Registry double.

    Args:
        images: repository → tags that exist.
        permissive: If True, every tag exists (``--mock`` mode).
        delay: Seconds each lookup sleeps (forced-delay injection).
    """

    def __init__(
        self,
        images: dict[str, set[str]] | None = None,
        permissive: bool = False,
        delay: float = 0.0,
    ):
        self._images = {repo: set(tags) for repo, tags in (images or {}).items()}
        self._permissive = permissive
        self._delay = delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "memory-registry"

    def push(self, repository: str, tag: str) -> None:
        with self._lock:
            self._images.setdefault(repository, set()).add(tag)

    def fail_next(self, repository: str, times: int = 1) -> None:
        """Make the next ``times`` lookups for a repository raise unavailable."""
        with self._lock:
            self._failures[repository] = times

    def _maybe_fail(self, repository: str) -> None:
        with self._lock:
            remaining = self._failures.get(repository, 0)
            if remaining:
                self._failures[repository] = remaining - 1
                raise RegistryUnavailableError(
                    f"Registry unavailable for {repository}", repository=repository
                )

    def list_tags(self, repository: str) -> set[str]:
        self._maybe_fail(repository)
        with self._lock:
            return set(self._images.get(repository, set()))

    def manifest_exists(self, repository: str, tag: str) -> bool:
        with self._lock:
            self.calls.append((repository, tag))
        if self._delay:
            time.sleep(self._delay)
        self._maybe_fail(repository)
        if self._permissive:
            return True
        with self._lock:
            return tag in self._images.get(repository, set())


# ═══════════════════════════════════════════════════════════════════
#  Configuration store
# ═══════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class _Snapshot:
    commit: Commit
    files: dict[str, str] = field(default_factory=dict)


class InMemoryConfigStore(ConfigStore):
    """Append-only commit log with named branches."""

    def __init__(self, files: dict[str, str] | None = None, trunk: str = "main"):
        self.trunk = trunk
        self._lock = threading.RLock()
        self._counter = itertools.count(1)
        self._snapshots: dict[str, _Snapshot] = {}
        self._order: list[str] = []
        self._branches: dict[str, str] = {}
        self._fork_points: dict[str, str] = {}
        root = self._append(dict(files or {}), "initial configuration", parents=(), author="")
        self._branches[trunk] = root

    @property
    def name(self) -> str:
        return "memory-store"

    # ── Internal ─────────────────────────────────────────────────

    def _append(
        self,
        files: dict[str, str],
        message: str,
        *,
        parents: tuple[str, ...],
        author: str,
        changed: tuple[str, ...] = (),
    ) -> str:
        seed = f"{next(self._counter)}\0{message}\0{','.join(parents)}"
        sha = hashlib.sha1(seed.encode()).hexdigest()
        commit = Commit(sha=sha, message=message, author=author, parents=parents, files=changed)
        self._snapshots[sha] = _Snapshot(commit=commit, files=files)
        self._order.append(sha)
        return sha

    def _resolve(self, ref: str | None) -> str:
        ref = ref or self.trunk
        if ref in self._branches:
            return self._branches[ref]
        if ref in self._snapshots:
            return ref
        matches = [sha for sha in self._snapshots if sha.startswith(ref)]
        if len(matches) == 1:
            return matches[0]
        raise KeyError(f"Unknown ref: {ref}")

    def files_at(self, ref: str | None = None) -> dict[str, str]:
        with self._lock:
            return dict(self._snapshots[self._resolve(ref)].files)

    # ── ConfigStore ──────────────────────────────────────────────

    def head(self, branch: str | None = None) -> str | None:
        with self._lock:
            return self._branches.get(branch or self.trunk)

    def read_file(self, path: str, ref: str | None = None) -> str | None:
        with self._lock:
            return self._snapshots[self._resolve(ref)].files.get(path)

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
        with self._lock:
            parent = self._branches.get(branch)
            if parent is None:
                raise PublishConflict(f"Branch '{branch}' does not exist", branch=branch)
            current = self._snapshots[parent].files
            for path, content in (expected or {}).items():
                if current.get(path) != content:
                    raise PublishConflict(
                        f"{path} changed on '{branch}' since it was read", path=path
                    )
            updated = dict(current)
            updated.update(files)
            changed = tuple(p for p in files if current.get(p) != files[p])
            sha = self._append(updated, message, parents=(parent,), author=author, changed=changed)
            self._branches[branch] = sha
            return sha

    def create_branch(self, branch: str, from_ref: str | None = None) -> None:
        with self._lock:
            sha = self._resolve(from_ref)
            self._branches[branch] = sha
            self._fork_points[branch] = sha

    def delete_branch(self, branch: str) -> None:
        with self._lock:
            if branch != self.trunk:
                self._branches.pop(branch, None)
                self._fork_points.pop(branch, None)

    def merge(self, branch: str, message: str, *, into: str | None = None) -> str:
        into = into or self.trunk
        with self._lock:
            if branch not in self._branches:
                raise PublishConflict(f"Branch '{branch}' does not exist", branch=branch)
            source = self._snapshots[self._branches[branch]].files
            target_head = self._branches[into]
            target = self._snapshots[target_head].files
            fork = self._snapshots[self._fork_points.get(branch, target_head)].files

            merged = dict(target)
            changed = []
            for path in set(source) | set(fork):
                ours, theirs, base = target.get(path), source.get(path), fork.get(path)
                if theirs == base or theirs == ours:
                    continue
                if ours != base:
                    raise PublishConflict(
                        f"Merge conflict on {path} between '{branch}' and '{into}'", path=path
                    )
                if theirs is None:
                    merged.pop(path, None)
                else:
                    merged[path] = theirs
                changed.append(path)

            sha = self._append(
                merged,
                message,
                parents=(target_head, self._branches[branch]),
                author="",
                changed=tuple(sorted(changed)),
            )
            self._branches[into] = sha
            return sha

    def revert(self, sha: str, message: str = "") -> str:
        with self._lock:
            target_sha = self._resolve(sha)
            snap = self._snapshots[target_sha]
            if not snap.commit.parents:
                raise PublishConflict(f"Cannot revert root commit {target_sha[:7]}")
            before = self._snapshots[snap.commit.parents[0]].files
            head = self._branches[self.trunk]
            current = self._snapshots[head].files

            restored = dict(current)
            for path in snap.commit.files:
                if current.get(path) != snap.files.get(path):
                    raise PublishConflict(
                        f"{path} changed after {target_sha[:7]}; revert by hand", path=path
                    )
                if path in before:
                    restored[path] = before[path]
                else:
                    restored.pop(path, None)

            new_sha = self._append(
                restored,
                message or f'Revert "{snap.commit.message.splitlines()[0]}"',
                parents=(head,),
                author="",
                changed=snap.commit.files,
            )
            self._branches[self.trunk] = new_sha
            return new_sha

    def refresh(self) -> None:
        return None

    def log(self, n: int = 10, branch: str | None = None) -> list[Commit]:
        with self._lock:
            commits = []
            sha: str | None = self._branches.get(branch or self.trunk)
            while sha and len(commits) < n:
                commit = self._snapshots[sha].commit
                commits.append(commit)
                sha = commit.parents[0] if commit.parents else None
            return commits


# ═══════════════════════════════════════════════════════════════════
#  Review system
# ═══════════════════════════════════════════════════════════════════


class InMemoryReviewSystem(ReviewSystem):
    """Review requests whose branches live in a ConfigStore."""

    def __init__(self, store: ConfigStore):
        self._store = store
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._reviews: dict[str, ReviewRequest] = {}

    @property
    def name(self) -> str:
        return "memory-review"

    def _set_state(self, review_id: str, state: ReviewState, **updates) -> ReviewRequest:
        review = self._get(review_id)
        if review.state != state and not can_transition(review.state, state):
            raise ValueError(f"Review {review_id}: {review.state} → {state} not allowed")
        updated = review.model_copy(update={"state": state, **updates})
        self._reviews[review_id] = updated
        return updated

    def _get(self, review_id: str) -> ReviewRequest:
        review = self._reviews.get(review_id)
        if review is None:
            raise ReviewNotFound(f"No review request '{review_id}'", review_id=review_id)
        return review

    # ── Test helpers (the "humans") ─────────────────────────────

    def approve(self, review_id: str, reviewer: str, groups: set[str] | frozenset[str] = frozenset()) -> None:
        with self._lock:
            review = self._get(review_id)
            approvals = tuple(a for a in review.approvals if a.reviewer != reviewer)
            approvals += (Approval(reviewer=reviewer, groups=frozenset(groups)),)
            state = ReviewState.APPROVED if review.state == ReviewState.OPEN else review.state
            self._set_state(review_id, state, approvals=approvals)

    def reject(self, review_id: str) -> None:
        with self._lock:
            self._set_state(review_id, ReviewState.REJECTED)

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
        with self._lock:
            review_id = str(next(self._ids))
            review = ReviewRequest(
                review_id=review_id,
                environment=environment,
                branch=branch,
                title=title,
                body=body,
                fingerprint=fingerprint,
                base_values=dict(base_values),
            )
            self._reviews[review_id] = review
            return review

    def get_review(self, review_id: str) -> ReviewRequest:
        with self._lock:
            return self._get(review_id)

    def list_open(self, environment: str) -> list[ReviewRequest]:
        with self._lock:
            return [
                r for r in self._reviews.values()
                if r.environment == environment and not r.state.terminal
            ]

    def merge_review(self, review_id: str) -> str:
        with self._lock:
            review = self._get(review_id)
            if not can_transition(review.state, ReviewState.MERGED):
                raise ValueError(f"Review {review_id} is {review.state}, cannot merge")
            sha = self._store.merge(review.branch, f"Merge review #{review_id}: {review.title}")
            self._set_state(review_id, ReviewState.MERGED, merge_revision=sha)
            self._store.delete_branch(review.branch)
            return sha

    def close_review(self, review_id: str, reason: str = "") -> None:
        with self._lock:
            review = self._get(review_id)
            if review.state.terminal:
                return
            body = f"{review.body}\n\nClosed: {reason}" if reason else review.body
            self._set_state(review_id, ReviewState.CLOSED, body=body)
            self._store.delete_branch(review.branch)


# ═══════════════════════════════════════════════════════════════════
#  Sync controller
# ═══════════════════════════════════════════════════════════════════


class InMemorySyncController(SyncController):
    """Reconciler over a config store's trunk.

    Desired state is always the newest trunk snapshot. Live state moves
    only through ``sync()`` — or ``reconcile()``, which syncs every
    auto-sync environment (self-heal + prune).
    """

    def __init__(self, store: ConfigStore, environments: EnvironmentRegistry):
        self._store = store
        self._environments = environments
        self._live: dict[str, str | None] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "memory-sync"

    def _overlay(self, environment: str, ref: str | None) -> str:
        env = self._environments.get(environment)
        if ref is None:
            return ""
        return self._store.read_file(self._environments.overlay_path(env), ref) or ""

    def get(self, environment: str) -> SyncState:
        desired = self._store.head()
        with self._lock:
            live = self._live.get(environment)
        in_sync = live is not None and self._overlay(environment, live) == self._overlay(environment, desired)
        return SyncState(
            environment=environment,
            desired_revision=desired,
            live_revision=live,
            status=SyncStatus.SYNCED if in_sync else SyncStatus.OUT_OF_SYNC,
        )

    def sync(self, environment: str, force: bool = False) -> SyncState:
        self._environments.get(environment)
        with self._lock:
            self._live[environment] = self._store.head()
        return self.get(environment)

    def reconcile(self) -> list[SyncState]:
        """Sync every auto-sync environment, as an automated controller would."""
        return [
            self.sync(env.name)
            for env in self._environments
            if isinstance(env.sync_policy, AutoSync)
        ]

    def diff(self, environment: str) -> str:
        with self._lock:
            live = self._live.get(environment)
        env = self._environments.get(environment)
        path = self._environments.overlay_path(env)
        before = self._overlay(environment, live).splitlines(keepends=True)
        after = self._overlay(environment, self._store.head()).splitlines(keepends=True)
        return "".join(difflib.unified_diff(before, after, f"live/{path}", f"desired/{path}"))
