"""
Adapter base — the contracts between the engine and external systems.

The engine only talks to the outside world through these four
interfaces, never directly to git, GitHub, ArgoCD or a registry:

    ArtifactRegistry   — does this image tag exist?
    ConfigStore        — the versioned configuration tree (the only writer target)
    ReviewSystem       — review requests for manual-sync environments
    SyncController     — reconciliation status (ArgoCD)

Unlike fire-and-forget adapters, these raise the typed errors from
``gitops_promoter.core.errors`` so the engine can tell retryable
failures from fatal ones.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from gitops_promoter.core.models.review import ReviewRequest
from gitops_promoter.core.models.sync import SyncState


class Adapter(ABC):
    """Common identity for every adapter."""

    @property
    @abstractmethod
    def name(self) -> str:
        """The adapter identifier (e.g., 'git', 'github', 'argocd')."""

    def is_available(self) -> bool:
        """Whether the underlying tool/service can be used. Never raises."""
        return True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


class ArtifactRegistry(Adapter):
    """Read-only view of an OCI artifact registry."""

    @abstractmethod
    def list_tags(self, repository: str) -> set[str]:
        """All tags of a repository.

        Raises:
            RegistryUnavailableError: Registry unreachable or erroring.
        """

    @abstractmethod
    def manifest_exists(self, repository: str, tag: str) -> bool:
        """Whether ``repository:tag`` has a manifest.

        Returns False only for a genuine absence (404).

        Raises:
            RegistryUnavailableError: Registry unreachable or erroring.
        """


@dataclass(frozen=True)
class Commit:
    """A commit in the configuration store."""

    sha: str
    message: str
    author: str = ""
    parents: tuple[str, ...] = ()
    files: tuple[str, ...] = field(default_factory=tuple)


class ConfigStore(Adapter):
    """The versioned configuration tree.

    Writes are compare-and-swap: ``commit`` takes the file contents the
    caller based its change on and raises PublishConflict when the
    branch has moved underneath it.
    """

    trunk: str = "main"

    @abstractmethod
    def head(self, branch: str | None = None) -> str | None:
        """Commit SHA at the tip of ``branch`` (default: trunk), or None."""

    @abstractmethod
    def read_file(self, path: str, ref: str | None = None) -> str | None:
        """File contents at ``ref`` (branch or SHA, default trunk), or None."""

    @abstractmethod
    def commit(
        self,
        files: dict[str, str],
        message: str,
        *,
        branch: str | None = None,
        expected: dict[str, str | None] | None = None,
        author: str = "",
    ) -> str:
        """Write ``files`` on ``branch`` as one commit and return its SHA.

        Raises:
            PublishConflict: If any path's current content differs from
                ``expected`` or the branch moved concurrently.
        """

    @abstractmethod
    def create_branch(self, branch: str, from_ref: str | None = None) -> None:
        """Create (or reset) ``branch`` at ``from_ref`` (default trunk)."""

    @abstractmethod
    def delete_branch(self, branch: str) -> None:
        """Delete a branch if it exists."""

    @abstractmethod
    def merge(self, branch: str, message: str, *, into: str | None = None) -> str:
        """Merge ``branch`` into ``into`` (default trunk); return the merge SHA.

        Raises:
            PublishConflict: If the merge does not apply cleanly.
        """

    @abstractmethod
    def revert(self, sha: str, message: str = "") -> str:
        """Add a commit on trunk undoing ``sha``; return the new SHA."""

    @abstractmethod
    def refresh(self) -> None:
        """Bring the local view up to date with the remote, if any."""

    @abstractmethod
    def log(self, n: int = 10, branch: str | None = None) -> list[Commit]:
        """Most recent commits on ``branch``, newest first."""


class ReviewSystem(Adapter):
    """Review requests (pull requests) for manual-sync environments."""

    @abstractmethod
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
        """Open a review request for ``branch`` against ``base``."""

    @abstractmethod
    def get_review(self, review_id: str) -> ReviewRequest:
        """Current state of a review request.

        Raises:
            ReviewNotFound: Unknown review ID.
        """

    @abstractmethod
    def list_open(self, environment: str) -> list[ReviewRequest]:
        """Non-terminal review requests for an environment."""

    @abstractmethod
    def merge_review(self, review_id: str) -> str:
        """Merge a review request; return the resulting trunk SHA."""

    @abstractmethod
    def close_review(self, review_id: str, reason: str = "") -> None:
        """Close a review request without merging."""


class SyncController(Adapter):
    """Reconciliation controller interface (ArgoCD)."""

    @abstractmethod
    def get(self, environment: str) -> SyncState:
        """Desired vs live state of an environment."""

    @abstractmethod
    def sync(self, environment: str, force: bool = False) -> SyncState:
        """Apply desired state now."""

    @abstractmethod
    def diff(self, environment: str) -> str:
        """Human-readable difference between desired and live state."""
