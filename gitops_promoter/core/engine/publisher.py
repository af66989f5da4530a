"""
Change publisher — write a planned mutation to the configuration store.

The environment's sync policy picks the strategy:

    AutoSync   → DirectCommit:   compare-and-swap commit on trunk → Committed(sha)
    ManualSync → ReviewRequest:  branch + review request          → ReviewOpened(id)

Re-publishing is safe. If trunk already carries the new tags the
result is AlreadyPromoted; an open review for the identical change is
returned instead of opening a second one.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod

from gitops_promoter.adapters.base import ConfigStore, ReviewSystem
from gitops_promoter.core.config.loader import EnvironmentRegistry
from gitops_promoter.core.engine.approval import ApprovalGate
from gitops_promoter.core.engine.overlay import apply_edits, parse_image_key, read_image_tags
from gitops_promoter.core.errors import ApprovalPending, PolicyViolation, PublishConflict
from gitops_promoter.core.models.environment import AutoSync, Environment, ManualSync
from gitops_promoter.core.models.promotion import (
    ConfigurationMutation,
    PublishResult,
    short_sha,
)
from gitops_promoter.core.models.review import ReviewState

logger = logging.getLogger(__name__)

REVIEW_MARKER = "promoter"
REVIEW_BRANCH_PREFIX = "promote"


def review_branch(environment: str, source_commit: str) -> str:
    return f"{REVIEW_BRANCH_PREFIX}/{environment}/{short_sha(source_commit)}"


def commit_message(mutation: ConfigurationMutation, requested_by: str = "") -> str:
    """Commit message with machine-readable trailers for the audit trail."""
    edits = mutation.changed_edits
    tags = sorted({e.new_value for e in edits})
    services = ", ".join(parse_image_key(e.key) for e in edits)
    lines = [
        f"promote({mutation.environment}): {services} → {', '.join(tags)}",
        "",
    ]
    for e in edits:
        lines.append(f"  {e.file_path} {e.key}: {e.old_value} → {e.new_value}")
    lines += [
        "",
        f"Promote-Commit: {mutation.source_commit}",
        f"Promote-Environment: {mutation.environment}",
    ]
    if requested_by:
        lines.append(f"Requested-By: {requested_by}")
    return "\n".join(lines) + "\n"


def review_body(mutation: ConfigurationMutation, base_values: dict[str, str | None]) -> str:
    """Review description: the diff as a table plus a hidden metadata marker."""
    rows = [
        "| File | Key | From | To |",
        "|---|---|---|---|",
    ]
    for e in mutation.changed_edits:
        rows.append(f"| `{e.file_path}` | `{e.key}` | `{e.old_value}` | `{e.new_value}` |")
    meta = {
        "environment": mutation.environment,
        "source_commit": mutation.source_commit,
        "fingerprint": mutation.fingerprint,
        "base": base_values,
    }
    return (
        f"Promotes `{mutation.source_commit}` to **{mutation.environment}**.\n\n"
        + "\n".join(rows)
        + f"\n\n<!-- {REVIEW_MARKER}: {json.dumps(meta, sort_keys=True)} -->\n"
    )


class PublishStrategy(ABC):
    """How a mutation reaches trunk for one kind of sync policy."""

    @abstractmethod
    def publish(
        self,
        publisher: ChangePublisher,
        mutation: ConfigurationMutation,
        env: Environment,
        requested_by: str,
    ) -> PublishResult:
        """Write the mutation; return the publish outcome."""


class DirectCommit(PublishStrategy):
    """Commit straight to trunk."""

    def publish(
        self,
        publisher: ChangePublisher,
        mutation: ConfigurationMutation,
        env: Environment,
        requested_by: str,
    ) -> PublishResult:
        files, expected = publisher.render(mutation)
        sha = publisher.store.commit(
            files,
            commit_message(mutation, requested_by),
            expected=expected,
            author=requested_by,
        )
        logger.info("Committed %s to %s: %s", mutation.source_commit[:12], env.name, sha[:12])
        return PublishResult.committed(env.name, sha, message=f"Committed {sha[:12]}")


class ReviewRequestStrategy(PublishStrategy):
    """Open a review request; trunk changes only when it is merged."""

    def publish(
        self,
        publisher: ChangePublisher,
        mutation: ConfigurationMutation,
        env: Environment,
        requested_by: str,
    ) -> PublishResult:
        reviews = publisher.require_reviews(env)
        store = publisher.store

        open_reviews = reviews.list_open(env.name)
        for review in open_reviews:
            if review.fingerprint == mutation.fingerprint:
                logger.info("Review %s already carries this change", review.review_id)
                return PublishResult.review_opened(
                    env.name, review.review_id, message=f"Review already open: {review.url or review.review_id}"
                )

        # A newer promotion supersedes any review still waiting for approval
        for review in open_reviews:
            logger.info("Closing superseded review %s for %s", review.review_id, env.name)
            reviews.close_review(
                review.review_id,
                reason=f"superseded by promotion of {short_sha(mutation.source_commit)}",
            )

        branch = review_branch(env.name, mutation.source_commit)
        files, expected = publisher.render(mutation)
        store.create_branch(branch)
        store.commit(
            files,
            commit_message(mutation, requested_by),
            branch=branch,
            expected=expected,
            author=requested_by,
        )

        base_values = {e.key: e.old_value for e in mutation.changed_edits}
        review = reviews.open_review(
            environment=env.name,
            branch=branch,
            base=store.trunk,
            title=f"Promote {short_sha(mutation.source_commit)} to {env.name}",
            body=review_body(mutation, base_values),
            fingerprint=mutation.fingerprint,
            base_values=base_values,
        )
        logger.info("Opened review %s for %s", review.review_id, env.name)
        return PublishResult.review_opened(
            env.name, review.review_id, message=review.url or f"Review {review.review_id} opened"
        )


_STRATEGIES: dict[type, PublishStrategy] = {
    AutoSync: DirectCommit(),
    ManualSync: ReviewRequestStrategy(),
}


class ChangePublisher:
    """Applies mutations to the versioned configuration store."""

    def __init__(
        self,
        environments: EnvironmentRegistry,
        store: ConfigStore,
        reviews: ReviewSystem | None = None,
        gate: ApprovalGate | None = None,
    ):
        self._environments = environments
        self.store = store
        self.reviews = reviews
        self._gate = gate

    def require_reviews(self, env: Environment) -> ReviewSystem:
        if self.reviews is None:
            raise PolicyViolation(
                f"Environment '{env.name}' needs a review system, none is configured"
            )
        return self.reviews

    # ── Reading trunk ────────────────────────────────────────────

    def current_values(self, mutation: ConfigurationMutation, ref: str | None = None) -> dict[str, str | None]:
        """Value of every edited key as it is on ``ref`` (default trunk) right now."""
        services = self._services(mutation.environment)
        values: dict[str, str | None] = {}
        for path in {e.file_path for e in mutation.edits}:
            text = self.store.read_file(path, ref)
            if text is None:
                raise PublishConflict(f"{path} no longer exists", path=path)
            tags = read_image_tags(text, services, path)
            for e in mutation.edits:
                if e.file_path == path:
                    values[e.key] = tags.get(parse_image_key(e.key))
        return values

    def render(self, mutation: ConfigurationMutation) -> tuple[dict[str, str], dict[str, str | None]]:
        """New file contents plus the contents they were derived from (for CAS)."""
        services = self._services(mutation.environment)
        files: dict[str, str] = {}
        expected: dict[str, str | None] = {}
        for path in mutation.files:
            text = self.store.read_file(path)
            if text is None:
                raise PublishConflict(f"{path} no longer exists", path=path)
            edits = [e for e in mutation.changed_edits if e.file_path == path]
            files[path] = apply_edits(text, edits, services, path)
            expected[path] = text
        return files, expected

    def _services(self, environment: str) -> dict[str, str]:
        env = self._environments.get(environment)
        return {s.name: s.repository for s in self._environments.services_for(env)}

    # ── Publishing ───────────────────────────────────────────────

    def publish(
        self,
        mutation: ConfigurationMutation,
        environment: Environment,
        requested_by: str = "",
    ) -> PublishResult:
        """Publish a mutation according to the environment's sync policy.

        Raises:
            PublishConflict: Trunk no longer holds the values the plan was based on.
            PolicyViolation: The mutation belongs to another environment.
        """
        if mutation.environment != environment.name:
            raise PolicyViolation(
                f"Mutation for '{mutation.environment}' cannot be published to '{environment.name}'"
            )

        if mutation.is_noop:
            return PublishResult.already_promoted(environment.name, message="No changes")

        current = self.current_values(mutation)
        edits = mutation.changed_edits
        if all(current[e.key] == e.new_value for e in edits):
            logger.info("%s already carries this change on trunk", environment.name)
            return PublishResult.already_promoted(
                environment.name, revision=self.store.head(), message="Already on trunk"
            )
        moved = [e.key for e in edits if current[e.key] != e.old_value]
        if moved:
            raise PublishConflict(
                f"{', '.join(moved)} changed on trunk since planning",
                keys=moved,
            )

        strategy = _STRATEGIES[type(environment.sync_policy)]
        return strategy.publish(self, mutation, environment, requested_by)

    # ── Review completion (manual-sync environments) ────────────

    def complete_review(self, review_id: str, environment: Environment) -> PublishResult:
        """Merge an approved review request.

        Terminal reviews report their outcome again (idempotent). A review
        whose base no longer matches trunk is closed as superseded.

        Raises:
            ApprovalPending: Required approvals missing.
            ReviewNotFound: Unknown review ID.
        """
        reviews = self.require_reviews(environment)
        review = reviews.get_review(review_id)
        if review.environment != environment.name:
            raise PolicyViolation(
                f"Review {review_id} targets '{review.environment}', not '{environment.name}'"
            )

        if review.state == ReviewState.MERGED:
            return PublishResult.merged(
                environment.name, review_id, review.merge_revision or "", message="Already merged"
            )
        if review.state == ReviewState.REJECTED:
            return PublishResult.rejected(environment.name, review_id, message="Review was rejected")
        if review.state == ReviewState.CLOSED:
            return PublishResult.closed(environment.name, review_id, message="Review was closed")

        if self._gate is not None:
            status = self._gate.check_approvals(review_id)
            if not status.satisfied:
                raise ApprovalPending(
                    f"Review {review_id} is not approved yet: {status.describe()}",
                    missing_groups=sorted(status.missing_groups),
                )

        if self._is_stale(review.base_values, environment):
            reason = "stale: trunk changed after this review was opened"
            reviews.close_review(review_id, reason=reason)
            logger.warning("Closed stale review %s for %s", review_id, environment.name)
            return PublishResult.closed(environment.name, review_id, message=reason)

        sha = reviews.merge_review(review_id)
        logger.info("Merged review %s into %s: %s", review_id, self.store.trunk, sha[:12])
        return PublishResult.merged(environment.name, review_id, sha, message=f"Merged {sha[:12]}")

    def _is_stale(self, base_values: dict[str, str | None], env: Environment) -> bool:
        if not base_values:
            return False
        path = self._environments.overlay_path(env)
        text = self.store.read_file(path)
        if text is None:
            return True
        tags = read_image_tags(text, self._services(env.name), path)
        return any(tags.get(parse_image_key(key)) != value for key, value in base_values.items())

    # ── Compensating actions ─────────────────────────────────────

    def close_review(self, review_id: str, environment: Environment, reason: str = "") -> PublishResult:
        reviews = self.require_reviews(environment)
        reviews.close_review(review_id, reason=reason or "closed by operator")
        return PublishResult.closed(environment.name, review_id, message=reason or "Closed")

    def revert(self, revision: str, environment: Environment) -> PublishResult:
        """Revert a promotion commit on trunk. Never done automatically."""
        sha = self.store.revert(revision, message=f"revert({environment.name}): {revision[:12]}\n")
        logger.info("Reverted %s on %s: %s", revision[:12], self.store.trunk, sha[:12])
        return PublishResult.committed(environment.name, sha, message=f"Reverted {revision[:12]}")
