"""
Approval gate — has a review request collected its required approvals?

Required approver groups come from the environment's ManualSync policy.
The gate never escalates, bypasses or times out: a review without the
required approvals stays Pending until a human acts on it.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterator

from gitops_promoter.adapters.base import ReviewSystem
from gitops_promoter.core.config.loader import EnvironmentRegistry
from gitops_promoter.core.models.environment import Environment, ManualSync
from gitops_promoter.core.models.review import ApprovalStatus, ReviewRequest

logger = logging.getLogger(__name__)


def evaluate(environment: Environment, review: ReviewRequest) -> ApprovalStatus:
    """Approval status of ``review`` under ``environment``'s policy.

    Only approvals from members of the policy's groups count. Satisfied
    when each group is covered by a different approver and the number of
    counted approvers reaches ``required_approvals``, and nobody has
    an outstanding request for changes.
    """
    policy = environment.sync_policy
    if not isinstance(policy, ManualSync):
        return ApprovalStatus.granted()

    required = set(policy.approvers)
    eligible: dict[str, set[str]] = {}
    for approval in review.approvals:
        groups = approval.groups & required
        if groups:
            eligible.setdefault(approval.reviewer, set()).update(groups)

    covered = set().union(*eligible.values()) if eligible else set()
    missing = required - covered
    matched = _match_groups(sorted(required), eligible)
    needed = max(0, policy.required_approvals - len(eligible), len(required) - len(missing) - matched)
    if missing or needed or review.changes_requested:
        return ApprovalStatus.pending(missing, approvals_needed=needed, blocked_by=review.changes_requested)
    return ApprovalStatus.granted()


def _match_groups(groups: list[str], eligible: dict[str, set[str]]) -> int:
    """Size of the largest group → distinct-approver assignment."""
    assigned: dict[str, str] = {}   # reviewer → group

    def place(group: str, seen: set[str]) -> bool:
        for reviewer, member_of in eligible.items():
            if group not in member_of or reviewer in seen:
                continue
            seen.add(reviewer)
            if reviewer not in assigned or place(assigned[reviewer], seen):
                assigned[reviewer] = group
                return True
        return False

    return sum(1 for group in groups if place(group, set()))


class ApprovalGate:
    """Answers ``check_approvals`` for review requests."""

    def __init__(self, environments: EnvironmentRegistry, reviews: ReviewSystem):
        self._environments = environments
        self._reviews = reviews

    def check_approvals(self, review_id: str) -> ApprovalStatus:
        """Satisfied, or Pending with the groups that still have to approve.

        Raises:
            ReviewNotFound: Unknown review ID.
            UnknownEnvironment: The review targets an undeclared environment.
        """
        review = self._reviews.get_review(review_id)
        env = self._environments.get(review.environment)
        status = evaluate(env, review)
        logger.debug("Review %s (%s): %s", review_id, env.name, status.describe())
        return status

    def watch(
        self,
        review_id: str,
        interval: float = 30.0,
        cancel: threading.Event | None = None,
    ) -> Iterator[ApprovalStatus]:
        """Poll a review, yielding its status after every check.

        Stops once the review is satisfied, reaches a terminal state, or
        ``cancel`` is set. Between polls it sleeps on the event, so a
        cancel wakes it immediately.
        """
        cancel = cancel or threading.Event()
        while True:
            review = self._reviews.get_review(review_id)
            status = evaluate(self._environments.get(review.environment), review)
            yield status
            if status.satisfied or review.state.terminal:
                return
            if cancel.wait(interval):
                logger.info("Stopped watching review %s", review_id)
                return
