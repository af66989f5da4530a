"""
Review request models — the manual-sync path.

State machine:

    OPEN → APPROVED → MERGED
      │       │
      │       └──→ REJECTED | CLOSED | OPEN (approval dismissed)
      └──→ REJECTED | CLOSED

MERGED is terminal success; REJECTED and CLOSED are terminal failure
and require a fresh PromotionRequest.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class ReviewState(StrEnum):
    """Lifecycle of a review request."""

    OPEN = "open"
    APPROVED = "approved"
    MERGED = "merged"
    REJECTED = "rejected"
    CLOSED = "closed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({ReviewState.MERGED, ReviewState.REJECTED, ReviewState.CLOSED})

_TRANSITIONS: dict[ReviewState, frozenset[ReviewState]] = {
    ReviewState.OPEN: frozenset({ReviewState.APPROVED, ReviewState.REJECTED, ReviewState.CLOSED}),
    ReviewState.APPROVED: frozenset({
        ReviewState.MERGED, ReviewState.REJECTED, ReviewState.CLOSED, ReviewState.OPEN,
    }),
    ReviewState.MERGED: frozenset(),
    ReviewState.REJECTED: frozenset(),
    ReviewState.CLOSED: frozenset(),
}


def can_transition(current: ReviewState, target: ReviewState) -> bool:
    """Whether a review may move from ``current`` to ``target``."""
    return target in _TRANSITIONS[current]


class Approval(BaseModel):
    """One reviewer's approval and the approver groups it counts for."""

    model_config = ConfigDict(frozen=True)

    reviewer: str
    groups: frozenset[str] = Field(default_factory=frozenset)


class ReviewRequest(BaseModel):
    """A review request carrying a promotion diff."""

    review_id: str
    environment: str
    branch: str
    title: str = ""
    body: str = ""
    fingerprint: str = ""
    state: ReviewState = ReviewState.OPEN
    approvals: tuple[Approval, ...] = ()
    changes_requested: tuple[str, ...] = ()    # reviewers whose latest review asks for changes
    base_values: dict[str, str | None] = Field(default_factory=dict)   # key → trunk value at open
    merge_revision: str | None = None
    url: str = ""

    @property
    def approvers(self) -> set[str]:
        return {a.reviewer for a in self.approvals}

    @property
    def approved_groups(self) -> set[str]:
        groups: set[str] = set()
        for approval in self.approvals:
            groups |= approval.groups
        return groups


class ApprovalStatus(BaseModel):
    """Answer of the approval gate: Satisfied, or Pending(missing_groups)."""

    model_config = ConfigDict(frozen=True)

    satisfied: bool
    missing_groups: frozenset[str] = Field(default_factory=frozenset)
    approvals_needed: int = 0       # additional distinct approvers still required
    blocked_by: frozenset[str] = Field(default_factory=frozenset)   # reviewers requesting changes

    @classmethod
    def granted(cls) -> ApprovalStatus:
        return cls(satisfied=True)

    @classmethod
    def pending(
        cls,
        missing_groups: set[str] | frozenset[str],
        approvals_needed: int = 0,
        blocked_by: set[str] | frozenset[str] | tuple[str, ...] = (),
    ) -> ApprovalStatus:
        return cls(
            satisfied=False,
            missing_groups=frozenset(missing_groups),
            approvals_needed=approvals_needed,
            blocked_by=frozenset(blocked_by),
        )

    def describe(self) -> str:
        if self.satisfied:
            return "Satisfied"
        parts = []
        if self.missing_groups:
            parts.append("missing groups: " + ", ".join(sorted(self.missing_groups)))
        if self.approvals_needed:
            parts.append(f"{self.approvals_needed} more approval(s)")
        if self.blocked_by:
            parts.append("changes requested by " + ", ".join(sorted(self.blocked_by)))
        return "Pending(" + "; ".join(parts) + ")"
