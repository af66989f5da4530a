"""
Promotion models — requests, image references, mutations, results.

A PromotionRequest produces exactly one ConfigurationMutation, which
the publisher turns into a commit or a review request. The request
itself is not persisted; the commit history is the audit trail.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SHORT_SHA_LENGTH = 7


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def short_sha(commit: str) -> str:
    """Abbreviate a commit SHA the way ``git rev-parse --short`` does."""
    return commit.strip().lower()[:SHORT_SHA_LENGTH]


class PromotionRequest(BaseModel):
    """One attempt to advance a build into an environment.

    Immutable. A retry is a new request, never a mutated one.
    """

    model_config = ConfigDict(frozen=True)

    source_commit: str
    target_environment: str
    requested_by: str = ""
    timestamp: str = Field(default_factory=_now_iso)
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])

    @field_validator("source_commit")
    @classmethod
    def _check_sha(cls, value: str) -> str:
        value = value.strip().lower()
        if not 4 <= len(value) <= 40 or any(c not in "0123456789abcdef" for c in value):
            raise ValueError(f"Not a commit SHA: {value!r}")
        return value


class ImageReference(BaseModel):
    """A resolved, existing image in the artifact registry."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str

    @property
    def ref(self) -> str:
        return f"{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return self.ref


class ConfigEdit(BaseModel):
    """A single key change in one overlay file."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    key: str                    # images[<service>].newTag
    old_value: str | None
    new_value: str

    @property
    def is_noop(self) -> bool:
        return self.old_value == self.new_value


class ConfigurationMutation(BaseModel):
    """Ordered set of edits for exactly one environment's overlay."""

    model_config = ConfigDict(frozen=True)

    environment: str
    source_commit: str
    edits: tuple[ConfigEdit, ...] = ()

    @property
    def changed_edits(self) -> tuple[ConfigEdit, ...]:
        return tuple(e for e in self.edits if not e.is_noop)

    @property
    def is_noop(self) -> bool:
        """True when applying the mutation would not change any file."""
        return not self.changed_edits

    @property
    def files(self) -> list[str]:
        seen: dict[str, None] = {}
        for edit in self.changed_edits:
            seen.setdefault(edit.file_path, None)
        return list(seen)

    @property
    def fingerprint(self) -> str:
        """Stable identity of the change, used to detect duplicate reviews."""
        h = hashlib.sha256(self.environment.encode())
        for e in self.changed_edits:
            h.update(f"\0{e.file_path}\0{e.key}\0{e.new_value}".encode())
        return h.hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "source_commit": self.source_commit,
            "fingerprint": self.fingerprint,
            "noop": self.is_noop,
            "edits": [e.model_dump() for e in self.edits],
        }


PublishStatus = Literal[
    "committed",
    "review_opened",
    "already_promoted",
    "merged",
    "rejected",
    "closed",
]


class PublishResult(BaseModel):
    """Outcome of publishing (or completing) a promotion.

    Mirrors the receipt pattern: one model, one status, constructors
    per outcome.
    """

    status: PublishStatus
    environment: str
    revision: str | None = None     # commit SHA on trunk, when there is one
    review_id: str | None = None
    message: str = ""
    finished_at: str = Field(default_factory=_now_iso)

    @property
    def ok(self) -> bool:
        return self.status in ("committed", "review_opened", "already_promoted", "merged")

    @property
    def terminal(self) -> bool:
        """Whether the promotion has reached a final outcome."""
        return self.status != "review_opened"

    @classmethod
    def committed(cls, environment: str, revision: str, **kwargs: Any) -> PublishResult:
        return cls(status="committed", environment=environment, revision=revision, **kwargs)

    @classmethod
    def review_opened(cls, environment: str, review_id: str, **kwargs: Any) -> PublishResult:
        return cls(status="review_opened", environment=environment, review_id=review_id, **kwargs)

    @classmethod
    def already_promoted(cls, environment: str, **kwargs: Any) -> PublishResult:
        return cls(status="already_promoted", environment=environment, **kwargs)

    @classmethod
    def merged(cls, environment: str, review_id: str, revision: str, **kwargs: Any) -> PublishResult:
        return cls(
            status="merged",
            environment=environment,
            review_id=review_id,
            revision=revision,
            **kwargs,
        )

    @classmethod
    def rejected(cls, environment: str, review_id: str, **kwargs: Any) -> PublishResult:
        return cls(status="rejected", environment=environment, review_id=review_id, **kwargs)

    @classmethod
    def closed(cls, environment: str, review_id: str, **kwargs: Any) -> PublishResult:
        return cls(status="closed", environment=environment, review_id=review_id, **kwargs)
