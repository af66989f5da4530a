"""
Promotion error taxonomy.

Every failure surfaced to a caller (CI workflow, operator, CLI) is a
``PromotionError`` with a stable machine-readable ``kind`` plus the
human-readable message. ``retryable`` tells the trigger whether a
later attempt can succeed without human action.

"Already promoted" is NOT an error — it is a ``PublishResult`` status.
"""

from __future__ import annotations

from typing import Any, ClassVar


class PromotionError(Exception):
    """Base class for every promotion failure."""

    kind: ClassVar[str] = "promotion_error"
    retryable: ClassVar[bool] = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output and audit entries."""
        data: dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            data["details"] = self.details
        return data


class UnknownEnvironment(PromotionError):
    """The target environment is not declared in promotion.yml."""

    kind = "unknown_environment"


class ImageNotFoundError(PromotionError):
    """One or more images are absent from the artifact registry.

    Fatal for this attempt: the image must be built and pushed first.
    """

    kind = "not_found"

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message, missing=missing or [])
        self.missing = missing or []


class RegistryUnavailableError(PromotionError):
    """The artifact registry could not be reached or answered with 5xx/429."""

    kind = "registry_unavailable"
    retryable = True


class CircuitOpenError(RegistryUnavailableError):
    """Lookups against a registry host are paused by its circuit breaker.

    Retryable for the caller (later runs may succeed) but never retried
    in-process: the breaker already knows the host is down.
    """


class PolicyViolation(PromotionError):
    """The requested change breaks a promotion policy (isolation, atomicity)."""

    kind = "policy_violation"


class PublishConflict(PromotionError):
    """The overlay changed underneath us between plan and publish."""

    kind = "publish_conflict"


class ApprovalPending(PromotionError):
    """A review request cannot be merged yet — required approvals missing."""

    kind = "approval_pending"

    def __init__(self, message: str, missing_groups: list[str] | None = None) -> None:
        super().__init__(message, missing_groups=missing_groups or [])
        self.missing_groups = missing_groups or []


class ReviewNotFound(PromotionError):
    """The review system has no review request with this ID."""

    kind = "review_not_found"


class EnvironmentBusy(PromotionError):
    """Another promotion holds the environment lock past the acquire timeout."""

    kind = "environment_busy"
    retryable = True


class PromotionCancelled(PromotionError):
    """The promotion was abandoned before publish completed."""

    kind = "cancelled"


class ExternalToolError(PromotionError):
    """A git, gh or argocd invocation failed for a reason we cannot classify."""

    kind = "external_tool_error"
