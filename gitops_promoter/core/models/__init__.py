"""
Domain models — Pydantic types for the promotion engine.

All models are re-exported here for convenient access:

    from gitops_promoter.core.models import Environment, PromotionRequest, PublishResult
"""

from gitops_promoter.core.models.environment import (
    AutoSync,
    Environment,
    ManualSync,
    ResourceLimits,
    ServiceSpec,
    SharedConfigRef,
    SyncPolicy,
)
from gitops_promoter.core.models.promotion import (
    ConfigEdit,
    ConfigurationMutation,
    ImageReference,
    PromotionRequest,
    PublishResult,
    short_sha,
)
from gitops_promoter.core.models.review import (
    Approval,
    ApprovalStatus,
    ReviewRequest,
    ReviewState,
)
from gitops_promoter.core.models.sync import SyncState, SyncStatus

__all__ = [
    # review.py
    "Approval",
    "ApprovalStatus",
    # environment.py
    "AutoSync",
    # promotion.py
    "ConfigEdit",
    "ConfigurationMutation",
    "Environment",
    "ImageReference",
    "ManualSync",
    "PromotionRequest",
    "PublishResult",
    "ResourceLimits",
    "ReviewRequest",
    "ReviewState",
    "ServiceSpec",
    "SharedConfigRef",
    "SyncPolicy",
    # sync.py
    "SyncState",
    "SyncStatus",
    "short_sha",
]
