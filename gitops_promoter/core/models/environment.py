"""
Environment model — the static description of a deployment target.

Loaded from promotion.yml. Environments are immutable once loaded;
changing one means editing promotion.yml and reviewing it like code.

The sync policy is a tagged variant:

    AutoSync                 → commit straight to trunk (dev, qa)
    ManualSync{approvers}    → open a review request (staging)
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AutoSync(BaseModel):
    """Changes land on trunk directly; the sync controller applies them."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["auto"] = "auto"


class ManualSync(BaseModel):
    """Changes go through a review request gated by approver groups."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["manual"] = "manual"
    approvers: frozenset[str] = Field(default_factory=frozenset)
    required_approvals: int = 0

    @model_validator(mode="before")
    @classmethod
    def _default_required(cls, data: Any) -> Any:
        # Each group needs at least one approver, so the floor is len(approvers)
        if isinstance(data, dict):
            floor = len(set(data.get("approvers") or ()))
            if (data.get("required_approvals") or 0) < floor:
                data = {**data, "required_approvals": floor}
        return data


SyncPolicy = Annotated[AutoSync | ManualSync, Field(discriminator="mode")]


class ResourceLimits(BaseModel):
    """Container resource requests/limits, informational for status output."""

    model_config = ConfigDict(frozen=True)

    cpu_request: str = ""
    cpu_limit: str = ""
    memory_request: str = ""
    memory_limit: str = ""


class ServiceSpec(BaseModel):
    """A deployable service and the image repository it is built into."""

    model_config = ConfigDict(frozen=True)

    name: str
    repository: str             # e.g. ghcr.io/acme/ledger


class SharedConfigRef(BaseModel):
    """Read-only reference to configuration shared across services.

    Resolved by the templating layer at render time; the promotion
    engine never writes it.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["ConfigMap", "Secret"]
    name: str


class Environment(BaseModel):
    """A deployment target (dev, qa, staging)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    namespace: str = ""
    sync_policy: SyncPolicy = Field(default_factory=AutoSync, alias="sync")
    tag_prefix: str = ""
    image_tag_pattern: str = "{prefix}-{short_sha}"
    replica_count: int = 1
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    overlay_dir: str = ""                       # defaults to the env name
    services: tuple[str, ...] = ()              # empty = every declared service
    argocd_app: str = ""                        # defaults to the namespace
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not data.get("name"):
            return data
        data = dict(data)
        name = data["name"]
        data["overlay_dir"] = data.get("overlay_dir") or name
        data["tag_prefix"] = data.get("tag_prefix") or name
        data["namespace"] = data.get("namespace") or name
        data["argocd_app"] = data.get("argocd_app") or data["namespace"]
        return data

    @property
    def sync_mode(self) -> str:
        return self.sync_policy.mode

    @property
    def required_approvals(self) -> int:
        if isinstance(self.sync_policy, ManualSync):
            return self.sync_policy.required_approvals
        return 0

    @property
    def approver_groups(self) -> frozenset[str]:
        if isinstance(self.sync_policy, ManualSync):
            return self.sync_policy.approvers
        return frozenset()
