"""
Engine factory — wire a PromotionEngine from promotion.yml.

Real mode:
    git store (+ origin remote) · OCI registry · GitHub PRs · ArgoCD
    (no GitHub remote: no review system, manual environments are refused)

Mock mode (``--mock``):
    git store · in-memory registry that knows every tag · in-process
    reviews · in-memory reconciler. Commits still land in the repository.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from gitops_promoter.adapters.base import ArtifactRegistry, ReviewSystem, SyncController
from gitops_promoter.adapters.mock import (
    InMemoryArtifactRegistry,
    InMemoryReviewSystem,
    InMemorySyncController,
)
from gitops_promoter.adapters.registry.oci import OCIRegistryClient
from gitops_promoter.adapters.review.github import GitHubReviewSystem
from gitops_promoter.adapters.sync.argocd import ArgoCDSyncController
from gitops_promoter.adapters.vcs.git import GitConfigStore, detect_remote, repo_slug
from gitops_promoter.core.config.loader import (
    ConfigError,
    EnvironmentRegistry,
    find_config_file,
    load_config,
    project_root,
)
from gitops_promoter.core.engine.executor import PromotionEngine
from gitops_promoter.core.models.environment import ManualSync
from gitops_promoter.core.persistence.audit import AuditWriter

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """A wired engine plus where it came from."""

    engine: PromotionEngine
    environments: EnvironmentRegistry
    store: GitConfigStore
    audit: AuditWriter
    config_path: Path
    root: Path
    mock: bool = False


def build_engine(config_path: Path | None = None, mock: bool = False) -> EngineContext:
    """Load promotion.yml and build an engine over the repository it lives in.

    Raises:
        ConfigError: promotion.yml missing or invalid.
    """
    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        raise ConfigError("No promotion.yml found. Create one at the repository root, or specify --config.")

    config = load_config(config_path)
    environments = EnvironmentRegistry(config)
    root = project_root(config_path)

    remote = detect_remote(root)
    store = GitConfigStore(root, trunk=config.trunk, remote=remote)
    audit = AuditWriter(root / config.audit_path)

    registry: ArtifactRegistry
    sync: SyncController
    reviews: ReviewSystem | None
    if mock:
        registry = InMemoryArtifactRegistry(permissive=True)
        sync = InMemorySyncController(store, environments)
        reviews = InMemoryReviewSystem(store)
    else:
        registry = OCIRegistryClient(timeout=config.registry.timeout)
        sync = ArgoCDSyncController(environments)
        if remote is not None and repo_slug(root, remote) is not None:
            reviews = GitHubReviewSystem(root, store, environments.groups_of)
        else:
            reviews = None
            manual = [env.name for env in environments if isinstance(env.sync_policy, ManualSync)]
            if manual:
                logger.warning("No GitHub remote; promotions to %s will be refused", ", ".join(manual))

    logger.debug(
        "Engine: store=%s remote=%s registry=%s reviews=%s sync=%s",
        store.name, remote, registry.name, reviews.name if reviews else None, sync.name,
    )
    engine = PromotionEngine.from_registry(
        environments,
        store,
        registry,
        reviews=reviews,
        sync=sync,
        audit=audit,
        lock_dir=audit.path.parent / "locks",
    )
    return EngineContext(
        engine=engine,
        environments=environments,
        store=store,
        audit=audit,
        config_path=config_path,
        root=root,
        mock=mock,
    )
