"""
Shared test fixtures and configuration.

The fixture world: two services (ledger, ledger-backoffice) deployed to
three environments.

    dev      auto    tag prefix main
    qa       auto    tag prefix qa
    staging  manual  tag prefix stg   approvers: platform + qa-leads

The registry knows images for two builds, ``a1b2c3d…`` and ``b2c3d4e…``.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest
import yaml

from gitops_promoter.adapters.mock import (
    InMemoryArtifactRegistry,
    InMemoryConfigStore,
    InMemoryReviewSystem,
    InMemorySyncController,
)
from gitops_promoter.core.config.loader import EnvironmentRegistry, PromotionConfig
from gitops_promoter.core.engine.executor import PromotionEngine
from gitops_promoter.core.persistence.audit import AuditWriter
from gitops_promoter.core.reliability.retry import RetryPolicy

LEDGER = "ghcr.io/acme/ledger"
BACKOFFICE = "ghcr.io/acme/ledger-backoffice"
KNOWN_BUILDS = ("a1b2c3d", "b2c3d4e")
PREFIXES = {"dev": "main", "qa": "qa", "staging": "stg"}

CONFIG = {
    "project": "acme-ledger",
    "trunk": "main",
    "overlay_root": "environments",
    "services": [
        {"name": "ledger", "repository": LEDGER},
        {"name": "ledger-backoffice", "repository": BACKOFFICE},
    ],
    "environments": [
        {"name": "dev", "sync": {"mode": "auto"}, "tag_prefix": "main", "namespace": "ledger-dev"},
        {"name": "qa", "sync": {"mode": "auto"}, "tag_prefix": "qa"},
        {
            "name": "staging",
            "sync": {"mode": "manual", "approvers": ["platform", "qa-leads"]},
            "tag_prefix": "stg",
            "replica_count": 2,
        },
    ],
    "approver_groups": {
        "platform": ["alice", "carol"],
        "qa-leads": ["bob"],
    },
    "shared_config": [
        {"kind": "ConfigMap", "name": "ledger-shared"},
        {"kind": "Secret", "name": "ledger-db"},
    ],
}


def overlay_text(prefix: str, build: str = "0000000") -> str:
    """A kustomization.yaml pinning both services to ``<prefix>-<build>``."""
    return yaml.safe_dump(
        {
            "apiVersion": "kustomize.config.k8s.io/v1beta1",
            "kind": "Kustomization",
            "resources": ["../../base"],
            "images": [
                {"name": "ledger", "newName": LEDGER, "newTag": f"{prefix}-{build}"},
                {"name": "ledger-backoffice", "newName": BACKOFFICE, "newTag": f"{prefix}-{build}"},
            ],
        },
        sort_keys=False,
    )


def overlay_files() -> dict[str, str]:
    files = {
        f"environments/{env}/kustomization.yaml": overlay_text(prefix)
        for env, prefix in PREFIXES.items()
    }
    files["base/kustomization.yaml"] = "resources:\n  - deployment.yaml\n"
    return files


def init_git_repo(path: Path, files: dict[str, str]) -> Path:
    """Create a git repo on branch main with ``files`` in one commit."""
    subprocess.run(["git", "init", "-q", "-b", "main", str(path)], capture_output=True, check=True)
    subprocess.run(["git", "-C", str(path), "config", "user.name", "Test User"], capture_output=True, check=True)
    subprocess.run(["git", "-C", str(path), "config", "user.email", "test@test.com"], capture_output=True, check=True)
    for rel, content in files.items():
        target = path / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    subprocess.run(["git", "-C", str(path), "add", "."], capture_output=True, check=True)
    subprocess.run(["git", "-C", str(path), "commit", "-q", "-m", "initial"], capture_output=True, check=True)
    return path


@pytest.fixture
def promotion_config() -> PromotionConfig:
    return PromotionConfig.model_validate(CONFIG)


@pytest.fixture
def environments(promotion_config: PromotionConfig) -> EnvironmentRegistry:
    return EnvironmentRegistry(promotion_config)


@pytest.fixture
def store() -> InMemoryConfigStore:
    return InMemoryConfigStore(overlay_files())


@pytest.fixture
def registry() -> InMemoryArtifactRegistry:
    images: dict[str, set[str]] = {LEDGER: set(), BACKOFFICE: set()}
    for build in KNOWN_BUILDS:
        for prefix in PREFIXES.values():
            images[LEDGER].add(f"{prefix}-{build}")
            images[BACKOFFICE].add(f"{prefix}-{build}")
    return InMemoryArtifactRegistry(images)


@pytest.fixture
def reviews(store: InMemoryConfigStore) -> InMemoryReviewSystem:
    return InMemoryReviewSystem(store)


@pytest.fixture
def sync_controller(store: InMemoryConfigStore, environments: EnvironmentRegistry) -> InMemorySyncController:
    return InMemorySyncController(store, environments)


@pytest.fixture
def audit(tmp_path: Path) -> AuditWriter:
    return AuditWriter(tmp_path / ".state" / "promotions.ndjson")


@pytest.fixture
def engine(environments, store, registry, reviews, sync_controller, audit) -> PromotionEngine:
    return PromotionEngine(
        environments,
        store,
        registry,
        reviews=reviews,
        sync=sync_controller,
        audit=audit,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0),
        sleep=lambda _: None,
    )


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A git repository holding promotion.yml plus the three overlays."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    files = overlay_files()
    files["promotion.yml"] = yaml.safe_dump(CONFIG, sort_keys=False)
    files[".gitignore"] = ".state/\n"
    return init_git_repo(tmp_path / "config-repo", files)
