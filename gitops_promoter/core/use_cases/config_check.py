"""
Config check use case — validate promotion.yml and report issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from gitops_promoter.core.config.loader import (
    ConfigError,
    EnvironmentRegistry,
    PromotionConfig,
    find_config_file,
    load_config,
)
from gitops_promoter.core.engine.overlay import read_image_tags
from gitops_promoter.core.errors import PolicyViolation
from gitops_promoter.core.models.environment import ManualSync


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    config: PromotionConfig | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "project_name": self.config.project if self.config else None,
            "service_count": len(self.config.services) if self.config else 0,
            "environment_count": len(self.config.environments) if self.config else 0,
        }


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate promotion configuration and the overlays it points at.

    Args:
        config_path: Optional explicit path to promotion.yml.

    Returns:
        ConfigCheckResult with validation status and any issues.
    """
    result = ConfigCheckResult()

    if config_path is None:
        config_path = find_config_file()
    if config_path is None:
        result.errors.append("No promotion.yml found.")
        return result
    result.config_path = config_path

    try:
        config = load_config(config_path)
    except ConfigError as e:
        result.errors.append(str(e))
        return result
    result.config = config

    if not config.environments:
        result.warnings.append("No environments defined. Consider adding at least 'dev'.")
    if not config.services:
        result.warnings.append("No services defined. Nothing can be promoted.")

    registry = EnvironmentRegistry(config)
    root = config_path.parent
    for env in registry:
        if isinstance(env.sync_policy, ManualSync):
            for group in sorted(env.approver_groups):
                if not registry.members_of(group):
                    result.errors.append(
                        f"Environment '{env.name}' requires approver group '{group}', which has no members"
                    )

        path = registry.overlay_path(env)
        overlay = root / path
        if not overlay.is_file():
            result.warnings.append(f"Overlay for '{env.name}' does not exist: {path}")
            continue
        services = registry.services_for(env)
        try:
            tags = read_image_tags(
                overlay.read_text(encoding="utf-8"),
                {s.name: s.repository for s in services},
                path,
            )
        except PolicyViolation as e:
            result.errors.append(f"{path}: {e}")
            continue
        uncovered = [s.name for s in services if s.name not in tags]
        if uncovered:
            result.errors.append(
                f"{path} has no images entry for: {', '.join(uncovered)}"
            )

    result.valid = len(result.errors) == 0
    return result
