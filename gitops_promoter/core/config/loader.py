"""
Configuration loader — reads promotion.yml into domain models.

This is the primary entry point for loading promotion configuration.
It reads YAML, validates against Pydantic schemas, and returns an
immutable EnvironmentRegistry the engine consults on every request.
"""

from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from gitops_promoter.core.errors import UnknownEnvironment
from gitops_promoter.core.models.environment import Environment, ServiceSpec, SharedConfigRef

logger = logging.getLogger(__name__)

# Default config filename
PROMOTION_CONFIG_FILE = "promotion.yml"

OVERLAY_FILE = "kustomization.yaml"


class ConfigError(Exception):
    """Raised when promotion configuration is invalid or missing."""


class RegistrySettings(BaseModel):
    """Retry and circuit-breaker tuning for artifact registry calls."""

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    max_workers: int = 8
    timeout: float = 10.0


class PromotionConfig(BaseModel):
    """Root configuration — loaded from promotion.yml."""

    version: int = 1

    project: str
    trunk: str = "main"
    overlay_root: str = "environments"
    services: list[ServiceSpec] = Field(default_factory=list)
    environments: list[Environment] = Field(default_factory=list)
    approver_groups: dict[str, list[str]] = Field(default_factory=dict)
    shared_config: list[SharedConfigRef] = Field(default_factory=list)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    audit_path: str = ".state/promotions.ndjson"

    @model_validator(mode="after")
    def _check_consistency(self) -> PromotionConfig:
        service_names = [s.name for s in self.services]
        _reject_duplicates("service", service_names)
        _reject_duplicates("environment", [e.name for e in self.environments])
        _reject_duplicates("tag prefix", [e.tag_prefix for e in self.environments])
        _reject_duplicates("overlay dir", [e.overlay_dir for e in self.environments])

        for env in self.environments:
            unknown = set(env.services) - set(service_names)
            if unknown:
                raise ValueError(
                    f"Environment '{env.name}' references undeclared services: "
                    f"{', '.join(sorted(unknown))}"
                )
            missing_groups = env.approver_groups - set(self.approver_groups)
            if missing_groups:
                raise ValueError(
                    f"Environment '{env.name}' requires undeclared approver groups: "
                    f"{', '.join(sorted(missing_groups))}"
                )
        return self


def _reject_duplicates(label: str, values: list[str]) -> None:
    seen: set[str] = set()
    for value in values:
        if value in seen:
            raise ValueError(f"Duplicate {label}: '{value}'")
        seen.add(value)


class EnvironmentRegistry:
    """Read-only view over the declared environments and services.

    Built once from a PromotionConfig; nothing in the engine mutates it.
    """

    def __init__(self, config: PromotionConfig):
        self._config = config
        self._environments: Mapping[str, Environment] = MappingProxyType(
            {env.name: env for env in config.environments}
        )
        self._services: Mapping[str, ServiceSpec] = MappingProxyType(
            {svc.name: svc for svc in config.services}
        )

    @property
    def config(self) -> PromotionConfig:
        return self._config

    @property
    def names(self) -> list[str]:
        return list(self._environments)

    def get(self, name: str) -> Environment:
        """Look up an environment by name.

        Raises:
            UnknownEnvironment: If no environment has this name.
        """
        env = self._environments.get(name)
        if env is None:
            raise UnknownEnvironment(
                f"Unknown environment '{name}'. "
                f"Declared: {', '.join(self._environments) or '(none)'}",
                environment=name,
            )
        return env

    def __contains__(self, name: object) -> bool:
        return name in self._environments

    def __iter__(self):
        return iter(self._environments.values())

    def services_for(self, env: Environment) -> list[ServiceSpec]:
        """Services deployed to an environment, in declaration order."""
        if not env.services:
            return list(self._services.values())
        return [self._services[name] for name in env.services]

    def overlay_path(self, env: Environment) -> str:
        """Repository-relative path of the environment's kustomization file."""
        return f"{self.overlay_dir(env)}/{OVERLAY_FILE}"

    def overlay_dir(self, env: Environment) -> str:
        root = self._config.overlay_root.strip("/")
        return f"{root}/{env.overlay_dir}" if root else env.overlay_dir

    def members_of(self, group: str) -> set[str]:
        return set(self._config.approver_groups.get(group, ()))

    def groups_of(self, reviewer: str) -> frozenset[str]:
        """Approver groups a reviewer belongs to."""
        return frozenset(
            group for group, members in self._config.approver_groups.items()
            if reviewer in members
        )


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for promotion.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to promotion.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / PROMOTION_CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_config(path: Path | None = None) -> PromotionConfig:
    """Load and validate promotion configuration.

    Args:
        path: Explicit path to promotion.yml. If None, searches upward.

    Returns:
        Validated PromotionConfig model.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(
            f"No {PROMOTION_CONFIG_FILE} found. Create one at the repository root, "
            "or specify --config."
        )

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading promotion config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        config = PromotionConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid promotion configuration: {e}") from e

    logger.info(
        "Loaded project '%s' with %d environments, %d services",
        config.project,
        len(config.environments),
        len(config.services),
    )
    return config


def load_registry(path: Path | None = None) -> EnvironmentRegistry:
    """Load promotion.yml and wrap it in an EnvironmentRegistry."""
    return EnvironmentRegistry(load_config(path))


def project_root(config_path: Path) -> Path:
    """Get the repository root directory from a config file path."""
    return config_path.parent.resolve()
