"""
Promotion planner — turn (commit, environment) into a ConfigurationMutation.

Flow:
    environment lookup → derive tag → resolve every service image (all or nothing)
    → read overlay from trunk → one edit per service → isolation check

A plan is read-only: it touches the registry and reads the store, but
never writes. Planning the same commit twice for the same environment
yields a mutation whose edits are all no-ops.
"""

from __future__ import annotations

import logging

from gitops_promoter.adapters.base import ConfigStore
from gitops_promoter.core.config.loader import EnvironmentRegistry
from gitops_promoter.core.engine.overlay import image_key, parse_image_key, read_image_tags
from gitops_promoter.core.engine.resolver import ImageResolver, derive_tag
from gitops_promoter.core.errors import PolicyViolation
from gitops_promoter.core.models.environment import Environment
from gitops_promoter.core.models.promotion import ConfigEdit, ConfigurationMutation

logger = logging.getLogger(__name__)


class PromotionPlanner:
    """Computes the next desired image tags for an environment."""

    def __init__(
        self,
        environments: EnvironmentRegistry,
        store: ConfigStore,
        resolver: ImageResolver,
    ):
        self._environments = environments
        self._store = store
        self._resolver = resolver

    def plan(self, source_commit: str, target_environment: str) -> ConfigurationMutation:
        """Plan the promotion of ``source_commit`` into ``target_environment``.

        Raises:
            UnknownEnvironment: Environment not declared.
            ImageNotFoundError: At least one service image is missing; no edits.
            RegistryUnavailableError: Registry could not confirm every image.
            PolicyViolation: The overlay cannot be promoted atomically/in isolation.
        """
        env = self._environments.get(target_environment)
        services = self._environments.services_for(env)
        if not services:
            raise PolicyViolation(
                f"Environment '{env.name}' deploys no services", environment=env.name
            )

        tag = derive_tag(env, source_commit)
        logger.info("Planning %s → %s (tag %s)", source_commit[:12], env.name, tag)

        report = self._resolver.resolve_all({s.name: (s.repository, tag) for s in services})
        report.raise_for_failures()

        path = self._environments.overlay_path(env)
        text = self._store.read_file(path)
        if text is None:
            raise PolicyViolation(
                f"Overlay {path} does not exist on '{self._store.trunk}'", path=path
            )

        current = read_image_tags(text, {s.name: s.repository for s in services}, path)
        uncovered = [s.name for s in services if s.name not in current]
        if uncovered:
            raise PolicyViolation(
                f"{path} has no images entry for {', '.join(uncovered)}; "
                "services in an environment must be promoted together",
                path=path,
                services=uncovered,
            )

        mutation = ConfigurationMutation(
            environment=env.name,
            source_commit=source_commit,
            edits=tuple(
                ConfigEdit(
                    file_path=path,
                    key=image_key(s.name),
                    old_value=current[s.name],
                    new_value=tag,
                )
                for s in services
            ),
        )
        self.check_isolation(mutation, env)

        if mutation.is_noop:
            logger.info("%s already runs %s — nothing to change", env.name, tag)
        else:
            logger.info("Planned %d edit(s) for %s", len(mutation.changed_edits), env.name)
        return mutation

    def check_isolation(self, mutation: ConfigurationMutation, env: Environment) -> None:
        """A mutation may only touch image tags under its own environment's overlay.

        Raises:
            PolicyViolation: On a foreign path, a non-image key, or a missing service.
        """
        if mutation.environment != env.name:
            raise PolicyViolation(
                f"Mutation for '{mutation.environment}' cannot be applied to '{env.name}'"
            )

        prefix = self._environments.overlay_dir(env).rstrip("/") + "/"
        covered: set[str] = set()
        for edit in mutation.edits:
            if not edit.file_path.startswith(prefix) or ".." in edit.file_path.split("/"):
                raise PolicyViolation(
                    f"Edit to {edit.file_path} escapes the '{env.name}' overlay ({prefix})",
                    path=edit.file_path,
                )
            covered.add(parse_image_key(edit.key))

        expected = {s.name for s in self._environments.services_for(env)}
        if covered != expected:
            raise PolicyViolation(
                f"Partial promotion of '{env.name}' refused: "
                f"mutation covers {sorted(covered)}, environment deploys {sorted(expected)}"
            )
