"""
Image resolver — confirm artifacts exist before anything is promoted.

Lookups go through a per-host circuit breaker and a bounded
exponential-backoff retry. ``resolve_all`` fans out across services on
a thread pool and waits for every lookup before answering (fan-in),
so a plan sees either every image or the complete list of failures.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Mapping

from gitops_promoter.adapters.base import ArtifactRegistry
from gitops_promoter.core.errors import (
    CircuitOpenError,
    ImageNotFoundError,
    PromotionError,
    RegistryUnavailableError,
)
from gitops_promoter.core.models.environment import Environment
from gitops_promoter.core.models.promotion import ImageReference, short_sha
from gitops_promoter.core.reliability.circuit_breaker import CircuitBreakerRegistry
from gitops_promoter.core.reliability.retry import RetryPolicy, retry_call

logger = logging.getLogger(__name__)


def derive_tag(environment: Environment, source_commit: str) -> str:
    """Image tag a commit is published under for an environment.

    Pure: the same (environment, commit) always yields the same tag,
    e.g. ``main-abc1234`` for dev, ``stg-abc1234`` for staging.
    """
    return environment.image_tag_pattern.format(
        prefix=environment.tag_prefix,
        short_sha=short_sha(source_commit),
    )


def registry_host(repository: str) -> str:
    """Registry host of an image repository (``ghcr.io/acme/ledger`` → ``ghcr.io``)."""
    first, _, rest = repository.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        return first
    return "docker.io"


@dataclass
class ResolutionReport:
    """Fan-in result of resolving several images at once."""

    images: dict[str, ImageReference] = field(default_factory=dict)
    missing: dict[str, str] = field(default_factory=dict)       # service → image ref
    unavailable: dict[str, str] = field(default_factory=dict)   # service → error text
    failed: dict[str, PromotionError] = field(default_factory=dict)   # service → non-retryable error

    @property
    def complete(self) -> bool:
        return not self.missing and not self.unavailable and not self.failed

    def raise_for_failures(self) -> None:
        """Raise the most severe failure, if any.

        Order: missing images, then non-retryable lookup errors (re-raised
        with their own kind, e.g. denied credentials), then an unavailable
        registry. Fatal failures win because retrying cannot fix them.
        """
        if self.missing:
            refs = sorted(self.missing.values())
            raise ImageNotFoundError(
                f"Image(s) not found in registry: {', '.join(refs)}",
                missing=refs,
            )
        if self.failed:
            service = min(self.failed)
            raise self.failed[service]
        if self.unavailable:
            detail = "; ".join(f"{svc}: {err}" for svc, err in sorted(self.unavailable.items()))
            raise RegistryUnavailableError(
                f"Registry unavailable while resolving images ({detail})",
                services=sorted(self.unavailable),
            )


class ImageResolver:
    """Checks image references against the artifact registry."""

    def __init__(
        self,
        registry: ArtifactRegistry,
        *,
        retry_policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._registry = registry
        self._policy = retry_policy or RetryPolicy()
        self._breakers = breakers or CircuitBreakerRegistry()
        self._max_workers = max(1, max_workers)
        self._sleep = sleep

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    def resolve(self, repository: str, tag: str) -> ImageReference:
        """Confirm ``repository:tag`` exists.

        Raises:
            ImageNotFoundError: The registry answered, and the image is absent.
            RegistryUnavailableError: Retries exhausted, or CircuitOpenError when
                the circuit is open.
            ExternalToolError: The registry refused our credentials.
        """
        host = registry_host(repository)
        breaker = self._breakers.get_or_create(host)

        def attempt() -> bool:
            if not breaker.allow_request():
                raise CircuitOpenError(
                    f"Circuit open for registry {host}; not querying {repository}:{tag} "
                    f"(next attempt in {breaker.seconds_until_retry():.0f}s)",
                    host=host,
                )
            try:
                exists = self._registry.manifest_exists(repository, tag)
            except RegistryUnavailableError:
                breaker.record_failure()
                raise
            breaker.record_success()
            return exists

        exists = retry_call(
            attempt,
            self._policy,
            label=f"resolve {repository}:{tag}",
            sleep=self._sleep,
            stop_on=(CircuitOpenError,),
        )
        if not exists:
            ref = f"{repository}:{tag}"
            raise ImageNotFoundError(f"Image {ref} not found in registry", missing=[ref])

        logger.debug("Resolved %s:%s", repository, tag)
        return ImageReference(repository=repository, tag=tag)

    def resolve_all(self, targets: Mapping[str, tuple[str, str]]) -> ResolutionReport:
        """Resolve several images concurrently and wait for all of them.

        Args:
            targets: service name → (repository, tag).
        """
        report = ResolutionReport()
        if not targets:
            return report

        workers = min(self._max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resolve") as pool:
            futures = {
                service: pool.submit(self.resolve, repository, tag)
                for service, (repository, tag) in targets.items()
            }

        # Leaving the pool joins every worker: all lookups are done here.
        for service, future in futures.items():
            repository, tag = targets[service]
            try:
                report.images[service] = future.result()
            except ImageNotFoundError:
                report.missing[service] = f"{repository}:{tag}"
            except PromotionError as e:
                if e.retryable:
                    report.unavailable[service] = e.message
                else:
                    report.failed[service] = e

        logger.info(
            "Resolved %d/%d images (%d missing, %d unavailable, %d failed)",
            len(report.images),
            len(targets),
            len(report.missing),
            len(report.unavailable),
            len(report.failed),
        )
        return report
