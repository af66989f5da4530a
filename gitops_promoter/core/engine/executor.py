"""
Engine executor — the promotion orchestration loop.

Takes a PromotionRequest, serializes it against other promotions of
the same environment, plans, publishes, and records the attempt.

Flow:
    request → environment lock → refresh → plan → (no-op? AlreadyPromoted) → publish → audit → unlock

A publish conflict (trunk moved between plan and publish) is retried
exactly once after refreshing the store and re-planning.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

from gitops_promoter.adapters.base import ArtifactRegistry, ConfigStore, ReviewSystem, SyncController
from gitops_promoter.core.config.loader import EnvironmentRegistry
from gitops_promoter.core.engine.approval import ApprovalGate
from gitops_promoter.core.engine.locks import EnvironmentLocks
from gitops_promoter.core.engine.planner import PromotionPlanner
from gitops_promoter.core.engine.publisher import ChangePublisher
from gitops_promoter.core.engine.resolver import ImageResolver
from gitops_promoter.core.errors import (
    PolicyViolation,
    PromotionCancelled,
    PromotionError,
    PublishConflict,
)
from gitops_promoter.core.models.promotion import (
    ConfigurationMutation,
    PromotionRequest,
    PublishResult,
)
from gitops_promoter.core.models.review import ApprovalStatus
from gitops_promoter.core.models.sync import SyncState
from gitops_promoter.core.persistence.audit import AuditEntry, AuditWriter
from gitops_promoter.core.reliability.circuit_breaker import CircuitBreakerRegistry
from gitops_promoter.core.reliability.retry import RetryPolicy

logger = logging.getLogger(__name__)


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"


def _check_cancel(cancel: threading.Event | None, stage: str) -> None:
    if cancel is not None and cancel.is_set():
        raise PromotionCancelled(f"Promotion cancelled {stage}", stage=stage)


class PromotionEngine:
    """Facade over resolver, planner, publisher and approval gate."""

    def __init__(
        self,
        environments: EnvironmentRegistry,
        store: ConfigStore,
        registry: ArtifactRegistry,
        *,
        reviews: ReviewSystem | None = None,
        sync: SyncController | None = None,
        audit: AuditWriter | None = None,
        retry_policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        max_workers: int = 8,
        lock_timeout: float | None = None,
        lock_dir: Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.environments = environments
        self.store = store
        self.sync_controller = sync
        self.audit = audit
        self.locks = EnvironmentLocks(lock_dir)
        self.lock_timeout = lock_timeout

        self.resolver = ImageResolver(
            registry,
            retry_policy=retry_policy,
            breakers=breakers,
            max_workers=max_workers,
            sleep=sleep,
        )
        self.planner = PromotionPlanner(environments, store, self.resolver)
        self.gate = ApprovalGate(environments, reviews) if reviews is not None else None
        self.publisher = ChangePublisher(environments, store, reviews, self.gate)

    @classmethod
    def from_registry(
        cls,
        environments: EnvironmentRegistry,
        store: ConfigStore,
        registry: ArtifactRegistry,
        **kwargs,
    ) -> PromotionEngine:
        """Build an engine with retry/breaker tuning taken from promotion.yml."""
        settings = environments.config.registry
        kwargs.setdefault(
            "retry_policy",
            RetryPolicy(
                max_attempts=settings.max_attempts,
                base_delay=settings.base_delay,
                max_delay=settings.max_delay,
            ),
        )
        kwargs.setdefault(
            "breakers",
            CircuitBreakerRegistry(
                default_threshold=settings.failure_threshold,
                default_timeout=settings.recovery_timeout,
            ),
        )
        kwargs.setdefault("max_workers", settings.max_workers)
        return cls(environments, store, registry, **kwargs)

    # ── Planning ─────────────────────────────────────────────────

    def plan(self, source_commit: str, target_environment: str) -> ConfigurationMutation:
        """Plan without publishing (dry run). Takes no lock, writes nothing."""
        return self.planner.plan(source_commit, target_environment)

    # ── Promotion ────────────────────────────────────────────────

    def promote(
        self,
        request: PromotionRequest,
        cancel: threading.Event | None = None,
    ) -> PublishResult:
        """Promote a build into an environment.

        Returns Committed, ReviewOpened or AlreadyPromoted.

        Raises:
            PromotionError: Any failure from the taxonomy, after it is audited.
        """
        operation_id = generate_operation_id()
        start = time.monotonic()
        mutation: ConfigurationMutation | None = None

        try:
            env = self.environments.get(request.target_environment)
            with self.locks.hold(env.name, timeout=self.lock_timeout):
                logger.info(
                    "[%s] promoting %s → %s (requested by %s)",
                    operation_id,
                    request.source_commit[:12],
                    env.name,
                    request.requested_by or "unknown",
                )
                result, mutation = self._promote_locked(request, cancel)
        except PromotionError as e:
            logger.error("[%s] promotion failed (%s): %s", operation_id, e.kind, e.message)
            self._audit(operation_id, "promote", request, start, mutation=mutation, error=e)
            raise

        logger.info("[%s] %s: %s", operation_id, env.name, result.status)
        self._audit(operation_id, "promote", request, start, mutation=mutation, result=result)
        return result

    def _promote_locked(
        self,
        request: PromotionRequest,
        cancel: threading.Event | None,
    ) -> tuple[PublishResult, ConfigurationMutation]:
        env = self.environments.get(request.target_environment)
        self.store.refresh()

        for attempt in (1, 2):
            _check_cancel(cancel, "before planning")
            mutation = self.planner.plan(request.source_commit, env.name)
            if mutation.is_noop:
                return (
                    PublishResult.already_promoted(
                        env.name,
                        revision=self.store.head(),
                        message=f"{env.name} already runs {mutation.edits[0].new_value}",
                    ),
                    mutation,
                )

            _check_cancel(cancel, "before publishing")
            try:
                return self.publisher.publish(mutation, env, request.requested_by), mutation
            except PublishConflict as e:
                if attempt == 2:
                    raise PublishConflict(
                        f"Conflict persists after refresh: {e.message}; resolve manually",
                        **e.details,
                    ) from e
                logger.warning("Publish conflict on %s (%s); refreshing and re-planning", env.name, e.message)
                self.store.refresh()

        raise AssertionError("unreachable")

    # ── Reviews ──────────────────────────────────────────────────

    def check_approvals(self, review_id: str) -> ApprovalStatus:
        if self.gate is None:
            raise PolicyViolation("No review system configured")
        return self.gate.check_approvals(review_id)

    def complete_review(self, review_id: str, environment: str, requested_by: str = "") -> PublishResult:
        """Merge an approved review under the environment lock."""
        operation_id = generate_operation_id()
        start = time.monotonic()
        env = self.environments.get(environment)
        request_stub = PromotionRequest.model_construct(
            source_commit="", target_environment=env.name, requested_by=requested_by,
        )
        try:
            with self.locks.hold(env.name, timeout=self.lock_timeout):
                self.store.refresh()
                result = self.publisher.complete_review(review_id, env)
        except PromotionError as e:
            self._audit(operation_id, "merge", request_stub, start, error=e, review_id=review_id)
            raise
        self._audit(operation_id, "merge", request_stub, start, result=result)
        return result

    def close_review(self, review_id: str, environment: str, reason: str = "") -> PublishResult:
        env = self.environments.get(environment)
        with self.locks.hold(env.name, timeout=self.lock_timeout):
            return self.publisher.close_review(review_id, env, reason)

    def revert(self, revision: str, environment: str, requested_by: str = "") -> PublishResult:
        """Explicit compensating action for a committed promotion."""
        operation_id = generate_operation_id()
        start = time.monotonic()
        env = self.environments.get(environment)
        request_stub = PromotionRequest.model_construct(
            source_commit="", target_environment=env.name, requested_by=requested_by,
        )
        try:
            with self.locks.hold(env.name, timeout=self.lock_timeout):
                self.store.refresh()
                result = self.publisher.revert(revision, env)
        except PromotionError as e:
            self._audit(operation_id, "revert", request_stub, start, error=e)
            raise
        self._audit(operation_id, "revert", request_stub, start, result=result)
        return result

    # ── Sync status ──────────────────────────────────────────────

    def query_sync_state(self, environment: str) -> SyncState:
        env = self.environments.get(environment)
        if self.sync_controller is None:
            raise PolicyViolation("No sync controller configured")
        return self.sync_controller.get(env.name)

    # ── Audit ────────────────────────────────────────────────────

    def _audit(
        self,
        operation_id: str,
        operation_type: str,
        request: PromotionRequest,
        start: float,
        *,
        mutation: ConfigurationMutation | None = None,
        result: PublishResult | None = None,
        error: PromotionError | None = None,
        review_id: str | None = None,
    ) -> None:
        if self.audit is None:
            return
        entry = AuditEntry(
            operation_id=operation_id,
            operation_type=operation_type,
            environment=request.target_environment,
            source_commit=request.source_commit,
            requested_by=request.requested_by,
            status=result.status if result else "failed",
            revision=result.revision if result else None,
            review_id=result.review_id if result else review_id,
            edits=len(mutation.changed_edits) if mutation else 0,
            duration_ms=int((time.monotonic() - start) * 1000),
            error_kind=error.kind if error else None,
            error=error.message if error else None,
        )
        self.audit.write(entry)
