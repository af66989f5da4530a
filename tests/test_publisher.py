"""
Tests for the change publisher — direct commits, review requests, completion.
"""

import pytest

from gitops_promoter.core.engine.approval import ApprovalGate
from gitops_promoter.core.engine.overlay import read_image_tags
from gitops_promoter.core.engine.planner import PromotionPlanner
from gitops_promoter.core.engine.publisher import (
    ChangePublisher,
    commit_message,
    review_body,
    review_branch,
)
from gitops_promoter.core.engine.resolver import ImageResolver
from gitops_promoter.core.errors import ApprovalPending, PolicyViolation, PublishConflict
from gitops_promoter.core.models.review import ReviewState

from conftest import overlay_text

SHA_A = "a1b2c3d4e5f60718293a4b5c6d7e8f9012345678"
SHA_B = "b2c3d4e5f60718293a4b5c6d7e8f9012345678a1"
DEV = "environments/dev/kustomization.yaml"
STAGING = "environments/staging/kustomization.yaml"
SERVICES = {"ledger": "ghcr.io/acme/ledger", "ledger-backoffice": "ghcr.io/acme/ledger-backoffice"}


@pytest.fixture
def planner(environments, store, registry):
    return PromotionPlanner(environments, store, ImageResolver(registry, sleep=lambda _: None))


@pytest.fixture
def publisher(environments, store, reviews):
    return ChangePublisher(environments, store, reviews, ApprovalGate(environments, reviews))


def _tags(store, path, ref=None):
    return read_image_tags(store.read_file(path, ref), SERVICES)


class TestMessages:
    def test_review_branch(self):
        assert review_branch("staging", SHA_A) == "promote/staging/a1b2c3d"

    def test_commit_message_trailers(self, planner):
        message = commit_message(planner.plan(SHA_A, "dev"), requested_by="ci-bot")
        assert message.startswith("promote(dev): ledger, ledger-backoffice → main-a1b2c3d")
        assert f"Promote-Commit: {SHA_A}" in message
        assert "Promote-Environment: dev" in message
        assert "Requested-By: ci-bot" in message

    def test_review_body_carries_marker(self, planner):
        mutation = planner.plan(SHA_A, "staging")
        body = review_body(mutation, {"images[ledger].newTag": "stg-0000000"})
        assert "stg-a1b2c3d" in body
        assert f'"fingerprint": "{mutation.fingerprint}"' in body
        assert "<!-- promoter:" in body


class TestDirectCommit:
    def test_commits_to_trunk(self, planner, publisher, store, environments):
        result = publisher.publish(planner.plan(SHA_A, "dev"), environments.get("dev"), "ci-bot")
        assert result.status == "committed"
        assert result.revision == store.head()
        assert set(_tags(store, DEV).values()) == {"main-a1b2c3d"}
        assert store.log(1)[0].files == (DEV,)

    def test_already_on_trunk(self, planner, publisher, store, environments):
        mutation = planner.plan(SHA_A, "dev")
        publisher.publish(mutation, environments.get("dev"))
        head = store.head()
        again = publisher.publish(mutation, environments.get("dev"))
        assert again.status == "already_promoted"
        assert store.head() == head

    def test_noop_mutation(self, planner, publisher, store, environments):
        publisher.publish(planner.plan(SHA_A, "dev"), environments.get("dev"))
        result = publisher.publish(planner.plan(SHA_A, "dev"), environments.get("dev"))
        assert result.status == "already_promoted"

    def test_conflict_when_trunk_moved(self, planner, publisher, store, environments):
        mutation = planner.plan(SHA_A, "dev")
        store.commit({DEV: overlay_text("main", "b2c3d4e")}, "someone else")
        with pytest.raises(PublishConflict):
            publisher.publish(mutation, environments.get("dev"))

    def test_wrong_environment(self, planner, publisher, environments):
        with pytest.raises(PolicyViolation):
            publisher.publish(planner.plan(SHA_A, "dev"), environments.get("qa"))


class TestReviewRequest:
    def test_opens_review_without_touching_trunk(self, planner, publisher, store, reviews, environments):
        head = store.head()
        result = publisher.publish(planner.plan(SHA_A, "staging"), environments.get("staging"))
        assert result.status == "review_opened"
        assert store.head() == head

        review = reviews.get_review(result.review_id)
        assert review.branch == "promote/staging/a1b2c3d"
        assert review.state == ReviewState.OPEN
        assert set(_tags(store, STAGING, review.branch).values()) == {"stg-a1b2c3d"}
        assert review.base_values == {
            "images[ledger].newTag": "stg-0000000",
            "images[ledger-backoffice].newTag": "stg-0000000",
        }

    def test_same_change_reuses_open_review(self, planner, publisher, reviews, environments):
        env = environments.get("staging")
        first = publisher.publish(planner.plan(SHA_A, "staging"), env)
        second = publisher.publish(planner.plan(SHA_A, "staging"), env)
        assert second.review_id == first.review_id
        assert len(reviews.list_open("staging")) == 1

    def test_newer_promotion_supersedes(self, planner, publisher, reviews, environments):
        env = environments.get("staging")
        first = publisher.publish(planner.plan(SHA_A, "staging"), env)
        second = publisher.publish(planner.plan(SHA_B, "staging"), env)
        assert second.review_id != first.review_id
        assert reviews.get_review(first.review_id).state == ReviewState.CLOSED
        assert [r.review_id for r in reviews.list_open("staging")] == [second.review_id]

    def test_requires_review_system(self, planner, environments, store):
        publisher = ChangePublisher(environments, store)
        with pytest.raises(PolicyViolation, match="review system"):
            publisher.publish(planner.plan(SHA_A, "staging"), environments.get("staging"))


class TestCompleteReview:
    @pytest.fixture
    def opened(self, planner, publisher, environments):
        return publisher.publish(planner.plan(SHA_A, "staging"), environments.get("staging")).review_id

    def _approve_all(self, reviews, review_id):
        reviews.approve(review_id, "alice", {"platform"})
        reviews.approve(review_id, "bob", {"qa-leads"})

    def test_pending_without_approvals(self, publisher, environments, opened):
        with pytest.raises(ApprovalPending) as exc:
            publisher.complete_review(opened, environments.get("staging"))
        assert exc.value.missing_groups == ["platform", "qa-leads"]

    def test_merge_after_approvals(self, publisher, reviews, store, environments, opened):
        self._approve_all(reviews, opened)
        result = publisher.complete_review(opened, environments.get("staging"))
        assert result.status == "merged"
        assert result.revision == store.head()
        assert set(_tags(store, STAGING).values()) == {"stg-a1b2c3d"}
        assert reviews.get_review(opened).state == ReviewState.MERGED

    def test_merge_is_idempotent(self, publisher, reviews, store, environments, opened):
        self._approve_all(reviews, opened)
        first = publisher.complete_review(opened, environments.get("staging"))
        again = publisher.complete_review(opened, environments.get("staging"))
        assert again.status == "merged"
        assert again.revision == first.revision
        assert store.head() == first.revision

    def test_rejected_review(self, publisher, reviews, environments, opened):
        reviews.reject(opened)
        result = publisher.complete_review(opened, environments.get("staging"))
        assert result.status == "rejected"
        assert not result.ok

    def test_stale_review_closed(self, publisher, reviews, store, environments, opened):
        self._approve_all(reviews, opened)
        store.commit({STAGING: overlay_text("stg", "b2c3d4e")}, "hotfix on trunk")
        result = publisher.complete_review(opened, environments.get("staging"))
        assert result.status == "closed"
        assert reviews.get_review(opened).state == ReviewState.CLOSED
        assert set(_tags(store, STAGING).values()) == {"stg-b2c3d4e"}

    def test_review_for_other_environment(self, publisher, environments, opened):
        with pytest.raises(PolicyViolation):
            publisher.complete_review(opened, environments.get("qa"))


class TestCompensatingActions:
    def test_close_review(self, planner, publisher, reviews, environments):
        env = environments.get("staging")
        review_id = publisher.publish(planner.plan(SHA_A, "staging"), env).review_id
        result = publisher.close_review(review_id, env, "not today")
        assert result.status == "closed"
        assert reviews.get_review(review_id).state == ReviewState.CLOSED

    def test_revert(self, planner, publisher, store, environments):
        env = environments.get("dev")
        committed = publisher.publish(planner.plan(SHA_A, "dev"), env)
        result = publisher.revert(committed.revision, env)
        assert result.status == "committed"
        assert set(_tags(store, DEV).values()) == {"main-0000000"}
