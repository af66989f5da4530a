"""
Tests for the in-memory adapters — store, reviews, sync controller, registry.
"""

import pytest

from gitops_promoter.adapters.mock import (
    InMemoryArtifactRegistry,
    InMemoryConfigStore,
    InMemoryReviewSystem,
    InMemorySyncController,
)
from gitops_promoter.core.errors import PublishConflict, RegistryUnavailableError, ReviewNotFound
from gitops_promoter.core.models.review import ReviewState
from gitops_promoter.core.models.sync import SyncStatus

from conftest import overlay_text

DEV = "environments/dev/kustomization.yaml"


# ── Config store ─────────────────────────────────────────────────────


class TestInMemoryConfigStore:
    def test_initial_commit(self):
        store = InMemoryConfigStore({"a.yaml": "x"})
        assert store.head() is not None
        assert store.read_file("a.yaml") == "x"
        assert store.read_file("missing.yaml") is None

    def test_commit_advances_trunk(self):
        store = InMemoryConfigStore({"a.yaml": "x"})
        first = store.head()
        sha = store.commit({"a.yaml": "y"}, "change a", author="ci-bot")
        assert store.head() == sha != first
        assert store.read_file("a.yaml") == "y"
        assert store.read_file("a.yaml", first) == "x"

        commit = store.log(1)[0]
        assert commit.parents == (first,)
        assert commit.files == ("a.yaml",)
        assert commit.author == "ci-bot"

    def test_compare_and_swap(self):
        store = InMemoryConfigStore({"a.yaml": "x"})
        store.commit({"a.yaml": "y"}, "ok", expected={"a.yaml": "x"})
        head = store.head()
        with pytest.raises(PublishConflict):
            store.commit({"a.yaml": "z"}, "stale", expected={"a.yaml": "x"})
        assert store.head() == head

    def test_short_sha_resolves(self):
        store = InMemoryConfigStore({"a.yaml": "x"})
        sha = store.commit({"a.yaml": "y"}, "change")
        assert store.read_file("a.yaml", sha[:10]) == "y"

    def test_branch_and_merge(self):
        store = InMemoryConfigStore({"a.yaml": "x", "b.yaml": "1"})
        store.create_branch("feature")
        store.commit({"a.yaml": "y"}, "on branch", branch="feature")
        assert store.read_file("a.yaml") == "x"

        store.commit({"b.yaml": "2"}, "on trunk")
        merge = store.merge("feature", "merge feature")
        assert store.head() == merge
        assert store.read_file("a.yaml") == "y"
        assert store.read_file("b.yaml") == "2"
        assert len(store.log(1)[0].parents) == 2

    def test_merge_conflict(self):
        store = InMemoryConfigStore({"a.yaml": "x"})
        store.create_branch("feature")
        store.commit({"a.yaml": "y"}, "branch", branch="feature")
        store.commit({"a.yaml": "z"}, "trunk")
        head = store.head()
        with pytest.raises(PublishConflict, match="Merge conflict"):
            store.merge("feature", "merge")
        assert store.head() == head

    def test_commit_to_missing_branch(self):
        with pytest.raises(PublishConflict):
            InMemoryConfigStore().commit({"a": "b"}, "m", branch="ghost")

    def test_delete_branch_keeps_trunk(self):
        store = InMemoryConfigStore()
        store.create_branch("feature")
        store.delete_branch("feature")
        store.delete_branch("main")
        assert store.head("feature") is None
        assert store.head() is not None

    def test_revert(self):
        store = InMemoryConfigStore({"a.yaml": "x"})
        sha = store.commit({"a.yaml": "y"}, "change")
        store.revert(sha)
        assert store.read_file("a.yaml") == "x"
        assert store.log(1)[0].message.startswith('Revert "change"')

    def test_revert_refused_after_later_change(self):
        store = InMemoryConfigStore({"a.yaml": "x"})
        sha = store.commit({"a.yaml": "y"}, "change")
        store.commit({"a.yaml": "z"}, "later")
        with pytest.raises(PublishConflict, match="by hand"):
            store.revert(sha)

    def test_revert_root_refused(self):
        store = InMemoryConfigStore({"a.yaml": "x"})
        with pytest.raises(PublishConflict):
            store.revert(store.head())

    def test_log_newest_first(self):
        store = InMemoryConfigStore()
        for i in range(3):
            store.commit({"a.yaml": str(i)}, f"c{i}")
        assert [c.message for c in store.log(2)] == ["c2", "c1"]
        assert len(store.log(50)) == 4


# ── Review system ────────────────────────────────────────────────────


class TestInMemoryReviewSystem:
    @pytest.fixture
    def store(self):
        store = InMemoryConfigStore({DEV: overlay_text("main")})
        store.create_branch("promote/staging/a1b2c3d")
        store.commit({DEV: overlay_text("main", "a1b2c3d")}, "promote", branch="promote/staging/a1b2c3d")
        return store

    def _open(self, reviews):
        return reviews.open_review(
            environment="staging", branch="promote/staging/a1b2c3d", base="main",
            title="Promote a1b2c3d to staging", body="", fingerprint="abc", base_values={},
        )

    def test_open_and_list(self, store):
        reviews = InMemoryReviewSystem(store)
        review = self._open(reviews)
        assert review.state == ReviewState.OPEN
        assert [r.review_id for r in reviews.list_open("staging")] == [review.review_id]
        assert reviews.list_open("dev") == []

    def test_approve_then_merge(self, store):
        reviews = InMemoryReviewSystem(store)
        review = self._open(reviews)
        reviews.approve(review.review_id, "alice", {"platform"})
        assert reviews.get_review(review.review_id).state == ReviewState.APPROVED

        sha = reviews.merge_review(review.review_id)
        merged = reviews.get_review(review.review_id)
        assert merged.state == ReviewState.MERGED
        assert merged.merge_revision == sha == store.head()
        assert store.head("promote/staging/a1b2c3d") is None
        assert reviews.list_open("staging") == []

    def test_close_is_idempotent(self, store):
        reviews = InMemoryReviewSystem(store)
        review = self._open(reviews)
        reviews.close_review(review.review_id, "superseded")
        reviews.close_review(review.review_id, "again")
        closed = reviews.get_review(review.review_id)
        assert closed.state == ReviewState.CLOSED
        assert closed.body.endswith("Closed: superseded")

    def test_rejected_review_cannot_merge(self, store):
        reviews = InMemoryReviewSystem(store)
        review = self._open(reviews)
        reviews.reject(review.review_id)
        head = store.head()
        with pytest.raises(ValueError):
            reviews.merge_review(review.review_id)
        assert store.head() == head

    def test_unknown_review(self, store):
        with pytest.raises(ReviewNotFound):
            InMemoryReviewSystem(store).get_review("42")


# ── Sync controller ──────────────────────────────────────────────────


class TestInMemorySyncController:
    def test_out_of_sync_until_synced(self, store, environments):
        controller = InMemorySyncController(store, environments)
        assert controller.get("dev").status == SyncStatus.OUT_OF_SYNC
        state = controller.sync("dev")
        assert state.status == SyncStatus.SYNCED
        assert state.live_revision == store.head()

    def test_unrelated_commit_keeps_environment_synced(self, store, environments):
        controller = InMemorySyncController(store, environments)
        controller.sync("dev")
        store.commit({"environments/qa/kustomization.yaml": overlay_text("qa", "a1b2c3d")}, "qa only")
        assert controller.get("dev").in_sync
        assert not controller.get("qa").in_sync

    def test_diff(self, store, environments):
        controller = InMemorySyncController(store, environments)
        controller.sync("dev")
        assert controller.diff("dev") == ""
        store.commit({DEV: overlay_text("main", "a1b2c3d")}, "promote")
        diff = controller.diff("dev")
        assert "-  newTag: main-0000000" in diff
        assert "+  newTag: main-a1b2c3d" in diff

    def test_reconcile_only_auto_environments(self, store, environments):
        controller = InMemorySyncController(store, environments)
        assert sorted(s.environment for s in controller.reconcile()) == ["dev", "qa"]


# ── Artifact registry ────────────────────────────────────────────────


class TestInMemoryArtifactRegistry:
    def test_lookup(self):
        registry = InMemoryArtifactRegistry({"ghcr.io/acme/ledger": {"main-a1b2c3d"}})
        assert registry.manifest_exists("ghcr.io/acme/ledger", "main-a1b2c3d")
        assert not registry.manifest_exists("ghcr.io/acme/ledger", "main-0000000")
        assert registry.list_tags("ghcr.io/acme/ledger") == {"main-a1b2c3d"}

    def test_permissive(self):
        assert InMemoryArtifactRegistry(permissive=True).manifest_exists("any/repo", "any-tag")

    def test_fail_next(self):
        registry = InMemoryArtifactRegistry({"r": {"t"}})
        registry.fail_next("r", times=1)
        with pytest.raises(RegistryUnavailableError):
            registry.manifest_exists("r", "t")
        assert registry.manifest_exists("r", "t")
