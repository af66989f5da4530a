"""
Tests for the git configuration store — run against real temporary repositories.
"""

import re
import subprocess
from pathlib import Path

import pytest

from gitops_promoter.adapters.mock import InMemoryReviewSystem
from gitops_promoter.adapters.vcs.git import GitConfigStore, detect_remote, repo_slug, run_git
from gitops_promoter.core.engine.executor import PromotionEngine
from gitops_promoter.core.errors import ExternalToolError, PublishConflict
from gitops_promoter.core.models.promotion import PromotionRequest
from gitops_promoter.core.models.review import ReviewState

from conftest import overlay_text

DEV = "environments/dev/kustomization.yaml"


def _git_version() -> tuple[int, int]:
    out = subprocess.run(["git", "--version"], capture_output=True, text=True).stdout
    match = re.search(r"(\d+)\.(\d+)", out)
    return (int(match.group(1)), int(match.group(2))) if match else (0, 0)


needs_merge_tree = pytest.mark.skipif(
    _git_version() < (2, 38), reason="git merge-tree --write-tree needs git 2.38+"
)


@pytest.fixture
def git_store(git_repo: Path) -> GitConfigStore:
    return GitConfigStore(git_repo)


class TestReadAndCommit:
    def test_head_and_read(self, git_store: GitConfigStore):
        assert git_store.head() is not None
        assert "main-0000000" in git_store.read_file(DEV)
        assert git_store.read_file("environments/prod/kustomization.yaml") is None

    def test_commit_leaves_worktree_alone(self, git_store: GitConfigStore, git_repo: Path):
        before = git_store.head()
        sha = git_store.commit({DEV: overlay_text("main", "a1b2c3d")}, "promote dev\n", author="ci-bot")
        assert git_store.head() == sha != before
        assert "main-a1b2c3d" in git_store.read_file(DEV)
        assert "main-a1b2c3d" in git_store.read_file(DEV, sha)
        assert "main-0000000" in git_store.read_file(DEV, before)
        assert "main-0000000" in (git_repo / DEV).read_text()

    def test_compare_and_swap(self, git_store: GitConfigStore):
        original = git_store.read_file(DEV)
        git_store.commit({DEV: overlay_text("main", "a1b2c3d")}, "first", expected={DEV: original})
        head = git_store.head()
        with pytest.raises(PublishConflict):
            git_store.commit({DEV: overlay_text("main", "b2c3d4e")}, "stale", expected={DEV: original})
        assert git_store.head() == head

    def test_log(self, git_store: GitConfigStore):
        parent = git_store.head()
        sha = git_store.commit({DEV: overlay_text("main", "a1b2c3d")}, "promote(dev): ledger\n", author="ci-bot")
        commits = git_store.log(5)
        assert [c.sha for c in commits] == [sha, parent]
        assert commits[0].message == "promote(dev): ledger"
        assert commits[0].author == "ci-bot"
        assert commits[0].parents == (parent,)
        assert commits[0].files == (DEV,)

    def test_log_unknown_branch(self, git_store: GitConfigStore):
        assert git_store.log(5, branch="nope") == []

    def test_is_available(self, git_store: GitConfigStore, tmp_path: Path):
        assert git_store.is_available()
        plain = tmp_path / "plain"
        plain.mkdir()
        assert not GitConfigStore(plain).is_available()


class TestBranches:
    def test_create_commit_delete(self, git_store: GitConfigStore):
        trunk = git_store.head()
        git_store.create_branch("promote/staging/a1b2c3d")
        sha = git_store.commit({DEV: overlay_text("main", "a1b2c3d")}, "on branch", branch="promote/staging/a1b2c3d")
        assert git_store.head("promote/staging/a1b2c3d") == sha
        assert git_store.head() == trunk

        git_store.delete_branch("promote/staging/a1b2c3d")
        assert git_store.head("promote/staging/a1b2c3d") is None

    def test_trunk_never_deleted(self, git_store: GitConfigStore):
        git_store.delete_branch("main")
        assert git_store.head() is not None

    def test_commit_to_missing_branch(self, git_store: GitConfigStore):
        with pytest.raises(PublishConflict):
            git_store.commit({DEV: "x"}, "m", branch="ghost")

    def test_create_from_unknown_ref(self, git_store: GitConfigStore):
        with pytest.raises(ExternalToolError):
            git_store.create_branch("b", from_ref="deadbeef")

    @needs_merge_tree
    def test_merge(self, git_store: GitConfigStore):
        git_store.create_branch("review")
        git_store.commit({DEV: overlay_text("main", "a1b2c3d")}, "on branch", branch="review")
        qa = "environments/qa/kustomization.yaml"
        git_store.commit({qa: overlay_text("qa", "a1b2c3d")}, "on trunk")

        sha = git_store.merge("review", "Merge review\n")
        assert git_store.head() == sha
        assert len(git_store.log(1)[0].parents) == 2
        assert "main-a1b2c3d" in git_store.read_file(DEV)
        assert "qa-a1b2c3d" in git_store.read_file(qa)

    @needs_merge_tree
    def test_merge_conflict(self, git_store: GitConfigStore):
        git_store.create_branch("review")
        git_store.commit({DEV: overlay_text("main", "a1b2c3d")}, "branch", branch="review")
        git_store.commit({DEV: overlay_text("main", "b2c3d4e")}, "trunk")
        head = git_store.head()
        with pytest.raises(PublishConflict, match="Merge conflict"):
            git_store.merge("review", "Merge\n")
        assert git_store.head() == head


class TestRevert:
    def test_revert(self, git_store: GitConfigStore):
        sha = git_store.commit({DEV: overlay_text("main", "a1b2c3d")}, "promote dev\n")
        reverted = git_store.revert(sha)
        assert git_store.head() == reverted
        assert "main-0000000" in git_store.read_file(DEV)
        assert git_store.log(1)[0].message == 'Revert "promote dev"'

    def test_revert_after_later_change(self, git_store: GitConfigStore):
        sha = git_store.commit({DEV: overlay_text("main", "a1b2c3d")}, "first\n")
        git_store.commit({DEV: overlay_text("main", "b2c3d4e")}, "second\n")
        with pytest.raises(PublishConflict, match="by hand"):
            git_store.revert(sha)

    def test_revert_root(self, git_store: GitConfigStore):
        with pytest.raises(PublishConflict, match="root"):
            git_store.revert(git_store.head())

    def test_revert_unknown(self, git_store: GitConfigStore):
        with pytest.raises(ExternalToolError):
            git_store.revert("0123456789abcdef0123456789abcdef01234567")


class TestRemote:
    @pytest.fixture
    def remote(self, git_repo: Path, tmp_path: Path) -> Path:
        bare = tmp_path / "remote.git"
        run_git("clone", "--bare", "-q", str(git_repo), str(bare), cwd=tmp_path)
        run_git("remote", "add", "origin", str(bare), cwd=git_repo)
        return bare

    def _other_writer(self, remote: Path, tmp_path: Path) -> GitConfigStore:
        clone = tmp_path / "other"
        run_git("clone", "-q", str(remote), str(clone), cwd=tmp_path)
        return GitConfigStore(clone, remote="origin")

    def test_detect_remote(self, git_repo: Path, remote: Path):
        assert detect_remote(git_repo) == "origin"

    def test_no_remote(self, git_repo: Path):
        assert detect_remote(git_repo) is None

    def test_repo_slug(self, git_repo: Path):
        run_git("remote", "add", "origin", "git@github.com:acme/ledger-config.git", cwd=git_repo)
        assert repo_slug(git_repo) == "acme/ledger-config"

    def test_repo_slug_non_github(self, git_repo: Path, remote: Path):
        assert repo_slug(git_repo) is None

    def test_commit_pushes(self, git_repo: Path, remote: Path):
        store = GitConfigStore(git_repo, remote="origin")
        sha = store.commit({DEV: overlay_text("main", "a1b2c3d")}, "promote\n")
        pushed = run_git("rev-parse", "refs/heads/main", cwd=remote).stdout.strip()
        assert pushed == sha

    def test_rejected_push_rolls_back(self, git_repo: Path, remote: Path, tmp_path: Path):
        store = GitConfigStore(git_repo, remote="origin")
        head = store.head()
        other = self._other_writer(remote, tmp_path)
        theirs = other.commit({"environments/qa/kustomization.yaml": overlay_text("qa", "b2c3d4e")}, "qa\n")

        with pytest.raises(PublishConflict, match="rejected"):
            store.commit({DEV: overlay_text("main", "a1b2c3d")}, "promote\n")
        assert store.head() == head

        store.refresh()
        assert store.head() == theirs
        sha = store.commit({DEV: overlay_text("main", "a1b2c3d")}, "promote\n")
        assert run_git("rev-parse", "refs/heads/main", cwd=remote).stdout.strip() == sha

    def test_refresh_without_remote_is_noop(self, git_store: GitConfigStore):
        head = git_store.head()
        git_store.refresh()
        assert git_store.head() == head


@needs_merge_tree
class TestEngineOverRemote:
    """An engine over a clone whose origin has moved on since the clone last fetched."""

    STAGING = "environments/staging/kustomization.yaml"
    SHA = "a1b2c3d4e5f60718293a4b5c6d7e8f9012345678"

    @pytest.fixture
    def remote(self, git_repo: Path, tmp_path: Path) -> Path:
        bare = tmp_path / "remote.git"
        run_git("clone", "--bare", "-q", str(git_repo), str(bare), cwd=tmp_path)
        run_git("remote", "add", "origin", str(bare), cwd=git_repo)
        return bare

    @pytest.fixture
    def store(self, git_repo: Path, remote: Path) -> GitConfigStore:
        return GitConfigStore(git_repo, remote="origin")

    @pytest.fixture
    def reviews(self, store: GitConfigStore) -> InMemoryReviewSystem:
        return InMemoryReviewSystem(store)

    @pytest.fixture
    def engine(self, environments, store, registry, reviews) -> PromotionEngine:
        return PromotionEngine(environments, store, registry, reviews=reviews, sleep=lambda _: None)

    def _push_from_elsewhere(self, remote: Path, tmp_path: Path, files: dict[str, str]) -> str:
        clone = tmp_path / "operator"
        run_git("clone", "-q", str(remote), str(clone), cwd=tmp_path)
        return GitConfigStore(clone, remote="origin").commit(files, "hotfix\n")

    def test_review_stale_against_remote_is_closed(self, engine, store, reviews, remote, tmp_path):
        opened = engine.promote(PromotionRequest(source_commit=self.SHA, target_environment="staging"))
        reviews.approve(opened.review_id, "alice", {"platform"})
        reviews.approve(opened.review_id, "bob", {"qa-leads"})
        hotfix = self._push_from_elsewhere(remote, tmp_path, {self.STAGING: overlay_text("stg", "b2c3d4e")})

        result = engine.complete_review(opened.review_id, "staging")
        assert result.status == "closed"
        assert reviews.get_review(opened.review_id).state == ReviewState.CLOSED
        assert store.head() == hotfix

    def test_promote_plans_against_remote_tip(self, engine, store, remote, tmp_path):
        theirs = self._push_from_elsewhere(remote, tmp_path, {DEV: overlay_text("main", "a1b2c3d")})
        result = engine.promote(PromotionRequest(source_commit=self.SHA, target_environment="dev"))
        assert result.status == "already_promoted"
        assert result.revision == theirs
