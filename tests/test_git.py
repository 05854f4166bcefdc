"""Tests for GitRepo against real throwaway repositories."""

from __future__ import annotations

import pytest

from ralph_stack.git import BranchExistsError, DirtyWorktreeError, GitError, GitRepo

from fakes import git


@pytest.fixture
def repo(remote_repo):
    return GitRepo(remote_repo, remote="origin", base_branch="main", ignore_paths=[".ralph/"])


def test_clean_tree_ignores_untracked_files(repo, remote_repo):
    (remote_repo / "scratch.txt").write_text("untracked\n")
    assert repo.changed_tracked_files() == []
    repo.require_clean()


def test_modified_tracked_file_is_dirty(repo, remote_repo):
    (remote_repo / "README.md").write_text("changed\n")

    with pytest.raises(DirtyWorktreeError) as exc:
        repo.require_clean()

    assert any("README.md" in line for line in exc.value.changed)
    assert "git stash" in str(exc.value)


def test_ignore_paths_do_not_count_as_dirty(remote_repo):
    progress = remote_repo / "scripts" / "ralph" / "progress.txt"
    progress.write_text("start\n")
    git(remote_repo, "add", str(progress))
    git(remote_repo, "commit", "-m", "track progress")
    progress.write_text("start\nmore\n")

    plain = GitRepo(remote_repo)
    ignoring = GitRepo(remote_repo, ignore_paths=["scripts/ralph/progress.txt"])

    assert plain.changed_tracked_files() != []
    assert ignoring.changed_tracked_files() == []


def test_ensure_repo_outside_git(tmp_path):
    with pytest.raises(GitError, match="Not a git repository"):
        GitRepo(tmp_path).ensure_repo()


def test_sync_create_branch_commit_and_push(repo, remote_repo):
    repo.sync_base()
    repo.create_branch("feat/AUTH-001")
    assert repo.current_branch() == "feat/AUTH-001"

    (remote_repo / "login.txt").write_text("login\n")
    repo.stage_all()
    assert repo.staged_files() == ["login.txt"]

    sha = repo.commit("feat(AUTH-001): login form\n\nStory-ID: AUTH-001\n")
    assert sha == repo.head()
    assert "feat(AUTH-001): login form" in repo.last_commit_oneline()
    body = git(remote_repo, "log", "-1", "--pretty=%B")
    assert "Story-ID: AUTH-001" in body

    repo.push("feat/AUTH-001")
    assert repo.remote_branch_exists("feat/AUTH-001")


def test_create_branch_refuses_existing_local_branch(repo):
    git(repo.project_root, "branch", "feat/AUTH-001")

    with pytest.raises(BranchExistsError, match="already exists locally"):
        repo.create_branch("feat/AUTH-001")


def test_create_branch_refuses_existing_remote_branch(repo):
    git(repo.project_root, "push", "origin", "main:feat/AUTH-001")
    git(repo.project_root, "fetch", "origin")

    with pytest.raises(BranchExistsError, match="exists on origin"):
        repo.create_branch("feat/AUTH-001")


def test_create_branch_force_replaces_existing(repo):
    git(repo.project_root, "branch", "feat/AUTH-001")
    git(repo.project_root, "push", "origin", "main:feat/AUTH-001")
    git(repo.project_root, "fetch", "origin")

    repo.create_branch("feat/AUTH-001", force=True)

    assert repo.current_branch() == "feat/AUTH-001"
    assert "feat/AUTH-001" not in git(repo.project_root, "ls-remote", "--heads", "origin")


def test_commit_with_nothing_staged_raises(repo):
    with pytest.raises(GitError, match="git commit failed"):
        repo.commit("empty")


def test_discard_branch_returns_to_base(repo, remote_repo):
    repo.create_branch("feat/AUTH-002")
    (remote_repo / "README.md").write_text("agent edits\n")

    repo.discard_branch("feat/AUTH-002")

    assert repo.current_branch() == "main"
    assert not repo.local_branch_exists("feat/AUTH-002")
    assert repo.changed_tracked_files() == []


def test_discard_branch_keeps_ignored_files(remote_repo):
    progress = remote_repo / "scripts" / "ralph" / "progress.txt"
    progress.write_text("committed\n")
    git(remote_repo, "add", str(progress))
    git(remote_repo, "commit", "-m", "track progress")
    repo = GitRepo(remote_repo, base_branch="main", ignore_paths=["scripts/ralph/progress.txt"])

    repo.create_branch("feat/AUTH-001")
    progress.write_text("committed\nStarting: AUTH-001\nFAILED: AUTH-001\n")
    (remote_repo / "README.md").write_text("agent edits\n")

    repo.discard_branch("feat/AUTH-001")

    assert repo.current_branch() == "main"
    assert progress.read_text() == "committed\nStarting: AUTH-001\nFAILED: AUTH-001\n"
    assert (remote_repo / "README.md").read_text() == "demo\n"
    assert repo.changed_tracked_files() == []


def test_sync_after_merge_cleans_up_branches(repo, remote_repo):
    repo.create_branch("feat/AUTH-001")
    (remote_repo / "a.txt").write_text("a\n")
    repo.stage_all()
    repo.commit("feat(AUTH-001): a")
    repo.push("feat/AUTH-001")
    # What a squash merge on the platform would do to main.
    git(remote_repo, "push", "origin", "feat/AUTH-001:main")

    repo.sync_after_merge("feat/AUTH-001")

    assert repo.current_branch() == "main"
    assert (remote_repo / "a.txt").exists()
    assert not repo.local_branch_exists("feat/AUTH-001")
    assert not repo.remote_branch_exists("feat/AUTH-001")


def test_log_oneline_and_remote_url(repo, remote_repo):
    assert repo.log_oneline(5)[0].endswith("Initial commit")
    assert repo.remote_url().endswith("origin.git")
