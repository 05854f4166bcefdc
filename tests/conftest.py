"""Shared fixtures: throwaway git repos, output config reset, a fake clock."""

from __future__ import annotations

from pathlib import Path

import pytest

import ralph_stack.output as output_module

from fakes import LEDGER_REL, PROMPT_REL, SAMPLE_STORIES, FakeClock, git, write_ledger


@pytest.fixture(autouse=True)
def reset_output_config():
    """Each test starts from the environment-derived output config."""
    original = output_module._output_config
    output_module._output_config = None
    yield
    output_module._output_config = original


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """A working repo on ``main`` with a bare ``origin`` and a committed ledger."""
    bare = tmp_path / "origin.git"
    git(tmp_path, "init", "--bare", str(bare))

    work = tmp_path / "work"
    work.mkdir()
    git(work, "init")
    git(work, "symbolic-ref", "HEAD", "refs/heads/main")
    git(work, "config", "user.email", "test@example.com")
    git(work, "config", "user.name", "Test User")
    # Disable GPG signing to avoid keychain prompts in tests
    git(work, "config", "commit.gpgsign", "false")
    git(work, "config", "pull.rebase", "false")

    (work / "README.md").write_text("demo\n", encoding="utf-8")
    write_ledger(work / LEDGER_REL, SAMPLE_STORIES)
    (work / PROMPT_REL).write_text("# Ralph instructions\n", encoding="utf-8")
    git(work, "add", "-A")
    git(work, "commit", "-m", "Initial commit")
    git(work, "remote", "add", "origin", str(bare))
    git(work, "push", "-u", "origin", "main")
    return work


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
