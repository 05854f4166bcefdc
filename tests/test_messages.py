"""Tests for commit message and PR body rendering."""

from __future__ import annotations

from ralph_stack.ledger import Story
from ralph_stack.messages import (
    GENERATED_FOOTER,
    build_commit_message,
    build_pr_body,
    fold,
    pr_title,
    story_addendum,
)


def _story(**kwargs) -> Story:
    base = dict(
        id="AUTH-001",
        title="Login Form",
        description="Email and password login page.",
        acceptance_criteria=["Form validates email", "Errors are shown inline"],
        files_to_create=["apps/web/src/app/login/page.tsx"],
        notes="",
    )
    base.update(kwargs)
    return Story(**base)


def test_pr_title_lowercases_title():
    assert pr_title(_story()) == "feat(AUTH-001): login form"


def test_commit_message_layout():
    msg = build_commit_message(_story(notes="Use zod"), ["a.ts", "b.ts"], iteration=3)

    assert msg == (
        "feat(AUTH-001): login form\n"
        "\n"
        "Email and password login page.\n"
        "\n"
        "Acceptance Criteria:\n"
        "- Form validates email\n"
        "- Errors are shown inline\n"
        "\n"
        "Files changed (2):\n"
        "a.ts\n"
        "b.ts\n"
        "\n"
        "Notes: Use zod\n"
        "\n"
        "Story-ID: AUTH-001\n"
        "Ralph-Iteration: 3\n"
    )


def test_commit_message_omits_empty_sections():
    msg = build_commit_message(_story(description="", acceptance_criteria=[]), [])

    assert msg == "feat(AUTH-001): login form\n\nStory-ID: AUTH-001\n"
    assert "Ralph-Iteration" not in msg


def test_commit_message_lists_first_twenty_files():
    files = [f"src/file_{i:02d}.ts" for i in range(23)]
    msg = build_commit_message(_story(), files)

    assert "Files changed (23):" in msg
    assert "src/file_19.ts" in msg
    assert "src/file_20.ts" not in msg
    assert "... and 3 more" in msg


def test_commit_message_wraps_long_description():
    description = " ".join(["word"] * 60)
    msg = build_commit_message(_story(description=description, acceptance_criteria=[]), [])

    body_lines = msg.split("\n\n")[1].splitlines()
    assert len(body_lines) > 1
    assert all(len(line) <= 100 for line in body_lines)


def test_fold_keeps_blank_lines_and_long_words():
    assert fold("a\n\nb", 10) == "a\n\nb"
    assert fold("x" * 15, 10).splitlines() == ["x" * 10, "x" * 5]


def test_pr_body_layout():
    body = build_pr_body(_story(notes="Needs design review"), iteration=2)

    assert body.startswith("## Summary\n\nEmail and password login page.")
    assert "## Acceptance Criteria\n- [x] Form validates email\n- [x] Errors are shown inline" in body
    assert "## Files\n- apps/web/src/app/login/page.tsx" in body
    assert "## Notes\nNeeds design review" in body
    assert "---\n**Story ID:** `AUTH-001`\n**Ralph Iteration:** 2" in body
    assert body.endswith(GENERATED_FOOTER)


def test_pr_body_without_optional_sections():
    body = build_pr_body(_story(files_to_create=[], notes=""))

    assert "## Files" not in body
    assert "## Notes" not in body
    assert "Ralph Iteration" not in body


def test_story_addendum_mentions_story_and_tdd():
    text = story_addendum(_story())

    assert "## Current story: AUTH-001 - Login Form" in text
    assert "- Form validates email" in text
    assert "red" in text and "green" in text and "refactor" in text
    assert '"passes": true for AUTH-001' in text
