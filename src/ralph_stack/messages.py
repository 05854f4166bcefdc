"""Commit message and pull request text for a completed story."""

from __future__ import annotations

import textwrap
from typing import List, Optional, Sequence

from .ledger import Story

DESCRIPTION_WIDTH = 100
CRITERIA_WIDTH = 98
NOTES_WIDTH = 93
MAX_LISTED_FILES = 20
GENERATED_FOOTER = "🤖 Generated by Ralph"


def fold(text: str, width: int) -> str:
    """Wrap each line of ``text`` at word boundaries, keeping blank lines."""
    out: List[str] = []
    for line in text.splitlines():
        if not line.strip():
            out.append("")
            continue
        out.extend(
            textwrap.wrap(line, width=width, break_on_hyphens=False, replace_whitespace=False)
            or [""]
        )
    return "\n".join(out)


def pr_title(story: Story) -> str:
    """Conventional-commit subject: ``feat(<id>): <lowercased title>``."""
    return f"feat({story.id}): {story.title.lower()}"


def build_commit_message(
    story: Story,
    staged_files: Sequence[str],
    iteration: Optional[int] = None,
) -> str:
    sections: List[str] = []

    if story.description.strip():
        sections.append(fold(story.description.strip(), DESCRIPTION_WIDTH))

    if story.acceptance_criteria:
        criteria = "\n".join(f"- {c}" for c in story.acceptance_criteria)
        sections.append("Acceptance Criteria:\n" + fold(criteria, CRITERIA_WIDTH))

    if staged_files:
        listed = list(staged_files[:MAX_LISTED_FILES])
        block = [f"Files changed ({len(staged_files)}):", *listed]
        extra = len(staged_files) - MAX_LISTED_FILES
        if extra > 0:
            block.append(f"... and {extra} more")
        sections.append("\n".join(block))

    if story.notes.strip():
        sections.append("Notes: " + fold(story.notes.strip(), NOTES_WIDTH))

    trailer = f"Story-ID: {story.id}"
    if iteration is not None:
        trailer += f"\nRalph-Iteration: {iteration}"
    sections.append(trailer)

    return pr_title(story) + "\n\n" + "\n\n".join(sections) + "\n"


def build_pr_body(story: Story, iteration: Optional[int] = None) -> str:
    parts: List[str] = [f"## Summary\n\n{story.description.strip()}"]

    criteria = "\n".join(f"- [x] {c}" for c in story.acceptance_criteria)
    parts.append("## Acceptance Criteria" + (f"\n{criteria}" if criteria else ""))

    if story.files_to_create:
        parts.append("## Files\n" + "\n".join(f"- {f}" for f in story.files_to_create))

    if story.notes.strip():
        parts.append(f"## Notes\n{story.notes.strip()}")

    footer = f"---\n**Story ID:** `{story.id}`"
    if iteration is not None:
        footer += f"\n**Ralph Iteration:** {iteration}"
    parts.append(footer)
    parts.append(GENERATED_FOOTER)

    return "\n\n".join(parts)


def story_addendum(story: Story) -> str:
    """The "current story" section appended to the implementation prompt."""
    lines = [
        "",
        "---",
        "",
        f"## Current story: {story.id} - {story.title}",
        "",
    ]
    if story.description.strip():
        lines += [story.description.strip(), ""]
    if story.acceptance_criteria:
        lines.append("Acceptance criteria:")
        lines += [f"- {c}" for c in story.acceptance_criteria]
        lines.append("")
    if story.files_to_create:
        lines.append("Files to create:")
        lines += [f"- {f}" for f in story.files_to_create]
        lines.append("")
    if story.notes.strip():
        lines += [f"Notes: {story.notes.strip()}", ""]
    lines += [
        "Work test-first: write a failing test (red), make it pass (green), then refactor.",
        f"When every acceptance criterion is met, set \"passes\": true for {story.id} in the story ledger.",
        "",
    ]
    return "\n".join(lines)
