"""The Story Ledger: the JSON backlog that drives the Ralph loop.

A ledger looks like::

    {
      "project": "acme-web",
      "userStories": [
        {
          "id": "AUTH-001",
          "title": "Login form",
          "description": "...",
          "acceptanceCriteria": ["..."],
          "priority": 1,
          "filesToCreate": ["apps/web/src/app/login/page.tsx"],
          "scaffoldSkill": "mern-scaffold",
          "passes": false,
          "notes": ""
        }
      ]
    }

Keys the tool does not know about are carried through untouched. ``.yaml``
ledgers are accepted with the same shape.
"""

from __future__ import annotations

import json
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import yaml

from .atomic_file import atomic_write_bytes, atomic_write_json, atomic_write_text

logger = logging.getLogger(__name__)

STORY_LIST_KEYS = ("userStories", "stories")
DEFAULT_PRIORITY = 10_000
_TRAILING_SEQ_RE = re.compile(r"-\d*$")


class LedgerError(Exception):
    """The ledger is missing or malformed."""


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in {".yaml", ".yml"}


def _str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(x) for x in value if x is not None]
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def _priority(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_PRIORITY
    try:
        return int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY


@dataclass
class Story:
    """One unit of backlog work."""

    id: str
    title: str
    description: str = ""
    acceptance_criteria: List[str] = field(default_factory=list)
    priority: int = DEFAULT_PRIORITY
    files_to_create: List[str] = field(default_factory=list)
    passes: bool = False
    notes: str = ""
    scaffold_skill: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def feature_name(self) -> str:
        """Story id without its trailing sequence number (AUTH-001 -> AUTH)."""
        return _TRAILING_SEQ_RE.sub("", self.id) or self.id

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Story":
        sid = data.get("id", data.get("story_id"))
        if sid is None or not str(sid).strip():
            raise LedgerError(f"Story without an id: {data!r}")
        return cls(
            id=str(sid).strip(),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            acceptance_criteria=_str_list(data.get("acceptanceCriteria")),
            priority=_priority(data.get("priority", DEFAULT_PRIORITY)),
            files_to_create=_str_list(data.get("filesToCreate")),
            passes=data.get("passes") is True,
            notes=str(data.get("notes") or ""),
            scaffold_skill=str(data.get("scaffoldSkill") or "").strip(),
            raw=data,
        )


@dataclass
class StoryLedger:
    data: Dict[str, Any]
    stories: List[Story]
    stories_key: str = "userStories"

    def get(self, story_id: str) -> Optional[Story]:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    def next_story(self, exclude_ids: Optional[Set[str]] = None) -> Optional[Story]:
        """Lowest-priority incomplete story; ties keep file order."""
        exclude = exclude_ids or set()
        candidates = [s for s in self.stories if not s.passes and s.id not in exclude]
        if not candidates:
            return None
        return min(candidates, key=lambda s: s.priority)

    def counts(self) -> Tuple[int, int]:
        """Return (done, total)."""
        done = sum(1 for s in self.stories if s.passes)
        return done, len(self.stories)

    def remaining(self) -> List[Story]:
        return sorted((s for s in self.stories if not s.passes), key=lambda s: s.priority)

    def all_done(self) -> bool:
        return bool(self.stories) and all(s.passes for s in self.stories)

    def mark_passed(self, story_id: str, note: str = "", now: Optional[datetime] = None) -> Story:
        """Flip ``passes`` on, stamp ``completedAt`` and append ``note``."""
        story = self.get(story_id)
        if story is None:
            raise LedgerError(f"Unknown story id: {story_id}")

        stamp = (now or datetime.now(timezone.utc)).isoformat()
        story.passes = True
        story.raw["passes"] = True
        story.raw["completedAt"] = stamp
        if note:
            story.notes = f"{story.notes}\n{note}" if story.notes else note
            story.raw["notes"] = story.notes
        return story

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.data)
        out[self.stories_key] = [s.raw for s in self.stories]
        return out


def parse_ledger(data: Any) -> StoryLedger:
    if not isinstance(data, dict):
        raise LedgerError("Ledger must be an object with a 'userStories' list")

    key = next((k for k in STORY_LIST_KEYS if k in data), None)
    if key is None:
        raise LedgerError("Ledger has no 'userStories' list")
    raw_stories = data.get(key)
    if not isinstance(raw_stories, list):
        raise LedgerError(f"Ledger '{key}' must be a list")

    stories: List[Story] = []
    seen: Set[str] = set()
    for raw in raw_stories:
        if not isinstance(raw, dict):
            raise LedgerError(f"Story entries must be objects, got: {raw!r}")
        story = Story.from_dict(raw)
        if story.id in seen:
            raise LedgerError(f"Duplicate story id: {story.id}")
        seen.add(story.id)
        stories.append(story)

    return StoryLedger(data=data, stories=stories, stories_key=key)


def load_ledger(path: Path) -> StoryLedger:
    """Read and validate the ledger at ``path``.

    Raises:
        LedgerError: If the file is missing, unparsable or malformed
    """
    if not path.exists():
        raise LedgerError(f"Story ledger not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if _is_yaml(path) else json.loads(text)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise LedgerError(f"Failed to read story ledger {path}: {e}") from e
    return parse_ledger(data)


def save_ledger(path: Path, ledger: StoryLedger) -> None:
    data = ledger.to_dict()
    if _is_yaml(path):
        atomic_write_text(path, yaml.safe_dump(data, sort_keys=False, allow_unicode=True))
    else:
        atomic_write_json(path, data)


@contextmanager
def update_ledger(path: Path) -> Iterator[StoryLedger]:
    """Single read-modify-write of the ledger.

    The ledger is written back only if the block exits without raising.

    Example:
        >>> with update_ledger(path) as ledger:
        ...     ledger.mark_passed("AUTH-001", note="branch feat/AUTH-001")
    """
    ledger = load_ledger(path)
    yield ledger
    save_ledger(path, ledger)
    logger.debug("Ledger written: %s", path)


def snapshot_ledger(path: Path) -> bytes:
    """Raw ledger bytes, for restoring after a failed iteration."""
    try:
        return path.read_bytes()
    except OSError as e:
        raise LedgerError(f"Failed to read story ledger {path}: {e}") from e


def restore_ledger(path: Path, snapshot: bytes) -> bool:
    """Put ``snapshot`` back if the file changed. Returns True if it did."""
    try:
        current = path.read_bytes()
    except OSError:
        current = None
    if current == snapshot:
        return False
    atomic_write_bytes(path, snapshot)
    logger.info("Restored story ledger %s to its pre-iteration state", path)
    return True
