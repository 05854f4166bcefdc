"""Fakes and helpers shared by the test modules: a hosting client, steps, a clock, ledger I/O."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ralph_stack.collaborators import Collaborator, ExitStatus, StepContext
from ralph_stack.config import (
    Config,
    FilesConfig,
    GatesConfig,
    GitConfig,
    HostingConfig,
    LoopConfig,
    MergeConfig,
    MergeStackConfig,
    OutputSettings,
    RunnerConfig,
)
from ralph_stack.hosting import CiStatus, HostingClient, MergeError, PullRequest

LEDGER_REL = "scripts/ralph/prd.json"
PROMPT_REL = "scripts/ralph/CLAUDE.md"

SAMPLE_STORIES: List[Dict[str, Any]] = [
    {
        "id": "AUTH-001",
        "title": "Login form",
        "description": "Email and password login page.",
        "acceptanceCriteria": ["Form validates email", "Errors are shown inline"],
        "priority": 1,
        "filesToCreate": ["apps/web/src/app/login/page.tsx"],
        "passes": False,
        "notes": "",
    },
    {
        "id": "AUTH-002",
        "title": "Logout button",
        "description": "Button in the header clears the session.",
        "acceptanceCriteria": ["Session cookie is cleared"],
        "priority": 2,
        "passes": False,
    },
    {
        "id": "PROFILE-001",
        "title": "Profile page",
        "priority": 3,
        "scaffoldSkill": "mern-scaffold",
        "passes": False,
    },
]


def git(cwd: Path, *args: str) -> str:
    cp = subprocess.run(["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True)
    return cp.stdout


def write_ledger(path: Path, stories: Sequence[Dict[str, Any]], **extra: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"project": "acme-web", **extra, "userStories": [dict(s) for s in stories]}
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return path


def read_ledger(path: Path) -> Dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def make_config(**overrides: Any) -> Config:
    """A Config with defaults and a fake agent argv; pass sections to override."""
    values: Dict[str, Any] = dict(
        loop=LoopConfig(),
        files=FilesConfig(),
        git=GitConfig(),
        runners={"implement": RunnerConfig(argv=["agent"]), "scaffold": RunnerConfig(argv=["agent"])},
        gates=GatesConfig(),
        merge=MergeConfig(),
        merge_stack=MergeStackConfig(),
        hosting=HostingConfig(),
        output=OutputSettings(),
    )
    values.update(overrides)
    return Config(**values)


class FakeHosting(HostingClient):
    """In-memory hosting platform that records every call."""

    MUTATING = {"create", "merge"}

    def __init__(
        self,
        prs: Optional[Sequence[PullRequest]] = None,
        statuses: Optional[Dict[int, Any]] = None,
        merge_failures: Optional[Dict[int, str]] = None,
        on_merge: Optional[Callable[[PullRequest], None]] = None,
        authenticated: bool = True,
    ):
        self.prs: List[PullRequest] = list(prs or [])
        self.statuses: Dict[int, Any] = dict(statuses or {})
        self.merge_failures = dict(merge_failures or {})
        self.on_merge = on_merge
        self.authenticated = authenticated
        self.calls: List[tuple] = []
        self.created: List[tuple] = []
        self.merged: List[int] = []
        self._next = max((p.number for p in self.prs), default=0) + 1

    def validate(self) -> bool:
        self.calls.append(("validate",))
        return self.authenticated

    def list_open_prs(self, base: str) -> List[PullRequest]:
        self.calls.append(("list", base))
        return list(self.prs)

    def create_pr(self, base: str, head: str, title: str, body: str) -> PullRequest:
        self.calls.append(("create", head))
        number = self._next
        self._next += 1
        pr = PullRequest(number=number, title=title, head_ref=head, url=f"https://github.com/acme/web/pull/{number}")
        self.prs.append(pr)
        self.created.append((pr, base, body))
        return pr

    def merge_pr(self, number: int, delete_branch: bool = True) -> None:
        self.calls.append(("merge", number))
        if number in self.merge_failures:
            raise MergeError(number, self.merge_failures[number])
        pr = next(p for p in self.prs if p.number == number)
        self.prs.remove(pr)
        self.merged.append(number)
        if self.on_merge is not None:
            self.on_merge(pr)

    def check_status(self, number: int) -> CiStatus:
        self.calls.append(("checks", number))
        status = self.statuses.get(number, CiStatus.PASS)
        if isinstance(status, list):
            return status.pop(0) if len(status) > 1 else status[0]
        return status

    def mutating_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in self.MUTATING]


class FakeStep(Collaborator):
    def __init__(self, code: int = 0, action: Optional[Callable[[StepContext], None]] = None, name: str = "fake"):
        self.code = code
        self.action = action
        self.name = name
        self.calls: List[StepContext] = []

    def run(self, context: StepContext) -> ExitStatus:
        self.calls.append(context)
        if self.action is not None:
            self.action(context)
        return ExitStatus(code=self.code)


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def agent_marks_passed(context: StepContext) -> None:
    """What a well-behaved agent does: writes code and flips ``passes``."""
    root = context.project_root
    out = root / "src" / f"{context.story.id.lower()}.txt"
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(f"implemented {context.story.id}\n", encoding="utf-8")

    ledger = root / LEDGER_REL
    data = read_ledger(ledger)
    for story in data["userStories"]:
        if story["id"] == context.story.id:
            story["passes"] = True
    ledger.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def agent_writes_code_only(context: StepContext) -> None:
    out = context.project_root / "src" / f"{context.story.id.lower()}.txt"
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text("half done\n", encoding="utf-8")
