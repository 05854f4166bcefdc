"""Merge every open pull request against the base branch, oldest first.

All Ralph PRs target the base branch directly, so no rebasing or base
updates are needed between merges. A PR that cannot be merged is reported
with a remedy and the batch carries on.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import MergeStackConfig
from .git import GitError, GitRepo
from .hosting import (
    CiStatus,
    HostingClient,
    HostingError,
    MergeError,
    MergeFailureKind,
    PullRequest,
    classify_merge_failure,
    merge_failure_remedy,
)
from .output import print_banner, print_output
from .polling import wait_for

logger = logging.getLogger(__name__)


class PrOutcome(str, Enum):
    PLANNED = "planned"
    MERGED = "merged"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PrReport:
    pr: PullRequest
    outcome: PrOutcome
    reason: str = ""
    kind: Optional[MergeFailureKind] = None
    remedy: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.pr.number,
            "title": self.pr.title,
            "branch": self.pr.head_ref,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "kind": self.kind.value if self.kind else None,
        }


@dataclass
class MergeStackSummary:
    base: str
    dry_run: bool
    plan: List[PullRequest] = field(default_factory=list)
    reports: List[PrReport] = field(default_factory=list)
    recent_commits: List[str] = field(default_factory=list)
    remaining_open: Optional[int] = None

    @property
    def merged(self) -> List[PrReport]:
        return [r for r in self.reports if r.outcome is PrOutcome.MERGED]

    @property
    def unmerged(self) -> List[PrReport]:
        return [r for r in self.reports if r.outcome in (PrOutcome.FAILED, PrOutcome.SKIPPED)]

    @property
    def exit_code(self) -> int:
        if self.dry_run:
            return 0
        return 1 if self.unmerged else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base": self.base,
            "dry_run": self.dry_run,
            "total": len(self.plan),
            "merged": len(self.merged),
            "prs": [r.to_dict() for r in self.reports],
            "remaining_open": self.remaining_open,
        }


class MergeStackController:
    def __init__(
        self,
        cfg: MergeStackConfig,
        git: GitRepo,
        hosting: HostingClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.git = git
        self.hosting = hosting
        self.sleep = sleep
        self.clock = clock

    @property
    def base(self) -> str:
        return self.git.base_branch

    def plan(self) -> List[PullRequest]:
        """Open PRs against the base branch in strictly ascending number order."""
        return sorted(self.hosting.list_open_prs(self.base), key=lambda pr: pr.number)

    def run(
        self,
        dry_run: bool = False,
        wait: bool = False,
        wait_timeout: Optional[float] = None,
    ) -> MergeStackSummary:
        print_output(f"→ Fetching open PRs targeting {self.base}...")
        plan = self.plan()
        summary = MergeStackSummary(base=self.base, dry_run=dry_run, plan=plan)

        if not plan:
            print_output(f"\nNo open PRs found targeting {self.base}.")
            return summary

        print_output(f"\nOpen PRs ({len(plan)}):")
        for pr in plan:
            print_output(f"  #{pr.number} {pr.title}")
        print_output("")

        if dry_run:
            print_banner("Merge Plan")
            print_output("")
            for step, pr in enumerate(plan, start=1):
                print_output(f"  {step}. Squash merge PR #{pr.number}: {pr.title}")
                print_output("     Delete branch after merge")
                print_output("")
                summary.reports.append(PrReport(pr=pr, outcome=PrOutcome.PLANNED))
            print_output("Run without --dry-run to execute.")
            return summary

        print_banner("Merging PRs")
        print_output("")
        timeout = wait_timeout if wait_timeout is not None else self.cfg.ci_timeout_seconds
        for pr in plan:
            report = self._merge_one(pr, wait, timeout)
            summary.reports.append(report)
            print_output("")

        print_output("→ Syncing local repository...")
        try:
            self.git.sync_after_merge_stack()
        except GitError as e:
            logger.warning("Local sync after merging failed: %s", e)
        summary.recent_commits = self.git.log_oneline(len(summary.merged) + 2)

        try:
            summary.remaining_open = self.hosting.count_open_prs(self.base)
        except HostingError as e:
            logger.debug("Could not count remaining PRs: %s", e)
        return summary

    def _merge_one(self, pr: PullRequest, wait: bool, timeout: float) -> PrReport:
        print_output(f"→ PR #{pr.number}: {pr.title}")

        if wait:
            skip_reason = self._wait_for_ci(pr, timeout)
            if skip_reason:
                print_output(f"  ✗ {skip_reason} - skipping")
                return PrReport(pr=pr, outcome=PrOutcome.SKIPPED, reason=skip_reason)

        print_output("  Merging...")
        try:
            self.hosting.merge_pr(pr.number, delete_branch=True)
        except MergeError as e:
            kind = classify_merge_failure(e.output)
            remedy = merge_failure_remedy(kind, pr.number, e.output)
            print_output("  ✗ Merge failed")
            for line in remedy:
                print_output(f"    {line}")
            return PrReport(pr=pr, outcome=PrOutcome.FAILED, reason=kind.value, kind=kind, remedy=remedy)
        except HostingError as e:
            print_output(f"  ✗ Merge failed: {e}")
            return PrReport(pr=pr, outcome=PrOutcome.FAILED, reason=str(e), kind=MergeFailureKind.OTHER)

        print_output("  ✓ Merged and branch deleted")
        return PrReport(pr=pr, outcome=PrOutcome.MERGED)

    def _wait_for_ci(self, pr: PullRequest, timeout: float) -> str:
        """Block until CI settles. Returns a skip reason, or "" to merge."""
        print_output("  Waiting for CI checks...")

        def _pending(status: CiStatus, elapsed: float) -> None:
            print_output(f"  Checks pending... ({int(elapsed)}s / {int(timeout)}s)")

        outcome = wait_for(
            probe=lambda: self.hosting.check_status(pr.number),
            is_done=lambda s: s is not CiStatus.PENDING,
            timeout=timeout,
            interval=self.cfg.poll_interval_seconds,
            sleep=self.sleep,
            clock=self.clock,
            on_wait=_pending,
        )

        if outcome.timed_out:
            return "CI timeout"
        status = outcome.value
        if status is CiStatus.PASS:
            print_output("  ✓ CI passed")
            return ""
        if status is CiStatus.NO_CHECKS:
            if self.cfg.allow_no_checks:
                logger.warning("PR #%s has no CI checks configured; proceeding", pr.number)
                print_output("  No checks configured, proceeding...")
                return ""
            return "no CI checks"
        if status is CiStatus.FAIL:
            return "CI failed"
        return "CI status unknown"


def print_summary(summary: MergeStackSummary) -> None:
    print_output("")
    print_banner("Summary")
    print_output("")
    print_output(f"Merged: {len(summary.merged)} of {len(summary.plan)} PRs")

    if summary.unmerged:
        print_output("")
        print_output("Failed PRs:")
        for report in summary.unmerged:
            print_output(f"  - #{report.pr.number} ({report.reason})")

    if summary.recent_commits:
        print_output("")
        print_output(f"Recent commits on {summary.base}:")
        for line in summary.recent_commits:
            print_output(f"  {line}")

    if summary.remaining_open:
        print_output("")
        print_output(f"Remaining open PRs: {summary.remaining_open}")
        print_output("  gh pr list")
    print_output("")
