"""The Ralph iteration controller and loop.

One iteration takes the next incomplete story from the ledger to an open pull
request::

    Idle -> Syncing -> Branching -> [Scaffolding] -> Implementing -> Verifying
         -> Committing -> Pushing -> PRCreating -> PRCreated -> [Merging -> Merged]

Any step before PRCreated may end in Failed instead. A failed iteration puts
the ledger back the way it was and leaves the story branch checked out.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .collaborators import (
    Collaborator,
    CollaboratorError,
    GateCommand,
    ImplementStep,
    ScaffoldStep,
    StepContext,
    format_gate_results,
    run_gates,
)
from .config import Config
from .git import BranchExistsError, GitError, GitRepo
from .hosting import (
    CiStatus,
    HostingClient,
    HostingError,
    MergeError,
    PullRequest,
    classify_merge_failure,
)
from .ledger import (
    LedgerError,
    Story,
    load_ledger,
    restore_ledger,
    snapshot_ledger,
    update_ledger,
)
from .logging_config import log_progress
from .messages import build_commit_message, build_pr_body, pr_title
from .output import print_banner, print_output, print_step
from .polling import wait_for

logger = logging.getLogger(__name__)


class IterationState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    BRANCHING = "branching"
    SCAFFOLDING = "scaffolding"
    IMPLEMENTING = "implementing"
    VERIFYING = "verifying"
    COMMITTING = "committing"
    PUSHING = "pushing"
    PR_CREATING = "pr_creating"
    PR_CREATED = "pr_created"
    MERGING = "merging"
    MERGED = "merged"
    FAILED = "failed"


TERMINAL_STATES = frozenset({IterationState.FAILED, IterationState.PR_CREATED, IterationState.MERGED})

_S = IterationState
ALLOWED_TRANSITIONS: Dict[IterationState, frozenset] = {
    _S.IDLE: frozenset({_S.SYNCING}),
    # Nothing left to do once the base branch is up to date.
    _S.SYNCING: frozenset({_S.BRANCHING, _S.IDLE, _S.FAILED}),
    _S.BRANCHING: frozenset({_S.SCAFFOLDING, _S.IMPLEMENTING, _S.FAILED}),
    _S.SCAFFOLDING: frozenset({_S.IMPLEMENTING, _S.FAILED}),
    _S.IMPLEMENTING: frozenset({_S.VERIFYING, _S.FAILED}),
    _S.VERIFYING: frozenset({_S.COMMITTING, _S.FAILED}),
    _S.COMMITTING: frozenset({_S.PUSHING, _S.FAILED}),
    _S.PUSHING: frozenset({_S.PR_CREATING, _S.FAILED}),
    _S.PR_CREATING: frozenset({_S.PR_CREATED, _S.FAILED}),
    _S.PR_CREATED: frozenset({_S.MERGING}),
    # A merge that does not happen leaves the PR open.
    _S.MERGING: frozenset({_S.MERGED, _S.PR_CREATED}),
    _S.MERGED: frozenset(),
    _S.FAILED: frozenset(),
}


class InvalidTransition(Exception):
    """Raised when attempting an invalid state transition."""

    def __init__(self, from_state: IterationState, to_state: IterationState, story_id: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.story_id = story_id
        super().__init__(
            f"Invalid transition: {from_state.value} -> {to_state.value}"
            + (f" (story: {story_id})" if story_id else "")
        )


class IterationError(Exception):
    """Ends the current iteration (and only it)."""


class ImplementationError(IterationError):
    """The implementation step exited non-zero."""


class VerificationError(IterationError):
    """Quality gates failed or the story was not marked as passing."""


class IterationMachine:
    """Tracks one iteration's state and rejects illegal moves."""

    def __init__(self, story_id: str = ""):
        self.story_id = story_id
        self.state = IterationState.IDLE
        self.history: List[IterationState] = [IterationState.IDLE]

    def advance(self, to_state: IterationState) -> None:
        if to_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(self.state, to_state, self.story_id)
        logger.debug("[STATE] %s: %s -> %s", self.story_id or "-", self.state.value, to_state.value)
        self.state = to_state
        self.history.append(to_state)

    def fail(self) -> None:
        self.advance(IterationState.FAILED)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class IterationResult:
    state: IterationState
    story: Optional[Story] = None
    branch: str = ""
    pr: Optional[PullRequest] = None
    commit: str = ""
    error: str = ""
    merge_note: str = ""
    history: List[IterationState] = field(default_factory=list)

    @property
    def no_op(self) -> bool:
        return self.state is IterationState.IDLE

    @property
    def failed(self) -> bool:
        return self.state is IterationState.FAILED

    @property
    def merged(self) -> bool:
        return self.state is IterationState.MERGED

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


@dataclass
class LoopSummary:
    iterations: int = 0
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    merge_pending: List[str] = field(default_factory=list)
    prs: List[PullRequest] = field(default_factory=list)
    all_complete: bool = False
    open_prs: Optional[int] = None

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class IterationController:
    """Runs Ralph iterations against one repository.

    Collaborators default to the configured agent CLI and gate commands;
    tests pass fakes instead.
    """

    def __init__(
        self,
        cfg: Config,
        project_root: Path,
        git: GitRepo,
        hosting: HostingClient,
        scaffold: Optional[Collaborator] = None,
        implement: Optional[Collaborator] = None,
        gates: Optional[Sequence[GateCommand]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.project_root = project_root
        self.git = git
        self.hosting = hosting
        self.ledger_path = project_root / cfg.files.ledger
        self.scaffold = scaffold or ScaffoldStep(cfg.scaffold_runner.argv)
        self.implement = implement or ImplementStep(
            cfg.implement_runner.argv, project_root / cfg.files.prompt
        )
        self.gates = list(gates) if gates is not None else [GateCommand(c) for c in cfg.gates.commands]
        self.sleep = sleep
        self.clock = clock

    # -------------------------
    # single iteration
    # -------------------------

    def branch_for(self, story: Story) -> str:
        return f"{self.cfg.git.branch_prefix}{story.id}"

    def run_once(
        self,
        merge: bool = False,
        merge_timeout: Optional[float] = None,
        iteration: Optional[int] = None,
        force_branch: bool = False,
        check_clean: bool = True,
        exclude_ids: Optional[Set[str]] = None,
    ) -> IterationResult:
        """Take the next incomplete story to an open (optionally merged) PR.

        Raises:
            DirtyWorktreeError: tracked files are modified (before any git call)
            BranchExistsError: the story branch exists and ``force_branch`` is off
            LedgerError: the ledger cannot be read
        """
        if check_clean:
            self.git.require_clean()

        ledger = load_ledger(self.ledger_path)
        if ledger.next_story(exclude_ids) is None:
            return IterationResult(state=IterationState.IDLE, history=[IterationState.IDLE])

        machine = IterationMachine()
        total_steps = 8 if merge else 7
        snapshot: Optional[bytes] = None
        story: Optional[Story] = None
        branch = ""
        commit = ""

        try:
            machine.advance(IterationState.SYNCING)
            print_step(1, total_steps, f"Syncing with {self.git.base_branch}...")
            self.git.sync_base()
            print_output(f"✓ Synced with {self.git.base_branch}")

            # The pull may have changed the ledger.
            story = load_ledger(self.ledger_path).next_story(exclude_ids)
            if story is None:
                machine.advance(IterationState.IDLE)
                return IterationResult(state=IterationState.IDLE, history=machine.history)
            machine.story_id = story.id
            branch = self.branch_for(story)
            print_output(f"\n→ Story: {story.id} - {story.title}")

            machine.advance(IterationState.BRANCHING)
            print_step(2, total_steps, f"Creating branch {branch}...")
            self.git.create_branch(branch, force=force_branch)
            print_output(f"✓ Created branch {branch} from {self.git.base_branch}")

            snapshot = snapshot_ledger(self.ledger_path)
            context = StepContext(
                project_root=self.project_root,
                story=story,
                iteration=iteration,
                timeout=self.cfg.loop.runner_timeout_seconds or None,
            )

            if story.scaffold_skill:
                machine.advance(IterationState.SCAFFOLDING)
                print_step(3, total_steps, f"Running scaffold skill: {story.scaffold_skill}...")
                self._scaffold(context)
            else:
                print_step(3, total_steps, "No scaffold skill specified, skipping...")

            machine.advance(IterationState.IMPLEMENTING)
            print_step(4, total_steps, "Implementing story (TDD)...")
            log_progress("Starting: %s - %s", story.id, story.title)
            status = self.implement.run(context)
            if not status.ok:
                raise ImplementationError(f"implementation exited with code {status.code}")

            machine.advance(IterationState.VERIFYING)
            print_step(5, total_steps, "Verifying quality checks...")
            self._verify(context)
            print_output("✓ Story passed quality checks")

            machine.advance(IterationState.COMMITTING)
            print_step(6, total_steps, "Committing changes...")
            commit, story = self._commit(story, branch, iteration)
            # From here the branch holds the passing ledger.
            snapshot = None

            machine.advance(IterationState.PUSHING)
            print_step(7, total_steps, "Pushing and creating PR...")
            self.git.push(branch)
            print_output(f"✓ Pushed to {self.git.remote}/{branch}")

            machine.advance(IterationState.PR_CREATING)
            pr = self.hosting.create_pr(
                base=self.git.base_branch,
                head=branch,
                title=pr_title(story),
                body=build_pr_body(story, iteration),
            )
            machine.advance(IterationState.PR_CREATED)
            print_output(f"✓ PR created: {pr.url or '#' + str(pr.number)}")
        except BranchExistsError:
            raise
        except (IterationError, CollaboratorError, GitError, HostingError, LedgerError) as e:
            reason = _failure_reason(e)
            machine.fail()
            if snapshot is not None:
                restore_ledger(self.ledger_path, snapshot)
            if story is not None:
                log_progress("FAILED: %s (%s)", story.id, reason)
            logger.error("Iteration failed: %s", e)
            return IterationResult(
                state=IterationState.FAILED,
                story=story,
                branch=branch,
                commit=commit,
                error=str(e),
                history=machine.history,
            )

        result = IterationResult(
            state=IterationState.PR_CREATED,
            story=story,
            branch=branch,
            pr=pr,
            commit=commit,
            history=machine.history,
        )

        if merge:
            print_step(8, total_steps, "Auto-merging PR...")
            machine.advance(IterationState.MERGING)
            timeout = merge_timeout if merge_timeout is not None else self.cfg.merge.timeout_seconds
            merged, note = self.auto_merge(pr, branch, timeout)
            machine.advance(IterationState.MERGED if merged else IterationState.PR_CREATED)
            result.state = machine.state
            result.merge_note = note

        result.history = machine.history
        return result

    def _scaffold(self, context: StepContext) -> None:
        story = context.story
        log_progress(
            "Running scaffold: %s %s for %s", story.scaffold_skill, story.feature_name, story.id
        )
        try:
            status = self.scaffold.run(context)
        except CollaboratorError as e:
            logger.warning("Scaffold skill could not start: %s", e)
            print_output("Warning: Scaffold skill failed, continuing with implementation")
            return
        if not status.ok:
            logger.warning("Scaffold skill exited with code %d", status.code)
            print_output("Warning: Scaffold skill failed, continuing with implementation")

    def _verify(self, context: StepContext) -> None:
        story = context.story
        if self.gates:
            ok, results = run_gates(self.gates, context, fail_fast=self.cfg.gates.fail_fast)
            report = format_gate_results(
                ok,
                results,
                output_mode=self.cfg.gates.output_mode,
                max_lines=self.cfg.gates.max_output_lines,
            )
            print_output(report, level="normal" if not ok else "verbose")
            if not ok:
                raise VerificationError("quality checks")
            return

        # No gates configured: the agent itself reports success in the ledger.
        current = load_ledger(self.ledger_path).get(story.id)
        if current is None or not current.passes:
            raise VerificationError("quality checks")

    def _commit(self, story: Story, branch: str, iteration: Optional[int]) -> Tuple[str, Story]:
        """Mark the story passed, stage everything and commit.

        Returns (new HEAD sha or "" when nothing was staged, story as the
        agent left it).
        """
        note = f"Completed on branch {branch}"
        if iteration is not None:
            note += f" (Ralph iteration {iteration})"

        with update_ledger(self.ledger_path) as ledger:
            current = ledger.get(story.id)
            if current is None:
                raise LedgerError(f"Story {story.id} disappeared from the ledger")
            described = dataclasses.replace(current)
            ledger.mark_passed(story.id, note=note)

        log_progress("PASSED: %s - %s (branch: %s)", story.id, story.title, branch)

        self.git.stage_all()
        staged = self.git.staged_files()
        if not staged:
            print_output("No changes to commit")
            return "", described

        sha = self.git.commit(build_commit_message(described, staged, iteration))
        print_output(f"✓ Committed: {pr_title(described)}")
        return sha, described

    # -------------------------
    # auto-merge
    # -------------------------

    def auto_merge(self, pr: PullRequest, branch: str, timeout: float) -> Tuple[bool, str]:
        """Wait for CI, squash-merge and clean up locally.

        Returns (merged, note). When not merged the PR is left open and the
        note says why.
        """
        interval = self.cfg.merge.poll_interval_seconds
        print_output(f"  Waiting for CI (timeout: {int(timeout)}s)...")

        def _waiting(status: CiStatus, elapsed: float) -> None:
            print_output(f"  Waiting... ({int(elapsed)}s / {int(timeout)}s) [{status.value}]")

        outcome = wait_for(
            probe=lambda: self.hosting.check_status(pr.number),
            is_done=lambda s: s in (CiStatus.PASS, CiStatus.FAIL, CiStatus.NO_CHECKS),
            timeout=timeout,
            interval=interval,
            sleep=self.sleep,
            clock=self.clock,
            on_wait=_waiting,
        )

        if outcome.timed_out:
            print_output("  ✗ Timeout waiting for CI")
            return False, "CI timeout"
        if outcome.value is CiStatus.FAIL:
            print_output("  ✗ CI checks failed")
            return False, "CI checks failed"
        if outcome.value is CiStatus.NO_CHECKS:
            logger.warning("PR #%s has no CI checks configured; merging anyway", pr.number)

        try:
            self.hosting.merge_pr(pr.number, delete_branch=True)
        except MergeError as e:
            kind = classify_merge_failure(e.output)
            print_output(f"  ✗ Merge failed ({kind.value})")
            return False, f"merge failed ({kind.value})"
        except HostingError as e:
            print_output(f"  ✗ Merge failed: {e}")
            return False, "merge failed"

        print_output("  ✓ PR merged successfully")
        self.git.sync_after_merge(branch)
        return True, ""

    # -------------------------
    # loop
    # -------------------------

    def run_loop(
        self,
        max_iterations: int,
        merge: bool = True,
        merge_timeout: Optional[float] = None,
    ) -> LoopSummary:
        """Repeat iterations until the ledger is drained or ``max_iterations``.

        Every story attempted in this run is excluded from later selection,
        whatever its outcome, so an unmerged PR is never rebuilt.
        """
        self.git.require_clean()
        log_progress(
            "Ralph loop started (max %d, auto-merge: %s)", max_iterations, str(merge).lower()
        )

        summary = LoopSummary()
        attempted: Set[str] = set()

        for i in range(1, max_iterations + 1):
            print_banner(f"Iteration {i} of {max_iterations}")
            ledger = load_ledger(self.ledger_path)
            done, total = ledger.counts()
            print_output(f"Progress: {done} / {total} stories complete")

            if ledger.all_done():
                print_output("\n✓ All stories complete!")
                log_progress("ALL COMPLETE (%d stories)", total)
                summary.all_complete = True
                break
            if ledger.next_story(attempted) is None:
                print_output("\nNo stories left to attempt in this run.")
                break

            summary.iterations = i
            result = self.run_once(
                merge=merge,
                merge_timeout=merge_timeout,
                iteration=i,
                force_branch=True,
                check_clean=False,
                exclude_ids=attempted,
            )

            if result.no_op:
                break
            assert result.story is not None
            attempted.add(result.story.id)
            if result.pr is not None:
                summary.prs.append(result.pr)

            if result.failed:
                print_output(f"✗ Story {result.story.id} failed: {result.error}")
                summary.failed.append(result.story.id)
                self.git.discard_branch(result.branch)
                print_output("Cleaned up, continuing with next story...")
            elif merge and not result.merged:
                print_output(f"\n→ Story {result.story.id}: PR created but merge incomplete")
                if result.pr is not None and result.pr.url:
                    print_output(f"  PR left open: {result.pr.url}")
                summary.merge_pending.append(result.story.id)
                self.git.return_to_base(pull=True)
            else:
                summary.completed.append(result.story.id)
                if not merge:
                    self.git.return_to_base()

            if i < max_iterations:
                self.sleep(self.cfg.loop.sleep_seconds_between_iters)

        self.git.return_to_base()
        try:
            summary.open_prs = self.hosting.count_open_prs(self.git.base_branch)
        except HostingError as e:
            logger.debug("Could not count open PRs: %s", e)
        return summary


def _failure_reason(error: Exception) -> str:
    if isinstance(error, VerificationError):
        return str(error) or "quality checks"
    if isinstance(error, ImplementationError):
        return str(error)
    if isinstance(error, GitError):
        return "git error"
    if isinstance(error, HostingError):
        return "hosting error"
    if isinstance(error, CollaboratorError):
        return "collaborator unavailable"
    return "ledger error"
