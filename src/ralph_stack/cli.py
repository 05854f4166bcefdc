from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .config import Config, load_config
from .controller import IterationController, IterationResult, LoopSummary
from .doctor import PrerequisiteError, check_files, check_tools, require_prerequisites
from .envvars import EnvVarError
from .git import GitError, GitRepo
from .hosting import HostingClient, HostingError, create_client
from .ledger import LedgerError, StoryLedger, load_ledger
from .logging_config import attach_progress_log, detach_progress_log, setup_logging
from .merge_stack import MergeStackController, print_summary
from .output import (
    OutputConfig,
    build_json_response,
    get_output_config,
    print_banner,
    print_json_output,
    print_output,
    set_output_config,
)

logger = logging.getLogger(__name__)


def _project_root() -> Path:
    return Path(os.getcwd()).resolve()


class _RalphArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.exit(2, f"Error: {message}\n")


def _git(cfg: Config, root: Path) -> GitRepo:
    # The progress log is appended to during a run; it must not count as dirt.
    return GitRepo(
        root,
        remote=cfg.git.remote,
        base_branch=cfg.git.base_branch,
        ignore_paths=[*cfg.git.ignore_paths, cfg.files.progress],
    )


def _hosting(cfg: Config, root: Path, git: GitRepo) -> HostingClient:
    return create_client(cfg.hosting, root, git.remote_url())


def _show_stories(ledger: StoryLedger) -> None:
    print_output("Stories:")
    for s in ledger.stories:
        mark = "✓" if s.passes else " "
        print_output(f"  [{mark}] {s.id}: {s.title}")
    print_output("")


# -------------------------
# status / doctor
# -------------------------


def cmd_status(args: argparse.Namespace) -> int:
    cfg: Config = args.cfg
    ledger = load_ledger(args.root / cfg.files.ledger)
    done, total = ledger.counts()
    nxt = ledger.next_story()

    if get_output_config().format == "json":
        payload = build_json_response(
            "status",
            exit_code=0,
            ledger=cfg.files.ledger,
            done=done,
            total=total,
            next={"id": nxt.id, "title": nxt.title} if nxt else None,
            stories=[
                {"id": s.id, "title": s.title, "priority": s.priority, "passes": s.passes}
                for s in ledger.stories
            ],
        )
        print_json_output(payload)
        return 0

    _show_stories(ledger)
    print_output(f"Progress: {done} / {total} complete")
    if nxt is not None:
        print_output(f"Next story: {nxt.id}: {nxt.title}")
    else:
        print_output("✓ All stories complete!")
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    """Check git, the agent CLI, gh, and the ledger/prompt files."""
    cfg: Config = args.cfg
    statuses = check_tools(cfg)
    files = check_files(cfg, args.root)
    ok = all(st.found for st in statuses) and all(f.found for f in files)

    if get_output_config().format == "json":
        print_json_output(
            build_json_response(
                "doctor",
                exit_code=0 if ok else 1,
                tools=[dataclasses.asdict(st) for st in statuses],
                files=[{"label": f.label, "path": str(f.path), "found": f.found} for f in files],
            )
        )
        return 0 if ok else 1

    for st in statuses:
        if st.found:
            print_output(f"[OK]   {st.name}: {st.version or st.path or 'found'}", level="quiet")
        else:
            print_output(f"[MISS] {st.name}: {st.hint or 'not found'}", level="quiet")
    for f in files:
        tag = "[OK]  " if f.found else "[MISS]"
        print_output(f"{tag} {f.label}: {f.path}", level="quiet")
    return 0 if ok else 1


# -------------------------
# once / loop
# -------------------------


def cmd_once(args: argparse.Namespace) -> int:
    cfg: Config = args.cfg
    root: Path = args.root

    print_banner("Ralph Single Iteration")
    if args.merge:
        print_output("  (Auto-merge enabled)")

    require_prerequisites(cfg, root)
    git = _git(cfg, root)
    git.ensure_repo()
    hosting = _hosting(cfg, root, git)
    attach_progress_log(root / cfg.files.progress)

    ledger = load_ledger(root / cfg.files.ledger)
    _show_stories(ledger)
    story = ledger.next_story()
    if story is None:
        print_output("✓ All stories complete!")
        return 0

    print_output("Next Story")
    print_banner(story.id)
    print_output(f"Title:       {story.title}")
    if story.description:
        print_output(f"Description: {story.description}")
    if story.scaffold_skill:
        print_output(f"Scaffold:    {story.scaffold_skill}")
    controller = IterationController(cfg, root, git, hosting)
    print_output(f"Branch:      {controller.branch_for(story)} → {git.base_branch}")

    result = controller.run_once(merge=args.merge, merge_timeout=args.merge_timeout)
    if result.no_op:
        print_output("✓ All stories complete!")
        return 0
    if result.failed:
        _print_failure(result, git)
        return result.exit_code

    _print_complete(result, cfg, root, git, merge_requested=args.merge)
    return 0


def _print_failure(result: IterationResult, git: GitRepo) -> None:
    print_output("")
    print_banner("✗ Story did not pass")
    print_output(f"Reason: {result.error}", level="error")
    if not result.branch:
        return
    try:
        on_branch = git.current_branch()
    except GitError:
        on_branch = result.branch
    base = git.base_branch
    print_output("Review the output above for errors.")
    print_output(f"You're on branch: {on_branch}")
    print_output("\nDebug commands:")
    print_output("  git status              # See changes")
    print_output("  git diff                # Review changes")
    print_output("\nTo retry this story:")
    print_output(f"  git checkout {base}")
    print_output(f"  git branch -D {result.branch}")
    print_output("  ralph-stack once")


def _print_complete(
    result: IterationResult,
    cfg: Config,
    root: Path,
    git: GitRepo,
    merge_requested: bool,
) -> None:
    pr_url = result.pr.url if result.pr else ""
    print_output("")
    print_banner("✓ Story Complete")
    print_output(f"Branch: {result.branch}")
    print_output(f"PR:     {pr_url}")
    if merge_requested and not result.merged:
        print_output(f"Not merged ({result.merge_note}). PR left open: {pr_url}")

    print_output("\nCommit:")
    print_output(f"  {git.last_commit_oneline()}")

    ledger = load_ledger(root / cfg.files.ledger)
    done, total = ledger.counts()
    print_output(f"\nProgress: {done} / {total} complete")
    nxt = ledger.next_story()
    if nxt is not None:
        print_output(f"Next story: {nxt.id}: {nxt.title}")

    print_output("")
    print_banner("Next Steps")
    if merge_requested:
        print_output("Continue with next story:")
        print_output("  ralph-stack once --merge")
    else:
        print_output("Review the PR:")
        print_output(f"  {pr_url}")
        print_output("\nMerge when ready:")
        print_output("  gh pr merge --squash --delete-branch")
        print_output("\nOr merge all open PRs:")
        print_output("  ralph-stack merge-stack")
        print_output("\nContinue with next story (after merging):")
        print_output("  ralph-stack once")


def cmd_loop(args: argparse.Namespace) -> int:
    cfg: Config = args.cfg
    root: Path = args.root
    max_iterations = args.max_iterations if args.max_iterations is not None else cfg.loop.max_iterations
    if max_iterations < 1:
        raise ValueError(f"Invalid max iterations: {max_iterations}. Must be >= 1.")
    merge = not args.no_merge
    merge_timeout = args.merge_timeout if args.merge_timeout is not None else cfg.merge.timeout_seconds

    print_banner(f"Ralph Loop - Max iterations: {max_iterations}")
    print_output(f"  Auto-merge: {str(merge).lower()}")
    if merge:
        print_output(f"  Merge timeout: {merge_timeout}s")
    print_output("")

    require_prerequisites(cfg, root)
    git = _git(cfg, root)
    git.ensure_repo()
    hosting = _hosting(cfg, root, git)
    attach_progress_log(root / cfg.files.progress)

    controller = IterationController(cfg, root, git, hosting)
    summary = controller.run_loop(max_iterations, merge=merge, merge_timeout=merge_timeout)
    _print_loop_summary(summary, load_ledger(root / cfg.files.ledger), cfg)
    return summary.exit_code


def _print_loop_summary(summary: LoopSummary, ledger: StoryLedger, cfg: Config) -> None:
    print_output("")
    print_banner("Summary")
    done, total = ledger.counts()
    print_output(f"Completed: {done} / {total}")
    print_output("")

    if summary.completed:
        print_output("✓ Completed stories:")
        for sid in summary.completed:
            print_output(f"  • {sid}")
        print_output("")

    if summary.failed or summary.merge_pending:
        print_output("✗ Failed/pending stories:")
        for sid in summary.failed:
            print_output(f"  • {sid}")
        for sid in summary.merge_pending:
            print_output(f"  • {sid} (merge pending)")
        print_output("")

    remaining = ledger.remaining()
    if remaining:
        print_output("Remaining stories:")
        for s in remaining:
            print_output(f"  ○ {s.id}: {s.title}")
        print_output("")

    if summary.open_prs:
        print_output(f"Open PRs: {summary.open_prs}")
        print_output("  gh pr list")
        print_output("")

    print_output(f"Progress log: {cfg.files.progress}")


# -------------------------
# merge-stack
# -------------------------


def cmd_merge_stack(args: argparse.Namespace) -> int:
    cfg: Config = args.cfg
    root: Path = args.root

    print_banner("Merge Stack")
    if args.dry_run:
        print_output("  (Dry Run - No Changes)")
    if args.wait:
        print_output("  (Will wait for CI)")
    print_output("")

    git = _git(cfg, root)
    git.ensure_repo()
    hosting = _hosting(cfg, root, git)
    require_prerequisites(cfg, root, hosting=hosting, need_agent=False, need_files=False)

    controller = MergeStackController(cfg.merge_stack, git, hosting)
    summary = controller.run(dry_run=args.dry_run, wait=args.wait, wait_timeout=args.wait_timeout)

    if get_output_config().format == "json":
        print_json_output(build_json_response("merge-stack", exit_code=summary.exit_code, **summary.to_dict()))
    elif summary.plan and not args.dry_run:
        print_summary(summary)
    return summary.exit_code


# -------------------------
# parser / entrypoint
# -------------------------


def build_parser() -> argparse.ArgumentParser:
    p = _RalphArgumentParser(
        prog="ralph-stack",
        description="ralph-stack: story-by-story agent loop and PR merge stack",
    )
    p.add_argument("--version", action="version", version=f"ralph-stack {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging and verbose output")
    p.add_argument("-q", "--quiet", action="store_true", help="Only print errors and results")
    p.add_argument("--ledger", default=None, help="Path to the story ledger (overrides [files].ledger)")
    p.add_argument("--log-file", default=None, metavar="PATH", help="Also write debug logs to PATH")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_once = sub.add_parser("once", help="Run one story: branch, implement, verify, open a PR")
    p_once.add_argument("--merge", action="store_true", help="Auto-merge the PR after CI passes")
    p_once.add_argument(
        "--merge-timeout",
        type=int,
        default=None,
        metavar="SECONDS",
        help="Max seconds to wait for CI before leaving the PR open (default: 600)",
    )
    p_once.set_defaults(func=cmd_once)

    p_loop = sub.add_parser("loop", help="Run stories until the ledger is done or MAX is reached")
    p_loop.add_argument(
        "max_iterations",
        nargs="?",
        type=int,
        default=None,
        metavar="MAX",
        help="Maximum iterations (default: [loop].max_iterations)",
    )
    p_loop.add_argument("--no-merge", action="store_true", help="Create PRs only, don't merge them")
    p_loop.add_argument(
        "--merge-timeout",
        type=int,
        default=None,
        metavar="SECONDS",
        help="Max seconds to wait for CI per PR (default: 600)",
    )
    p_loop.set_defaults(func=cmd_loop)

    p_stack = sub.add_parser("merge-stack", help="Merge all open PRs against the base branch, oldest first")
    p_stack.add_argument("--dry-run", action="store_true", help="Show the merge plan without executing")
    p_stack.add_argument("--wait", action="store_true", help="Wait for CI checks before each merge")
    p_stack.add_argument(
        "--wait-timeout",
        type=int,
        default=None,
        metavar="SECONDS",
        help="Max seconds to wait for CI per PR (default: 300)",
    )
    p_stack.add_argument("--json", action="store_true", help="Print the result as JSON")
    p_stack.set_defaults(func=cmd_merge_stack)

    p_status = sub.add_parser("status", help="Show ledger progress and the next story")
    p_status.add_argument("--json", action="store_true", help="Print the result as JSON")
    p_status.set_defaults(func=cmd_status)

    p_doc = sub.add_parser("doctor", help="Check prerequisites (git, agent CLI, gh, ledger)")
    p_doc.set_defaults(func=cmd_doctor)

    return p


def _apply_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    if args.ledger:
        cfg = dataclasses.replace(cfg, files=dataclasses.replace(cfg.files, ledger=args.ledger))
    return cfg


def main(argv: Optional[list] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    root = _project_root()
    try:
        cfg = _apply_overrides(load_config(root), args)
    except (ValueError, EnvVarError) as e:
        print_output(f"Error: {e}", level="error")
        return 2

    verbosity = cfg.output.verbosity
    if args.verbose:
        verbosity = "verbose"
    elif args.quiet:
        verbosity = "quiet"
    fmt = "json" if getattr(args, "json", False) else cfg.output.format
    set_output_config(OutputConfig(verbosity=verbosity, format=fmt))
    setup_logging(
        verbose=verbosity == "verbose",
        log_file=Path(args.log_file) if args.log_file else None,
        quiet=verbosity == "quiet",
    )

    logger.debug("ralph-stack v%s starting", __version__)
    logger.debug("Command: %s", args.cmd)

    args.cfg = cfg
    args.root = root
    try:
        return int(args.func(args))
    except (ValueError, EnvVarError) as e:
        print_output(f"Error: {e}", level="error")
        return 2
    except (PrerequisiteError, LedgerError, GitError, HostingError) as e:
        msg = str(e)
        # PrerequisiteError lines are already prefixed.
        print_output(msg if msg.startswith("Error:") else f"Error: {msg}", level="error")
        return 1
    finally:
        detach_progress_log()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
