"""Source-control operations used by the Ralph controllers.

Everything runs through the ``git`` CLI against one working tree. Commands
whose failure must stop the run raise :class:`GitError`. Cleanup commands
run after a merge are best effort and only log on failure.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .atomic_file import atomic_write_bytes
from .subprocess_helper import CommandError, SubprocessResult, run_subprocess

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120


class GitError(Exception):
    """A git command failed."""


class DirtyWorktreeError(GitError):
    """The working tree has uncommitted changes to tracked files."""

    def __init__(self, changed: Sequence[str]):
        self.changed = list(changed)
        preview = "\n".join(f"  {line}" for line in self.changed[:10])
        super().__init__(
            "You have uncommitted changes. Please commit or stash them first.\n"
            f"{preview}\n\n"
            "  git status        # See what's changed\n"
            "  git stash         # Temporarily save changes\n"
            "  git checkout .    # Discard changes"
        )


class BranchExistsError(GitError):
    """The story branch already exists locally or on the remote."""


class GitRepo:
    """A working tree plus the remote/base branch the controllers target."""

    def __init__(
        self,
        project_root: Path,
        remote: str = "origin",
        base_branch: str = "main",
        ignore_paths: Iterable[str] = (),
    ):
        self.project_root = project_root
        self.remote = remote
        self.base_branch = base_branch
        self.ignore_paths = [p for p in ignore_paths if p]

    # -------------------------
    # plumbing
    # -------------------------

    def _run(
        self,
        *args: str,
        timeout: Optional[float] = GIT_TIMEOUT_SECONDS,
        input_text: Optional[str] = None,
    ) -> SubprocessResult:
        try:
            return run_subprocess(
                ["git", *args], cwd=self.project_root, timeout=timeout, input_text=input_text
            )
        except CommandError as e:
            raise GitError(str(e)) from e

    def _check(self, *args: str, timeout: Optional[float] = GIT_TIMEOUT_SECONDS) -> str:
        result = self._run(*args, timeout=timeout)
        if result.failed:
            detail = result.stderr.strip() or result.stdout.strip()
            raise GitError(f"git {' '.join(args)} failed (exit {result.returncode}): {detail}")
        return result.stdout

    def _best_effort(self, *args: str) -> bool:
        try:
            result = self._run(*args)
        except GitError as e:
            logger.debug("git %s failed (ignored): %s", " ".join(args), e)
            return False
        if result.failed:
            logger.debug("git %s failed (ignored): %s", " ".join(args), result.stderr.strip())
        return result.success

    # -------------------------
    # inspection
    # -------------------------

    def ensure_repo(self) -> None:
        try:
            self._check("rev-parse", "--is-inside-work-tree")
        except GitError as e:
            raise GitError(f"Not a git repository: {self.project_root}") from e

    def changed_tracked_files(self) -> List[str]:
        """Porcelain lines for modified tracked files, minus ignored prefixes.

        Untracked files do not make the tree dirty.
        """
        out = self._check("status", "--porcelain", "--untracked-files=no")
        changed: List[str] = []
        for line in out.splitlines():
            if not line.strip():
                continue
            # porcelain: XY<space>path (renames: "old -> new")
            path = line[3:].strip() if len(line) > 3 else line.strip()
            path = path.split(" -> ")[-1].strip('"')
            if any(path.startswith(prefix) or path == prefix.rstrip("/") for prefix in self.ignore_paths):
                continue
            changed.append(line)
        return changed

    def require_clean(self) -> None:
        """Raise DirtyWorktreeError unless the tracked tree is clean."""
        changed = self.changed_tracked_files()
        if changed:
            raise DirtyWorktreeError(changed)

    def current_branch(self) -> str:
        return self._check("rev-parse", "--abbrev-ref", "HEAD").strip()

    def head(self) -> str:
        result = self._run("rev-parse", "--verify", "HEAD")
        return result.stdout.strip() if result.success else ""

    def local_branch_exists(self, branch: str) -> bool:
        return self._run("show-ref", "--verify", "--quiet", f"refs/heads/{branch}").success

    def remote_branch_exists(self, branch: str) -> bool:
        ref = f"refs/remotes/{self.remote}/{branch}"
        return self._run("show-ref", "--verify", "--quiet", ref).success

    def remote_url(self) -> str:
        result = self._run("remote", "get-url", self.remote)
        return result.stdout.strip() if result.success else ""

    def staged_files(self) -> List[str]:
        out = self._check("diff", "--cached", "--name-only")
        return [line for line in out.splitlines() if line.strip()]

    def last_commit_oneline(self) -> str:
        result = self._run("log", "-1", "--pretty=format:%h %s")
        return result.stdout.strip() if result.success else ""

    def log_oneline(self, count: int) -> List[str]:
        result = self._run("log", "--oneline", f"-{max(1, count)}")
        if result.failed:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    # -------------------------
    # mutation
    # -------------------------

    def sync_base(self) -> None:
        """Fetch, checkout the base branch and pull it. Fails fast."""
        self._check("fetch", self.remote)
        self._check("checkout", self.base_branch)
        self._check("pull", self.remote, self.base_branch)

    def create_branch(self, branch: str, force: bool = False) -> None:
        """Create and checkout ``branch`` from the current HEAD.

        With ``force`` an existing local or remote branch of the same name is
        deleted first; otherwise BranchExistsError is raised.
        """
        if self.local_branch_exists(branch):
            if not force:
                raise BranchExistsError(
                    f"Branch {branch} already exists locally.\n"
                    "Options:\n"
                    f"  git branch -D {branch}  # Delete and start fresh\n"
                    f"  git checkout {branch}   # Resume work on it"
                )
            self._best_effort("branch", "-D", branch)

        if self.remote_branch_exists(branch):
            if not force:
                raise BranchExistsError(
                    f"Branch {branch} exists on {self.remote}.\n"
                    "A PR may already exist for this story.\n\n"
                    f"Check: gh pr list --head {branch}"
                )
            self._best_effort("push", self.remote, "--delete", branch)

        self._check("checkout", "-b", branch)

    def stage_all(self) -> None:
        self._check("add", "-A")

    def commit(self, message: str) -> str:
        """Commit the index with ``message``; return the new HEAD sha."""
        result = self._run("commit", "-F", "-", input_text=message)
        if result.failed:
            raise GitError(f"git commit failed: {result.stderr.strip() or result.stdout.strip()}")
        return self.head()

    def push(self, branch: str) -> None:
        self._check("push", "-u", self.remote, branch)

    def discard_branch(self, branch: str) -> None:
        """Force back to the base branch and drop ``branch`` locally (best effort).

        Uncommitted edits to tracked files are thrown away, except for files
        under ``ignore_paths`` (the progress log), which keep their content.
        """
        kept = self._snapshot_ignored()
        self._best_effort("checkout", "-f", self.base_branch)
        for path, data in kept.items():
            try:
                atomic_write_bytes(path, data)
            except OSError as e:
                logger.warning("Could not restore %s after discarding %s: %s", path, branch, e)
        self._best_effort("branch", "-D", branch)

    def _snapshot_ignored(self) -> Dict[Path, bytes]:
        kept: Dict[Path, bytes] = {}
        for rel in self.ignore_paths:
            path = self.project_root / rel
            if path.is_file():
                kept[path] = path.read_bytes()
        return kept

    def return_to_base(self, pull: bool = False) -> None:
        self._best_effort("checkout", self.base_branch)
        if pull:
            self._best_effort("pull", self.remote, self.base_branch)

    def sync_after_merge(self, branch: str) -> None:
        """Local cleanup once a story PR is merged (every step best effort)."""
        self._best_effort("checkout", self.base_branch)
        self._best_effort("pull", self.remote, self.base_branch)
        self._best_effort("branch", "-D", branch)
        self._best_effort("push", self.remote, "--delete", branch)
        self._best_effort("fetch", "--prune")

    def sync_after_merge_stack(self) -> None:
        """Bring the local base branch up to date after a merge-stack run."""
        self._check("fetch", self.remote, "--prune")
        self._best_effort("checkout", self.base_branch)
        self._best_effort("pull", self.remote, self.base_branch)
