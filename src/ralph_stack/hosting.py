"""Code-hosting platform access: pull requests and CI check status.

Two backends implement :class:`HostingClient`:

1. ``gh_cli`` (default): shells out to the GitHub CLI, which owns the
   credentials (system keychain).
2. ``token``: talks to the GitHub REST API with a personal access token
   read from an environment variable.

Security measures for the token backend:
- The token is never logged or printed
- __repr__ hides it
"""

from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests

from .config import HostingConfig
from .subprocess_helper import CommandError, SubprocessResult, run_subprocess

logger = logging.getLogger(__name__)

GH_TIMEOUT_SECONDS = 60
API_TIMEOUT_SECONDS = 30
GITHUB_API_URL = "https://api.github.com"
PR_LIST_LIMIT = 200

_PR_NUMBER_RE = re.compile(r"(\d+)\s*$")
_REMOTE_REPO_RE = re.compile(r"github\.com[:/]+([^/\s]+)/([^/\s]+?)(?:\.git)?/?$")


class HostingError(Exception):
    """A hosting platform call failed."""


class MergeError(HostingError):
    """A pull request could not be merged. ``output`` holds the platform's text."""

    def __init__(self, number: int, output: str):
        self.number = number
        self.output = output
        super().__init__(f"Merge of PR #{number} failed: {output}")


class CiStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"
    NO_CHECKS = "no_checks"
    UNKNOWN = "unknown"


class MergeFailureKind(str, Enum):
    CONFLICT = "conflict"
    CHECKS = "checks"
    REVIEW = "review"
    PROTECTED = "protected"
    OTHER = "other"


@dataclass(frozen=True)
class PullRequest:
    number: int
    title: str
    head_ref: str
    url: str = ""


FAIL_STATES = {
    "FAILURE",
    "ERROR",
    "CANCELLED",
    "TIMED_OUT",
    "ACTION_REQUIRED",
    "STARTUP_FAILURE",
    "STALE",
}
PENDING_STATES = {"PENDING", "QUEUED", "IN_PROGRESS", "WAITING", "REQUESTED", "EXPECTED"}
PASS_STATES = {"SUCCESS", "SKIPPED", "NEUTRAL"}


def classify_check_states(states: Iterable[str]) -> CiStatus:
    """Collapse individual check states into one CI verdict.

    Failure wins over pending, pending wins over success. An empty list means
    the repository has no checks configured.
    """
    normalized = [str(s or "").strip().upper() for s in states]
    if not normalized:
        return CiStatus.NO_CHECKS
    if any(s in FAIL_STATES for s in normalized):
        return CiStatus.FAIL
    if any(s in PENDING_STATES for s in normalized):
        return CiStatus.PENDING
    if all(s in PASS_STATES for s in normalized):
        return CiStatus.PASS
    return CiStatus.UNKNOWN


def classify_merge_failure(output: str) -> MergeFailureKind:
    text = (output or "").lower()
    if "conflict" in text:
        return MergeFailureKind.CONFLICT
    if "check" in text:
        return MergeFailureKind.CHECKS
    if "review" in text:
        return MergeFailureKind.REVIEW
    if "protected" in text:
        return MergeFailureKind.PROTECTED
    return MergeFailureKind.OTHER


def merge_failure_remedy(kind: MergeFailureKind, number: int, output: str = "") -> List[str]:
    """Human-readable hint lines for a classified merge failure."""
    if kind is MergeFailureKind.CONFLICT:
        return [
            "Merge conflict - resolve manually:",
            f"gh pr checkout {number}",
            "# Fix conflicts, commit, push",
        ]
    if kind is MergeFailureKind.CHECKS:
        return ["CI checks must pass first.", "Use --wait flag or wait for CI to complete."]
    if kind is MergeFailureKind.REVIEW:
        return ["PR requires review approval."]
    if kind is MergeFailureKind.PROTECTED:
        return ["Branch protection rules prevent merge."]
    return [line for line in (output or "").strip().splitlines()[:5]] or ["Unknown merge failure."]


def parse_pr_number(url: str) -> Optional[int]:
    m = _PR_NUMBER_RE.search((url or "").strip())
    return int(m.group(1)) if m else None


def repo_from_remote_url(url: str) -> str:
    """owner/name from an ssh or https GitHub remote URL ("" if not GitHub)."""
    m = _REMOTE_REPO_RE.search((url or "").strip())
    if not m:
        return ""
    return f"{m.group(1)}/{m.group(2)}"


class HostingClient(ABC):
    """Operations the controllers need from the hosting platform."""

    @abstractmethod
    def validate(self) -> bool:
        """True when the client is installed and authenticated."""

    @abstractmethod
    def list_open_prs(self, base: str) -> List[PullRequest]:
        """Open pull requests targeting ``base``, in platform order."""

    @abstractmethod
    def create_pr(self, base: str, head: str, title: str, body: str) -> PullRequest:
        """Open a pull request from ``head`` into ``base``."""

    @abstractmethod
    def merge_pr(self, number: int, delete_branch: bool = True) -> None:
        """Squash-merge a pull request.

        Raises:
            MergeError: with the platform's explanation on failure
        """

    @abstractmethod
    def check_status(self, number: int) -> CiStatus:
        """Current CI verdict for a pull request."""

    def count_open_prs(self, base: str) -> int:
        return len(self.list_open_prs(base))


class GhCliClient(HostingClient):
    """Hosting client backed by the ``gh`` CLI."""

    def __init__(self, project_root: Path, timeout: float = GH_TIMEOUT_SECONDS):
        self.project_root = project_root
        self.timeout = timeout

    def _gh(self, *args: str) -> SubprocessResult:
        try:
            return run_subprocess(["gh", *args], cwd=self.project_root, timeout=self.timeout)
        except CommandError as e:
            raise HostingError(str(e)) from e

    def _gh_json(self, *args: str) -> Any:
        result = self._gh(*args)
        if result.failed:
            raise HostingError(f"gh {args[0]} {args[1]} failed: {result.combined_output}")
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError as e:
            raise HostingError(f"Invalid JSON from gh: {e}") from e

    def validate(self) -> bool:
        try:
            return self._gh("auth", "status").success
        except HostingError:
            return False

    def list_open_prs(self, base: str) -> List[PullRequest]:
        data = self._gh_json(
            "pr", "list",
            "--base", base,
            "--state", "open",
            "--limit", str(PR_LIST_LIMIT),
            "--json", "number,title,headRefName,url",
        )
        prs: List[PullRequest] = []
        for item in data or []:
            if not isinstance(item, dict) or item.get("number") is None:
                continue
            prs.append(
                PullRequest(
                    number=int(item["number"]),
                    title=str(item.get("title") or ""),
                    head_ref=str(item.get("headRefName") or ""),
                    url=str(item.get("url") or ""),
                )
            )
        return prs

    def create_pr(self, base: str, head: str, title: str, body: str) -> PullRequest:
        result = self._gh(
            "pr", "create",
            "--base", base,
            "--head", head,
            "--title", title,
            "--body", body,
        )
        if result.failed:
            raise HostingError(f"PR creation failed: {result.combined_output}")
        lines = [ln.strip() for ln in result.stdout.splitlines() if ln.strip()]
        url = lines[-1] if lines else ""
        number = parse_pr_number(url)
        if number is None:
            raise HostingError(f"Could not read PR number from gh output: {result.stdout!r}")
        return PullRequest(number=number, title=title, head_ref=head, url=url)

    def merge_pr(self, number: int, delete_branch: bool = True) -> None:
        args = ["pr", "merge", str(number), "--squash"]
        if delete_branch:
            args.append("--delete-branch")
        result = self._gh(*args)
        if result.failed:
            raise MergeError(number, result.combined_output)

    def check_status(self, number: int) -> CiStatus:
        # gh exits non-zero while checks are pending, so parse stdout first.
        try:
            result = self._gh("pr", "checks", str(number), "--json", "name,state")
        except HostingError as e:
            logger.debug("gh pr checks %s failed: %s", number, e)
            return CiStatus.UNKNOWN

        if result.stdout.strip():
            try:
                data = json.loads(result.stdout)
            except json.JSONDecodeError:
                return CiStatus.UNKNOWN
            if isinstance(data, list):
                return classify_check_states(
                    item.get("state", "") for item in data if isinstance(item, dict)
                )
            return CiStatus.UNKNOWN

        if "no checks reported" in result.stderr.lower():
            return CiStatus.NO_CHECKS
        return CiStatus.UNKNOWN

    def __repr__(self) -> str:
        return f"GhCliClient({str(self.project_root)!r})"


class RestApiClient(HostingClient):
    """Hosting client backed by the GitHub REST API and a token."""

    def __init__(self, repo: str, token: Optional[str] = None, token_env: str = "GITHUB_TOKEN"):
        if repo.count("/") != 1:
            raise HostingError(f"Invalid repo format: {repo!r}. Expected 'owner/name'.")
        self.repo = repo
        self._token = token or os.getenv(token_env)
        if not self._token:
            raise HostingError(
                f"GitHub token not found. Set {token_env} or use hosting.backend = \"gh_cli\"."
            )

    def _request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "ralph-stack",
        }
        try:
            response = requests.request(
                method,
                f"{GITHUB_API_URL}{endpoint}",
                headers=headers,
                json=payload,
                params=params,
                timeout=API_TIMEOUT_SECONDS,
            )
        except requests.exceptions.Timeout as e:
            raise HostingError(f"GitHub API call timed out: {method} {endpoint}") from e
        except requests.exceptions.RequestException as e:
            raise HostingError(f"GitHub API call failed: {e}") from e

        if response.status_code == 401:
            raise HostingError("GitHub authentication failed. Check your token and try again.")
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise HostingError(f"GitHub API {method} {endpoint} -> {response.status_code}: {message}")

        if not response.text.strip():
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise HostingError(f"Failed to parse GitHub API response: {e}") from e

    def validate(self) -> bool:
        try:
            self._request("GET", "/user")
            return True
        except HostingError:
            return False

    def list_open_prs(self, base: str) -> List[PullRequest]:
        """Open PRs against ``base``, following pages up to PR_LIST_LIMIT."""
        per_page = 100
        prs: List[PullRequest] = []
        page = 1
        while len(prs) < PR_LIST_LIMIT:
            data = self._request(
                "GET",
                f"/repos/{self.repo}/pulls",
                params={"state": "open", "base": base, "per_page": per_page, "page": page},
            )
            items = data if isinstance(data, list) else []
            prs.extend(
                PullRequest(
                    number=int(item["number"]),
                    title=str(item.get("title") or ""),
                    head_ref=str((item.get("head") or {}).get("ref") or ""),
                    url=str(item.get("html_url") or ""),
                )
                for item in items
                if isinstance(item, dict) and item.get("number") is not None
            )
            if len(items) < per_page:
                break
            page += 1
        return prs[:PR_LIST_LIMIT]

    def create_pr(self, base: str, head: str, title: str, body: str) -> PullRequest:
        data = self._request(
            "POST",
            f"/repos/{self.repo}/pulls",
            payload={"title": title, "head": head, "base": base, "body": body},
        )
        return PullRequest(
            number=int(data["number"]),
            title=title,
            head_ref=head,
            url=str(data.get("html_url") or ""),
        )

    def merge_pr(self, number: int, delete_branch: bool = True) -> None:
        try:
            pr = self._request("GET", f"/repos/{self.repo}/pulls/{number}")
            self._request(
                "PUT",
                f"/repos/{self.repo}/pulls/{number}/merge",
                payload={"merge_method": "squash"},
            )
        except HostingError as e:
            raise MergeError(number, str(e)) from e

        head_ref = str((pr.get("head") or {}).get("ref") or "")
        if delete_branch and head_ref:
            try:
                self._request("DELETE", f"/repos/{self.repo}/git/refs/heads/{head_ref}")
            except HostingError as e:
                logger.warning("Merged PR #%s but could not delete %s: %s", number, head_ref, e)

    def check_status(self, number: int) -> CiStatus:
        try:
            pr = self._request("GET", f"/repos/{self.repo}/pulls/{number}")
            sha = str((pr.get("head") or {}).get("sha") or "")
            if not sha:
                return CiStatus.UNKNOWN
            runs = self._request("GET", f"/repos/{self.repo}/commits/{sha}/check-runs")
            combined = self._request("GET", f"/repos/{self.repo}/commits/{sha}/status")
        except HostingError as e:
            logger.debug("Check status for PR #%s unavailable: %s", number, e)
            return CiStatus.UNKNOWN

        states: List[str] = []
        for run in (runs or {}).get("check_runs", []) or []:
            if str(run.get("status", "")).lower() != "completed":
                states.append("PENDING")
            else:
                states.append(str(run.get("conclusion") or "UNKNOWN"))
        for status in (combined or {}).get("statuses", []) or []:
            states.append(str(status.get("state") or "UNKNOWN"))
        return classify_check_states(states)

    def __repr__(self) -> str:
        return f"RestApiClient({self.repo!r}, token=***)"


def create_client(cfg: HostingConfig, project_root: Path, remote_url: str = "") -> HostingClient:
    """Build the configured hosting client.

    Raises:
        HostingError: If the token backend lacks a repo or a token
    """
    if cfg.backend == "gh_cli":
        return GhCliClient(project_root)
    if cfg.backend == "token":
        repo = cfg.repo or repo_from_remote_url(remote_url)
        if not repo:
            raise HostingError(
                "hosting.repo is not set and the remote URL is not a GitHub repository."
            )
        return RestApiClient(repo, token_env=cfg.token_env)
    raise HostingError(f"Unknown hosting backend: {cfg.backend}. Use 'gh_cli' or 'token'.")
