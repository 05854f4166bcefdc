from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import Config
from .hosting import HostingClient
from .subprocess_helper import CommandError, run_subprocess


class PrerequisiteError(Exception):
    """The environment is missing something a command needs."""


@dataclass
class ToolStatus:
    name: str
    found: bool
    path: Optional[str]
    version: Optional[str]
    hint: Optional[str]


@dataclass
class FileStatus:
    label: str
    path: Path
    found: bool


def _which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def _version(cmd: List[str]) -> Optional[str]:
    try:
        result = run_subprocess(cmd, timeout=15)
    except CommandError:
        return None
    text = result.stdout.strip() or result.stderr.strip()
    if text:
        # first line only
        return text.splitlines()[0][:200]
    return None


def check_tools(cfg: Config, need_agent: bool = True) -> List[ToolStatus]:
    checks = [("git", "Install git and run `git init` in your project.")]
    agent = cfg.implement_runner.argv[0]
    scaffold = cfg.scaffold_runner.argv[0]
    if need_agent:
        checks.append((agent, f"Install the {agent} CLI or set [runners.implement].argv in ralph.toml."))
    if need_agent and scaffold != agent:
        checks.append((scaffold, f"Install {scaffold} or set [runners.scaffold].argv in ralph.toml."))
    if cfg.hosting.backend == "gh_cli":
        checks.append(("gh", "Install the GitHub CLI (https://cli.github.com) and run `gh auth login`."))

    results: List[ToolStatus] = []
    for name, hint in checks:
        path = _which(name)
        found = path is not None
        version = _version([name, "--version"]) if found else None
        results.append(ToolStatus(name=name, found=found, path=path, version=version, hint=None if found else hint))
    return results


def check_files(cfg: Config, project_root: Path) -> List[FileStatus]:
    out: List[FileStatus] = []
    for label, rel in (("story ledger", cfg.files.ledger), ("prompt", cfg.files.prompt)):
        path = project_root / rel
        out.append(FileStatus(label=label, path=path, found=path.is_file()))
    return out


def require_prerequisites(
    cfg: Config,
    project_root: Path,
    hosting: Optional[HostingClient] = None,
    need_agent: bool = True,
    need_files: bool = True,
) -> None:
    """Raise PrerequisiteError listing every missing prerequisite.

    ``hosting`` is validated (installed and authenticated) when given.
    """
    problems: List[str] = []
    for tool in check_tools(cfg, need_agent=need_agent):
        if not tool.found:
            problems.append(f"{tool.name} not found. {tool.hint}")
    if need_files:
        for f in check_files(cfg, project_root):
            if not f.found:
                problems.append(f"{f.label} not found at {f.path}")
    if hosting is not None and not hosting.validate():
        problems.append("Hosting client is not authenticated. Run `gh auth login` or set the token.")

    if problems:
        raise PrerequisiteError("\n".join(f"Error: {p}" for p in problems))
