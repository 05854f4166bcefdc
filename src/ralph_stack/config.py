from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

from .envvars import expand_config

BASE_BRANCH_ENV = "RALPH_MAIN_BRANCH"
DEFAULT_AGENT_ARGV = ["claude", "--dangerously-skip-permissions", "--print"]

GATE_OUTPUT_MODES = ("summary", "errors_only", "full")
HOSTING_BACKENDS = ("gh_cli", "token")
VERBOSITY_LEVELS = ("quiet", "normal", "verbose")
OUTPUT_FORMATS = ("text", "json")


# -------------------------
# Dataclasses
# -------------------------


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int = 10
    sleep_seconds_between_iters: int = 2
    runner_timeout_seconds: int = 0  # 0 = no timeout


@dataclass(frozen=True)
class FilesConfig:
    # Ralph's files live next to the scripts in the scaffolded project.
    ledger: str = "scripts/ralph/prd.json"
    prompt: str = "scripts/ralph/CLAUDE.md"
    progress: str = "scripts/ralph/progress.txt"


@dataclass(frozen=True)
class GitConfig:
    remote: str = "origin"
    base_branch: str = "main"
    branch_prefix: str = "feat/"
    ignore_paths: List[str] = field(default_factory=lambda: [".ralph/"])


@dataclass(frozen=True)
class RunnerConfig:
    argv: List[str]


@dataclass(frozen=True)
class GatesConfig:
    commands: List[str] = field(default_factory=list)
    fail_fast: bool = True
    output_mode: str = "summary"  # summary|errors_only|full
    max_output_lines: int = 50


@dataclass(frozen=True)
class MergeConfig:
    """Auto-merge after a single iteration (``once --merge``)."""

    timeout_seconds: int = 600
    poll_interval_seconds: int = 15


@dataclass(frozen=True)
class MergeStackConfig:
    ci_timeout_seconds: int = 300
    poll_interval_seconds: int = 10
    allow_no_checks: bool = True


@dataclass(frozen=True)
class HostingConfig:
    backend: str = "gh_cli"  # gh_cli|token
    repo: str = ""  # owner/name; derived from the remote URL when empty
    token_env: str = "GITHUB_TOKEN"


@dataclass(frozen=True)
class OutputSettings:
    verbosity: str = "normal"
    format: str = "text"


@dataclass(frozen=True)
class Config:
    loop: LoopConfig
    files: FilesConfig
    git: GitConfig
    runners: Dict[str, RunnerConfig]
    gates: GatesConfig
    merge: MergeConfig
    merge_stack: MergeStackConfig
    hosting: HostingConfig
    output: OutputSettings

    @property
    def implement_runner(self) -> RunnerConfig:
        return self.runners["implement"]

    @property
    def scaffold_runner(self) -> RunnerConfig:
        return self.runners["scaffold"]


# -------------------------
# Parsing helpers
# -------------------------


def _coerce_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "1", "yes", "y", "on"}:
            return True
        if v in {"false", "0", "no", "n", "off"}:
            return False
    return default


def _coerce_str_list(value: Any, default: List[str]) -> List[str]:
    if isinstance(value, list):
        return [str(x) for x in value if str(x).strip()]
    return list(default)


def _choice(value: Any, default: str, allowed: Tuple[str, ...], key: str) -> str:
    v = str(value if value is not None else default).strip().lower()
    if v not in allowed:
        raise ValueError(f"Invalid {key}: {v!r}. Must be one of: {', '.join(allowed)}.")
    return v


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Merge b into a (recursively for dicts), return new dict."""

    out: Dict[str, Any] = dict(a)
    for k, v in b.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _resolve_existing(project_root: Path, preferred: str, candidates: List[str]) -> str:
    """Return the first existing path among [preferred] + candidates, else preferred."""

    if preferred and (project_root / preferred).exists():
        return preferred
    for c in candidates:
        if (project_root / c).exists():
            return c
    return preferred


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    raw = data.get(name, {}) or {}
    return raw if isinstance(raw, dict) else {}


def _load_config_data(project_root: Path) -> Tuple[Dict[str, Any], List[Path]]:
    """Return merged toml data and the list of config files read (in order)."""

    paths: List[Path] = []

    p1 = project_root / ".ralph" / "ralph.toml"
    if p1.exists():
        paths.append(p1)

    p2 = project_root / "ralph.toml"
    if p2.exists():
        paths.append(p2)

    env = os.environ.get("RALPH_CONFIG")
    if env:
        p3 = Path(env)
        if not p3.is_absolute():
            p3 = (project_root / p3).resolve()
        if p3.exists():
            paths.append(p3)

    data: Dict[str, Any] = {}
    for p in paths:
        data = _deep_merge(data, _load_toml(p))

    return expand_config(data), paths


def _runner(raw: Any, default: List[str]) -> RunnerConfig:
    if isinstance(raw, dict) and isinstance(raw.get("argv"), list) and raw["argv"]:
        return RunnerConfig(argv=[str(x) for x in raw["argv"]])
    return RunnerConfig(argv=list(default))


# -------------------------
# Public API
# -------------------------


def load_config(project_root: Path) -> Config:
    """Load and normalize configuration.

    Key behavior:
    - Reads .ralph/ralph.toml, then ./ralph.toml, then $RALPH_CONFIG (later wins).
    - Expands ${VAR} / ${VAR:-default} in string values.
    - $RALPH_MAIN_BRANCH, when set, overrides git.base_branch.

    The returned config is always usable (defaults applied).

    Raises:
        ValueError: On malformed TOML or an invalid enumerated value
        EnvVarError: When a required ${VAR} is unset
    """

    data, _read_paths = _load_config_data(project_root)

    loop_raw = _section(data, "loop")
    files_raw = _section(data, "files")
    git_raw = _section(data, "git")
    runners_raw = _section(data, "runners")
    gates_raw = _section(data, "gates")
    merge_raw = _section(data, "merge")
    stack_raw = _section(data, "merge_stack")
    hosting_raw = _section(data, "hosting")
    output_raw = _section(data, "output")

    loop = LoopConfig(
        max_iterations=_coerce_int(loop_raw.get("max_iterations"), LoopConfig.max_iterations),
        sleep_seconds_between_iters=_coerce_int(
            loop_raw.get("sleep_seconds_between_iters"), LoopConfig.sleep_seconds_between_iters
        ),
        runner_timeout_seconds=_coerce_int(loop_raw.get("runner_timeout_seconds"), 0),
    )
    if loop.max_iterations < 1:
        raise ValueError(f"Invalid loop.max_iterations: {loop.max_iterations}. Must be >= 1.")

    files = FilesConfig(
        ledger=_resolve_existing(
            project_root,
            str(files_raw.get("ledger", files_raw.get("prd", FilesConfig.ledger))),
            ["scripts/ralph/prd.json", ".ralph/prd.json", "prd.json", "prd.yaml"],
        ),
        prompt=_resolve_existing(
            project_root,
            str(files_raw.get("prompt", FilesConfig.prompt)),
            ["scripts/ralph/CLAUDE.md", ".ralph/CLAUDE.md", "CLAUDE.md"],
        ),
        progress=str(files_raw.get("progress", FilesConfig.progress)),
    )

    base_branch = (
        os.environ.get(BASE_BRANCH_ENV)
        or str(git_raw.get("base_branch", git_raw.get("baseBranch", ""))).strip()
        or GitConfig.base_branch
    )
    git = GitConfig(
        remote=str(git_raw.get("remote", GitConfig.remote)).strip() or GitConfig.remote,
        base_branch=base_branch,
        branch_prefix=str(git_raw.get("branch_prefix", git_raw.get("branchPrefix", GitConfig.branch_prefix))),
        ignore_paths=_coerce_str_list(git_raw.get("ignore_paths"), [".ralph/"]),
    )

    implement = _runner(runners_raw.get("implement"), DEFAULT_AGENT_ARGV)
    runners: Dict[str, RunnerConfig] = {
        "implement": implement,
        # The scaffold skill runs through the same agent CLI unless overridden.
        "scaffold": _runner(runners_raw.get("scaffold"), implement.argv),
    }

    gates = GatesConfig(
        commands=_coerce_str_list(gates_raw.get("commands"), []),
        fail_fast=_coerce_bool(gates_raw.get("fail_fast", gates_raw.get("failFast")), True),
        output_mode=_choice(
            gates_raw.get("output_mode", gates_raw.get("outputMode")),
            "summary",
            GATE_OUTPUT_MODES,
            "gates.output_mode",
        ),
        max_output_lines=_coerce_int(gates_raw.get("max_output_lines"), 50),
    )

    merge = MergeConfig(
        timeout_seconds=_coerce_int(merge_raw.get("timeout_seconds"), MergeConfig.timeout_seconds),
        poll_interval_seconds=_coerce_int(
            merge_raw.get("poll_interval_seconds"), MergeConfig.poll_interval_seconds
        ),
    )

    merge_stack = MergeStackConfig(
        ci_timeout_seconds=_coerce_int(
            stack_raw.get("ci_timeout_seconds"), MergeStackConfig.ci_timeout_seconds
        ),
        poll_interval_seconds=_coerce_int(
            stack_raw.get("poll_interval_seconds"), MergeStackConfig.poll_interval_seconds
        ),
        allow_no_checks=_coerce_bool(stack_raw.get("allow_no_checks"), True),
    )
    for name, value in (
        ("merge.poll_interval_seconds", merge.poll_interval_seconds),
        ("merge_stack.poll_interval_seconds", merge_stack.poll_interval_seconds),
    ):
        if value < 1:
            raise ValueError(f"Invalid {name}: {value}. Must be >= 1.")

    hosting = HostingConfig(
        backend=_choice(hosting_raw.get("backend"), "gh_cli", HOSTING_BACKENDS, "hosting.backend"),
        repo=str(hosting_raw.get("repo", "")).strip(),
        token_env=str(hosting_raw.get("token_env", HostingConfig.token_env)).strip()
        or HostingConfig.token_env,
    )
    if hosting.repo and hosting.repo.count("/") != 1:
        raise ValueError(f"Invalid hosting.repo: {hosting.repo!r}. Expected 'owner/name'.")

    output = OutputSettings(
        verbosity=_choice(output_raw.get("verbosity"), "normal", VERBOSITY_LEVELS, "output.verbosity"),
        format=_choice(output_raw.get("format"), "text", OUTPUT_FORMATS, "output.format"),
    )

    return Config(
        loop=loop,
        files=files,
        git=git,
        runners=runners,
        gates=gates,
        merge=merge,
        merge_stack=merge_stack,
        hosting=hosting,
        output=output,
    )
