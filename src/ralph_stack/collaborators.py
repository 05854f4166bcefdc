"""Opaque external steps of an iteration: scaffold, implement, quality gates.

Each step implements :class:`Collaborator` and is judged by its exit status
alone. The scaffold and implementation steps pipe a prompt into the agent
CLI; quality gates are shell commands.
"""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .ledger import Story
from .messages import story_addendum
from .subprocess_helper import (
    CommandNotFoundError,
    CommandTimeoutError,
    SubprocessResult,
    check_command_available,
    run_subprocess,
    run_subprocess_live,
)

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class CollaboratorError(Exception):
    """A collaborator could not be started at all."""


@dataclass(frozen=True)
class StepContext:
    project_root: Path
    story: Story
    iteration: Optional[int] = None
    timeout: Optional[float] = None


@dataclass
class ExitStatus:
    """What a collaborator reports back."""

    code: int
    output: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.code == 0


class Collaborator(ABC):
    name: str = "step"

    @abstractmethod
    def run(self, context: StepContext) -> ExitStatus:
        """Run the step for ``context.story``."""


def _status(result: SubprocessResult, start: float) -> ExitStatus:
    return ExitStatus(
        code=result.returncode,
        output=result.combined_output,
        duration_seconds=time.time() - start,
    )


class AgentStep(Collaborator):
    """Pipes a prompt into an agent CLI, streaming its output."""

    name = "agent"

    def __init__(self, argv: Sequence[str], forward_output: bool = True):
        if not argv:
            raise ValueError("agent argv must not be empty")
        self.argv = list(argv)
        self.forward_output = forward_output

    @abstractmethod
    def build_prompt(self, context: StepContext) -> str:
        """The prompt piped to the agent on stdin."""

    def run(self, context: StepContext) -> ExitStatus:
        prompt = self.build_prompt(context)
        start = time.time()
        logger.debug("%s: %s (%d prompt chars)", self.name, " ".join(self.argv), len(prompt))
        try:
            result = run_subprocess_live(
                self.argv,
                cwd=context.project_root,
                timeout=context.timeout,
                input_text=prompt,
                forward_output=self.forward_output,
            )
        except CommandNotFoundError as e:
            raise CollaboratorError(str(e)) from e
        except CommandTimeoutError as e:
            logger.warning("%s timed out: %s", self.name, e)
            return ExitStatus(code=TIMEOUT_EXIT_CODE, output=str(e), duration_seconds=time.time() - start)
        return _status(result, start)


class ScaffoldStep(AgentStep):
    """Runs ``/<skill> <feature>`` through the agent."""

    name = "scaffold"

    def build_prompt(self, context: StepContext) -> str:
        story = context.story
        return f"/{story.scaffold_skill} {story.feature_name}\n"


class ImplementStep(AgentStep):
    """Runs the project prompt file plus the current-story addendum."""

    name = "implement"

    def __init__(self, argv: Sequence[str], prompt_path: Path, forward_output: bool = True):
        super().__init__(argv, forward_output=forward_output)
        self.prompt_path = prompt_path

    def build_prompt(self, context: StepContext) -> str:
        try:
            base = self.prompt_path.read_text(encoding="utf-8")
        except OSError as e:
            raise CollaboratorError(f"Cannot read prompt file {self.prompt_path}: {e}") from e
        return base.rstrip("\n") + "\n" + story_addendum(context.story)


def gate_shell_argv(cmd: str) -> List[str]:
    """Shell invocation for a gate command on this platform."""
    if os.name == "nt":
        return ["cmd", "/c", cmd]
    if check_command_available("bash"):
        return ["bash", "-lc", cmd]
    return ["sh", "-lc", cmd]


class GateCommand(Collaborator):
    """A quality gate: a shell command whose exit status is its verdict."""

    name = "gate"

    def __init__(self, cmd: str):
        self.cmd = cmd

    def run(self, context: StepContext) -> ExitStatus:
        start = time.time()
        try:
            result = run_subprocess(
                gate_shell_argv(self.cmd),
                cwd=context.project_root,
                timeout=context.timeout,
            )
        except CommandNotFoundError as e:
            raise CollaboratorError(str(e)) from e
        except CommandTimeoutError as e:
            return ExitStatus(code=TIMEOUT_EXIT_CODE, output=str(e), duration_seconds=time.time() - start)
        return _status(result, start)

    def __repr__(self) -> str:
        return f"GateCommand({self.cmd!r})"


@dataclass
class GateResult:
    cmd: str
    status: ExitStatus


def run_gates(
    gates: Sequence[GateCommand],
    context: StepContext,
    fail_fast: bool = True,
) -> Tuple[bool, List[GateResult]]:
    """Run gates in order. Returns (all passed, results so far)."""
    results: List[GateResult] = []
    ok = True
    for gate in gates:
        logger.info("Gate: %s", gate.cmd)
        status = gate.run(context)
        results.append(GateResult(cmd=gate.cmd, status=status))
        if not status.ok:
            ok = False
            logger.warning("Gate failed (exit %d): %s", status.code, gate.cmd)
            if fail_fast:
                break
    return ok, results


def truncate_output(text: str, max_lines: int) -> str:
    """Keep the first 60% and last 40% of ``max_lines`` lines."""
    if max_lines <= 0:
        return text

    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text

    head_count = int(max_lines * 0.6)
    tail_count = max_lines - head_count
    head = lines[:head_count]
    tail = lines[-tail_count:] if tail_count > 0 else []
    return "\n".join(head + [f"... ({len(lines) - max_lines} lines truncated) ..."] + tail)


def format_gate_results(
    ok: bool,
    results: Sequence[GateResult],
    output_mode: str = "summary",
    max_lines: int = 50,
) -> str:
    if not results:
        return "(gates: not configured)"

    lines: List[str] = [f"gates_overall: {'PASS' if ok else 'FAIL'}"]
    for i, r in enumerate(results, start=1):
        lines.append("")
        lines.append(f"gate_{i}_cmd: {r.cmd}")
        lines.append(f"gate_{i}_return_code: {r.status.code}")
        lines.append(f"gate_{i}_duration_seconds: {r.status.duration_seconds:.2f}")

        output = r.status.output.rstrip()
        if not output:
            continue
        if output_mode == "errors_only":
            if not r.status.ok:
                lines.append("--- gate output (errors only) ---")
                lines.append(truncate_output(output, max_lines))
        elif output_mode == "summary":
            lines.append("--- gate output (summary) ---")
            lines.append(truncate_output(output, max_lines))
        else:
            lines.append("--- gate output ---")
            lines.append(output)

    return "\n".join(lines) + "\n"
