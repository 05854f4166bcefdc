"""Subprocess execution shared by the git, hosting and collaborator seams.

Every external tool ralph-stack drives (git, gh, the agent CLI, quality
gates) goes through one of the two runners below so that timeouts and
missing executables surface as the same exception types.
"""

from __future__ import annotations

import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, List, Optional, Union


class CommandError(RuntimeError):
    """A command could not be run to completion."""


class CommandNotFoundError(CommandError):
    """The executable is not on PATH."""


class CommandTimeoutError(CommandError):
    """The command exceeded its timeout and was killed."""


@dataclass
class SubprocessResult:
    """Captured outcome of one command.

    Attributes:
        returncode: Exit code of the process (0 = success)
        stdout: Captured standard output ("" when not captured)
        stderr: Captured standard error ("" when not captured)
        cmd_str: Space-joined argv, for log lines
    """

    returncode: int
    stdout: str
    stderr: str
    cmd_str: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def failed(self) -> bool:
        return self.returncode != 0

    @property
    def combined_output(self) -> str:
        """stdout followed by stderr, as a human would have seen them."""
        parts = [p.strip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)


def _coerce_text(raw: Union[str, bytes, None]) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("utf-8", errors="replace")
    return str(raw)


def run_subprocess(
    argv: List[str],
    cwd: Optional[Path] = None,
    check: bool = False,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> SubprocessResult:
    """Run a command to completion and capture its output.

    Args:
        argv: Command and arguments (e.g. ["git", "status"])
        cwd: Working directory for the command
        check: Raise CommandError on a non-zero exit
        timeout: Seconds before the command is killed
        input_text: Text written to the command's stdin
        env: Full environment for the child process

    Returns:
        SubprocessResult with returncode, stdout and stderr

    Raises:
        CommandNotFoundError: argv[0] is not installed
        CommandTimeoutError: the command exceeded ``timeout``
        CommandError: ``check`` is set and the command failed

    Examples:
        >>> result = run_subprocess(["git", "rev-parse", "HEAD"])
        >>> if result.success:
        ...     print(result.stdout.strip())
    """
    cmd_str = " ".join(argv)

    kwargs: dict = {"capture_output": True, "text": True}
    if cwd is not None:
        kwargs["cwd"] = str(cwd)
    if timeout is not None:
        kwargs["timeout"] = timeout
    if env is not None:
        kwargs["env"] = env
    if input_text is not None:
        kwargs["input"] = input_text

    try:
        cp = subprocess.run(argv, **kwargs)
    except subprocess.TimeoutExpired as e:
        partial = _coerce_text(e.stderr)
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s: {cmd_str}\n"
            f"Partial output:\n{partial[:500]}"
        ) from e
    except FileNotFoundError as e:
        raise CommandNotFoundError(
            f"Command not found: {argv[0]}\n"
            f"Ensure the command is installed and available in PATH."
        ) from e

    result = SubprocessResult(
        returncode=cp.returncode,
        stdout=_coerce_text(cp.stdout),
        stderr=_coerce_text(cp.stderr),
        cmd_str=cmd_str,
    )
    if check and result.failed:
        raise CommandError(
            f"Command failed with exit code {result.returncode}: {cmd_str}\n"
            f"stderr: {result.stderr.strip()}"
        )
    return result


def run_subprocess_live(
    argv: List[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    forward_output: bool = True,
    env: Optional[Dict[str, str]] = None,
) -> SubprocessResult:
    """Run a command while streaming its output to the terminal.

    Used for the agent CLI and quality gates, whose output the operator
    watches as it happens. Output is captured as well so it can be logged
    or summarised afterwards.

    Raises:
        CommandNotFoundError: argv[0] is not installed
        CommandTimeoutError: the command exceeded ``timeout``
    """
    cmd_str = " ".join(argv)

    kwargs: dict = {
        "stdin": subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        "stdout": subprocess.PIPE,
        "stderr": subprocess.PIPE,
        "text": True,
    }
    if cwd is not None:
        kwargs["cwd"] = str(cwd)
    if env is not None:
        kwargs["env"] = env

    stdout_lines: List[str] = []
    stderr_lines: List[str] = []

    def _pump(stream: IO[str], sink: List[str], to_stderr: bool) -> None:
        for line in iter(stream.readline, ""):
            if forward_output:
                print(line, end="", flush=True, file=sys.stderr if to_stderr else sys.stdout)
            sink.append(line)

    def _feed(stream: IO[str], text: str) -> None:
        try:
            stream.write(text)
            stream.flush()
        except (OSError, ValueError):
            # The child may exit before reading stdin; its exit code still counts.
            pass
        finally:
            try:
                stream.close()
            except (OSError, ValueError):
                pass

    try:
        with subprocess.Popen(argv, **kwargs) as proc:
            # Readers must be running before stdin is fed.
            threads = [
                threading.Thread(target=_pump, args=(proc.stdout, stdout_lines, False), daemon=True),
                threading.Thread(target=_pump, args=(proc.stderr, stderr_lines, True), daemon=True),
            ]
            if input_text is not None and proc.stdin is not None:
                threads.append(threading.Thread(target=_feed, args=(proc.stdin, input_text), daemon=True))
            for thread in threads:
                thread.start()

            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired as e:
                proc.kill()
                proc.wait()
                for thread in threads:
                    thread.join(timeout=1.0)
                raise CommandTimeoutError(
                    f"Command timed out after {timeout}s: {cmd_str}\n"
                    f"Partial stdout:\n{''.join(stdout_lines)[:500]}"
                ) from e

            for thread in threads:
                thread.join()

            return SubprocessResult(
                returncode=proc.returncode if proc.returncode is not None else -1,
                stdout="".join(stdout_lines),
                stderr="".join(stderr_lines),
                cmd_str=cmd_str,
            )
    except FileNotFoundError as e:
        raise CommandNotFoundError(
            f"Command not found: {argv[0]}\n"
            f"Ensure the command is installed and available in PATH."
        ) from e


def check_command_available(cmd: str) -> bool:
    """True if ``cmd`` resolves on PATH."""
    return shutil.which(cmd) is not None
