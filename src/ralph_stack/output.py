"""Console output for ralph-stack commands.

Handles verbosity (quiet, normal, verbose), the JSON output mode, and the
banner/step layout the Ralph scripts have always printed.
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

BANNER_RULE = "━" * 43


@dataclass
class OutputConfig:
    """Output configuration.

    Attributes:
        verbosity: "quiet", "normal" or "verbose"
        format: "text" or "json"
    """

    verbosity: str = "normal"
    format: str = "text"


_output_config: Optional[OutputConfig] = None


def get_output_config() -> OutputConfig:
    """Return the configuration set by the CLI, else one built from the environment."""
    if _output_config is not None:
        return _output_config

    verbosity = os.environ.get("RALPH_VERBOSITY", "normal")
    format_type = os.environ.get("RALPH_FORMAT", "text")
    if verbosity not in ("quiet", "normal", "verbose"):
        verbosity = "normal"
    if format_type not in ("text", "json"):
        format_type = "text"
    return OutputConfig(verbosity=verbosity, format=format_type)


def set_output_config(config: Optional[OutputConfig]) -> None:
    global _output_config
    _output_config = config


def print_output(message: str, level: str = "normal", file: Any = None, end: str = "\n") -> None:
    """Print ``message`` if the current verbosity allows it.

    - "error": always printed, to stderr by default
    - "quiet": printed in every mode
    - "normal": suppressed in quiet mode
    - "verbose": only printed in verbose mode

    JSON mode suppresses all text output except errors.
    """
    config = get_output_config()

    if level == "error":
        print(message, file=file or sys.stderr, end=end)
        return

    if config.format == "json":
        return

    if level == "quiet":
        should_print = True
    elif level == "verbose":
        should_print = config.verbosity == "verbose"
    else:
        should_print = config.verbosity in ("normal", "verbose")

    if should_print:
        print(message, file=file or sys.stdout, end=end)


def format_json_output(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, sort_keys=False, ensure_ascii=False)


def build_json_response(cmd: str, exit_code: int = 0, **data: Any) -> Dict[str, Any]:
    """Common envelope for every --json payload: cmd, exit_code, timestamp, then data."""
    payload: Dict[str, Any] = {
        "cmd": cmd,
        "exit_code": exit_code,
        "timestamp": datetime.now().isoformat(),
    }
    payload.update(data)
    return payload


def print_json_output(data: Dict[str, Any]) -> None:
    """Print ``data`` as JSON when the JSON format is active."""
    if get_output_config().format == "json":
        print(format_json_output(data))


def print_banner(title: str, level: str = "normal") -> None:
    print_output(BANNER_RULE, level=level)
    print_output(f"  {title}", level=level)
    print_output(BANNER_RULE, level=level)


def print_step(step: int, total: int, message: str) -> None:
    print_output("")
    print_output(f"→ Step {step}/{total}: {message}")
