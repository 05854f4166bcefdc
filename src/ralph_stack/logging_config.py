"""Logging configuration for ralph-stack.

Two kinds of log output exist:

- Diagnostic logging on stderr, through the root logger. Level INFO by
  default, DEBUG with ``--verbose``, ERROR with ``--quiet``.
- The progress log (``progress.txt``): an append-only, human-readable record
  of story starts, passes and failures that survives between runs. It is a
  dedicated ``ralph_stack.progress`` logger with its own file handler, so
  progress lines also reach the console at INFO level.

Usage:
    >>> setup_logging(verbose=True)
    >>> attach_progress_log(Path("scripts/ralph/progress.txt"))
    >>> log_progress("Starting: AUTH-001 - Login form")
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

PROGRESS_LOGGER_NAME = "ralph_stack.progress"
PROGRESS_FORMAT = "%(asctime)s - %(message)s"
PROGRESS_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    verbose: bool = False,
    log_file: Optional[Path] = None,
    quiet: bool = False,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO level
        log_file: Optional path to a debug log file
        quiet: If True, suppress everything below ERROR

    Returns:
        The configured root logger
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers: list[logging.Handler] = []

    # stderr keeps stdout free for command output (and --json).
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    handlers.append(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    # the console handler filters on its own level
    root_logger.setLevel(logging.DEBUG if log_file else level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        root_logger.addHandler(handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    return root_logger


class AppendPerRecordHandler(logging.FileHandler):
    """FileHandler that opens, appends and closes for every record.

    The progress file may be tracked by git, and a checkout replaces the
    file on disk. Holding the stream open would keep writing to the old,
    unlinked copy.
    """

    def __init__(self, filename: Path, encoding: str = "utf-8"):
        super().__init__(filename, mode="a", encoding=encoding, delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
        finally:
            self.close_stream()

    def close_stream(self) -> None:
        self.acquire()
        try:
            if self.stream is not None:
                try:
                    self.stream.close()
                finally:
                    self.stream = None
        finally:
            self.release()


def attach_progress_log(path: Path) -> logging.Handler:
    """Route ``ralph_stack.progress`` records into ``path`` (append mode).

    Re-attaching for the same path is a no-op; a different path replaces the
    previous file handler.
    """
    progress = logging.getLogger(PROGRESS_LOGGER_NAME)
    progress.setLevel(logging.INFO)
    target = str(path.resolve())

    for handler in progress.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            if handler.baseFilename == target:
                return handler
            progress.removeHandler(handler)
            handler.close()

    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    handler = AppendPerRecordHandler(path)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(PROGRESS_FORMAT, datefmt=PROGRESS_DATEFMT))
    progress.addHandler(handler)
    return handler


def detach_progress_log() -> None:
    progress = logging.getLogger(PROGRESS_LOGGER_NAME)
    for handler in progress.handlers[:]:
        progress.removeHandler(handler)
        handler.close()


def log_progress(message: str, *args: object) -> None:
    """Append one line to the progress log."""
    logging.getLogger(PROGRESS_LOGGER_NAME).info(message, *args)
