"""Atomic writes for the Story Ledger.

The ledger is the only durable state ralph-stack owns. It is rewritten by
writing a sibling temp file and renaming it over the target, so a reader
(or an interrupted run) never observes a half-written ledger.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write ``content`` to ``path`` via temp file + rename.

    Raises:
        OSError: If the write or the rename fails
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as fh:
            fh.write(content)
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, data: Dict[str, Any], indent: int = 2) -> None:
    """Serialise ``data`` as JSON and write it atomically.

    Raises:
        TypeError: If data is not JSON-serialisable
        OSError: If the write fails
    """
    content = json.dumps(data, indent=indent, ensure_ascii=False) + "\n"
    atomic_write_text(path, content)


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Restore raw bytes (a ledger snapshot) atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
