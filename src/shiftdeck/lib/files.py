"""Atomic JSON file helpers shared by the file-backed collaborators."""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to ``path`` so concurrent readers see old or new content only.

    The document is written to a temporary file in the same directory and
    moved into place with ``os.replace``.

    Args:
        path: Destination file.
        payload: JSON-serializable data.

    Raises:
        OSError: If the file cannot be written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(payload, indent=2, sort_keys=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Any | None:
    """Read a JSON document, returning None when the file is missing or empty.

    Raises:
        OSError: If the file exists but cannot be read.
        json.JSONDecodeError: If the content is not valid JSON.
    """
    if not path.exists():
        return None
    content = path.read_text(encoding="utf-8")
    if not content.strip():
        return None
    return json.loads(content)


def lock_path_for(path: Path) -> Path:
    """Return the lock file guarding ``path``."""
    return path.with_name(f".{path.name}.lock")


@contextmanager
def locked(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock for read-modify-write of ``path``.

    Processes sharing a state directory serialize on a sibling lock file, so
    a document is always re-read and rewritten by one writer at a time. The
    lock must not be held across an ``await``.

    Raises:
        OSError: If the lock file cannot be opened or locked.
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
