from __future__ import annotations

import os
import tempfile
from pathlib import Path


class PathTraversalError(ValueError):
    """A computed storage path would land outside its root directory."""


def safe_join(root: Path, relpath: str) -> Path:
    """Resolve ``relpath`` under ``root`` and refuse anything that escapes it.

    Record and pending paths are built from encoded identifiers, so a
    violation here means a bug or a hostile identifier, never normal input.
    """
    if Path(relpath).is_absolute():
        raise PathTraversalError(f"absolute path rejected: {relpath!r}")
    root = root.resolve()
    target = root.joinpath(relpath).resolve()
    if not target.is_relative_to(root):
        raise PathTraversalError(f"path escapes storage root: {relpath!r}")
    return target


def atomic_write_text(path: Path, text: str, *, mode: int = 0o600) -> None:
    """Write ``text`` to ``path`` through a temp file and ``os.replace``.

    Readers see either the old content or the new content, never a partial file.
    """
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp_", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            os.fchmod(handle.fileno(), mode)
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


__all__ = ["PathTraversalError", "atomic_write_text", "safe_join"]
