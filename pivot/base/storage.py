"""Small filesystem helpers shared by the persisted stores."""

from __future__ import annotations

import hashlib
import os
import re
import tempfile
from pathlib import Path

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def safe_stem(engagement_id: str) -> str:
    """
    Filesystem-safe form of an engagement id that stays distinct per id.

    The readable prefix is lossy ("eng/1" and "eng_1" sanitise alike), so a
    short digest of the raw id keeps distinct engagements in distinct files.
    """
    digest = hashlib.sha256(engagement_id.encode("utf-8")).hexdigest()[:12]
    readable = _UNSAFE.sub("_", engagement_id)[:64]
    return f"{readable}-{digest}"


def atomic_write_text(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then rename over the target."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent), text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


__all__ = ["atomic_write_text", "safe_stem"]
