"""
On-disk helpers shared by the caches.

Every write goes to a temporary file in the destination directory and is then
renamed over the target, so readers only ever see a complete file.
"""

from __future__ import annotations
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from .errors import CacheIOError

logger = logging.getLogger(__name__)


def key_to_filename(key: str, suffix: str = ".json") -> str:
    """Map an arbitrary cache key to a filesystem-safe file name."""
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
    return f"{digest}{suffix}"


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write bytes to path via temp-file-then-rename.

    Raises:
        CacheIOError: if the temp file cannot be written or renamed
    """
    temp_path: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            temp_path = f.name
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
        temp_path = None
    except OSError as e:
        raise CacheIOError(f"Failed to write {path}: {e}") from e
    finally:
        if temp_path:
            try:
                Path(temp_path).unlink()
            except OSError:
                pass


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialise data as JSON and write it atomically."""
    payload = json.dumps(data, indent=2, sort_keys=True).encode("utf-8")
    atomic_write_bytes(path, payload)


def read_json(path: Path) -> Any:
    """Read a JSON file. Raises ValueError or OSError on failure."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def remove_file(path: Path) -> bool:
    """Delete a file, returning False if it could not be removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
        return False
