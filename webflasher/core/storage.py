"""Flat JSON file storage

Each document is read, mutated and written back while an exclusive advisory
lock (fcntl.flock) is held on the file itself. There is no cross-file
transaction.
"""

import copy
import fcntl
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageError(Exception):
    """Raised when a JSON document cannot be written"""
    pass


@contextmanager
def _locked(path: Path, exclusive: bool) -> Iterator[Any]:
    path.parent.mkdir(parents=True, exist_ok=True)
    # a+ creates the file without truncating it
    with open(path, "a+", encoding="utf-8") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
        try:
            yield f
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def _load(f, path: Path, default: Any) -> Any:
    f.seek(0)
    raw = f.read()
    if not raw.strip():
        return copy.deepcopy(default)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Corrupt JSON document {path.name}, starting from defaults")
        return copy.deepcopy(default)
    if not isinstance(data, type(default)):
        logger.warning(f"Unexpected JSON document shape in {path.name}, starting from defaults")
        return copy.deepcopy(default)
    return data


def read_json(path: Path, default: Any) -> Any:
    """Read a JSON document under a shared lock; missing or corrupt -> default"""
    if not path.exists():
        return copy.deepcopy(default)
    with _locked(path, exclusive=False) as f:
        return _load(f, path, default)


def locked_json_update(path: Path, default: Any, mutate: Callable[[Any], T]) -> T:
    """
    Read-modify-write a JSON document under an exclusive lock.

    Args:
        path: Document path (created if missing)
        default: Value used when the file is missing, empty or corrupt
        mutate: Called with the loaded document; mutates it in place and
                returns a result handed back to the caller

    Returns:
        Whatever mutate returned

    Raises:
        StorageError: If the document cannot be written
    """
    try:
        with _locked(path, exclusive=True) as f:
            data = _load(f, path, default)
            result = mutate(data)
            f.seek(0)
            f.truncate()
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
            return result
    except OSError as e:
        raise StorageError(f"Failed to write {path.name}: {e}") from e


def file_size(path: Path) -> int:
    """Size in bytes, 0 for a missing file"""
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0
