"""
Helpers for writing files that other processes may be reading or writing at the same time.

Two things are provided:
  - `exclusive_lock()`, a scoped fcntl.flock() on a sidecar "<path>.lock" file. Wrap every load-modify-write
    of a shared file in it, otherwise two callers that read the same old contents will each write back their
    own version and one of the updates is lost.
  - `atomic_write_text()`, which writes to a temp file in the same directory and then os.replace()s it onto
    the destination. Readers either see the old file or the new file, never a half-written one.
"""

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_NEW_FILE_MODE = 0o600


def get_lock_path(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextmanager
def exclusive_lock(path: Path) -> Iterator[None]:
    """
    Blocks until this process holds the exclusive lock for `path`.

    The lock is taken on a sidecar file rather than `path` itself because `path` gets replaced by
    atomic_write_text(). A lock on the old inode would not exclude a process that opened the new one.
    """
    lock_path = get_lock_path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, text: str, mode: Optional[int] = None) -> None:
    """
    Replace the contents of `path` with `text` in a single rename.

    If `mode` is None, an existing file keeps its permission bits and a new file gets DEFAULT_NEW_FILE_MODE.
    Raises OSError on failure, in which case `path` is left untouched and the temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        try:
            mode = path.stat().st_mode & 0o777
        except FileNotFoundError:
            mode = DEFAULT_NEW_FILE_MODE

    tmp_fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
    )
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError:
        logging.debug(f"Removing temp file {tmp_name} after a failed write to {path}")
        try:
            os.remove(tmp_name)
        except FileNotFoundError:
            pass
        raise
