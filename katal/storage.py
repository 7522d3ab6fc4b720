"""
storage.py — the managed download root on disk.

Plain recursive I/O. The sync walkers do the work; the async wrappers push
them onto a worker thread so the event loop stays responsive while a big
tree is scanned. The root itself is never removed.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

log = logging.getLogger(__name__)

AUTOCLEAN_MAX_AGE = 30 * 24 * 60 * 60  # 30 days


@dataclass
class StoredFile:
    path: Path
    mtime: float
    size: int


def list_files(root: Path) -> List[StoredFile]:
    """Every regular file under root. Unreadable subtrees are logged and skipped."""
    files: List[StoredFile] = []
    for dirpath, _dirnames, filenames in os.walk(root, onerror=lambda e: log.error("Error reading directory %s: %s", e.filename, e.strerror)):
        for name in filenames:
            p = Path(dirpath) / name
            try:
                st = p.stat()
            except OSError as exc:
                log.error("Cannot stat %s: %s", p, exc)
                continue
            files.append(StoredFile(path=p, mtime=st.st_mtime, size=st.st_size))
    return files


def directory_size(root: Path) -> int:
    """Total bytes under root; 0 if it doesn't exist."""
    if not Path(root).exists():
        return 0
    return sum(f.size for f in list_files(root))


def remove_empty_dirs(root: Path) -> int:
    """Remove empty directories below root, deepest first. Returns how many."""
    root = Path(root)
    removed = 0
    if not root.is_dir():
        return 0
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        d = Path(dirpath)
        if d == root:
            continue
        try:
            if not any(d.iterdir()):
                d.rmdir()
                removed += 1
                log.info("Removed empty folder: %s", d)
        except OSError as exc:
            log.error("Error removing empty folder %s: %s", d, exc)
    return removed


def delete_oldest(root: Path) -> Optional[StoredFile]:
    """Delete the single least-recently-modified file, then prune empty dirs."""
    files = list_files(root)
    if not files:
        return None
    oldest = min(files, key=lambda f: f.mtime)
    oldest.path.unlink()
    log.info("Deleted: %s", oldest.path)
    remove_empty_dirs(root)
    return oldest


def purge_older_than(root: Path, max_age: float = AUTOCLEAN_MAX_AGE, now: Optional[float] = None) -> Tuple[int, int, int]:
    """
    Delete files whose mtime is older than `max_age` seconds.

    Returns (files found, files deleted, bytes freed). Files that vanish or
    can't be removed are logged and skipped.
    """
    cutoff = (time.time() if now is None else now) - max_age
    old = [f for f in list_files(root) if f.mtime < cutoff]
    deleted = 0
    freed = 0
    for f in old:
        try:
            size = f.path.stat().st_size
            f.path.unlink()
        except OSError as exc:
            log.error("Failed to delete %s: %s", f.path, exc)
            continue
        deleted += 1
        freed += size
        log.info("Auto-deleted: %s", f.path)
    remove_empty_dirs(root)
    return len(old), deleted, freed


class Storage:
    """Async facade over one storage root."""

    def __init__(self, root: Path, autoclean_max_age: float = AUTOCLEAN_MAX_AGE) -> None:
        self.root = Path(root)
        self.autoclean_max_age = autoclean_max_age

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def user_dir(self, user_id: str) -> Path:
        return self.root / user_id

    async def used_bytes(self) -> int:
        return await asyncio.to_thread(directory_size, self.root)

    async def has_files(self) -> bool:
        return bool(await asyncio.to_thread(list_files, self.root))

    async def delete_oldest(self) -> Optional[StoredFile]:
        return await asyncio.to_thread(delete_oldest, self.root)

    async def purge_old(self) -> Tuple[int, int, int]:
        return await asyncio.to_thread(purge_older_than, self.root, self.autoclean_max_age)
