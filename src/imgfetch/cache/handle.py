"""Directory-backed image cache.

Layout: {root}/{cache_type}/{content_hash}
Staging files live beside their final path as {root}/{cache_type}/.tmp-{hash}-XXXX
so that finalize is a same-filesystem rename.
"""
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

LIBRARY_CACHE_TYPE = "library"
TMP_PREFIX = ".tmp-"


class CacheEntry:
    """Single-use handle on one content hash in the cache.

    If ``exists`` is False the caller writes into ``tmp_path`` and calls
    ``finalize()``. Leaving the ``with`` block always runs ``clean_tmp()``,
    which removes the staging file unless finalize already consumed it.
    """

    def __init__(self, path: Path, tmp_path: Optional[Path], exists: bool):
        self.path = path
        self.tmp_path = tmp_path
        self.exists = exists
        self._finalized = False

    def finalize(self) -> None:
        """Move the staging file into place; it becomes visible to lookups.

        Concurrent finalizes of the same hash are safe: the last rename wins
        and every writer staged identical, hash-checked bytes.
        """
        if self.exists:
            return
        if self.tmp_path is None or self._finalized:
            raise RuntimeError(f"cache entry {self.path.name} has no staging file")
        os.replace(self.tmp_path, self.path)
        self._finalized = True
        self.exists = True
        logger.debug(f"Finalized cache entry {self.path}")

    def clean_tmp(self) -> None:
        """Remove the staging file. Idempotent; no-op after finalize."""
        if self.tmp_path is None or self._finalized:
            return
        try:
            self.tmp_path.unlink()
            logger.debug(f"Removed staging file {self.tmp_path}")
        except FileNotFoundError:
            pass
        self.tmp_path = None

    def __enter__(self) -> "CacheEntry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.clean_tmp()


class CacheHandle:
    """Process-wide cache handle, created once and passed to every pull.

    Args:
        root: Cache root directory
        disabled: If True, lookups are refused and pulls bypass the cache
    """

    def __init__(self, root: Union[str, Path], disabled: bool = False):
        self.root = Path(root).expanduser()
        self.disabled = disabled

    def is_disabled(self) -> bool:
        return self.disabled

    def type_dir(self, cache_type: str = LIBRARY_CACHE_TYPE) -> Path:
        return self.root / cache_type

    def get_entry(
        self, content_hash: str, cache_type: str = LIBRARY_CACHE_TYPE
    ) -> CacheEntry:
        """Look up content_hash, creating a staging file if it is absent.

        Raises:
            ValueError: If the cache is disabled or the hash is not path-safe
            OSError: If the cache directory cannot be created or written
        """
        if self.disabled:
            raise ValueError("cache is disabled")
        if not content_hash or os.sep in content_hash or "/" in content_hash or content_hash.startswith("."):
            raise ValueError(f"invalid cache key: {content_hash!r}")

        directory = self.type_dir(cache_type)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / content_hash

        if path.is_file():
            return CacheEntry(path=path, tmp_path=None, exists=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f"{TMP_PREFIX}{content_hash}-", dir=directory)
        os.close(fd)
        return CacheEntry(path=path, tmp_path=Path(tmp_name), exists=False)

    def list_entries(self, cache_type: str = LIBRARY_CACHE_TYPE) -> List[Path]:
        """Return finalized entries, sorted by name."""
        directory = self.type_dir(cache_type)
        if not directory.is_dir():
            return []
        return sorted(
            p for p in directory.iterdir()
            if p.is_file() and not p.name.startswith(TMP_PREFIX)
        )

    def clean(self, cache_type: Optional[str] = None) -> int:
        """Remove cached entries (and stale staging files).

        Returns:
            Number of files removed
        """
        directories = [self.type_dir(cache_type)] if cache_type else (
            [d for d in self.root.iterdir() if d.is_dir()] if self.root.is_dir() else []
        )
        removed = 0
        for directory in directories:
            if not directory.is_dir():
                continue
            removed += sum(1 for p in directory.iterdir() if p.is_file())
            shutil.rmtree(directory)
            logger.info(f"Removed cache directory {directory}")
        return removed
