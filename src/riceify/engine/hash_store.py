"""Persistent content-hash cache.

Maps a normalized file path to the last known content hash, size and
modification time. This is the ground truth for "has this file changed".

Persisted as JSON:
    {
      "version": 1,
      "algorithm": "sha256",
      "entries": {
        "/home/me/.config/kitty/kitty.conf": {
          "hash": "9f86d0...",
          "mtime_ns": 1700000000000000000,
          "size": 1024,
          "valid": true
        }
      }
    }

A corrupt file or record degrades to a cache miss, never to an error.
"""
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

from .errors import CacheCorruption, ReadError
from .fileops import HASH_ALGORITHM, atomic_write_bytes, hash_file, normalize_path
from .schema import CacheStatus, FileRecord

logger = logging.getLogger(__name__)

CACHE_VERSION = 1
DEFAULT_MAX_ENTRIES = 10_000


@dataclass
class HashCheckResult:
    """Outcome of hashing one live file against the cache."""
    path: str
    exists: bool
    content_hash: Optional[str] = None
    size: int = 0
    mtime_ns: int = 0
    known: bool = False
    unchanged: bool = False

    def as_record(self) -> FileRecord:
        return FileRecord(
            path=self.path,
            content_hash=self.content_hash if self.exists else None,
            size=self.size,
            last_modified=self.mtime_ns,
        )


def inspect_file(path: str, known: Optional[FileRecord]) -> HashCheckResult:
    """Stat and hash a live file and compare it with a cached record.

    The mtime comparison is only a fast path to "changed"; when the
    mtime matches, the recomputed hash decides.

    Raises:
        ReadError: If the file exists but cannot be read
    """
    known_valid = known is not None and known.valid
    try:
        stat_before = Path(path).stat()
    except FileNotFoundError:
        return HashCheckResult(path=path, exists=False, known=known_valid)
    except OSError as e:
        raise ReadError(f"Cannot stat {path}: {e}", [path]) from e

    try:
        digest, size = hash_file(path)
    except OSError as e:
        raise ReadError(f"Cannot hash {path}: {e}", [path]) from e

    mtime_ns = stat_before.st_mtime_ns
    unchanged = False
    if known_valid and known.last_modified == mtime_ns:
        unchanged = known.content_hash == digest

    return HashCheckResult(
        path=path,
        exists=True,
        content_hash=digest,
        size=size,
        mtime_ns=mtime_ns,
        known=known_valid,
        unchanged=unchanged,
    )


class HashStore:
    """Path -> {hash, mtime} cache with on-disk persistence.

    Only update(), invalidate() and clear() mutate entries. Lookups hand out
    copies so callers cannot change cached state by accident.
    """

    def __init__(self, cache_file: Path, max_entries: int = DEFAULT_MAX_ENTRIES):
        """
        Initialize the store and load any persisted entries.

        Args:
            cache_file: JSON file the cache persists to
            max_entries: Upper bound on entries kept on save
        """
        self.cache_file = Path(cache_file)
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, FileRecord]" = OrderedDict()
        self._lock = threading.Lock()
        self._dirty = False
        self.hits = 0
        self.misses = 0
        self.corrupt_records = 0
        self.writes = 0
        self.load()

    # === Persistence ===

    def load(self) -> None:
        """Load entries from disk. Corruption degrades to unknown entries."""
        self._entries.clear()
        self._dirty = False

        if not self.cache_file.exists():
            logger.debug(f"No hash cache at {self.cache_file}, starting empty")
            return

        try:
            data = json.loads(self.cache_file.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise CacheCorruption("Cache root is not an object", str(self.cache_file))
            if data.get("algorithm", HASH_ALGORITHM) != HASH_ALGORITHM:
                raise CacheCorruption(
                    f"Cache uses algorithm {data.get('algorithm')!r}",
                    str(self.cache_file),
                )
            raw_entries = data.get("entries", {})
            if not isinstance(raw_entries, dict):
                raise CacheCorruption("Cache entries are not an object", str(self.cache_file))
        except (OSError, ValueError, CacheCorruption) as e:
            self.corrupt_records += 1
            logger.warning(f"Hash cache {self.cache_file} unreadable, re-hashing everything: {e}")
            return

        for path, raw in raw_entries.items():
            try:
                self._entries[path] = self._parse_entry(path, raw)
            except CacheCorruption as e:
                self.corrupt_records += 1
                logger.warning(f"Ignoring corrupt cache record: {e}")

        logger.debug(f"Loaded {len(self._entries)} hash cache entries from {self.cache_file}")

    def _parse_entry(self, path: str, raw: Any) -> FileRecord:
        if not isinstance(raw, dict):
            raise CacheCorruption(f"{path}: record is not an object", path)
        try:
            content_hash = raw["hash"]
            mtime_ns = int(raw["mtime_ns"])
            size = int(raw.get("size", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise CacheCorruption(f"{path}: {e!r}", path) from e
        if not isinstance(content_hash, str) or len(content_hash) != 64:
            raise CacheCorruption(f"{path}: bad hash {content_hash!r}", path)
        return FileRecord(
            path=path,
            content_hash=content_hash,
            size=size,
            last_modified=mtime_ns,
            valid=bool(raw.get("valid", True)),
        )

    def save(self) -> bool:
        """Persist entries if anything changed. Returns True if written."""
        with self._lock:
            if not self._dirty:
                return False
            self._evict()
            payload = {
                "version": CACHE_VERSION,
                "algorithm": HASH_ALGORITHM,
                "entries": {
                    path: {
                        "hash": record.content_hash,
                        "mtime_ns": record.last_modified,
                        "size": record.size,
                        "valid": record.valid,
                    }
                    for path, record in self._entries.items()
                },
            }
            data = json.dumps(payload, indent=2, sort_keys=False).encode("utf-8")
            atomic_write_bytes(self.cache_file, data)
            self._dirty = False

        logger.debug(f"Saved {len(self._entries)} hash cache entries")
        return True

    def _evict(self) -> None:
        """Drop invalid entries first, then least recently updated ones."""
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        invalid = [p for p, r in self._entries.items() if not r.valid]
        for path in invalid[:overflow]:
            del self._entries[path]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    # === Reads ===

    def lookup(self, path: str) -> Optional[FileRecord]:
        """Return a copy of the cached record, or None if never seen."""
        with self._lock:
            record = self._entries.get(normalize_path(path))
            return replace(record) if record is not None else None

    def check(self, path: str) -> HashCheckResult:
        """Hash a live file and compare it with the cache.

        Counts a hit when the file is unchanged and a miss otherwise; does
        not touch cached entries.
        """
        path = normalize_path(path)
        result = inspect_file(path, self.lookup(path))
        with self._lock:
            if result.unchanged:
                self.hits += 1
            else:
                self.misses += 1
        return result

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return normalize_path(path) in self._entries

    def status(self) -> CacheStatus:
        with self._lock:
            valid = sum(1 for r in self._entries.values() if r.valid)
            return CacheStatus(
                path=str(self.cache_file),
                entries=len(self._entries),
                valid=valid,
                invalid=len(self._entries) - valid,
                hits=self.hits,
                misses=self.misses,
                corrupt_records=self.corrupt_records,
            )

    # === Mutators ===

    def update(
        self,
        path: str,
        new_hash: str,
        mtime: int,
        size: Optional[int] = None,
    ) -> None:
        """Record the current hash and mtime of a file."""
        path = normalize_path(path)
        with self._lock:
            previous = self._entries.pop(path, None)
            self._entries[path] = FileRecord(
                path=path,
                content_hash=new_hash,
                size=size if size is not None else (previous.size if previous else 0),
                last_modified=mtime,
                valid=True,
            )
            self._dirty = True
            self.writes += 1

    def invalidate(self, path: str) -> bool:
        """Mark an entry as known-changed. Returns False if never seen."""
        path = normalize_path(path)
        with self._lock:
            record = self._entries.get(path)
            if record is None:
                return False
            if record.valid:
                record.valid = False
                self._dirty = True
                self.writes += 1
            return True

    def clear(self) -> int:
        """Forget every entry. Returns the number of entries dropped."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self.hits = self.misses = 0
            self._dirty = True
            self.writes += 1
        logger.info(f"Cleared {count} hash cache entries")
        return count
