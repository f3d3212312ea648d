"""In-memory read-through cache for blob content.

A performance detail only: the store is correct with the cache disabled
(max_bytes=0). Entries are evicted least-recently-used once the total
size exceeds max_bytes.
"""
import threading
from collections import OrderedDict
from typing import Optional

DEFAULT_MAX_BYTES = 32 * 1024 * 1024


class ContentCache:
    """Bounded LRU mapping content hash -> bytes."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES):
        self.max_bytes = max_bytes
        self._data: "OrderedDict[str, bytes]" = OrderedDict()
        self._size = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, content_hash: str) -> Optional[bytes]:
        if self.max_bytes <= 0:
            return None
        with self._lock:
            data = self._data.get(content_hash)
            if data is None:
                self.misses += 1
                return None
            self._data.move_to_end(content_hash)
            self.hits += 1
            return data

    def put(self, content_hash: str, data: bytes) -> None:
        # Larger than the whole budget: not worth caching
        if self.max_bytes <= 0 or len(data) > self.max_bytes:
            return
        with self._lock:
            if content_hash in self._data:
                self._data.move_to_end(content_hash)
                return
            self._data[content_hash] = data
            self._size += len(data)
            while self._size > self.max_bytes:
                _, evicted = self._data.popitem(last=False)
                self._size -= len(evicted)

    def discard(self, content_hash: str) -> None:
        with self._lock:
            data = self._data.pop(content_hash, None)
            if data is not None:
                self._size -= len(data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._size = 0

    @property
    def size(self) -> int:
        return self._size

    def __len__(self) -> int:
        return len(self._data)
