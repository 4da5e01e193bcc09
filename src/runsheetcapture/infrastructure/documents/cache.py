from __future__ import annotations

import threading
from collections import OrderedDict


class DocumentCache:
    """Job-scoped LRU of downloaded document payloads, keyed by storage path.

    Bounded by entry count and by total bytes. A single payload larger than
    ``max_bytes`` is never cached.
    """

    def __init__(self, *, max_entries: int = 64, max_bytes: int = 256 * 1024 * 1024) -> None:
        self.max_entries = max(1, max_entries)
        self.max_bytes = max(1, max_bytes)
        self._entries: OrderedDict[str, bytes] = OrderedDict()
        self._size = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> bytes | None:
        with self._lock:
            payload = self._entries.get(key)
            if payload is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return payload

    def put(self, key: str, payload: bytes) -> None:
        size = len(payload)
        with self._lock:
            existing = self._entries.pop(key, None)
            if existing is not None:
                self._size -= len(existing)
            if size > self.max_bytes:
                return
            self._entries[key] = payload
            self._size += size
            while len(self._entries) > self.max_entries or self._size > self.max_bytes:
                _, evicted = self._entries.popitem(last=False)
                self._size -= len(evicted)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._size = 0

    @property
    def size_bytes(self) -> int:
        return self._size

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
