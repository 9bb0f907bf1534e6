"""In-memory caches owned by a client instance.

Group metadata is cached so group sends do not refetch it every time, and
messages are kept for a while so the transport can re-send them when a
recipient asks for a retry.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Generic, Hashable, Iterable, Optional, Tuple, TypeVar

from models import GroupMetadata, IncomingMessage

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

GROUP_METADATA_TTL = 5 * 60
MESSAGE_TTL = 10 * 60
MESSAGE_STORE_MAX = 5000


class TTLCache(Generic[K, V]):
    """Bounded mapping whose entries expire ``ttl`` seconds after being set.

    When full, the least recently set entry is evicted first.
    """

    def __init__(self, ttl: float, max_size: int = 1000, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[K, Tuple[float, V]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return default
            return value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (self._clock() + self.ttl, value)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def prune(self) -> int:
        """Drop expired entries. Returns how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        self.prune()
        return len(self._entries)


class GroupMetadataCache:
    """Group metadata by group JID."""

    def __init__(self, ttl: float = GROUP_METADATA_TTL, max_size: int = 1000, clock: Callable[[], float] = time.monotonic):
        self._cache: TTLCache[str, GroupMetadata] = TTLCache(ttl, max_size, clock)

    def get(self, jid: str) -> Optional[GroupMetadata]:
        return self._cache.get(jid)

    def set(self, metadata: GroupMetadata) -> None:
        if metadata.jid:
            self._cache.set(metadata.jid, metadata)

    def upsert(self, groups: Iterable[GroupMetadata]) -> None:
        for metadata in groups:
            self.set(metadata)

    def update(self, changes: Dict) -> Optional[GroupMetadata]:
        """Apply a partial update to a cached group.

        Returns:
            The updated metadata, or None if the group was not cached. Uncached
            groups are not created from a partial payload.
        """
        jid = changes.get("id", "")
        current = self._cache.get(jid)
        if current is None:
            return None
        updated = current.merged(changes)
        self._cache.set(jid, updated)
        return updated

    def invalidate(self, jid: str) -> None:
        self._cache.delete(jid)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class MessageStore:
    """Recently sent and received messages, for retry lookups."""

    def __init__(self, ttl: float = MESSAGE_TTL, max_size: int = MESSAGE_STORE_MAX, clock: Callable[[], float] = time.monotonic):
        self._cache: TTLCache[Tuple[str, str], Dict] = TTLCache(ttl, max_size, clock)

    def add(self, chat_jid: str, message_id: str, content: Dict) -> None:
        if chat_jid and message_id:
            self._cache.set((chat_jid, message_id), content)

    def add_incoming(self, message: IncomingMessage) -> None:
        self.add(message.chat_jid, message.id, message.raw.get("message") or {})

    def get(self, chat_jid: str, message_id: str) -> Optional[Dict]:
        return self._cache.get((chat_jid, message_id))

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
