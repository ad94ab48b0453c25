"""
Cache-aside stakeholder profiles.

Profiles are read through to the ledger gateway and kept for ``ttl_seconds``.
The cache is advisory: losing it only costs a ledger read. A regulator
flipping a verified flag invalidates the entry, so within one process the
flag is never staler than the TTL and usually not stale at all.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ledger.models import Stakeholder, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    profile: Stakeholder
    expires_at: float


class ProfileCache:

    def __init__(
        self,
        loader: Callable[[str], Stakeholder],
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, address: str) -> Stakeholder:
        """Cached profile, loading from the ledger on a miss. Loader errors propagate."""
        key = normalize_address(address)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                self.hits += 1
                return entry.profile
            self.misses += 1

        # loader runs outside the lock; a concurrent miss may load twice
        profile = self._loader(key)
        self.put(profile)
        return profile

    def peek(self, address: str) -> Optional[Stakeholder]:
        key = address.lower()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.profile

    def put(self, profile: Stakeholder) -> None:
        with self._lock:
            self._entries[profile.address] = _Entry(profile, self._clock() + self.ttl_seconds)

    def invalidate(self, address: str) -> None:
        with self._lock:
            if self._entries.pop(address.lower(), None) is not None:
                logger.debug("Profile cache entry invalidated: %s", address)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}
