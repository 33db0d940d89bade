"""Short-lived key/value state with per-key expiry.

Sessions, trusted devices, passkey challenges and OAuth state all live behind
this narrow interface so the process-local map can be swapped for Redis
without touching the services that use it.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Set

from civicauth.storage.models import utcnow


class EphemeralStore(Protocol):
    async def get(self, key: str) -> Optional[dict]: ...

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None: ...

    async def pop(self, key: str) -> Optional[dict]: ...

    async def delete(self, key: str) -> bool: ...

    async def index_add(self, index: str, member: str, ttl_seconds: int) -> None: ...

    async def index_members(self, index: str) -> Set[str]: ...

    async def index_remove(self, index: str, *members: str) -> None: ...

    async def purge_expired(self) -> int: ...

    async def close(self) -> None: ...


class MemoryTTLStore:
    """Process-local TTL map.

    Values are stored JSON-encoded so callers get the same detached copies a
    network cache would return. Expired keys are dropped lazily on access and
    in bulk by :meth:`purge_expired`.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._values: Dict[str, tuple[str, datetime]] = {}
        self._indexes: Dict[str, Dict[str, datetime]] = {}
        self._lock = threading.Lock()

    def _expiry(self, ttl_seconds: int) -> datetime:
        return self._clock() + timedelta(seconds=max(1, int(ttl_seconds)))

    def _live(self, key: str, now: datetime) -> Optional[str]:
        item = self._values.get(key)
        if item is None:
            return None
        raw, expires_at = item
        if expires_at <= now:
            del self._values[key]
            return None
        return raw

    async def get(self, key: str) -> Optional[dict]:
        with self._lock:
            raw = self._live(key, self._clock())
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: dict, ttl_seconds: int) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._values[key] = (raw, self._expiry(ttl_seconds))

    async def pop(self, key: str) -> Optional[dict]:
        with self._lock:
            raw = self._live(key, self._clock())
            self._values.pop(key, None)
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._values.pop(key, None) is not None

    async def index_add(self, index: str, member: str, ttl_seconds: int) -> None:
        with self._lock:
            self._indexes.setdefault(index, {})[member] = self._expiry(ttl_seconds)

    async def index_members(self, index: str) -> Set[str]:
        now = self._clock()
        with self._lock:
            members = self._indexes.get(index, {})
            return {member for member, expires_at in members.items() if expires_at > now}

    async def index_remove(self, index: str, *members: str) -> None:
        with self._lock:
            current = self._indexes.get(index)
            if current is None:
                return
            for member in members:
                current.pop(member, None)
            if not current:
                del self._indexes[index]

    async def purge_expired(self) -> int:
        """Drop every expired key and index member; returns keys removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, exp) in self._values.items() if exp <= now]
            for key in expired:
                del self._values[key]
            for index in list(self._indexes):
                members = self._indexes[index]
                for member in [m for m, exp in members.items() if exp <= now]:
                    del members[member]
                if not members:
                    del self._indexes[index]
        return len(expired)

    async def close(self) -> None:
        return None
