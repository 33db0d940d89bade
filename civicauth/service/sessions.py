from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from civicauth.config import Settings
from civicauth.logging import get_logger
from civicauth.service.revocation import RevocationLedger
from civicauth.storage.ephemeral import EphemeralStore
from civicauth.storage.models import Session, utcnow

logger = get_logger(__name__)

# Ordered: the first matching rule names the device
_DEVICE_RULES = (
    ("iphone", "iPhone"),
    ("ipad", "iPad"),
    ("android", "Android Mobile"),
    ("mobile", "Mobile Device"),
    ("windows", "Windows PC"),
    ("macintosh", "Mac"),
    ("mac os", "Mac"),
    ("linux", "Linux PC"),
    ("chrome", "Chrome Browser"),
    ("firefox", "Firefox Browser"),
    ("safari", "Safari Browser"),
)


def extract_device_info(user_agent: Optional[str]) -> str:
    """Coarse human-readable device label for a user agent string."""
    if not user_agent:
        return "Unknown Device"
    lowered = user_agent.lower()
    for needle, label in _DEVICE_RULES:
        if needle in lowered:
            return label
    return "Unknown Device"


@dataclass(frozen=True)
class SessionStats:
    total: int
    active: int
    devices: List[str]
    last_activity: Optional[datetime]


class SessionTracker:
    """Tracks logins per device in the TTL store.

    Expiry is fixed at creation; ``touch`` only moves ``last_activity``.
    """

    def __init__(
        self,
        cache: EphemeralStore,
        ledger: RevocationLedger,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.ledger = ledger
        self.session_ttl = timedelta(days=settings.session_ttl_days)
        self.active_window = timedelta(minutes=settings.session_active_window_minutes)
        self._clock = clock

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _index(user_id: int) -> str:
        return f"user_sessions:{user_id}"

    def _remaining_seconds(self, session: Session) -> int:
        return int((session.expires_at - self._clock()).total_seconds())

    async def _save(self, session: Session) -> bool:
        ttl = self._remaining_seconds(session)
        if ttl <= 0:
            return False
        await self.cache.set(self._key(session.id), session.to_payload(), ttl)
        return True

    async def _forget(self, session: Session) -> None:
        await self.cache.delete(self._key(session.id))
        await self.cache.index_remove(self._index(session.user_id), session.id)

    async def create_session(
        self,
        user_id: int,
        access_token: str,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        now = self._clock()
        session = Session(
            id=secrets.token_hex(32),
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            device_info=extract_device_info(user_agent),
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            last_activity=now,
            expires_at=now + self.session_ttl,
        )
        ttl = int(self.session_ttl.total_seconds())
        await self.cache.set(self._key(session.id), session.to_payload(), ttl)
        await self.cache.index_add(self._index(user_id), session.id, ttl)
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            device=session.device_info,
        )
        return session.id

    async def get_session(self, session_id: str) -> Optional[Session]:
        payload = await self.cache.get(self._key(session_id))
        if payload is None:
            return None
        session = Session.from_payload(payload)
        if session.expires_at <= self._clock():
            await self._forget(session)
            return None
        return session

    async def list_sessions(self, user_id: int) -> List[Session]:
        index = self._index(user_id)
        sessions: List[Session] = []
        stale: List[str] = []
        for session_id in await self.cache.index_members(index):
            session = await self.get_session(session_id)
            if session is None:
                stale.append(session_id)
            else:
                sessions.append(session)
        if stale:
            await self.cache.index_remove(index, *stale)
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    async def find_session_by_refresh_token(
        self, user_id: int, refresh_token: str
    ) -> Optional[Session]:
        for session in await self.list_sessions(user_id):
            if secrets.compare_digest(session.refresh_token, refresh_token):
                return session
        return None

    async def revoke_session(self, session_id: str, *, reason: str = "session_revoked") -> bool:
        """Deny-list both tokens, then drop the session record.

        A failed deny-list write propagates and leaves the session in place.
        """
        session = await self.get_session(session_id)
        if session is None:
            return False
        await self.ledger.blacklist(session.access_token, session.user_id, reason)
        await self.ledger.blacklist(session.refresh_token, session.user_id, reason)
        await self.ledger.revoke_refresh_token(session.refresh_token, session.user_id)
        await self._forget(session)
        logger.info("session_revoked", user_id=session.user_id, session_id=session_id)
        return True

    async def revoke_all_sessions(
        self, user_id: int, except_session_id: Optional[str] = None
    ) -> int:
        count = 0
        for session in await self.list_sessions(user_id):
            if session.id == except_session_id:
                continue
            if await self.revoke_session(session.id):
                count += 1
        logger.info(
            "sessions_revoked_all",
            user_id=user_id,
            kept_session_id=except_session_id,
            count=count,
        )
        return count

    async def touch(self, session_id: str) -> bool:
        session = await self.get_session(session_id)
        if session is None:
            return False
        return await self._save(replace(session, last_activity=self._clock()))

    async def update_tokens(self, session_id: str, access_token: str, refresh_token: str) -> bool:
        """Swap the held token pair after a rotation without extending expiry."""
        session = await self.get_session(session_id)
        if session is None:
            return False
        updated = replace(
            session,
            access_token=access_token,
            refresh_token=refresh_token,
            last_activity=self._clock(),
        )
        return await self._save(updated)

    async def session_stats(self, user_id: int) -> SessionStats:
        sessions = await self.list_sessions(user_id)
        cutoff = self._clock() - self.active_window
        devices: List[str] = []
        for session in sessions:
            if session.device_info not in devices:
                devices.append(session.device_info)
        return SessionStats(
            total=len(sessions),
            active=sum(1 for s in sessions if s.last_activity > cutoff),
            devices=devices,
            last_activity=max((s.last_activity for s in sessions), default=None),
        )
