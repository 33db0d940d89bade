from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Callable

from civicauth.logging import get_logger
from civicauth.service.errors import PersistenceError
from civicauth.service.tokens import TokenEngine, token_digest
from civicauth.storage.errors import StorageUnavailable
from civicauth.storage.models import BlacklistEntry, utcnow

if TYPE_CHECKING:
    from civicauth.service.auth import CredentialStore

logger = get_logger(__name__)


class RevocationLedger:
    """Durable deny-list plus refresh-token revocation.

    Every failure to reach the store is raised as ``PersistenceError``; the
    authentication path turns that into a deny decision, never a pass.
    """

    def __init__(
        self,
        store: "CredentialStore",
        tokens: TokenEngine,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self._clock = clock

    async def blacklist(self, token: str, user_id: int, reason: str) -> bool:
        now = self._clock()
        # The entry only needs to outlive the token itself
        expires_at = self.tokens.peek_expiry(token) or now + self.tokens.refresh_ttl
        entry = BlacklistEntry(
            token_hash=token_digest(token),
            user_id=user_id,
            reason=reason,
            expires_at=expires_at,
            created_at=now,
        )
        try:
            self.store.add_blacklist_entry(entry)
        except StorageUnavailable as exc:
            logger.error("blacklist_write_failed", user_id=user_id, reason=reason, error=str(exc))
            raise PersistenceError("could not revoke token") from exc
        logger.info("token_blacklisted", user_id=user_id, reason=reason)
        return True

    async def is_blacklisted(self, token: str) -> bool:
        try:
            return self.store.is_token_blacklisted(token_digest(token), self._clock())
        except StorageUnavailable as exc:
            logger.error("blacklist_check_failed", error=str(exc))
            raise PersistenceError("revocation check unavailable") from exc

    async def revoke_refresh_token(self, token: str, user_id: int) -> bool:
        try:
            revoked = self.store.revoke_refresh_token(token_digest(token), user_id, self._clock())
        except StorageUnavailable as exc:
            raise PersistenceError("could not revoke refresh token") from exc
        if revoked:
            logger.info("refresh_token_revoked", user_id=user_id)
        return revoked

    async def revoke_all_refresh_tokens(self, user_id: int) -> int:
        try:
            count = self.store.revoke_user_refresh_tokens(user_id, self._clock())
        except StorageUnavailable as exc:
            raise PersistenceError("could not revoke refresh tokens") from exc
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    async def cleanup_expired(self) -> int:
        """Delete expired deny-list entries and refresh-token rows."""
        now = self._clock()
        try:
            blacklist_removed = self.store.delete_expired_blacklist_entries(now)
            refresh_removed = self.store.delete_expired_refresh_tokens(now)
        except StorageUnavailable as exc:
            raise PersistenceError("revocation cleanup failed") from exc
        logger.info(
            "revocation_cleanup",
            blacklist_removed=blacklist_removed,
            refresh_removed=refresh_removed,
        )
        return blacklist_removed + refresh_removed
