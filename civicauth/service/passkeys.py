from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional

from civicauth.config import Settings
from civicauth.logging import get_logger
from civicauth.service.errors import ValidationError, persistence_guard
from civicauth.storage.ephemeral import EphemeralStore
from civicauth.storage.errors import ConstraintViolation
from civicauth.storage.models import PasskeyChallenge, PasskeyCredential, utcnow

if TYPE_CHECKING:
    from civicauth.service.auth import CredentialStore

logger = get_logger(__name__)


class ChallengePurpose(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class PasskeyVerification:
    valid: bool
    user_id: Optional[int] = None
    reason: Optional[str] = None


class PasskeyService:
    """Challenge issuance, credential registration and assertion checks.

    Assertions are accepted only when the authenticator's use counter is
    strictly greater than the stored one; anything else is treated as a
    replayed or cloned authenticator and leaves the stored counter untouched.
    """

    def __init__(
        self,
        store: "CredentialStore",
        cache: EphemeralStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.challenge_ttl = timedelta(seconds=settings.passkey_challenge_ttl_seconds)
        self._clock = clock

    @staticmethod
    def _key(challenge: str) -> str:
        return f"passkey_challenge:{challenge}"

    async def issue_challenge(
        self, purpose: ChallengePurpose, user_id: Optional[int] = None
    ) -> str:
        purpose = ChallengePurpose(purpose)
        if purpose is ChallengePurpose.REGISTRATION and user_id is None:
            raise ValidationError("registration challenges require a user")
        now = self._clock()
        record = PasskeyChallenge(
            challenge=secrets.token_hex(32),
            purpose=purpose.value,
            issued_at=now,
            expires_at=now + self.challenge_ttl,
            user_id=user_id if purpose is ChallengePurpose.REGISTRATION else None,
        )
        await self.cache.set(
            self._key(record.challenge),
            record.to_payload(),
            int(self.challenge_ttl.total_seconds()),
        )
        logger.info("passkey_challenge_issued", purpose=purpose.value, user_id=user_id)
        return record.challenge

    async def consume_challenge(self, challenge: str) -> Optional[PasskeyChallenge]:
        """Return and delete the challenge; None if unknown, used or expired."""
        if not challenge:
            return None
        payload = await self.cache.pop(self._key(challenge))
        if payload is None:
            return None
        record = PasskeyChallenge.from_payload(payload)
        if record.expires_at <= self._clock():
            return None
        return record

    async def register(
        self,
        user_id: int,
        credential_id: str,
        public_key: str,
        label: Optional[str] = None,
    ) -> bool:
        if not credential_id or not public_key:
            raise ValidationError("credential id and public key are required")
        credential = PasskeyCredential(
            credential_id=credential_id,
            user_id=user_id,
            public_key=public_key,
            counter=0,
            device_name=label or "Passkey",
            created_at=self._clock(),
        )
        try:
            with persistence_guard("passkey registration"):
                self.store.create_passkey(credential)
        except ConstraintViolation:
            logger.warning(
                "passkey_registration_duplicate", user_id=user_id, credential_id=credential_id
            )
            return False
        logger.info("passkey_registered", user_id=user_id, credential_id=credential_id)
        return True

    async def verify_assertion(
        self, credential_id: str, presented_counter: int
    ) -> PasskeyVerification:
        with persistence_guard("passkey lookup"):
            credential = self.store.get_passkey(credential_id)
        if credential is None:
            return PasskeyVerification(valid=False, reason="unknown_credential")
        if presented_counter <= credential.counter:
            logger.warning(
                "passkey_replay_suspected",
                user_id=credential.user_id,
                credential_id=credential_id,
                stored_counter=credential.counter,
                presented_counter=presented_counter,
            )
            return PasskeyVerification(
                valid=False, user_id=credential.user_id, reason="counter_not_increasing"
            )
        with persistence_guard("passkey counter update"):
            advanced = self.store.advance_passkey_counter(
                credential_id, presented_counter, self._clock()
            )
        if not advanced:
            # A concurrent assertion stored an equal or higher counter first
            logger.warning(
                "passkey_replay_suspected",
                user_id=credential.user_id,
                credential_id=credential_id,
                presented_counter=presented_counter,
            )
            return PasskeyVerification(
                valid=False, user_id=credential.user_id, reason="counter_not_increasing"
            )
        return PasskeyVerification(valid=True, user_id=credential.user_id)

    async def list_credentials(self, user_id: int) -> List[PasskeyCredential]:
        with persistence_guard("passkey list"):
            return self.store.list_passkeys(user_id)

    async def delete_credential(self, user_id: int, credential_id: str) -> bool:
        with persistence_guard("passkey delete"):
            deleted = self.store.delete_passkey(user_id, credential_id)
        if deleted:
            logger.info("passkey_deleted", user_id=user_id, credential_id=credential_id)
        return deleted

    async def rename_credential(self, user_id: int, credential_id: str, label: str) -> bool:
        label = (label or "").strip()
        if not label:
            raise ValidationError("label is required")
        with persistence_guard("passkey rename"):
            return self.store.rename_passkey(user_id, credential_id, label[:100])
