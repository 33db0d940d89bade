from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken as FernetInvalidToken

from civicauth.config import Settings
from civicauth.logging import get_logger
from civicauth.service.errors import ConflictError, NotFoundError, persistence_guard
from civicauth.service.signing_keys import SigningSecrets
from civicauth.storage.models import User, utcnow

if TYPE_CHECKING:
    from civicauth.service.auth import CredentialStore

logger = get_logger(__name__)

STEP_SECONDS = 30
DIGITS = 6
BACKUP_CODE_COUNT = 10


def generate_base32_secret(nbytes: int = 20) -> str:
    raw = secrets.token_bytes(nbytes)
    return base64.b32encode(raw).decode("utf-8").replace("=", "")


def _normalize_b32(secret: str) -> bytes:
    s = (secret or "").strip().replace(" ", "").upper()
    if not s:
        return b""
    pad = "=" * ((8 - (len(s) % 8)) % 8)
    return base64.b32decode(s + pad, casefold=True)


def hotp(key: bytes, counter: int, digits: int = DIGITS) -> str:
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (
        ((digest[offset] & 0x7F) << 24)
        | ((digest[offset + 1] & 0xFF) << 16)
        | ((digest[offset + 2] & 0xFF) << 8)
        | (digest[offset + 3] & 0xFF)
    )
    return str(code_int % (10**digits)).zfill(digits)


def totp_at(secret_b32: str, for_time: float) -> Tuple[str, int]:
    """RFC 6238 code and time step for ``for_time`` (SHA-1, 6 digits, 30s)."""
    key = _normalize_b32(secret_b32)
    if not key:
        return ("", 0)
    step = int(for_time // STEP_SECONDS)
    return hotp(key, step), step


def normalize_code(code: Optional[str]) -> str:
    return "".join(c for c in str(code or "") if c not in " -").strip()


def match_totp(secret_b32: str, code: str, *, now: float, window: int) -> Optional[int]:
    """Return the matching time step within ``±window`` steps, else None."""
    raw = normalize_code(code)
    if len(raw) != DIGITS or not raw.isdigit():
        return None
    for delta in range(-window, window + 1):
        expected, step = totp_at(secret_b32, now + delta * STEP_SECONDS)
        if expected and hmac.compare_digest(expected, raw):
            return step
    return None


def build_otpauth_uri(*, issuer: str, account: str, secret_b32: str) -> str:
    label = f"{issuer}:{account}" if account else issuer
    return (
        f"otpauth://totp/{quote(label, safe=':@')}"
        f"?secret={secret_b32}&issuer={quote(issuer)}"
        f"&algorithm=SHA1&digits={DIGITS}&period={STEP_SECONDS}"
    )


def _fernet_key(settings: Settings, signing: SigningSecrets) -> bytes:
    if settings.mfa_encryption_key:
        return settings.mfa_encryption_key.encode()
    digest = hashlib.sha256(b"civicauth-mfa:" + signing.access.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def _backup_digest(code: str) -> str:
    return hashlib.sha256(normalize_code(code).upper().encode()).hexdigest()


@dataclass(frozen=True)
class TotpSetup:
    secret: str
    qr_payload: str


class SecondFactorVerifier:
    """Time-based one-time codes per user.

    States: disabled, pending (secret stored, not enabled), enabled. Each
    accepted code records its time step, and a step at or below the last
    accepted one is refused, so a code cannot be used twice.
    """

    def __init__(
        self,
        store: "CredentialStore",
        settings: Settings,
        signing: SigningSecrets,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.window = settings.totp_window_steps
        self.issuer = settings.totp_issuer
        self._fernet = Fernet(_fernet_key(settings, signing))
        self._clock = clock

    def _user(self, user_id: int) -> User:
        with persistence_guard("user lookup"):
            user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def _decrypt(self, user: User) -> Optional[str]:
        if not user.mfa_secret:
            return None
        try:
            return self._fernet.decrypt(user.mfa_secret.encode()).decode()
        except FernetInvalidToken:
            logger.error("mfa_secret_decrypt_failed", user_id=user.id)
            return None

    def _check(self, user: User, code: str) -> bool:
        secret = self._decrypt(user)
        if not secret:
            return False
        step = match_totp(secret, code, now=self._clock().timestamp(), window=self.window)
        if step is None:
            return False
        with persistence_guard("mfa step update"):
            accepted = self.store.advance_mfa_step(user.id, step)
        if not accepted:
            logger.warning("totp_code_replayed", user_id=user.id, step=step)
        return accepted

    def current_code(self, user_id: int) -> Optional[str]:
        """Code for the current step; used by tooling and tests."""
        secret = self._decrypt(self._user(user_id))
        if not secret:
            return None
        return totp_at(secret, self._clock().timestamp())[0]

    async def generate_secret(self, user_id: int, display_label: str) -> TotpSetup:
        user = self._user(user_id)
        if user.mfa_enabled:
            raise ConflictError("second factor already enabled")
        secret = generate_base32_secret()
        encrypted = self._fernet.encrypt(secret.encode()).decode()
        with persistence_guard("mfa secret update"):
            self.store.set_mfa_secret(user_id, encrypted)
        logger.info("totp_secret_generated", user_id=user_id)
        return TotpSetup(
            secret=secret,
            qr_payload=build_otpauth_uri(
                issuer=self.issuer, account=display_label, secret_b32=secret
            ),
        )

    async def enable(self, user_id: int, code: str) -> bool:
        user = self._user(user_id)
        if user.mfa_enabled or not user.mfa_secret:
            return False
        if not self._check(user, code):
            logger.info("totp_enable_rejected", user_id=user_id)
            return False
        with persistence_guard("mfa enable"):
            self.store.set_mfa_enabled(user_id, True)
        logger.info("totp_enabled", user_id=user_id)
        return True

    async def disable(self, user_id: int, code: str) -> bool:
        user = self._user(user_id)
        if not user.mfa_enabled:
            return False
        if not self._check(user, code):
            logger.info("totp_disable_rejected", user_id=user_id)
            return False
        with persistence_guard("mfa disable"):
            self.store.clear_mfa(user_id)
        logger.info("totp_disabled", user_id=user_id)
        return True

    async def verify(self, user_id: int, code: str) -> bool:
        """Check a login code; an unused backup code is accepted once.

        A TOTP code is accepted only if its time step is later than the last
        accepted one. The code used to enable the factor counts, so a login in
        that same 30-second step fails and the user waits for the next code.
        An older code still inside the drift window is likewise refused once a
        newer one has been used.
        """
        user = self._user(user_id)
        if not user.mfa_enabled:
            return False
        if self._check(user, code):
            return True
        if user.backup_code_hashes:
            with persistence_guard("backup code update"):
                if self.store.remove_backup_code(user_id, _backup_digest(code)):
                    logger.info("backup_code_used", user_id=user_id)
                    return True
        return False

    async def status(self, user_id: int) -> dict:
        user = self._user(user_id)
        return {
            "enabled": user.mfa_enabled,
            "has_secret": user.mfa_secret is not None,
            "backup_codes_remaining": len(user.backup_code_hashes),
        }

    async def generate_backup_codes(self, user_id: int) -> List[str]:
        """Replace the user's backup codes; only their digests are stored."""
        user = self._user(user_id)
        if not user.mfa_enabled:
            raise ConflictError("second factor is not enabled")
        codes = [secrets.token_hex(6).upper() for _ in range(BACKUP_CODE_COUNT)]
        with persistence_guard("backup code update"):
            self.store.set_backup_codes(user_id, [_backup_digest(c) for c in codes])
        logger.info("backup_codes_generated", user_id=user_id, count=len(codes))
        return codes
