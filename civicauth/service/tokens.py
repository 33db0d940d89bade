from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from civicauth.config import Settings
from civicauth.logging import get_logger
from civicauth.service.errors import (
    InvalidToken,
    PersistenceError,
    RotationError,
    WrongTokenKind,
)
from civicauth.service.signing_keys import SigningSecrets
from civicauth.storage.errors import ConstraintViolation, StorageUnavailable
from civicauth.storage.models import RefreshTokenRecord, utcnow

if TYPE_CHECKING:
    from civicauth.service.auth import CredentialStore

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    user_id: int
    kind: TokenKind
    jti: str
    issued_at: int
    expires_at: int

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def token_digest(token: str) -> str:
    """Storage key for a token; raw token values are never persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


class TokenEngine:
    """Issues, verifies and rotates HS256 bearer tokens.

    Access and refresh tokens are signed with different secrets. Refresh
    tokens are also recorded in the durable store; a refresh token whose row
    could not be written is never handed out.
    """

    def __init__(
        self,
        store: "CredentialStore",
        signing: SigningSecrets,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signing = signing
        self.settings = settings
        self._clock = clock
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self._leeway = settings.clock_skew_leeway_seconds

    def _secret_for(self, kind: TokenKind) -> str:
        return self.signing.access if kind is TokenKind.ACCESS else self.signing.refresh

    def _encode(self, user_id: int, kind: TokenKind, ttl: timedelta) -> tuple[str, TokenClaims]:
        now = self._clock()
        claims = TokenClaims(
            user_id=user_id,
            kind=kind,
            jti=uuid.uuid4().hex,
            issued_at=int(now.timestamp()),
            expires_at=int((now + ttl).timestamp()),
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(user_id),
            "kind": kind.value,
            "jti": claims.jti,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": _ALGORITHM, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{_sign(self._secret_for(kind), signing_input)}"
        return token, claims

    def decode(self, token: str, kind: TokenKind) -> TokenClaims:
        """Verify ``token`` as a ``kind`` token and return its claims.

        Raises:
            InvalidToken: bad structure, signature, issuer, audience or expiry.
            WrongTokenKind: a well-formed token of the other kind.
        """
        if not token or not isinstance(token, str):
            raise InvalidToken("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken("malformed token") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidToken("malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected = _sign(self._secret_for(kind), signing_input)
        if not hmac.compare_digest(expected, sig_b64):
            other = TokenKind.REFRESH if kind is TokenKind.ACCESS else TokenKind.ACCESS
            if hmac.compare_digest(_sign(self._secret_for(other), signing_input), sig_b64):
                raise WrongTokenKind(f"expected {kind.value} token")
            raise InvalidToken("bad token signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidToken("malformed token payload") from None
        if not isinstance(payload, dict):
            raise InvalidToken("malformed token payload")
        if payload.get("kind") != kind.value:
            raise WrongTokenKind(f"expected {kind.value} token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidToken("wrong issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidToken("wrong audience")

        try:
            user_id = int(payload["sub"])
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            jti = str(payload["jti"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken("missing or malformed claims") from None
        if exp <= self._clock().timestamp() - self._leeway:
            raise InvalidToken("token expired")
        return TokenClaims(user_id=user_id, kind=kind, jti=jti, issued_at=iat, expires_at=exp)

    @staticmethod
    def peek_expiry(token: str) -> Optional[datetime]:
        """Read ``exp`` without verifying the signature (for sizing deny-list entries)."""
        try:
            payload: Any = json.loads(_decode_segment(token.split(".")[1]))
            return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (IndexError, KeyError, TypeError, ValueError, AttributeError):
            return None

    def issue_access_token(self, user_id: int) -> str:
        token, _ = self._encode(user_id, TokenKind.ACCESS, self.access_ttl)
        return token

    def verify_access_token(self, token: str) -> int:
        return self.decode(token, TokenKind.ACCESS).user_id

    def _refresh_record(self, token: str, claims: TokenClaims) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_hash=token_digest(token),
            jti=claims.jti,
            user_id=claims.user_id,
            issued_at=datetime.fromtimestamp(claims.issued_at, tz=timezone.utc),
            expires_at=claims.expires_at_datetime,
        )

    async def issue_refresh_token(self, user_id: int) -> str:
        """Mint a refresh token and persist its row.

        Raises:
            PersistenceError: the row could not be written; no token is returned.
        """
        token, claims = self._encode(user_id, TokenKind.REFRESH, self.refresh_ttl)
        try:
            self.store.insert_refresh_token(self._refresh_record(token, claims))
        except (StorageUnavailable, ConstraintViolation) as exc:
            logger.error("refresh_token_persist_failed", user_id=user_id, error=str(exc))
            raise PersistenceError("could not record refresh token") from exc
        logger.info("refresh_token_issued", user_id=user_id, jti=claims.jti)
        return token

    async def issue_token_pair(self, user_id: int) -> TokenPair:
        refresh_token = await self.issue_refresh_token(user_id)
        access_token = self.issue_access_token(user_id)
        now = self._clock()
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=now + self.access_ttl,
            refresh_expires_at=now + self.refresh_ttl,
        )

    async def verify_refresh_token(self, token: str) -> int:
        """Verify signature and the stored row; records last use.

        Raises:
            InvalidToken: unknown, revoked, expired, or reassigned row.
            WrongTokenKind: an access token was presented.
            PersistenceError: the store could not be consulted.
        """
        claims = self.decode(token, TokenKind.REFRESH)
        digest = token_digest(token)
        now = self._clock()
        try:
            record = self.store.get_refresh_token(digest)
            if (
                not record
                or record.revoked
                or record.expires_at <= now
                or record.user_id != claims.user_id
            ):
                raise InvalidToken("refresh token not active")
            self.store.touch_refresh_token(digest, now)
        except StorageUnavailable as exc:
            raise PersistenceError("refresh token lookup failed") from exc
        return claims.user_id

    async def rotate_refresh_token(self, old_token: str, user_id: int) -> str:
        """Revoke ``old_token`` and mint its successor in one store transaction.

        Raises:
            RotationError: the old token is invalid, unknown, already revoked,
                expired, or belongs to another user.
            PersistenceError: the store could not be reached.
        """
        try:
            claims = self.decode(old_token, TokenKind.REFRESH)
        except (InvalidToken, WrongTokenKind) as exc:
            raise RotationError("refresh token rejected", detail={"reason": exc.message}) from exc
        if claims.user_id != user_id:
            logger.warning("refresh_rotation_user_mismatch", user_id=user_id, jti=claims.jti)
            raise RotationError("refresh token rejected", detail={"reason": "user mismatch"})

        new_token, new_claims = self._encode(user_id, TokenKind.REFRESH, self.refresh_ttl)
        try:
            rotated = self.store.rotate_refresh_token(
                token_digest(old_token),
                user_id,
                self._refresh_record(new_token, new_claims),
                self._clock(),
            )
        except (StorageUnavailable, ConstraintViolation) as exc:
            logger.error("refresh_rotation_persist_failed", user_id=user_id, error=str(exc))
            raise PersistenceError("could not rotate refresh token") from exc
        if not rotated:
            logger.warning("refresh_rotation_rejected", user_id=user_id, jti=claims.jti)
            raise RotationError(
                "refresh token rejected", detail={"reason": "not found or already revoked"}
            )
        logger.info(
            "refresh_token_rotated", user_id=user_id, old_jti=claims.jti, new_jti=new_claims.jti
        )
        return new_token
