from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _load_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _Payload:
    """JSON round-tripping for records kept in the TTL store."""

    _datetime_fields: tuple[str, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {key: _dump_value(value) for key, value in asdict(self).items()}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        for name in cls._datetime_fields:
            if name in data:
                data[name] = _load_datetime(data[name])
        return cls(**data)


# Durable records


@dataclass
class User:
    id: int
    email: Optional[str] = None
    username: Optional[str] = None
    phone: Optional[str] = None
    wallet_address: Optional[str] = None
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False
    is_active: bool = True
    # Fernet ciphertext of the base32 TOTP secret
    mfa_secret: Optional[str] = None
    mfa_enabled: bool = False
    mfa_last_step: Optional[int] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    token_hash: str
    jti: str
    user_id: int
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


@dataclass
class BlacklistEntry:
    token_hash: str
    user_id: int
    reason: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasskeyCredential:
    credential_id: str
    user_id: int
    public_key: str
    counter: int = 0
    device_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class OAuthAccount:
    user_id: int
    provider: str
    provider_id: str
    provider_email: Optional[str] = None
    provider_name: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# Ephemeral records


@dataclass
class Session(_Payload):
    id: str
    user_id: int
    access_token: str
    refresh_token: str
    device_info: str
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: datetime
    last_activity: datetime
    expires_at: datetime

    _datetime_fields = ("created_at", "last_activity", "expires_at")


@dataclass
class TrustedDevice(_Payload):
    id: str
    user_id: int
    fingerprint: str
    device_name: str
    ip_address: Optional[str]
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None

    _datetime_fields = ("created_at", "expires_at", "last_used_at")


@dataclass
class PasskeyChallenge(_Payload):
    challenge: str
    purpose: str
    issued_at: datetime
    expires_at: datetime
    user_id: Optional[int] = None

    _datetime_fields = ("issued_at", "expires_at")


@dataclass
class OAuthState(_Payload):
    state: str
    provider: str
    issued_at: datetime
    expires_at: datetime
    redirect_uri: Optional[str] = None

    _datetime_fields = ("issued_at", "expires_at")
