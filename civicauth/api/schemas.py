from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rotation_failed",
    "replay_detected",
    "invalid_oauth_state",
    "mfa_failed",
    "unavailable",
    "upstream_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not 1 <= len(value) <= 64:
        raise ValueError("username must be between 1 and 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username must contain only alphanumeric characters, underscores, and hyphens")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    username: Optional[str] = Field(default=None, max_length=64)
    display_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254, description="Email or username")
    password: str = Field(..., max_length=128)
    totp_code: Optional[str] = Field(default=None, max_length=16)
    trust_device: bool = False

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class AuthResponse(BaseModel):
    user_id: int
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    is_new_user: bool = False


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class UserResponse(BaseModel):
    id: int
    email: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email_verified: bool = False
    mfa_enabled: bool = False
    created_at: datetime


class SessionResponse(BaseModel):
    id: str
    device_info: str
    ip_address: Optional[str] = None
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    current: bool = False


class SessionStatsResponse(BaseModel):
    total: int
    active: int
    devices: List[str]
    last_activity: Optional[datetime] = None


class TrustedDeviceResponse(BaseModel):
    id: str
    device_name: str
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None


class TotpSetupRequest(BaseModel):
    label: Optional[str] = Field(default=None, max_length=128)


class TotpSetupResponse(BaseModel):
    secret: str
    qr_payload: str


class TotpCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)


class TotpStatusResponse(BaseModel):
    enabled: bool
    has_secret: bool
    backup_codes_remaining: int


class BackupCodesResponse(BaseModel):
    codes: List[str]


class ChallengeResponse(BaseModel):
    challenge: str
    expires_in: int


class PasskeyRegisterRequest(BaseModel):
    challenge: str = Field(..., max_length=256)
    credential_id: str = Field(..., min_length=1, max_length=1024)
    public_key: str = Field(..., min_length=1, max_length=8192)
    device_name: Optional[str] = Field(default=None, max_length=128)


class PasskeyLoginRequest(BaseModel):
    challenge: str = Field(..., max_length=256)
    credential_id: str = Field(..., min_length=1, max_length=1024)
    counter: int = Field(..., ge=0)


class PasskeyRenameRequest(BaseModel):
    device_name: str = Field(..., min_length=1, max_length=128)


class PasskeyResponse(BaseModel):
    credential_id: str
    device_name: str
    counter: int
    created_at: datetime
    last_used_at: Optional[datetime] = None


class OAuthInitRequest(BaseModel):
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)


class OAuthInitResponse(BaseModel):
    authorization_url: Optional[str] = None
    state: str
    provider: str


class OAuthCallbackRequest(BaseModel):
    state: str = Field(..., max_length=256)
    code: str = Field(..., min_length=1, max_length=2048)


class OAuthAccountResponse(BaseModel):
    provider: str
    provider_id: str
    provider_email: Optional[str] = None
    provider_name: Optional[str] = None
    created_at: datetime
