from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from civicauth.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    ChallengeResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    OAuthAccountResponse,
    OAuthCallbackRequest,
    OAuthInitRequest,
    OAuthInitResponse,
    PasskeyLoginRequest,
    PasskeyRegisterRequest,
    PasskeyRenameRequest,
    PasskeyResponse,
    RegisterRequest,
    SessionResponse,
    SessionStatsResponse,
    TokenRefreshRequest,
    TotpCodeRequest,
    TotpSetupRequest,
    TotpSetupResponse,
    TotpStatusResponse,
    TrustedDeviceResponse,
    UserResponse,
)
from civicauth.logging import get_logger
from civicauth.service.auth import AuthContext, AuthResult
from civicauth.service.errors import persistence_guard
from civicauth.service.runtime import get_runtime
from civicauth.storage.models import OAuthAccount, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer token on the request; failures surface as 401."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        session_id=result.session_id,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        access_expires_at=result.tokens.access_expires_at,
        refresh_expires_at=result.tokens.refresh_expires_at,
        is_new_user=result.is_new_user,
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        email_verified=user.email_verified,
        mfa_enabled=user.mfa_enabled,
        created_at=user.created_at,
    )


def _require_user(user_id: int) -> User:
    with persistence_guard("user lookup"):
        user = get_runtime().store.get_user(user_id)
    if user is None:
        raise _http_error("not_found", "user not found", status_code=404)
    return user


# -- credential establishment -----------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account with email and password and sign it in.

    Raises:
        409: If the email or username is already taken
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        username=body.username,
        display_name=body.display_name,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with an email or username and password.

    When the second factor is enabled and the device is not trusted, the
    response is 401 ``mfa_failed`` with ``details.mfa_required`` until a
    valid ``totp_code`` is supplied.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.identifier,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
        totp_code=body.totp_code,
        trust_device=body.trust_device,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh(
        body.refresh_token,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id, principal.access_token, body.refresh_token)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    user = _require_user(principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


# -- sessions -----------------------------------------------------------------


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.auth.sessions.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                id=s.id,
                device_info=s.device_info,
                ip_address=s.ip_address,
                created_at=s.created_at,
                last_activity=s.last_activity,
                expires_at=s.expires_at,
                current=s.id == principal.session_id,
            )
            for s in sessions
        ],
    )


@router.get("/auth/sessions/stats", response_model=Envelope, tags=["sessions"])
async def session_stats(principal: AuthContext = Depends(get_principal)):
    stats = await get_runtime().auth.sessions.session_stats(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionStatsResponse(
            total=stats.total,
            active=stats.active,
            devices=stats.devices,
            last_activity=stats.last_activity,
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_principal),
):
    sessions = get_runtime().auth.sessions
    session = await sessions.get_session(session_id)
    if session is None or session.user_id != principal.user_id:
        raise _http_error("not_found", "session not found", status_code=404)
    await sessions.revoke_session(session_id)
    return Envelope(status="ok", data={"revoked": True})


@router.delete("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_principal)):
    """Revoke every session except the one making the request."""
    count = await get_runtime().auth.logout_everywhere(
        principal.user_id, except_session_id=principal.session_id
    )
    return Envelope(status="ok", data={"revoked": count})


# -- trusted devices ----------------------------------------------------------


@router.get("/auth/devices", response_model=Envelope, tags=["devices"])
async def list_devices(principal: AuthContext = Depends(get_principal)):
    devices = await get_runtime().auth.devices.list_devices(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            TrustedDeviceResponse(
                id=d.id,
                device_name=d.device_name,
                ip_address=d.ip_address,
                created_at=d.created_at,
                expires_at=d.expires_at,
                last_used_at=d.last_used_at,
            )
            for d in devices
        ],
    )


@router.delete("/auth/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def revoke_device(
    device_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_principal),
):
    if not await get_runtime().auth.devices.revoke(principal.user_id, device_id):
        raise _http_error("not_found", "device not found", status_code=404)
    return Envelope(status="ok", data={"revoked": True})


@router.delete("/auth/devices", response_model=Envelope, tags=["devices"])
async def revoke_all_devices(principal: AuthContext = Depends(get_principal)):
    count = await get_runtime().auth.devices.revoke_all(principal.user_id)
    return Envelope(status="ok", data={"revoked": count})


# -- second factor ------------------------------------------------------------


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def totp_setup(body: TotpSetupRequest, principal: AuthContext = Depends(get_principal)):
    user = _require_user(principal.user_id)
    label = body.label or user.email or user.username or str(user.id)
    setup = await get_runtime().auth.totp.generate_secret(principal.user_id, label)
    return Envelope(
        status="ok", data=TotpSetupResponse(secret=setup.secret, qr_payload=setup.qr_payload)
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["2fa"])
async def totp_enable(body: TotpCodeRequest, principal: AuthContext = Depends(get_principal)):
    if not await get_runtime().auth.totp.enable(principal.user_id, body.code):
        raise _http_error("mfa_failed", "invalid second factor code", status_code=401)
    return Envelope(status="ok", data={"enabled": True})


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def totp_disable(body: TotpCodeRequest, principal: AuthContext = Depends(get_principal)):
    if not await get_runtime().auth.totp.disable(principal.user_id, body.code):
        raise _http_error("mfa_failed", "invalid second factor code", status_code=401)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def totp_verify(body: TotpCodeRequest, principal: AuthContext = Depends(get_principal)):
    valid = await get_runtime().auth.totp.verify(principal.user_id, body.code)
    return Envelope(status="ok", data={"valid": valid})


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def totp_status(principal: AuthContext = Depends(get_principal)):
    status = await get_runtime().auth.totp.status(principal.user_id)
    return Envelope(status="ok", data=TotpStatusResponse(**status))


@router.post("/auth/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def totp_backup_codes(principal: AuthContext = Depends(get_principal)):
    codes = await get_runtime().auth.totp.generate_backup_codes(principal.user_id)
    return Envelope(status="ok", data=BackupCodesResponse(codes=codes))


# -- passkeys -----------------------------------------------------------------


def _challenge_response(challenge: str) -> ChallengeResponse:
    return ChallengeResponse(
        challenge=challenge,
        expires_in=get_runtime().settings.passkey_challenge_ttl_seconds,
    )


@router.post("/auth/passkeys/register/challenge", response_model=Envelope, tags=["passkeys"])
async def passkey_register_challenge(principal: AuthContext = Depends(get_principal)):
    challenge = await get_runtime().auth.passkey_registration_challenge(principal.user_id)
    return Envelope(status="ok", data=_challenge_response(challenge))


@router.post("/auth/passkeys/register", response_model=Envelope, status_code=201, tags=["passkeys"])
async def passkey_register(
    body: PasskeyRegisterRequest, principal: AuthContext = Depends(get_principal)
):
    await get_runtime().auth.register_passkey(
        principal.user_id,
        body.challenge,
        body.credential_id,
        body.public_key,
        body.device_name,
    )
    return Envelope(status="ok", data={"registered": True})


@router.post("/auth/passkeys/login/challenge", response_model=Envelope, tags=["passkeys"])
async def passkey_login_challenge():
    challenge = await get_runtime().auth.passkey_login_challenge()
    return Envelope(status="ok", data=_challenge_response(challenge))


@router.post("/auth/passkeys/login", response_model=Envelope, tags=["passkeys"])
async def passkey_login(body: PasskeyLoginRequest, request: Request):
    result = await get_runtime().auth.passkey_login(
        body.challenge,
        body.credential_id,
        body.counter,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/auth/passkeys", response_model=Envelope, tags=["passkeys"])
async def list_passkeys(principal: AuthContext = Depends(get_principal)):
    credentials = await get_runtime().auth.passkeys.list_credentials(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            PasskeyResponse(
                credential_id=c.credential_id,
                device_name=c.device_name,
                counter=c.counter,
                created_at=c.created_at,
                last_used_at=c.last_used_at,
            )
            for c in credentials
        ],
    )


@router.patch("/auth/passkeys/{credential_id}", response_model=Envelope, tags=["passkeys"])
async def rename_passkey(
    body: PasskeyRenameRequest,
    credential_id: str = Path(..., max_length=1024),
    principal: AuthContext = Depends(get_principal),
):
    renamed = await get_runtime().auth.passkeys.rename_credential(
        principal.user_id, credential_id, body.device_name
    )
    if not renamed:
        raise _http_error("not_found", "passkey not found", status_code=404)
    return Envelope(status="ok", data={"renamed": True})


@router.delete("/auth/passkeys/{credential_id}", response_model=Envelope, tags=["passkeys"])
async def delete_passkey(
    credential_id: str = Path(..., max_length=1024),
    principal: AuthContext = Depends(get_principal),
):
    if not await get_runtime().auth.passkeys.delete_credential(principal.user_id, credential_id):
        raise _http_error("not_found", "passkey not found", status_code=404)
    return Envelope(status="ok", data={"deleted": True})


# -- oauth --------------------------------------------------------------------


@router.post("/auth/oauth/{provider}/init", response_model=Envelope, tags=["oauth"])
async def oauth_init(
    body: OAuthInitRequest,
    provider: str = Path(..., max_length=32, description="google, github, facebook or twitter"),
):
    """Issue a single-use state and the provider authorization URL."""
    start = await get_runtime().auth.oauth.init(provider, body.redirect_uri)
    return Envelope(status="ok", data=OAuthInitResponse(**start))


@router.post("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["oauth"])
async def oauth_callback(
    body: OAuthCallbackRequest,
    request: Request,
    provider: str = Path(..., max_length=32),
):
    """Complete the provider flow by exchanging the authorization code."""
    result = await get_runtime().auth.oauth_callback(
        provider,
        body.state,
        code=body.code,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


def _oauth_account_response(account: OAuthAccount) -> OAuthAccountResponse:
    return OAuthAccountResponse(
        provider=account.provider,
        provider_id=account.provider_id,
        provider_email=account.provider_email,
        provider_name=account.provider_name,
        created_at=account.created_at,
    )


@router.post("/auth/oauth/{provider}/link", response_model=Envelope, status_code=201, tags=["oauth"])
async def link_oauth_account(
    body: OAuthCallbackRequest,
    provider: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_principal),
):
    """Attach a provider identity to the signed-in user."""
    account = await get_runtime().auth.oauth.link_callback(
        principal.user_id, provider, body.state, code=body.code
    )
    return Envelope(status="ok", data=_oauth_account_response(account))


@router.get("/auth/oauth/accounts", response_model=Envelope, tags=["oauth"])
async def list_oauth_accounts(principal: AuthContext = Depends(get_principal)):
    accounts = await get_runtime().auth.oauth.list_accounts(principal.user_id)
    return Envelope(status="ok", data=[_oauth_account_response(a) for a in accounts])


@router.delete("/auth/oauth/accounts/{provider}", response_model=Envelope, tags=["oauth"])
async def unlink_oauth_account(
    provider: str = Path(..., max_length=32),
    principal: AuthContext = Depends(get_principal),
):
    if not await get_runtime().auth.oauth.unlink_account(principal.user_id, provider):
        raise _http_error("not_found", "linked account not found", status_code=404)
    return Envelope(status="ok", data={"unlinked": True})
