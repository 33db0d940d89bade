from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from civicauth.config import Settings
from civicauth.logging import get_logger
from civicauth.service.devices import DeviceTrustManager
from civicauth.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidToken,
    MissingCredential,
    PersistenceError,
    ReplayDetected,
    SecondFactorFailed,
    TokenRevoked,
    ValidationError,
    persistence_guard,
)
from civicauth.service.oauth import OAuthCoordinator
from civicauth.service.passkeys import ChallengePurpose, PasskeyService
from civicauth.service.revocation import RevocationLedger
from civicauth.service.sessions import SessionTracker
from civicauth.service.signing_keys import SigningSecrets
from civicauth.service.tokens import TokenEngine, TokenPair
from civicauth.service.totp import SecondFactorVerifier
from civicauth.storage.ephemeral import EphemeralStore
from civicauth.storage.errors import ConstraintViolation
from civicauth.storage.models import (
    BlacklistEntry,
    OAuthAccount,
    PasskeyCredential,
    RefreshTokenRecord,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(
        self,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        phone: Optional[str] = None,
        wallet_address: Optional[str] = None,
        password_hash: Optional[str] = None,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: int) -> None: ...

    def set_mfa_secret(self, user_id: int, encrypted_secret: str) -> None: ...

    def set_mfa_enabled(self, user_id: int, enabled: bool) -> None: ...

    def clear_mfa(self, user_id: int) -> None: ...

    def advance_mfa_step(self, user_id: int, step: int) -> bool: ...

    def set_backup_codes(self, user_id: int, code_hashes: List[str]) -> None: ...

    def remove_backup_code(self, user_id: int, code_hash: str) -> bool: ...

    def insert_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def touch_refresh_token(self, token_hash: str, when: datetime) -> None: ...

    def revoke_refresh_token(self, token_hash: str, user_id: int, when: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: int, when: datetime) -> int: ...

    def rotate_refresh_token(
        self, old_hash: str, user_id: int, new_record: RefreshTokenRecord, now: datetime
    ) -> bool: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    def add_blacklist_entry(self, entry: BlacklistEntry) -> None: ...

    def is_token_blacklisted(self, token_hash: str, now: datetime) -> bool: ...

    def delete_expired_blacklist_entries(self, now: datetime) -> int: ...

    def create_passkey(self, credential: PasskeyCredential) -> None: ...

    def get_passkey(self, credential_id: str) -> Optional[PasskeyCredential]: ...

    def list_passkeys(self, user_id: int) -> List[PasskeyCredential]: ...

    def advance_passkey_counter(self, credential_id: str, counter: int, when: datetime) -> bool: ...

    def delete_passkey(self, user_id: int, credential_id: str) -> bool: ...

    def rename_passkey(self, user_id: int, credential_id: str, device_name: str) -> bool: ...

    def get_oauth_account(self, provider: str, provider_id: str) -> Optional[OAuthAccount]: ...

    def create_oauth_account(self, account: OAuthAccount) -> None: ...

    def create_oauth_user(self, account: OAuthAccount, **user_fields: Any) -> User: ...

    def update_oauth_account(
        self,
        provider: str,
        provider_id: str,
        *,
        provider_email: Optional[str],
        provider_name: Optional[str],
        access_token: Optional[str],
        refresh_token: Optional[str],
    ) -> None: ...

    def list_oauth_accounts(self, user_id: int) -> List[OAuthAccount]: ...

    def delete_oauth_account(self, user_id: int, provider: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: int
    access_token: str
    session_id: Optional[str] = None


@dataclass
class AuthResult:
    user: User
    session_id: str
    tokens: TokenPair
    is_new_user: bool = False


class AuthService:
    """Credential-establishment flows built on the token, session and
    second-factor components.

    Password, passkey and OAuth sign-ins all end in :meth:`_establish_session`,
    which mints one token pair and records one session.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: EphemeralStore,
        settings: Settings,
        signing: SigningSecrets,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.tokens = TokenEngine(store, signing, settings, clock=clock)
        self.ledger = RevocationLedger(store, self.tokens, clock=clock)
        self.sessions = SessionTracker(cache, self.ledger, settings, clock=clock)
        self.devices = DeviceTrustManager(cache, settings, clock=clock)
        self.totp = SecondFactorVerifier(store, settings, signing, clock=clock)
        self.passkeys = PasskeyService(store, cache, settings, clock=clock)
        self.oauth = OAuthCoordinator(store, cache, settings, clock=clock)
        # Verified against when the identifier is unknown so timing stays uniform
        self._dummy_hash = self._pwd_hasher.hash("civicauth-timing-equalizer")

    # -- passwords -----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash or self._dummy_hash, password) and bool(
                stored_hash
            )
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- shared issuance path ------------------------------------------------

    async def _establish_session(
        self,
        user: User,
        *,
        user_agent: Optional[str],
        ip_address: Optional[str],
        is_new_user: bool = False,
    ) -> AuthResult:
        pair = await self.tokens.issue_token_pair(user.id)
        session_id = await self.sessions.create_session(
            user.id,
            pair.access_token,
            pair.refresh_token,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return AuthResult(user=user, session_id=session_id, tokens=pair, is_new_user=is_new_user)

    # -- password flows ------------------------------------------------------

    async def register(
        self,
        *,
        email: str,
        password: str,
        username: Optional[str] = None,
        display_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        if not email or not password:
            raise ValidationError("email and password are required")
        try:
            with persistence_guard("user creation"):
                user = self.store.create_user(
                    email=email,
                    username=username,
                    display_name=display_name,
                    password_hash=self.hash_password(password),
                )
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail=exc.detail) from exc
        logger.info("user_registered", user_id=user.id)
        return await self._establish_session(
            user, user_agent=user_agent, ip_address=ip_address, is_new_user=True
        )

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        totp_code: Optional[str] = None,
        trust_device: bool = False,
    ) -> AuthResult:
        """Password login with an optional second factor.

        Raises:
            AuthenticationError: unknown identifier, wrong password, or inactive user.
            SecondFactorFailed: second factor enabled and the code is missing or wrong.
        """
        with persistence_guard("user lookup"):
            user = self.store.get_user_by_identifier(identifier) if identifier else None
        if not self.verify_password(user.password_hash if user else None, password) or not user:
            logger.info("login_failed", reason="bad_credentials")
            raise AuthenticationError("invalid credentials")
        if not user.is_active:
            logger.info("login_failed", user_id=user.id, reason="inactive")
            raise AuthenticationError("invalid credentials")

        if user.mfa_enabled:
            trust = await self.devices.is_trusted(user.id, user_agent, ip_address)
            if trust.trusted:
                logger.info("second_factor_skipped_trusted_device", user_id=user.id, device_id=trust.device_id)
            else:
                if not totp_code:
                    raise SecondFactorFailed(
                        "second factor required", detail={"mfa_required": True}
                    )
                if not await self.totp.verify(user.id, totp_code):
                    logger.info("login_failed", user_id=user.id, reason="bad_second_factor")
                    raise SecondFactorFailed("invalid second factor code")
                if trust_device:
                    await self.devices.trust(user.id, user_agent, ip_address)

        logger.info("login_succeeded", user_id=user.id)
        return await self._establish_session(user, user_agent=user_agent, ip_address=ip_address)

    # -- bearer authentication -----------------------------------------------

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def _is_revoked(self, token: str) -> bool:
        try:
            return await self.ledger.is_blacklisted(token)
        except PersistenceError:
            logger.warning("revocation_check_unavailable_denying")
            raise InvalidToken("revocation status unavailable") from None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve the caller of a protected request.

        The deny-list is consulted first; if it cannot be read the request
        is refused.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise MissingCredential("no bearer token presented")
        if await self._is_revoked(token):
            raise TokenRevoked("token has been revoked")
        user_id = self.tokens.verify_access_token(token)
        session_id: Optional[str] = None
        for session in await self.sessions.list_sessions(user_id):
            if session.access_token == token:
                session_id = session.id
                await self.sessions.touch(session.id)
                break
        return AuthContext(user_id=user_id, access_token=token, session_id=session_id)

    # -- refresh / logout ----------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        if not refresh_token:
            raise MissingCredential("no refresh token presented")
        if await self._is_revoked(refresh_token):
            raise TokenRevoked("token has been revoked")
        user_id = await self.tokens.verify_refresh_token(refresh_token)
        with persistence_guard("user lookup"):
            user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise InvalidToken("token subject is not active")

        session = await self.sessions.find_session_by_refresh_token(user_id, refresh_token)
        new_refresh = await self.tokens.rotate_refresh_token(refresh_token, user_id)
        new_access = self.tokens.issue_access_token(user_id)
        now = self._clock()
        pair = TokenPair(
            access_token=new_access,
            refresh_token=new_refresh,
            access_expires_at=now + self.tokens.access_ttl,
            refresh_expires_at=now + self.tokens.refresh_ttl,
        )
        if session is not None:
            await self.ledger.blacklist(session.access_token, user_id, "rotated")
            await self.ledger.blacklist(refresh_token, user_id, "rotated")
            await self.sessions.update_tokens(session.id, new_access, new_refresh)
            session_id = session.id
        else:
            await self.ledger.blacklist(refresh_token, user_id, "rotated")
            session_id = await self.sessions.create_session(
                user_id, new_access, new_refresh, user_agent=user_agent, ip_address=ip_address
            )
        return AuthResult(user=user, session_id=session_id, tokens=pair)

    async def logout(
        self, user_id: int, access_token: str, refresh_token: Optional[str] = None
    ) -> bool:
        """Deny-list both tokens, revoke the refresh row and the owning session."""
        await self.ledger.blacklist(access_token, user_id, "logout")
        session: Optional[Session] = None
        if refresh_token:
            await self.ledger.blacklist(refresh_token, user_id, "logout")
            await self.ledger.revoke_refresh_token(refresh_token, user_id)
            session = await self.sessions.find_session_by_refresh_token(user_id, refresh_token)
        if session is None:
            for candidate in await self.sessions.list_sessions(user_id):
                if candidate.access_token == access_token:
                    session = candidate
                    break
        if session is not None:
            await self.sessions.revoke_session(session.id, reason="logout")
        logger.info("logout_complete", user_id=user_id, session_found=session is not None)
        return True

    async def logout_everywhere(self, user_id: int, except_session_id: Optional[str] = None) -> int:
        count = await self.sessions.revoke_all_sessions(user_id, except_session_id)
        if except_session_id is None:
            await self.ledger.revoke_all_refresh_tokens(user_id)
        return count

    # -- passkeys ------------------------------------------------------------

    async def passkey_registration_challenge(self, user_id: int) -> str:
        return await self.passkeys.issue_challenge(ChallengePurpose.REGISTRATION, user_id)

    async def register_passkey(
        self,
        user_id: int,
        challenge: str,
        credential_id: str,
        public_key: str,
        label: Optional[str] = None,
    ) -> bool:
        record = await self.passkeys.consume_challenge(challenge)
        if (
            record is None
            or record.purpose != ChallengePurpose.REGISTRATION.value
            or record.user_id != user_id
        ):
            raise ValidationError("invalid or expired challenge")
        if not await self.passkeys.register(user_id, credential_id, public_key, label):
            raise ConflictError("credential already registered")
        return True

    async def passkey_login_challenge(self) -> str:
        return await self.passkeys.issue_challenge(ChallengePurpose.AUTHENTICATION)

    async def passkey_login(
        self,
        challenge: str,
        credential_id: str,
        counter: int,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        record = await self.passkeys.consume_challenge(challenge)
        if record is None or record.purpose != ChallengePurpose.AUTHENTICATION.value:
            raise ValidationError("invalid or expired challenge")
        result = await self.passkeys.verify_assertion(credential_id, counter)
        if not result.valid:
            if result.reason == "counter_not_increasing":
                raise ReplayDetected("authenticator counter did not increase")
            raise AuthenticationError("invalid credentials")
        with persistence_guard("user lookup"):
            user = self.store.get_user(result.user_id)
        if not user or not user.is_active:
            raise AuthenticationError("invalid credentials")
        logger.info("passkey_login_succeeded", user_id=user.id, credential_id=credential_id)
        return await self._establish_session(user, user_agent=user_agent, ip_address=ip_address)

    # -- oauth ---------------------------------------------------------------

    async def oauth_callback(
        self,
        provider: str,
        state: str,
        *,
        profile: Optional[dict] = None,
        code: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        """Consume the state, resolve the account, then issue tokens.

        The HTTP layer only ever passes ``code``. ``profile`` lets server-side
        callers hand over a profile they fetched from the provider themselves.
        """
        resolution = await self.oauth.callback(provider, state, profile=profile, code=code)
        if not resolution.user.is_active:
            raise AuthenticationError("invalid credentials")
        return await self._establish_session(
            resolution.user,
            user_agent=user_agent,
            ip_address=ip_address,
            is_new_user=resolution.is_new_user,
        )
