from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from civicauth.config import Settings
from civicauth.logging import get_logger
from civicauth.service.errors import (
    ConflictError,
    InvalidOAuthState,
    ServiceError,
    ValidationError,
    persistence_guard,
)
from civicauth.storage.ephemeral import EphemeralStore
from civicauth.storage.errors import ConstraintViolation
from civicauth.storage.models import OAuthAccount, OAuthState, User, utcnow

if TYPE_CHECKING:
    from civicauth.service.auth import CredentialStore

logger = get_logger(__name__)


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    GITHUB = "github"
    FACEBOOK = "facebook"
    TWITTER = "twitter"


OAUTH_PROVIDERS: Dict[OAuthProvider, Dict[str, str]] = {
    OAuthProvider.GOOGLE: {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    OAuthProvider.GITHUB: {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    OAuthProvider.FACEBOOK: {
        "auth_url": "https://www.facebook.com/v18.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v18.0/oauth/access_token",
        "userinfo_url": "https://graph.facebook.com/me?fields=id,name,email,picture",
        "scope": "email public_profile",
    },
    OAuthProvider.TWITTER: {
        "auth_url": "https://twitter.com/i/oauth2/authorize",
        "token_url": "https://api.twitter.com/2/oauth2/token",
        "userinfo_url": "https://api.twitter.com/2/users/me?user.fields=profile_image_url",
        "scope": "users.read tweet.read",
    },
}


@dataclass(frozen=True)
class NormalizedIdentity:
    provider: OAuthProvider
    provider_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _normalize_google(profile: dict) -> dict:
    return {
        "provider_id": profile.get("id") or profile.get("sub"),
        "email": profile.get("email"),
        "name": profile.get("name"),
        "avatar_url": profile.get("picture"),
    }


def _normalize_github(profile: dict) -> dict:
    return {
        "provider_id": profile.get("id"),
        "email": profile.get("email"),
        "name": profile.get("name") or profile.get("login"),
        "avatar_url": profile.get("avatar_url"),
    }


def _normalize_facebook(profile: dict) -> dict:
    picture = profile.get("picture")
    avatar = None
    if isinstance(picture, dict):
        avatar = (picture.get("data") or {}).get("url")
    elif isinstance(picture, str):
        avatar = picture
    return {
        "provider_id": profile.get("id"),
        "email": profile.get("email"),
        "name": profile.get("name"),
        "avatar_url": avatar,
    }


def _normalize_twitter(profile: dict) -> dict:
    # API v2 wraps the user object in "data"
    data = profile.get("data") if isinstance(profile.get("data"), dict) else profile
    return {
        "provider_id": data.get("id") or data.get("id_str"),
        "email": data.get("email"),
        "name": data.get("name") or data.get("username"),
        "avatar_url": data.get("profile_image_url"),
    }


PROFILE_NORMALIZERS: Dict[OAuthProvider, Callable[[dict], dict]] = {
    OAuthProvider.GOOGLE: _normalize_google,
    OAuthProvider.GITHUB: _normalize_github,
    OAuthProvider.FACEBOOK: _normalize_facebook,
    OAuthProvider.TWITTER: _normalize_twitter,
}


def parse_provider(name: str) -> OAuthProvider:
    try:
        return OAuthProvider((name or "").strip().lower())
    except ValueError:
        raise ValidationError(
            f"unsupported OAuth provider: {name}", detail={"provider": name}
        ) from None


def normalize_profile(provider: OAuthProvider, profile: dict) -> NormalizedIdentity:
    """Map a provider-specific profile onto the common identity shape."""
    if not isinstance(profile, dict):
        raise ValidationError("provider profile must be an object")
    fields = PROFILE_NORMALIZERS[provider](profile)
    provider_id = _str_or_none(fields.get("provider_id"))
    if not provider_id:
        raise ValidationError("provider profile has no id", detail={"provider": provider.value})
    email = _str_or_none(fields.get("email"))
    return NormalizedIdentity(
        provider=provider,
        provider_id=provider_id,
        email=email.strip().lower() if email else None,
        name=_str_or_none(fields.get("name")),
        avatar_url=_str_or_none(fields.get("avatar_url")),
        access_token=_str_or_none(profile.get("access_token")),
        refresh_token=_str_or_none(profile.get("refresh_token")),
    )


@dataclass(frozen=True)
class OAuthResolution:
    user: User
    is_new_user: bool
    branch: str


class OAuthCoordinator:
    """CSRF-safe OAuth state plus account resolution.

    A state value is removed from the store the moment it is read, whether
    or not the rest of the callback succeeds.
    """

    def __init__(
        self,
        store: "CredentialStore",
        cache: EphemeralStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
        http_client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.state_ttl = timedelta(seconds=settings.oauth_state_ttl_seconds)
        self._clock = clock
        self._http_client_factory = http_client_factory

    @staticmethod
    def _key(state: str) -> str:
        return f"oauth_state:{state}"

    def _authorization_url(
        self, provider: OAuthProvider, state: str, redirect_uri: Optional[str]
    ) -> Optional[str]:
        client_id, _ = self.settings.oauth_client(provider.value)
        if not client_id or not redirect_uri:
            return None
        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider is OAuthProvider.GOOGLE:
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return f"{config['auth_url']}?{urlencode(params)}"

    async def init(self, provider: str, redirect_uri: Optional[str] = None) -> dict:
        parsed = parse_provider(provider)
        now = self._clock()
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        record = OAuthState(
            state=secrets.token_urlsafe(32),
            provider=parsed.value,
            issued_at=now,
            expires_at=now + self.state_ttl,
            redirect_uri=callback_uri,
        )
        await self.cache.set(
            self._key(record.state), record.to_payload(), int(self.state_ttl.total_seconds())
        )
        logger.info("oauth_state_issued", provider=parsed.value)
        return {
            "state": record.state,
            "provider": parsed.value,
            "authorization_url": self._authorization_url(parsed, record.state, callback_uri),
        }

    async def consume_state(self, provider: str, state: str) -> OAuthState:
        """Validate and delete ``state``.

        Raises:
            InvalidOAuthState: unknown, already consumed, expired, or issued
                for another provider.
        """
        parsed = parse_provider(provider)
        payload = await self.cache.pop(self._key(state)) if state else None
        if payload is None:
            logger.warning("oauth_state_rejected", provider=parsed.value, reason="unknown")
            raise InvalidOAuthState("invalid or already used OAuth state")
        record = OAuthState.from_payload(payload)
        if record.expires_at <= self._clock():
            logger.warning("oauth_state_rejected", provider=parsed.value, reason="expired")
            raise InvalidOAuthState("OAuth state expired")
        if record.provider != parsed.value:
            logger.warning("oauth_state_rejected", provider=parsed.value, reason="provider_mismatch")
            raise InvalidOAuthState("OAuth state was issued for another provider")
        return record

    def _account_for(self, user_id: int, identity: NormalizedIdentity) -> OAuthAccount:
        return OAuthAccount(
            user_id=user_id,
            provider=identity.provider.value,
            provider_id=identity.provider_id,
            provider_email=identity.email,
            provider_name=identity.name,
            access_token=identity.access_token,
            refresh_token=identity.refresh_token,
        )

    def _create_user(self, identity: NormalizedIdentity) -> User:
        """Create the user and its first link in a single store write."""
        username = f"{identity.provider.value}_{identity.provider_id[:8]}"
        for attempt in range(2):
            try:
                return self.store.create_oauth_user(
                    self._account_for(0, identity),
                    email=identity.email,
                    username=username,
                    display_name=identity.name,
                    avatar_url=identity.avatar_url,
                    email_verified=identity.email is not None,
                )
            except ConstraintViolation as exc:
                if attempt or exc.detail.get("field") in ("email", "provider_id"):
                    raise
                username = f"{username}_{secrets.token_hex(2)}"
        raise ConflictError("could not create account for OAuth identity")

    def _link(self, user_id: int, identity: NormalizedIdentity) -> None:
        self.store.create_oauth_account(self._account_for(user_id, identity))

    def _winning_link(self, identity: NormalizedIdentity, exc: ConstraintViolation) -> User:
        """Return the user a concurrent callback linked ``identity`` to."""
        account = self.store.get_oauth_account(identity.provider.value, identity.provider_id)
        user = self.store.get_user(account.user_id) if account else None
        if user is None:
            raise ConflictError("could not link OAuth identity") from exc
        return user

    async def resolve_account(self, provider: str, profile: dict) -> OAuthResolution:
        """Pick exactly one of: existing link, email match, or new user.

        ``profile`` must come from the provider itself, never from the client.
        """
        identity = normalize_profile(parse_provider(provider), profile)
        with persistence_guard("oauth account resolution"):
            account = self.store.get_oauth_account(identity.provider.value, identity.provider_id)
            if account:
                self.store.update_oauth_account(
                    identity.provider.value,
                    identity.provider_id,
                    provider_email=identity.email,
                    provider_name=identity.name,
                    access_token=identity.access_token,
                    refresh_token=identity.refresh_token,
                )
                user = self.store.get_user(account.user_id)
                if user is None:
                    raise ConflictError("linked account no longer exists")
                branch, is_new = "existing_link", False
            else:
                user = self.store.get_user_by_email(identity.email) if identity.email else None
                if user:
                    branch, is_new = "email_match", False
                    try:
                        self._link(user.id, identity)
                    except ConstraintViolation as exc:
                        user, branch = self._winning_link(identity, exc), "existing_link"
                    else:
                        if not user.email_verified:
                            self.store.mark_email_verified(user.id)
                else:
                    try:
                        user = self._create_user(identity)
                        branch, is_new = "new_user", True
                    except ConstraintViolation as exc:
                        user, branch, is_new = self._winning_link(identity, exc), "existing_link", False
        logger.info(
            "oauth_account_resolved",
            provider=identity.provider.value,
            user_id=user.id,
            branch=branch,
        )
        return OAuthResolution(user=user, is_new_user=is_new, branch=branch)

    async def _provider_profile(
        self,
        provider: str,
        state: str,
        profile: Optional[dict],
        code: Optional[str],
    ) -> dict:
        stored = await self.consume_state(provider, state)
        if profile is not None:
            return profile
        if not code:
            raise ValidationError("provider profile or authorization code required")
        return await self.exchange_code(provider, code, stored.redirect_uri)

    async def callback(
        self,
        provider: str,
        state: str,
        *,
        profile: Optional[dict] = None,
        code: Optional[str] = None,
    ) -> OAuthResolution:
        """Consume ``state`` and resolve the account behind it.

        HTTP callers pass the authorization ``code``; ``profile`` is only for
        server-side callers that already fetched it from the provider.
        """
        profile = await self._provider_profile(provider, state, profile, code)
        return await self.resolve_account(provider, profile)

    async def link_callback(
        self,
        user_id: int,
        provider: str,
        state: str,
        *,
        profile: Optional[dict] = None,
        code: Optional[str] = None,
    ) -> OAuthAccount:
        """Like :meth:`callback`, but attaches the identity to ``user_id``."""
        profile = await self._provider_profile(provider, state, profile, code)
        return await self.link_account(user_id, provider, profile)

    async def exchange_code(self, provider: str, code: str, redirect_uri: Optional[str] = None) -> dict:
        """Trade an authorization code for the provider profile.

        The returned dict is the raw profile with ``access_token`` and
        ``refresh_token`` merged in, ready for :meth:`resolve_account`.
        """
        parsed = parse_provider(provider)
        client_id, client_secret = self.settings.oauth_client(parsed.value)
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not client_id or not client_secret or not callback_uri:
            logger.error("oauth_not_configured", provider=parsed.value)
            raise ValidationError(f"OAuth provider {parsed.value} is not configured")
        config = OAUTH_PROVIDERS[parsed]
        try:
            async with self._http_client_factory(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": callback_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
                if not access_token:
                    raise ServiceError(
                        "provider returned no access token", status_code=502, error_code="upstream_error"
                    )
                headers = {"Authorization": f"Bearer {access_token}"}
                if parsed is OAuthProvider.GITHUB:
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                profile = userinfo_response.json()
                if not isinstance(profile, dict):
                    raise ServiceError(
                        "provider returned a malformed profile",
                        status_code=502,
                        error_code="upstream_error",
                    )
                if parsed is OAuthProvider.GITHUB and not profile.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=headers
                    )
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        profile["email"] = next(
                            (
                                e.get("email")
                                for e in (emails if isinstance(emails, list) else [])
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=parsed.value,
                status_code=exc.response.status_code,
            )
            raise ServiceError(
                "OAuth code exchange failed", status_code=502, error_code="upstream_error"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=parsed.value, error=str(exc))
            raise ServiceError(
                "OAuth code exchange failed", status_code=502, error_code="upstream_error"
            ) from exc
        profile["access_token"] = access_token
        profile["refresh_token"] = token_result.get("refresh_token")
        logger.info("oauth_exchange_success", provider=parsed.value)
        return profile

    async def link_account(self, user_id: int, provider: str, profile: dict) -> OAuthAccount:
        """Attach a provider identity to an already signed-in user."""
        identity = normalize_profile(parse_provider(provider), profile)
        with persistence_guard("oauth link"):
            existing = self.store.get_oauth_account(identity.provider.value, identity.provider_id)
            if existing and existing.user_id != user_id:
                raise ConflictError("this account is linked to another user")
            if existing:
                self.store.update_oauth_account(
                    identity.provider.value,
                    identity.provider_id,
                    provider_email=identity.email,
                    provider_name=identity.name,
                    access_token=identity.access_token,
                    refresh_token=identity.refresh_token,
                )
            else:
                try:
                    self._link(user_id, identity)
                except ConstraintViolation as exc:
                    raise ConflictError("this account is linked to another user") from exc
            account = self.store.get_oauth_account(identity.provider.value, identity.provider_id)
        logger.info("oauth_account_linked", provider=identity.provider.value, user_id=user_id)
        return account

    async def unlink_account(self, user_id: int, provider: str) -> bool:
        parsed = parse_provider(provider)
        with persistence_guard("oauth unlink"):
            removed = self.store.delete_oauth_account(user_id, parsed.value)
        if removed:
            logger.info("oauth_account_unlinked", provider=parsed.value, user_id=user_id)
        return removed

    async def list_accounts(self, user_id: int) -> List[OAuthAccount]:
        with persistence_guard("oauth account list"):
            return self.store.list_oauth_accounts(user_id)
