from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from civicauth.storage.errors import ConstraintViolation
from civicauth.storage.models import (
    BlacklistEntry,
    OAuthAccount,
    PasskeyCredential,
    RefreshTokenRecord,
    User,
    utcnow,
)


def _norm(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if value else None


class MemoryStore:
    """In-process durable store used by tests and single-node development.

    Records are copied on the way in and out so callers never mutate shared
    state without going through a store method.
    """

    def __init__(self) -> None:
        self.users: Dict[int, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        self.passkeys: Dict[str, PasskeyCredential] = {}
        self.oauth_accounts: Dict[tuple[str, str], OAuthAccount] = {}
        self._user_ids = itertools.count(1)
        # RLock so compound operations can call the single-row helpers
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- users ---------------------------------------------------------------

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
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if email and _norm(existing.email) == _norm(email):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if username and _norm(existing.username) == _norm(username):
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=next(self._user_ids),
                email=email.strip().lower() if email else None,
                username=username,
                phone=phone,
                wallet_address=wallet_address,
                password_hash=password_hash,
                display_name=display_name,
                avatar_url=avatar_url,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        target = _norm(email)
        with self._data_lock:
            for user in self.users.values():
                if target and _norm(user.email) == target:
                    return replace(user)
        return None

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Find a user by email, username, phone, or wallet address."""
        target = _norm(identifier)
        if not target:
            return None
        with self._data_lock:
            for user in self.users.values():
                if target in {
                    _norm(user.email),
                    _norm(user.username),
                    _norm(user.phone),
                    _norm(user.wallet_address),
                }:
                    return replace(user)
        return None

    def mark_email_verified(self, user_id: int) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.email_verified = True

    def set_mfa_secret(self, user_id: int, encrypted_secret: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.mfa_secret = encrypted_secret
            user.mfa_enabled = False
            user.mfa_last_step = None

    def set_mfa_enabled(self, user_id: int, enabled: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.mfa_enabled = enabled

    def clear_mfa(self, user_id: int) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.mfa_secret = None
            user.mfa_enabled = False
            user.mfa_last_step = None
            user.backup_code_hashes = []

    def advance_mfa_step(self, user_id: int, step: int) -> bool:
        """Record ``step`` as the last accepted TOTP step if it is newer."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            if user.mfa_last_step is not None and step <= user.mfa_last_step:
                return False
            user.mfa_last_step = step
            return True

    def set_backup_codes(self, user_id: int, code_hashes: List[str]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.backup_code_hashes = list(code_hashes)

    def remove_backup_code(self, user_id: int, code_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code_hash not in user.backup_code_hashes:
                return False
            user.backup_code_hashes.remove(code_hash)
            return True

    # -- refresh tokens ------------------------------------------------------

    def insert_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"jti": record.jti})
            self.refresh_tokens[record.token_hash] = replace(record)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def touch_refresh_token(self, token_hash: str, when: datetime) -> None:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record:
                record.last_used_at = when

    def revoke_refresh_token(self, token_hash: str, user_id: int, when: datetime) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.revoked or record.user_id != user_id:
                return False
            record.revoked = True
            record.revoked_at = when
            return True

    def revoke_user_refresh_tokens(self, user_id: int, when: datetime) -> int:
        count = 0
        with self._data_lock:
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.revoked:
                    record.revoked = True
                    record.revoked_at = when
                    count += 1
        return count

    def rotate_refresh_token(
        self, old_hash: str, user_id: int, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        """Revoke ``old_hash`` and insert ``new_record`` as one step.

        Nothing is written unless the old row exists, is unrevoked, unexpired,
        and belongs to ``user_id``.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_hash)
            if (
                not old
                or old.revoked
                or old.user_id != user_id
                or old.expires_at <= now
            ):
                return False
            if new_record.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", {"jti": new_record.jti}
                )
            old.revoked = True
            old.revoked_at = now
            old.last_used_at = now
            self.refresh_tokens[new_record.token_hash] = replace(new_record)
            return True

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                key for key, record in self.refresh_tokens.items() if record.expires_at <= now
            ]
            for key in expired:
                del self.refresh_tokens[key]
        return len(expired)

    # -- blacklist -----------------------------------------------------------

    def add_blacklist_entry(self, entry: BlacklistEntry) -> None:
        with self._data_lock:
            current = self.blacklist.get(entry.token_hash)
            # keep the later expiry when a token is revoked twice
            if current and current.expires_at >= entry.expires_at:
                return
            self.blacklist[entry.token_hash] = replace(entry)

    def is_token_blacklisted(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            entry = self.blacklist.get(token_hash)
            return bool(entry and entry.expires_at > now)

    def delete_expired_blacklist_entries(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                key for key, entry in self.blacklist.items() if entry.expires_at <= now
            ]
            for key in expired:
                del self.blacklist[key]
        return len(expired)

    # -- passkeys ------------------------------------------------------------

    def create_passkey(self, credential: PasskeyCredential) -> None:
        with self._data_lock:
            if credential.credential_id in self.passkeys:
                raise ConstraintViolation(
                    "credential already registered",
                    {"credential_id": credential.credential_id},
                )
            self.passkeys[credential.credential_id] = replace(credential)

    def get_passkey(self, credential_id: str) -> Optional[PasskeyCredential]:
        with self._data_lock:
            credential = self.passkeys.get(credential_id)
            return replace(credential) if credential else None

    def list_passkeys(self, user_id: int) -> List[PasskeyCredential]:
        with self._data_lock:
            items = [replace(c) for c in self.passkeys.values() if c.user_id == user_id]
        return sorted(items, key=lambda c: c.created_at, reverse=True)

    def advance_passkey_counter(self, credential_id: str, counter: int, when: datetime) -> bool:
        """Store ``counter`` only if it is strictly greater than the stored one."""
        with self._data_lock:
            credential = self.passkeys.get(credential_id)
            if not credential or counter <= credential.counter:
                return False
            credential.counter = counter
            credential.last_used_at = when
            return True

    def delete_passkey(self, user_id: int, credential_id: str) -> bool:
        with self._data_lock:
            credential = self.passkeys.get(credential_id)
            if not credential or credential.user_id != user_id:
                return False
            del self.passkeys[credential_id]
            return True

    def rename_passkey(self, user_id: int, credential_id: str, device_name: str) -> bool:
        with self._data_lock:
            credential = self.passkeys.get(credential_id)
            if not credential or credential.user_id != user_id:
                return False
            credential.device_name = device_name
            return True

    # -- oauth accounts ------------------------------------------------------

    def get_oauth_account(self, provider: str, provider_id: str) -> Optional[OAuthAccount]:
        with self._data_lock:
            account = self.oauth_accounts.get((provider, provider_id))
            return replace(account) if account else None

    def create_oauth_account(self, account: OAuthAccount) -> None:
        key = (account.provider, account.provider_id)
        with self._data_lock:
            if key in self.oauth_accounts:
                raise ConstraintViolation(
                    "oauth identity already linked", {"field": "provider_id"}
                )
            self.oauth_accounts[key] = replace(account)

    def create_oauth_user(self, account: OAuthAccount, **user_fields) -> User:
        """Create a user and its first linked identity under one lock hold.

        Neither record is written if either constraint is violated.
        """
        key = (account.provider, account.provider_id)
        with self._data_lock:
            if key in self.oauth_accounts:
                raise ConstraintViolation(
                    "oauth identity already linked", {"field": "provider_id"}
                )
            user = self.create_user(**user_fields)
            self.oauth_accounts[key] = replace(account, user_id=user.id)
            return user

    def update_oauth_account(
        self,
        provider: str,
        provider_id: str,
        *,
        provider_email: Optional[str],
        provider_name: Optional[str],
        access_token: Optional[str],
        refresh_token: Optional[str],
    ) -> None:
        with self._data_lock:
            account = self.oauth_accounts.get((provider, provider_id))
            if not account:
                return
            account.provider_email = provider_email
            account.provider_name = provider_name
            account.access_token = access_token
            account.refresh_token = refresh_token
            account.updated_at = utcnow()

    def list_oauth_accounts(self, user_id: int) -> List[OAuthAccount]:
        with self._data_lock:
            return [replace(a) for a in self.oauth_accounts.values() if a.user_id == user_id]

    def delete_oauth_account(self, user_id: int, provider: str) -> bool:
        with self._data_lock:
            keys = [
                key
                for key, account in self.oauth_accounts.items()
                if account.user_id == user_id and account.provider == provider
            ]
            for key in keys:
                del self.oauth_accounts[key]
        return bool(keys)
