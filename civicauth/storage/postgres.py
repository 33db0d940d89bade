from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from civicauth.logging import get_logger
from civicauth.storage.errors import ConstraintViolation, StorageUnavailable
from civicauth.storage.models import (
    BlacklistEntry,
    OAuthAccount,
    PasskeyCredential,
    RefreshTokenRecord,
    User,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT UNIQUE,
        username TEXT UNIQUE,
        phone TEXT,
        wallet_address TEXT,
        password_hash TEXT,
        display_name TEXT,
        avatar_url TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        mfa_secret TEXT,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_last_step BIGINT,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        jti TEXT NOT NULL,
        user_id BIGINT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        last_used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS token_blacklist (
        token_hash TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL,
        reason TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_blacklist_expires_idx ON token_blacklist (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS passkey_credential (
        credential_id TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        public_key TEXT NOT NULL,
        counter BIGINT NOT NULL DEFAULT 0,
        device_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_account (
        provider TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        user_id BIGINT NOT NULL REFERENCES auth_user(id) ON DELETE CASCADE,
        provider_email TEXT,
        provider_name TEXT,
        access_token TEXT,
        refresh_token TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (provider, provider_id)
    )
    """,
)

_USER_COLUMNS = (
    "id, email, username, phone, wallet_address, password_hash, display_name, "
    "avatar_url, email_verified, is_active, mfa_secret, mfa_enabled, mfa_last_step, "
    "backup_code_hashes, created_at"
)


def _user_from_row(row: dict[str, Any]) -> User:
    return User(
        id=int(row["id"]),
        email=row.get("email"),
        username=row.get("username"),
        phone=row.get("phone"),
        wallet_address=row.get("wallet_address"),
        password_hash=row.get("password_hash"),
        display_name=row.get("display_name"),
        avatar_url=row.get("avatar_url"),
        email_verified=bool(row.get("email_verified")),
        is_active=bool(row.get("is_active", True)),
        mfa_secret=row.get("mfa_secret"),
        mfa_enabled=bool(row.get("mfa_enabled")),
        mfa_last_step=row.get("mfa_last_step"),
        backup_code_hashes=list(row.get("backup_code_hashes") or []),
        created_at=row["created_at"],
    )


def _refresh_from_row(row: dict[str, Any]) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_hash=row["token_hash"],
        jti=row["jti"],
        user_id=int(row["user_id"]),
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        revoked=bool(row["revoked"]),
        revoked_at=row.get("revoked_at"),
        last_used_at=row.get("last_used_at"),
    )


def _passkey_from_row(row: dict[str, Any]) -> PasskeyCredential:
    return PasskeyCredential(
        credential_id=row["credential_id"],
        user_id=int(row["user_id"]),
        public_key=row["public_key"],
        counter=int(row["counter"]),
        device_name=row.get("device_name"),
        created_at=row["created_at"],
        last_used_at=row.get("last_used_at"),
    )


def _oauth_from_row(row: dict[str, Any]) -> OAuthAccount:
    return OAuthAccount(
        user_id=int(row["user_id"]),
        provider=row["provider"],
        provider_id=row["provider_id"],
        provider_email=row.get("provider_email"),
        provider_name=row.get("provider_name"),
        access_token=row.get("access_token"),
        refresh_token=row.get("refresh_token"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStore:
    """Postgres-backed durable store for users, refresh tokens, deny-list
    entries, passkey credentials, and linked OAuth identities."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Yield a pooled connection inside a transaction.

        Unique violations surface as ``ConstraintViolation``; every other driver
        or pool failure surfaces as ``StorageUnavailable``.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("unique constraint violated", {"error": str(exc)}) from exc
        except (psycopg.Error, PoolTimeout) as exc:
            self.logger.error("postgres_operation_failed", error=str(exc))
            raise StorageUnavailable("postgres", exc) from exc

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO auth_user (email, username, phone, wallet_address, password_hash,
                                       display_name, avatar_url, email_verified)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_USER_COLUMNS}
                """,
                (
                    email.strip().lower() if email else None,
                    username,
                    phone,
                    wallet_address,
                    password_hash,
                    display_name,
                    avatar_url,
                    email_verified,
                ),
            ).fetchone()
        return _user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM auth_user WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        value = identifier.strip()
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM auth_user
                WHERE lower(email) = lower(%s) OR lower(username) = lower(%s)
                   OR phone = %s OR lower(wallet_address) = lower(%s)
                ORDER BY id LIMIT 1
                """,
                (value, value, value, value),
            ).fetchone()
        return _user_from_row(row) if row else None

    def mark_email_verified(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE auth_user SET email_verified = TRUE WHERE id = %s", (user_id,))

    def set_mfa_secret(self, user_id: int, encrypted_secret: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_user
                SET mfa_secret = %s, mfa_enabled = FALSE, mfa_last_step = NULL
                WHERE id = %s
                """,
                (encrypted_secret, user_id),
            )

    def set_mfa_enabled(self, user_id: int, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_user SET mfa_enabled = %s WHERE id = %s", (enabled, user_id)
            )

    def clear_mfa(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_user
                SET mfa_secret = NULL, mfa_enabled = FALSE, mfa_last_step = NULL,
                    backup_code_hashes = '{}'
                WHERE id = %s
                """,
                (user_id,),
            )

    def advance_mfa_step(self, user_id: int, step: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_user SET mfa_last_step = %s
                WHERE id = %s AND (mfa_last_step IS NULL OR mfa_last_step < %s)
                """,
                (step, user_id, step),
            )
            return cur.rowcount == 1

    def set_backup_codes(self, user_id: int, code_hashes: List[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_user SET backup_code_hashes = %s WHERE id = %s",
                (list(code_hashes), user_id),
            )

    def remove_backup_code(self, user_id: int, code_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_user
                SET backup_code_hashes = array_remove(backup_code_hashes, %s)
                WHERE id = %s AND %s = ANY(backup_code_hashes)
                """,
                (code_hash, user_id, code_hash),
            )
            return cur.rowcount == 1

    # -- refresh tokens ------------------------------------------------------

    def insert_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_token (token_hash, jti, user_id, issued_at, expires_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    record.token_hash,
                    record.jti,
                    record.user_id,
                    record.issued_at,
                    record.expires_at,
                ),
            )

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def touch_refresh_token(self, token_hash: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET last_used_at = %s WHERE token_hash = %s",
                (when, token_hash),
            )

    def revoke_refresh_token(self, token_hash: str, user_id: int, when: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
                WHERE token_hash = %s AND user_id = %s AND NOT revoked
                """,
                (when, token_hash, user_id),
            )
            return cur.rowcount == 1

    def revoke_user_refresh_tokens(self, user_id: int, when: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND NOT revoked
                """,
                (when, user_id),
            )
            return cur.rowcount

    def rotate_refresh_token(
        self, old_hash: str, user_id: int, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        """Conditionally revoke the old row and insert the new one in one transaction."""
        with self._connect() as conn:
            with conn.transaction():
                cur = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, revoked_at = %s, last_used_at = %s
                    WHERE token_hash = %s AND user_id = %s AND NOT revoked
                      AND expires_at > %s
                    """,
                    (now, now, old_hash, user_id, now),
                )
                if cur.rowcount != 1:
                    return False
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, jti, user_id, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        new_record.token_hash,
                        new_record.jti,
                        new_record.user_id,
                        new_record.issued_at,
                        new_record.expires_at,
                    ),
                )
        return True

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # -- blacklist -----------------------------------------------------------

    def add_blacklist_entry(self, entry: BlacklistEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO token_blacklist (token_hash, user_id, reason, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (token_hash) DO UPDATE
                SET expires_at = GREATEST(token_blacklist.expires_at, EXCLUDED.expires_at)
                """,
                (
                    entry.token_hash,
                    entry.user_id,
                    entry.reason,
                    entry.expires_at,
                    entry.created_at,
                ),
            )

    def is_token_blacklisted(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS hit FROM token_blacklist
                WHERE token_hash = %s AND expires_at > %s
                """,
                (token_hash, now),
            ).fetchone()
        return row is not None

    def delete_expired_blacklist_entries(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM token_blacklist WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # -- passkeys ------------------------------------------------------------

    def create_passkey(self, credential: PasskeyCredential) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO passkey_credential
                    (credential_id, user_id, public_key, counter, device_name, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    credential.credential_id,
                    credential.user_id,
                    credential.public_key,
                    credential.counter,
                    credential.device_name,
                    credential.created_at,
                ),
            )

    def get_passkey(self, credential_id: str) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM passkey_credential WHERE credential_id = %s", (credential_id,)
            ).fetchone()
        return _passkey_from_row(row) if row else None

    def list_passkeys(self, user_id: int) -> List[PasskeyCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM passkey_credential WHERE user_id = %s
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [_passkey_from_row(row) for row in rows]

    def advance_passkey_counter(self, credential_id: str, counter: int, when: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE passkey_credential SET counter = %s, last_used_at = %s
                WHERE credential_id = %s AND counter < %s
                """,
                (counter, when, credential_id, counter),
            )
            return cur.rowcount == 1

    def delete_passkey(self, user_id: int, credential_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM passkey_credential WHERE credential_id = %s AND user_id = %s",
                (credential_id, user_id),
            )
            return cur.rowcount == 1

    def rename_passkey(self, user_id: int, credential_id: str, device_name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE passkey_credential SET device_name = %s
                WHERE credential_id = %s AND user_id = %s
                """,
                (device_name, credential_id, user_id),
            )
            return cur.rowcount == 1

    # -- oauth accounts ------------------------------------------------------

    def get_oauth_account(self, provider: str, provider_id: str) -> Optional[OAuthAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_account WHERE provider = %s AND provider_id = %s",
                (provider, provider_id),
            ).fetchone()
        return _oauth_from_row(row) if row else None

    def create_oauth_account(self, account: OAuthAccount) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_account (provider, provider_id, user_id, provider_email,
                                           provider_name, access_token, refresh_token)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    account.provider,
                    account.provider_id,
                    account.user_id,
                    account.provider_email,
                    account.provider_name,
                    account.access_token,
                    account.refresh_token,
                ),
            )

    def create_oauth_user(self, account: OAuthAccount, **user_fields) -> User:
        """Insert a user and its first linked identity in one transaction."""
        email = user_fields.get("email")
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO auth_user (email, username, display_name, avatar_url,
                                           email_verified)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        email.strip().lower() if email else None,
                        user_fields.get("username"),
                        user_fields.get("display_name"),
                        user_fields.get("avatar_url"),
                        user_fields.get("email_verified", False),
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO oauth_account (provider, provider_id, user_id, provider_email,
                                               provider_name, access_token, refresh_token)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.provider,
                        account.provider_id,
                        row["id"],
                        account.provider_email,
                        account.provider_name,
                        account.access_token,
                        account.refresh_token,
                    ),
                )
        return _user_from_row(row)

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
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE oauth_account
                SET provider_email = %s, provider_name = %s, access_token = %s,
                    refresh_token = %s, updated_at = now()
                WHERE provider = %s AND provider_id = %s
                """,
                (provider_email, provider_name, access_token, refresh_token, provider, provider_id),
            )

    def list_oauth_accounts(self, user_id: int) -> List[OAuthAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_account WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_oauth_from_row(row) for row in rows]

    def delete_oauth_account(self, user_id: int, provider: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_account WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            )
            return cur.rowcount > 0
