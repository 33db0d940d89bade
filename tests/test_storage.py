"""Tests for the durable and ephemeral storage backends.

PostgresStore and RedisCache are exercised against small in-process stand-ins
for the driver objects so no database or Redis server is needed.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from civicauth.storage.errors import ConstraintViolation, StorageUnavailable
from civicauth.storage.memory import MemoryStore
from civicauth.storage.models import (
    BlacklistEntry,
    OAuthAccount,
    PasskeyCredential,
    RefreshTokenRecord,
)
from civicauth.storage.postgres import PostgresStore
from civicauth.storage.redis_cache import RedisCache

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _refresh(token_hash, user_id=1, *, expires_in=timedelta(days=7)):
    return RefreshTokenRecord(
        token_hash=token_hash,
        jti=f"jti-{token_hash}",
        user_id=user_id,
        issued_at=NOW,
        expires_at=NOW + expires_in,
    )


class TestMemoryStoreUsers:
    """Tests for user records in the in-memory store."""

    def test_email_is_normalized_and_unique(self):
        store = MemoryStore()
        user = store.create_user(email="  Ada@Example.ORG ")
        assert user.email == "ada@example.org"

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user(email="ada@example.org")
        assert exc_info.value.detail == {"field": "email"}

    def test_username_unique_case_insensitive(self):
        store = MemoryStore()
        store.create_user(username="Grace")
        with pytest.raises(ConstraintViolation):
            store.create_user(username="grace")

    @pytest.mark.parametrize(
        "identifier",
        ["ada@example.org", "ADA@example.org", "ada", "+15550100", "0xabc123"],
    )
    def test_identifier_lookup(self, identifier):
        store = MemoryStore()
        user = store.create_user(
            email="ada@example.org", username="ada", phone="+15550100", wallet_address="0xABC123"
        )
        found = store.get_user_by_identifier(identifier)
        assert found is not None
        assert found.id == user.id

    def test_identifier_lookup_misses(self):
        store = MemoryStore()
        store.create_user(email="ada@example.org")
        assert store.get_user_by_identifier("") is None
        assert store.get_user_by_identifier("nobody") is None

    def test_returned_users_are_copies(self):
        store = MemoryStore()
        user = store.create_user(email="ada@example.org")
        user.email = "mutated@example.org"
        assert store.get_user(user.id).email == "ada@example.org"

    def test_mfa_step_only_moves_forward(self):
        store = MemoryStore()
        user = store.create_user(email="ada@example.org")
        assert store.advance_mfa_step(user.id, 100) is True
        assert store.advance_mfa_step(user.id, 100) is False
        assert store.advance_mfa_step(user.id, 99) is False
        assert store.advance_mfa_step(user.id, 101) is True
        assert store.advance_mfa_step(999, 1) is False

    def test_new_secret_resets_last_step(self):
        store = MemoryStore()
        user = store.create_user(email="ada@example.org")
        store.advance_mfa_step(user.id, 100)
        store.set_mfa_secret(user.id, "ciphertext")
        assert store.get_user(user.id).mfa_last_step is None

    def test_backup_code_removed_once(self):
        store = MemoryStore()
        user = store.create_user(email="ada@example.org")
        store.set_backup_codes(user.id, ["a", "b"])
        assert store.remove_backup_code(user.id, "a") is True
        assert store.remove_backup_code(user.id, "a") is False
        assert store.get_user(user.id).backup_code_hashes == ["b"]


class TestMemoryStoreTokens:
    """Tests for refresh-token rows and the deny list."""

    def test_rotate_revokes_old_and_inserts_new(self):
        store = MemoryStore()
        store.insert_refresh_token(_refresh("old"))

        assert store.rotate_refresh_token("old", 1, _refresh("new"), NOW) is True
        assert store.get_refresh_token("old").revoked is True
        assert store.get_refresh_token("new").revoked is False

    def test_rotate_is_single_use(self):
        store = MemoryStore()
        store.insert_refresh_token(_refresh("old"))
        assert store.rotate_refresh_token("old", 1, _refresh("new-1"), NOW) is True
        assert store.rotate_refresh_token("old", 1, _refresh("new-2"), NOW) is False
        assert store.get_refresh_token("new-2") is None

    def test_rotate_rejects_wrong_owner_or_expired(self):
        store = MemoryStore()
        store.insert_refresh_token(_refresh("mine", user_id=1))
        store.insert_refresh_token(_refresh("stale", expires_in=timedelta(seconds=-1)))

        assert store.rotate_refresh_token("mine", 2, _refresh("x"), NOW) is False
        assert store.rotate_refresh_token("stale", 1, _refresh("y"), NOW) is False
        assert store.rotate_refresh_token("missing", 1, _refresh("z"), NOW) is False

    def test_duplicate_refresh_row_conflicts(self):
        store = MemoryStore()
        store.insert_refresh_token(_refresh("dup"))
        with pytest.raises(ConstraintViolation):
            store.insert_refresh_token(_refresh("dup"))

    def test_revoke_user_refresh_tokens_counts_live_rows(self):
        store = MemoryStore()
        store.insert_refresh_token(_refresh("a"))
        store.insert_refresh_token(_refresh("b"))
        store.insert_refresh_token(_refresh("c", user_id=2))
        store.revoke_refresh_token("a", 1, NOW)

        assert store.revoke_user_refresh_tokens(1, NOW) == 1
        assert store.get_refresh_token("c").revoked is False

    def test_blacklist_keeps_later_expiry(self):
        store = MemoryStore()
        later = NOW + timedelta(hours=2)
        store.add_blacklist_entry(BlacklistEntry("digest", 1, "logout", later))
        store.add_blacklist_entry(BlacklistEntry("digest", 1, "logout", NOW + timedelta(minutes=1)))

        assert store.is_token_blacklisted("digest", NOW + timedelta(hours=1)) is True
        assert store.is_token_blacklisted("digest", later) is False

    def test_delete_expired_blacklist_entries(self):
        store = MemoryStore()
        store.add_blacklist_entry(BlacklistEntry("gone", 1, "logout", NOW))
        store.add_blacklist_entry(BlacklistEntry("kept", 1, "logout", NOW + timedelta(hours=1)))
        assert store.delete_expired_blacklist_entries(NOW) == 1
        assert store.is_token_blacklisted("kept", NOW) is True


class TestMemoryStorePasskeys:
    """Tests for passkey credential rows."""

    def test_counter_strictly_increasing(self):
        store = MemoryStore()
        store.create_passkey(PasskeyCredential("cred", 1, "pk", counter=5))

        assert store.advance_passkey_counter("cred", 5, NOW) is False
        assert store.advance_passkey_counter("cred", 4, NOW) is False
        assert store.advance_passkey_counter("cred", 6, NOW) is True
        assert store.get_passkey("cred").last_used_at == NOW

    def test_duplicate_credential_conflicts(self):
        store = MemoryStore()
        store.create_passkey(PasskeyCredential("cred", 1, "pk"))
        with pytest.raises(ConstraintViolation):
            store.create_passkey(PasskeyCredential("cred", 2, "pk"))

    def test_delete_and_rename_scoped_to_owner(self):
        store = MemoryStore()
        store.create_passkey(PasskeyCredential("cred", 1, "pk"))

        assert store.rename_passkey(2, "cred", "stolen") is False
        assert store.delete_passkey(2, "cred") is False
        assert store.rename_passkey(1, "cred", "Laptop") is True
        assert store.get_passkey("cred").device_name == "Laptop"
        assert store.delete_passkey(1, "cred") is True
        assert store.get_passkey("cred") is None


class TestMemoryStoreOAuth:
    """Tests for linked identities."""

    def test_create_oauth_user_links_new_user(self):
        store = MemoryStore()
        user = store.create_oauth_user(
            OAuthAccount(0, "github", "99"), email="o@x.io", username="github_99"
        )
        assert store.get_oauth_account("github", "99").user_id == user.id
        assert store.get_user_by_email("o@x.io").id == user.id

    def test_create_oauth_user_writes_nothing_when_identity_taken(self):
        store = MemoryStore()
        store.create_oauth_account(OAuthAccount(5, "github", "99"))

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_oauth_user(
                OAuthAccount(0, "github", "99"), email="o@x.io", username="github_99"
            )
        assert exc_info.value.detail == {"field": "provider_id"}
        assert store.users == {}

    def test_create_oauth_user_writes_nothing_when_email_taken(self):
        store = MemoryStore()
        store.create_user(email="o@x.io")

        with pytest.raises(ConstraintViolation):
            store.create_oauth_user(OAuthAccount(0, "github", "99"), email="o@x.io")
        assert store.get_oauth_account("github", "99") is None


class _Cursor:
    def __init__(self, rowcount=0, row=None):
        self.rowcount = rowcount
        self._row = row

    def fetchone(self):
        return self._row


class _Connection:
    """Records statements and replays scripted cursors in order."""

    def __init__(self, results=None):
        self.statements = []
        self._results = list(results or [])
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self._results:
            return self._results.pop(0)
        return _Cursor()

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class _Pool:
    def __init__(self, conn=None, error=None):
        self.conn = conn or _Connection()
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


class _Logger:
    def __init__(self):
        self.events = []

    def error(self, event, **kwargs):
        self.events.append((event, kwargs))


def _postgres(pool):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://localhost/civicauth"
    store.pool = pool
    store.logger = _Logger()
    return store


class TestPostgresStore:
    """Tests for SQL issued by the Postgres store."""

    def test_rotate_inserts_inside_transaction(self):
        conn = _Connection([_Cursor(rowcount=1), _Cursor(rowcount=1)])
        store = _postgres(_Pool(conn))

        assert store.rotate_refresh_token("old", 1, _refresh("new"), NOW) is True
        assert conn.transactions == 1
        update_sql, update_params = conn.statements[0]
        assert update_sql.startswith("UPDATE refresh_token")
        assert "NOT revoked" in update_sql
        assert update_params == (NOW, NOW, "old", 1, NOW)
        assert conn.statements[1][0].startswith("INSERT INTO refresh_token")

    def test_rotate_skips_insert_when_nothing_updated(self):
        conn = _Connection([_Cursor(rowcount=0)])
        store = _postgres(_Pool(conn))

        assert store.rotate_refresh_token("old", 1, _refresh("new"), NOW) is False
        assert len(conn.statements) == 1

    def test_create_user_maps_row(self):
        row = {
            "id": 7,
            "email": "ada@example.org",
            "username": None,
            "email_verified": False,
            "is_active": True,
            "mfa_enabled": False,
            "backup_code_hashes": None,
            "created_at": NOW,
        }
        conn = _Connection([_Cursor(row=row)])
        store = _postgres(_Pool(conn))

        user = store.create_user(email=" Ada@Example.org ")
        assert user.id == 7
        assert user.backup_code_hashes == []
        assert conn.statements[0][1][0] == "ada@example.org"

    def test_create_oauth_user_inside_transaction(self):
        row = {"id": 11, "email": "o@x.io", "username": "github_99", "created_at": NOW}
        conn = _Connection([_Cursor(row=row), _Cursor(rowcount=1)])
        store = _postgres(_Pool(conn))

        user = store.create_oauth_user(
            OAuthAccount(0, "github", "99"), email="O@x.io", username="github_99"
        )
        assert user.id == 11
        assert conn.transactions == 1
        assert conn.statements[0][0].startswith("INSERT INTO auth_user")
        assert conn.statements[1][0].startswith("INSERT INTO oauth_account")
        assert conn.statements[1][1][:3] == ("github", "99", 11)

    def test_blacklist_upsert_keeps_greatest_expiry(self):
        conn = _Connection()
        store = _postgres(_Pool(conn))
        store.add_blacklist_entry(BlacklistEntry("digest", 1, "logout", NOW))
        assert "GREATEST" in conn.statements[0][0]

    def test_blacklist_lookup(self):
        conn = _Connection([_Cursor(row={"hit": 1}), _Cursor(row=None)])
        store = _postgres(_Pool(conn))
        assert store.is_token_blacklisted("digest", NOW) is True
        assert store.is_token_blacklisted("other", NOW) is False

    def test_delete_expired_returns_rowcount(self):
        conn = _Connection([_Cursor(rowcount=3)])
        store = _postgres(_Pool(conn))
        assert store.delete_expired_blacklist_entries(NOW) == 3

    def test_unique_violation_maps_to_constraint(self):
        store = _postgres(_Pool(error=errors.UniqueViolation("duplicate key")))
        with pytest.raises(ConstraintViolation):
            store.insert_refresh_token(_refresh("dup"))

    def test_driver_failure_maps_to_unavailable(self):
        store = _postgres(_Pool(error=errors.OperationalError("connection refused")))
        with pytest.raises(StorageUnavailable):
            store.is_token_blacklisted("digest", NOW)
        assert store.logger.events[0][0] == "postgres_operation_failed"


class _Pipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def sadd(self, key, member):
        self.calls.append(("sadd", key, member))

    def expire(self, key, ttl):
        self.calls.append(("expire", key, ttl))

    async def execute(self):
        for call in self.calls:
            if call[0] == "sadd":
                self.client.sets.setdefault(call[1], set()).add(call[2])
            else:
                self.client.expiries[call[1]] = call[2]


class _RedisClient:
    def __init__(self):
        self.values = {}
        self.expiries = {}
        self.sets = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiries[key] = ex

    async def getdel(self, key):
        return self.values.pop(key, None)

    async def delete(self, key):
        return 1 if self.values.pop(key, None) is not None else 0

    def pipeline(self):
        return _Pipeline(self)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def srem(self, key, *members):
        self.sets.get(key, set()).difference_update(members)


def _redis_cache(client):
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://localhost:6379/0"
    cache.prefix = "civicauth"
    cache.client = client
    return cache


class TestRedisCache:
    """Tests for the Redis-backed TTL store."""

    async def test_set_get_pop(self):
        client = _RedisClient()
        cache = _redis_cache(client)

        await cache.set("oauth_state:abc", {"provider": "google"}, 600)
        assert client.expiries["civicauth:oauth_state:abc"] == 600
        assert await cache.get("oauth_state:abc") == {"provider": "google"}
        assert await cache.pop("oauth_state:abc") == {"provider": "google"}
        assert await cache.pop("oauth_state:abc") is None

    async def test_ttl_floor_is_one_second(self):
        client = _RedisClient()
        cache = _redis_cache(client)
        await cache.set("k", {"v": 1}, 0)
        assert client.expiries["civicauth:k"] == 1

    async def test_corrupt_value_reads_as_missing(self):
        client = _RedisClient()
        client.values["civicauth:bad"] = "{not json"
        client.values["civicauth:list"] = "[1, 2]"
        cache = _redis_cache(client)
        assert await cache.get("bad") is None
        assert await cache.get("list") is None

    async def test_index_membership(self):
        client = _RedisClient()
        cache = _redis_cache(client)

        await cache.index_add("user_sessions:1", "s1", 60)
        await cache.index_add("user_sessions:1", "s2", 60)
        await cache.index_remove("user_sessions:1", "s1")

        assert await cache.index_members("user_sessions:1") == {"s2"}
        assert "civicauth:index:user_sessions:1" in client.sets

    async def test_delete(self):
        client = _RedisClient()
        cache = _redis_cache(client)
        await cache.set("k", {"v": 1}, 60)
        assert await cache.delete("k") is True
        assert await cache.delete("k") is False
