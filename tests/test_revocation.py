"""Tests for the revocation ledger."""

import pytest

from civicauth.service.errors import PersistenceError
from civicauth.service.revocation import RevocationLedger
from civicauth.service.tokens import TokenEngine, token_digest
from civicauth.storage.errors import StorageUnavailable


@pytest.fixture
def engine(store, signing, settings, clock):
    return TokenEngine(store, signing, settings, clock=clock)


@pytest.fixture
def ledger(store, engine, clock):
    return RevocationLedger(store, engine, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user(email="ledger@example.org")


def _unavailable(*args, **kwargs):
    raise StorageUnavailable("postgres", RuntimeError("connection refused"))


class TestBlacklist:
    """Tests for deny-listing tokens."""

    async def test_blacklisted_token_is_reported(self, ledger, engine, user):
        token = engine.issue_access_token(user.id)
        assert await ledger.is_blacklisted(token) is False
        await ledger.blacklist(token, user.id, "logout")
        assert await ledger.is_blacklisted(token) is True

    async def test_entry_stored_by_digest_with_token_expiry(self, ledger, engine, store, user, clock):
        token = engine.issue_access_token(user.id)
        await ledger.blacklist(token, user.id, "logout")
        entry = store.blacklist[token_digest(token)]
        assert entry.reason == "logout"
        assert entry.expires_at == clock() + engine.access_ttl

    async def test_undecodable_token_uses_refresh_lifetime(self, ledger, engine, store, user, clock):
        await ledger.blacklist("opaque-value", user.id, "manual")
        entry = store.blacklist[token_digest("opaque-value")]
        assert entry.expires_at == clock() + engine.refresh_ttl

    async def test_entry_lapses_with_the_token(self, ledger, engine, user, clock):
        token = engine.issue_access_token(user.id)
        await ledger.blacklist(token, user.id, "logout")
        clock.advance(minutes=16)
        assert await ledger.is_blacklisted(token) is False

    async def test_write_failure_raises(self, ledger, store, engine, user, monkeypatch):
        monkeypatch.setattr(store, "add_blacklist_entry", _unavailable)
        with pytest.raises(PersistenceError):
            await ledger.blacklist(engine.issue_access_token(user.id), user.id, "logout")

    async def test_read_failure_raises_instead_of_allowing(self, ledger, store, monkeypatch):
        monkeypatch.setattr(store, "is_token_blacklisted", _unavailable)
        with pytest.raises(PersistenceError):
            await ledger.is_blacklisted("anything")


class TestRefreshRevocation:
    """Tests for revoking refresh token rows."""

    async def test_revoke_single_refresh_token(self, ledger, engine, store, user):
        token = await engine.issue_refresh_token(user.id)
        assert await ledger.revoke_refresh_token(token, user.id) is True
        assert store.get_refresh_token(token_digest(token)).revoked is True
        assert await ledger.revoke_refresh_token(token, user.id) is False

    async def test_revoke_requires_owner(self, ledger, engine, store, user):
        other = store.create_user(email="other@example.org")
        token = await engine.issue_refresh_token(user.id)
        assert await ledger.revoke_refresh_token(token, other.id) is False

    async def test_revoke_all_for_user(self, ledger, engine, store, user):
        other = store.create_user(email="other@example.org")
        mine = [await engine.issue_refresh_token(user.id) for _ in range(3)]
        theirs = await engine.issue_refresh_token(other.id)

        assert await ledger.revoke_all_refresh_tokens(user.id) == 3
        assert all(store.get_refresh_token(token_digest(t)).revoked for t in mine)
        assert store.get_refresh_token(token_digest(theirs)).revoked is False


class TestCleanup:
    """Tests for the expiry sweep."""

    async def test_cleanup_removes_only_expired_rows(self, ledger, engine, store, user, clock):
        access = engine.issue_access_token(user.id)
        await ledger.blacklist(access, user.id, "logout")
        refresh = await engine.issue_refresh_token(user.id)

        assert await ledger.cleanup_expired() == 0

        clock.advance(minutes=20)
        assert await ledger.cleanup_expired() == 1
        assert token_digest(access) not in store.blacklist
        assert store.get_refresh_token(token_digest(refresh)) is not None

        clock.advance(days=8)
        assert await ledger.cleanup_expired() == 1
        assert store.get_refresh_token(token_digest(refresh)) is None

    async def test_cleanup_failure_raises(self, ledger, store, monkeypatch):
        monkeypatch.setattr(store, "delete_expired_blacklist_entries", _unavailable)
        with pytest.raises(PersistenceError):
            await ledger.cleanup_expired()
