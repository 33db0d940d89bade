"""Tests for per-device session tracking."""

import pytest

from civicauth.service.revocation import RevocationLedger
from civicauth.service.sessions import SessionTracker, extract_device_info
from civicauth.service.tokens import TokenEngine, token_digest

IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15"
WINDOWS_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/120.0"
ANDROID_UA = "Mozilla/5.0 (Linux; Android 14; Pixel 8) Mobile Safari/537.36"


@pytest.fixture
def engine(store, signing, settings, clock):
    return TokenEngine(store, signing, settings, clock=clock)


@pytest.fixture
def ledger(store, engine, clock):
    return RevocationLedger(store, engine, clock=clock)


@pytest.fixture
def tracker(cache, ledger, settings, clock):
    return SessionTracker(cache, ledger, settings, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user(email="sessions@example.org")


async def _login(tracker, engine, user_id, user_agent=WINDOWS_UA, ip="198.51.100.7"):
    pair = await engine.issue_token_pair(user_id)
    session_id = await tracker.create_session(
        user_id, pair.access_token, pair.refresh_token, user_agent=user_agent, ip_address=ip
    )
    return session_id, pair


class TestDeviceInfo:
    """Tests for the user-agent device label."""

    @pytest.mark.parametrize(
        "user_agent,expected",
        [
            (IPHONE_UA, "iPhone"),
            ("Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X)", "iPad"),
            (ANDROID_UA, "Android Mobile"),
            (WINDOWS_UA, "Windows PC"),
            ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "Mac"),
            ("Mozilla/5.0 (X11; Linux x86_64) Gecko/20100101", "Linux PC"),
            ("SomeBot Firefox/118.0", "Firefox Browser"),
            ("curl/8.4.0", "Unknown Device"),
            (None, "Unknown Device"),
            ("", "Unknown Device"),
        ],
    )
    def test_extract_device_info(self, user_agent, expected):
        assert extract_device_info(user_agent) == expected


class TestSessionLifecycle:
    """Tests for creating, listing and revoking sessions."""

    async def test_create_and_get(self, tracker, engine, user, clock):
        session_id, pair = await _login(tracker, engine, user.id, IPHONE_UA)
        session = await tracker.get_session(session_id)

        assert session.user_id == user.id
        assert session.access_token == pair.access_token
        assert session.device_info == "iPhone"
        assert session.ip_address == "198.51.100.7"
        assert session.expires_at == clock() + tracker.session_ttl
        assert len(session_id) == 64

    async def test_unknown_session_is_none(self, tracker):
        assert await tracker.get_session("missing") is None

    async def test_list_sessions_newest_activity_first(self, tracker, engine, user, clock):
        first, _ = await _login(tracker, engine, user.id, IPHONE_UA)
        clock.advance(minutes=1)
        second, _ = await _login(tracker, engine, user.id, WINDOWS_UA)
        clock.advance(minutes=1)
        await tracker.touch(first)

        listed = [s.id for s in await tracker.list_sessions(user.id)]
        assert listed == [first, second]

    async def test_sessions_are_scoped_to_user(self, tracker, engine, store, user):
        other = store.create_user(email="someone@example.org")
        await _login(tracker, engine, user.id)
        await _login(tracker, engine, other.id)
        assert len(await tracker.list_sessions(user.id)) == 1

    async def test_expired_session_disappears(self, tracker, engine, user, clock):
        session_id, _ = await _login(tracker, engine, user.id)
        clock.advance(days=7, seconds=1)
        assert await tracker.get_session(session_id) is None
        assert await tracker.list_sessions(user.id) == []

    async def test_touch_does_not_extend_expiry(self, tracker, engine, user, clock):
        session_id, _ = await _login(tracker, engine, user.id)
        original = await tracker.get_session(session_id)
        clock.advance(hours=3)
        assert await tracker.touch(session_id) is True
        touched = await tracker.get_session(session_id)
        assert touched.last_activity == clock()
        assert touched.expires_at == original.expires_at

    async def test_find_by_refresh_token(self, tracker, engine, user):
        session_id, pair = await _login(tracker, engine, user.id)
        await _login(tracker, engine, user.id)
        found = await tracker.find_session_by_refresh_token(user.id, pair.refresh_token)
        assert found.id == session_id
        assert await tracker.find_session_by_refresh_token(user.id, "nope") is None

    async def test_update_tokens(self, tracker, engine, user):
        session_id, _ = await _login(tracker, engine, user.id)
        assert await tracker.update_tokens(session_id, "new-access", "new-refresh") is True
        session = await tracker.get_session(session_id)
        assert (session.access_token, session.refresh_token) == ("new-access", "new-refresh")
        assert await tracker.update_tokens("missing", "a", "b") is False

    async def test_revoke_session_blacklists_both_tokens(self, tracker, engine, ledger, store, user):
        session_id, pair = await _login(tracker, engine, user.id)

        assert await tracker.revoke_session(session_id) is True
        assert await tracker.get_session(session_id) is None
        assert await ledger.is_blacklisted(pair.access_token) is True
        assert await ledger.is_blacklisted(pair.refresh_token) is True
        assert store.get_refresh_token(token_digest(pair.refresh_token)).revoked is True
        assert await tracker.revoke_session(session_id) is False

    async def test_revoke_all_except_current(self, tracker, engine, ledger, user):
        keep, kept_pair = await _login(tracker, engine, user.id, IPHONE_UA)
        await _login(tracker, engine, user.id, WINDOWS_UA)
        await _login(tracker, engine, user.id, ANDROID_UA)

        assert await tracker.revoke_all_sessions(user.id, except_session_id=keep) == 2
        assert [s.id for s in await tracker.list_sessions(user.id)] == [keep]
        assert await ledger.is_blacklisted(kept_pair.access_token) is False

    async def test_revoke_all(self, tracker, engine, user):
        await _login(tracker, engine, user.id)
        await _login(tracker, engine, user.id)
        assert await tracker.revoke_all_sessions(user.id) == 2
        assert await tracker.list_sessions(user.id) == []


class TestSessionStats:
    """Tests for the per-user session summary."""

    async def test_stats_counts_active_and_devices(self, tracker, engine, user, clock):
        await _login(tracker, engine, user.id, IPHONE_UA)
        await _login(tracker, engine, user.id, IPHONE_UA)
        clock.advance(minutes=45)
        latest, _ = await _login(tracker, engine, user.id, WINDOWS_UA)

        stats = await tracker.session_stats(user.id)
        assert stats.total == 3
        assert stats.active == 1
        assert sorted(stats.devices) == ["Windows PC", "iPhone"]
        assert stats.last_activity == clock()

    async def test_stats_for_user_without_sessions(self, tracker, user):
        stats = await tracker.session_stats(user.id)
        assert stats.total == 0
        assert stats.active == 0
        assert stats.devices == []
        assert stats.last_activity is None
