"""
Unit tests for social.graze.gatekeeper.auth

Covers the brute force tracker, session manager, premium decision cache and
the AuthorizationCache that composes them.
"""

import asyncio
import logging
import uuid

import pytest

from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner, TaskRejectedError
from social.graze.gatekeeper.auth.brute_force import BruteForceTracker
from social.graze.gatekeeper.auth.cache import AuthorizationCache, AuthorizedEntry
from social.graze.gatekeeper.auth.premium import PremiumStatusCache
from social.graze.gatekeeper.auth.sessions import SessionManager
from social.graze.gatekeeper.store.invalidation import RecordChanged
from tests.test_helpers import (
    SNIPER_PREMIUM_ID,
    STEVE_PREMIUM_ID,
    make_offline_record,
    make_premium_record,
)

ORIGIN = "203.0.113.7"
OTHER_ORIGIN = "198.51.100.9"


def entry_for(identity_id: uuid.UUID, nickname: str = "Steve", login_ip=ORIGIN):
    return AuthorizedEntry(identity_id=identity_id, nickname=nickname, login_ip=login_ip)


class TestBruteForceTracker:
    """Test suite for failed login tracking."""

    def test_blocks_after_max_attempts(self, clock, caplog):
        """The fifth failure inside the window blocks the origin."""
        tracker = BruteForceTracker(max_attempts=5, timeout_minutes=10, clock=clock)

        results = [tracker.register_failed_login(ORIGIN) for _ in range(4)]
        assert results == [False] * 4
        assert tracker.is_blocked(ORIGIN) is False

        with caplog.at_level(logging.WARNING, logger="social.graze.gatekeeper.security"):
            assert tracker.register_failed_login(ORIGIN) is True
        assert tracker.is_blocked(ORIGIN) is True
        assert tracker.is_blocked(OTHER_ORIGIN) is False
        assert "blocked" in caplog.text

    def test_block_expires_with_window(self, clock):
        """A block lifts once the window opened by the first failure ends."""
        tracker = BruteForceTracker(max_attempts=2, timeout_minutes=10, clock=clock)
        tracker.register_failed_login(ORIGIN)
        clock.advance(60)
        tracker.register_failed_login(ORIGIN)
        assert tracker.is_blocked(ORIGIN)

        clock.advance(9 * 60 - 1)
        assert tracker.is_blocked(ORIGIN)
        clock.advance(1)
        assert tracker.is_blocked(ORIGIN) is False
        assert len(tracker) == 0

    def test_reset_clears_attempts(self, clock):
        """A successful login resets the counter."""
        tracker = BruteForceTracker(max_attempts=2, clock=clock)
        tracker.register_failed_login(ORIGIN)
        tracker.reset_login_attempts(ORIGIN)
        assert tracker.register_failed_login(ORIGIN) is False

    def test_missing_origin_is_ignored(self, clock):
        """A None origin is never tracked or blocked."""
        tracker = BruteForceTracker(max_attempts=1, clock=clock)
        assert tracker.register_failed_login(None) is False
        assert tracker.is_blocked(None) is False
        assert len(tracker) == 0

    def test_cleanup_expired(self, clock):
        """Cleanup drops only expired windows."""
        tracker = BruteForceTracker(timeout_minutes=10, clock=clock)
        tracker.register_failed_login(ORIGIN)
        clock.advance(300)
        tracker.register_failed_login(OTHER_ORIGIN)
        clock.advance(300)
        assert tracker.cleanup_expired() == 1
        assert len(tracker) == 1


class TestSessionManager:
    """Test suite for authenticated sessions."""

    def test_active_session_for_same_name_and_origin(self, clock):
        """Names are compared ignoring case."""
        sessions = SessionManager(clock=clock)
        sessions.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        assert sessions.has_active_session(STEVE_PREMIUM_ID, "STEVE", ORIGIN)

    def test_name_mismatch_is_treated_as_hijack(self, clock, caplog):
        """A different nickname drops the session and logs a security warning."""
        sessions = SessionManager(clock=clock)
        sessions.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)

        with caplog.at_level(logging.WARNING, logger="social.graze.gatekeeper.security"):
            assert not sessions.has_active_session(STEVE_PREMIUM_ID, "Alex", ORIGIN)

        assert "hijack" in caplog.text
        assert sessions.get(STEVE_PREMIUM_ID) is None
        assert not sessions.has_active_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)

    def test_origin_mismatch_ends_session(self, clock):
        """A session presented from another origin is dropped."""
        sessions = SessionManager(clock=clock)
        sessions.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        assert not sessions.has_active_session(STEVE_PREMIUM_ID, "Steve", OTHER_ORIGIN)
        assert sessions.get(STEVE_PREMIUM_ID) is None

    def test_inactivity_timeout_is_sliding(self, clock):
        """Each successful check extends the session."""
        sessions = SessionManager(timeout_minutes=10, clock=clock)
        sessions.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)

        clock.advance(9 * 60)
        assert sessions.has_active_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        clock.advance(9 * 60)
        assert sessions.has_active_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        clock.advance(10 * 60)
        assert not sessions.has_active_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)

    def test_capacity_evicts_least_recent(self, clock):
        """The least recently active session makes room for a new one."""
        sessions = SessionManager(max_sessions=2, clock=clock)
        sessions.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        clock.advance(1)
        sessions.start_session(SNIPER_PREMIUM_ID, "Alex", ORIGIN)
        clock.advance(1)
        sessions.has_active_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)

        third = uuid.uuid4()
        sessions.start_session(third, "Herobrine", ORIGIN)

        assert sessions.get(SNIPER_PREMIUM_ID) is None
        assert sessions.get(STEVE_PREMIUM_ID) is not None
        assert len(sessions) == 2

    def test_end_session(self, clock):
        """Logout ends the session."""
        sessions = SessionManager(clock=clock)
        sessions.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        sessions.end_session(STEVE_PREMIUM_ID)
        assert not sessions.has_active_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)


class TestPremiumStatusCache:
    """Test suite for long-lived premium decisions."""

    def test_fresh_stale_expired(self, clock):
        """Entries are fresh, then stale past 80% of the TTL, then gone."""
        cache = PremiumStatusCache(ttl_hours=1, refresh_threshold=0.8, clock=clock)
        cache.add_premium_player("Notch", STEVE_PREMIUM_ID)

        entry = cache.get_premium_status("NOTCH")
        assert entry.is_premium and entry.premium_id == STEVE_PREMIUM_ID
        assert cache.is_stale(entry) is False

        clock.advance(0.8 * 3600 + 1)
        entry = cache.get_premium_status("notch")
        assert entry is not None
        assert cache.is_stale(entry) is True

        clock.advance(0.2 * 3600)
        assert cache.get_premium_status("notch") is None
        assert len(cache) == 0

    def test_offline_decision(self, clock):
        """A None id records an offline decision."""
        cache = PremiumStatusCache(clock=clock)
        cache.add_premium_player("Steve", None)
        entry = cache.get_premium_status("steve")
        assert entry.is_premium is False
        assert entry.premium_id is None

    def test_capacity_drops_oldest(self, clock):
        """A full cache drops its oldest decision."""
        cache = PremiumStatusCache(max_entries=2, clock=clock)
        cache.add_premium_player("a_one", None)
        clock.advance(1)
        cache.add_premium_player("a_two", None)
        clock.advance(1)
        cache.add_premium_player("a_three", None)
        assert cache.get_premium_status("a_one") is None
        assert len(cache) == 2


class TestAuthorizedEntry:
    """Test suite for building authorization entries from stored records."""

    def test_from_record_keeps_remote_identity(self):
        """The remote id on a premium record is carried into the entry."""
        record = make_premium_record("Notch", login_ip="10.0.0.5")

        entry = AuthorizedEntry.from_record(record, None, None, now=50.0)

        assert entry.identity_id == STEVE_PREMIUM_ID
        assert entry.remote_identity_id == STEVE_PREMIUM_ID
        assert entry.login_ip == "10.0.0.5"
        assert entry.is_premium is False
        assert entry.login_at == entry.cached_at == 50.0

    def test_from_record_prefers_login_data(self):
        """The presented premium id and origin win over the stored values."""
        record = make_offline_record("Steve", login_ip="10.0.0.5")

        entry = AuthorizedEntry.from_record(record, ORIGIN, SNIPER_PREMIUM_ID, now=50.0)

        assert entry.identity_id == record.identity_id
        assert entry.remote_identity_id == SNIPER_PREMIUM_ID
        assert entry.login_ip == ORIGIN
        assert entry.is_premium is True

    def test_from_record_ignores_unparsable_remote_id(self):
        """A stored remote id that is not a UUID is treated as absent."""
        record = make_offline_record("Steve", remote_identity_id="not-a-uuid")
        entry = AuthorizedEntry.from_record(record, ORIGIN, None, now=50.0)
        assert entry.remote_identity_id is None


class TestAuthorizationCache:
    """Test suite for the composed authorization cache."""

    def test_authorized_player_with_ttl(self, runner, clock):
        """Authorizations expire after the TTL."""
        cache = AuthorizationCache(runner, ttl_minutes=60, clock=clock)
        cache.add_authorized_player(STEVE_PREMIUM_ID, entry_for(STEVE_PREMIUM_ID))

        assert cache.is_player_authorized(STEVE_PREMIUM_ID, ORIGIN)
        clock.advance(3600)
        assert not cache.is_player_authorized(STEVE_PREMIUM_ID, ORIGIN)
        assert cache.stats()["authorized"] == 0

    def test_ip_matching_is_permissive_without_data(self, runner, clock):
        """Missing address data on either side does not block authorization."""
        cache = AuthorizationCache(runner, clock=clock)
        cache.add_authorized_player(STEVE_PREMIUM_ID, entry_for(STEVE_PREMIUM_ID))
        cache.add_authorized_player(
            SNIPER_PREMIUM_ID, entry_for(SNIPER_PREMIUM_ID, "Alex", login_ip=None)
        )

        assert not cache.is_player_authorized(STEVE_PREMIUM_ID, OTHER_ORIGIN)
        assert cache.is_player_authorized(STEVE_PREMIUM_ID, None)
        assert cache.is_player_authorized(SNIPER_PREMIUM_ID, OTHER_ORIGIN)

    def test_lru_eviction(self, runner, clock):
        """The least recently accessed authorization is evicted at capacity."""
        cache = AuthorizationCache(runner, max_size=2, clock=clock)
        cache.add_authorized_player(STEVE_PREMIUM_ID, entry_for(STEVE_PREMIUM_ID))
        clock.advance(1)
        cache.add_authorized_player(SNIPER_PREMIUM_ID, entry_for(SNIPER_PREMIUM_ID, "Alex"))
        clock.advance(1)
        cache.get_authorized_player(STEVE_PREMIUM_ID)
        clock.advance(1)

        third = uuid.uuid4()
        cache.add_authorized_player(third, entry_for(third, "Herobrine"))

        assert cache.get_authorized_player(SNIPER_PREMIUM_ID) is None
        assert cache.get_authorized_player(STEVE_PREMIUM_ID) is not None
        assert cache.get_authorized_player(third) is not None

    def test_handle_invalidation_drops_every_known_id(self, runner, clock):
        """A record change removes authorizations for old and new ids."""
        cache = AuthorizationCache(runner, clock=clock)
        previous = make_offline_record("Steve")
        current = previous.model_copy(update={"remote_identity_id": str(STEVE_PREMIUM_ID)})
        cache.add_authorized_player(previous.identity_id, entry_for(previous.identity_id))
        cache.add_authorized_player(STEVE_PREMIUM_ID, entry_for(STEVE_PREMIUM_ID))
        cache.add_premium_player("Steve", STEVE_PREMIUM_ID)

        cache.handle_invalidation(
            RecordChanged(lowercase_nickname="steve", previous=previous, current=current)
        )

        assert cache.get_authorized_player(previous.identity_id) is None
        assert cache.get_authorized_player(STEVE_PREMIUM_ID) is None
        assert cache.get_premium_status("steve") is None

    async def test_start_subscribes_and_stop_unsubscribes(self, runner, channel, clock):
        """Only a started cache receives invalidation events."""
        cache = AuthorizationCache(runner, channel=channel, clock=clock)
        cache.start()
        assert channel.subscriber_count == 1

        record = make_premium_record("Notch")
        cache.add_authorized_player(record.identity_id, entry_for(record.identity_id, "Notch"))
        await asyncio.gather(
            *channel.publish(RecordChanged(lowercase_nickname="notch", current=record))
        )
        assert cache.get_authorized_player(record.identity_id) is None

        cache.stop()
        assert channel.subscriber_count == 0
        assert channel.publish(RecordChanged(lowercase_nickname="notch")) == []

    def test_start_requires_running_runner(self, clock):
        """Starting against an unstarted runner fails loudly."""
        cache = AuthorizationCache(BackgroundTaskRunner(), clock=clock)
        with pytest.raises(TaskRejectedError):
            cache.start()

    def test_cleanup_expired_counts(self, runner, clock):
        """Cleanup reports what it removed per sub-cache."""
        cache = AuthorizationCache(
            runner,
            ttl_minutes=1,
            session_timeout_minutes=1,
            brute_force_timeout_minutes=1,
            premium_ttl_hours=1,
            clock=clock,
        )
        cache.add_authorized_player(STEVE_PREMIUM_ID, entry_for(STEVE_PREMIUM_ID))
        cache.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        cache.register_failed_login(ORIGIN)
        cache.add_premium_player("Notch", STEVE_PREMIUM_ID)

        clock.advance(120)

        assert cache.cleanup_expired() == {
            "authorized": 1,
            "brute_force": 1,
            "premium": 0,
            "sessions": 1,
        }

    def test_stats_hit_rate(self, runner, clock):
        """Stats track hits and misses of authorization lookups."""
        cache = AuthorizationCache(runner, clock=clock)
        cache.add_authorized_player(STEVE_PREMIUM_ID, entry_for(STEVE_PREMIUM_ID))
        cache.get_authorized_player(STEVE_PREMIUM_ID)
        cache.get_authorized_player(STEVE_PREMIUM_ID)
        cache.get_authorized_player(SNIPER_PREMIUM_ID)

        stats = cache.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["total_requests"] == 3
        assert stats["hit_rate"] == pytest.approx(66.666, rel=1e-3)

    def test_clear_all(self, runner, clock):
        """clear_all empties every sub-cache and resets counters."""
        cache = AuthorizationCache(runner, clock=clock)
        cache.add_authorized_player(STEVE_PREMIUM_ID, entry_for(STEVE_PREMIUM_ID))
        cache.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        cache.register_failed_login(ORIGIN)
        cache.add_premium_player("Notch", STEVE_PREMIUM_ID)
        cache.get_authorized_player(STEVE_PREMIUM_ID)

        cache.clear_all()

        stats = cache.stats()
        assert stats["authorized"] == stats["sessions"] == 0
        assert stats["brute_force"] == stats["premium"] == 0
        assert stats["total_requests"] == 0

    async def test_periodic_cleanup_reports_sizes(self, runner, clock, metrics_client):
        """Each cleanup pass publishes the size of every sub-cache as a gauge."""
        cache = AuthorizationCache(runner, metrics_client=metrics_client, clock=clock)
        cache.add_authorized_player(STEVE_PREMIUM_ID, entry_for(STEVE_PREMIUM_ID))
        cache.start_session(STEVE_PREMIUM_ID, "Steve", ORIGIN)
        cache.add_premium_player("Notch", STEVE_PREMIUM_ID)

        await cache._periodic_cleanup()

        reported = {
            tags["component"]: value
            for name, value, tags in metrics_client.gauge_calls
            if name == "gatekeeper.cache.authorization.size"
        }
        assert reported == {"authorized": 1, "sessions": 1, "brute_force": 0, "premium": 1}
