"""Tests for abuse tracking, bans and escalation.

Uses InMemoryAbuseStore with a manually advanced clock so that expiry and
rolling windows are deterministic.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from services.abuse_models import (
    AbuseEventType,
    AbuseSeverity,
    BanDuration,
    BanReason,
    BanType,
    FlagReason,
)
from services.abuse_store import AbuseStoreError, InMemoryAbuseStore
from services.abuse_tracker import AbuseTracker, get_abuse_tracker, set_abuse_tracker
from services.ip_hash import hash_ip

IP_HASH = "a" * 64


class FakeNow:
    """Manually advanced UTC clock."""

    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeNow()


@pytest.fixture
def store():
    return InMemoryAbuseStore()


@pytest.fixture
def tracker(store, clock):
    return AbuseTracker(store, clock=clock)


def active_bans(store: InMemoryAbuseStore, ip_hash: str = IP_HASH):
    return [ban for ban in store.all_bans() if ban.ip_hash == ip_hash and ban.is_active]


class TestBans:
    @pytest.mark.asyncio
    async def test_ban_uses_reason_default_duration(self, tracker, clock):
        """Without a duration the reason's default applies."""
        ban = await tracker.ban_ip(IP_HASH, BanReason.SPAM)
        assert ban.ban_type is BanType.TEMPORARY
        assert ban.expires_at == clock() + timedelta(days=7)
        assert ban.created_by == "system"

    @pytest.mark.asyncio
    async def test_permanent_duration_makes_permanent_ban(self, tracker):
        """Permanent duration or permanent type both yield no expiry."""
        ban = await tracker.ban_ip(IP_HASH, BanReason.ILLEGAL_CONTENT)
        assert ban.ban_type is BanType.PERMANENT
        assert ban.expires_at is None

    @pytest.mark.asyncio
    async def test_ban_is_idempotent(self, tracker, store):
        """A second ban returns the existing active ban."""
        first = await tracker.ban_ip(IP_HASH, BanReason.SPAM)
        second = await tracker.ban_ip(IP_HASH, BanReason.HARASSMENT, duration=BanDuration.THIRTY_DAYS)
        assert second.id == first.id
        assert second.reason is BanReason.SPAM
        assert len(active_bans(store)) == 1

    @pytest.mark.asyncio
    async def test_check_ban_reports_remaining(self, tracker, clock):
        await tracker.ban_ip(IP_HASH, BanReason.RATE_LIMIT_ABUSE)
        clock.advance(minutes=30)
        result = await tracker.check_ban(IP_HASH)
        assert result.is_banned is True
        assert result.remaining_ms == 30 * 60 * 1000

    @pytest.mark.asyncio
    async def test_expired_ban_is_deactivated_lazily(self, tracker, store, clock):
        """An expired ban is deactivated by the next lookup."""
        await tracker.ban_ip(IP_HASH, BanReason.RATE_LIMIT_ABUSE, duration=BanDuration.ONE_HOUR)
        clock.advance(hours=1, seconds=1)

        assert store.all_bans()[0].is_active is True
        result = await tracker.check_ban(IP_HASH)
        assert result.is_banned is False
        assert store.all_bans()[0].is_active is False

    @pytest.mark.asyncio
    async def test_permanent_ban_never_expires(self, tracker, clock):
        await tracker.ban_ip(IP_HASH, BanReason.MANUAL, ban_type=BanType.PERMANENT)
        clock.advance(days=3650)
        result = await tracker.check_ban(IP_HASH)
        assert result.is_banned is True
        assert result.remaining_ms is None

    @pytest.mark.asyncio
    async def test_unban(self, tracker, store):
        await tracker.ban_ip(IP_HASH, BanReason.SPAM)
        assert await tracker.unban_ip(IP_HASH) is True
        assert await tracker.unban_ip(IP_HASH) is False
        assert (await tracker.check_ban(IP_HASH)).is_banned is False
        assert len(store.all_bans()) == 1

    @pytest.mark.asyncio
    async def test_ban_creation_is_logged(self, tracker, store):
        await tracker.ban_ip(IP_HASH, BanReason.SPAM, created_by="admin")
        events = store.list_events(IP_HASH)
        assert len(events) == 1
        assert events[0].details["action"] == "ban_created"
        assert events[0].details["created_by"] == "admin"


class TestFlagEscalation:
    @pytest.mark.asyncio
    async def test_two_flags_no_ban(self, tracker):
        for _ in range(2):
            await tracker.flag_ip(IP_HASH, FlagReason.SUSPICIOUS_ACTIVITY)
        assert (await tracker.check_ban(IP_HASH)).is_banned is False

    @pytest.mark.asyncio
    async def test_three_flags_temporary_ban(self, tracker, clock):
        """The third flag creates a 24h temporary ban."""
        for _ in range(3):
            record = await tracker.flag_ip(IP_HASH, FlagReason.SUSPICIOUS_ACTIVITY)

        assert record.flag_count == 3
        assert record.is_flagged is True
        result = await tracker.check_ban(IP_HASH)
        assert result.is_banned is True
        assert result.ban.ban_type is BanType.TEMPORARY
        assert result.ban.expires_at == clock() + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_ten_flags_permanent_ban(self, tracker, store):
        """The tenth flag escalates to a single permanent ban."""
        for _ in range(10):
            await tracker.flag_ip(IP_HASH, FlagReason.REPORTED_BY_SYSTEM)

        result = await tracker.check_ban(IP_HASH)
        assert result.ban.ban_type is BanType.PERMANENT
        assert len(active_bans(store)) == 1

    @pytest.mark.asyncio
    async def test_flag_reasons_deduplicated(self, tracker):
        await tracker.flag_ip(IP_HASH, FlagReason.SUSPICIOUS_ACTIVITY)
        record = await tracker.flag_ip(IP_HASH, FlagReason.SUSPICIOUS_ACTIVITY)
        assert record.flag_reasons == [FlagReason.SUSPICIOUS_ACTIVITY]


class TestEventThresholds:
    @pytest.mark.asyncio
    async def test_content_violations_flag_at_three(self, tracker):
        for _ in range(2):
            await tracker.record_content_violation(IP_HASH, {"type": "regex"}, "/api/debate")
        assert await tracker.get_tracking_record(IP_HASH) is None

        await tracker.record_content_violation(IP_HASH, {"type": "regex"}, "/api/debate")
        record = await tracker.get_tracking_record(IP_HASH)
        assert record.is_flagged is True
        assert FlagReason.MULTIPLE_CONTENT_VIOLATIONS in record.flag_reasons

    @pytest.mark.asyncio
    async def test_two_injections_ban_for_a_day(self, tracker, clock):
        await tracker.record_prompt_injection(IP_HASH, {"type": "dangerous_pattern"})
        assert (await tracker.check_ban(IP_HASH)).is_banned is False

        await tracker.record_prompt_injection(IP_HASH, {"type": "dangerous_pattern"})
        result = await tracker.check_ban(IP_HASH)
        assert result.is_banned is True
        assert result.ban.reason is BanReason.PROMPT_INJECTION
        assert result.ban.expires_at == clock() + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_injection_window_rolls(self, tracker, clock):
        """Attempts older than the window do not count."""
        await tracker.record_prompt_injection(IP_HASH)
        clock.advance(hours=25)
        await tracker.record_prompt_injection(IP_HASH)
        assert (await tracker.check_ban(IP_HASH)).is_banned is False

    @pytest.mark.asyncio
    async def test_rate_limit_hits_ban_for_an_hour(self, tracker, clock):
        for _ in range(9):
            await tracker.record_rate_limit_hit(IP_HASH, "/api/debate")
        assert (await tracker.check_ban(IP_HASH)).is_banned is False

        await tracker.record_rate_limit_hit(IP_HASH, "/api/debate")
        result = await tracker.check_ban(IP_HASH)
        assert result.ban.reason is BanReason.RATE_LIMIT_ABUSE
        assert result.ban.expires_at == clock() + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_abuse_stats(self, tracker, clock):
        await tracker.record_rate_limit_hit(IP_HASH)
        clock.advance(hours=30)
        await tracker.record_content_violation(IP_HASH)

        stats = await tracker.get_abuse_stats_for_ip(IP_HASH)
        assert stats["total_events"] == 2
        assert stats["last_24h"] == 1
        assert stats["by_type"] == {"rate_limit_hit": 1, "content_violation": 1}
        assert stats["by_severity"] == {"low": 1, "medium": 1}


class TestVisits:
    @pytest.mark.asyncio
    async def test_new_then_returning_visitor(self, tracker):
        first = await tracker.track_visit("203.0.113.5", user_agent="pytest", country="NL")
        second = await tracker.track_visit("203.0.113.5")
        assert first.is_new_visitor is True
        assert second.is_new_visitor is False

        record = await tracker.get_tracking_record(hash_ip("203.0.113.5"))
        assert record.visit_count == 2
        assert record.metadata["userAgent"] == "pytest"
        assert record.metadata["debatesCreated"] == 0

    @pytest.mark.asyncio
    async def test_banned_visit_logs_bypass_attempt(self, tracker, store):
        ip_hash = hash_ip("203.0.113.6")
        await tracker.ban_ip(ip_hash, BanReason.SPAM)

        result = await tracker.track_visit("203.0.113.6")
        assert result.is_banned is True
        assert await tracker.get_tracking_record(ip_hash) is None
        events = store.list_events(ip_hash)
        assert events[0].event_type is AbuseEventType.BAN_BYPASS_ATTEMPT
        assert events[0].severity is AbuseSeverity.MEDIUM

    @pytest.mark.asyncio
    async def test_increment_debate_count(self, tracker):
        await tracker.track_visit("203.0.113.7")
        record = await tracker.increment_debate_count(hash_ip("203.0.113.7"))
        assert record.metadata["debatesCreated"] == 1
        assert await tracker.increment_debate_count("b" * 64) is None


class TestDisabledAndFailures:
    @pytest.mark.asyncio
    async def test_disabled_tracker(self):
        """Without a store reads are neutral and ban changes raise."""
        tracker = AbuseTracker(None)
        assert tracker.enabled is False
        assert (await tracker.check_ban(IP_HASH)).is_banned is False
        assert await tracker.flag_ip(IP_HASH, FlagReason.SUSPICIOUS_ACTIVITY) is None
        await tracker.record_prompt_injection(IP_HASH)
        assert (await tracker.get_abuse_stats_for_ip(IP_HASH))["total_events"] == 0

        with pytest.raises(AbuseStoreError):
            await tracker.ban_ip(IP_HASH, BanReason.SPAM)
        with pytest.raises(AbuseStoreError):
            await tracker.unban_ip(IP_HASH)

    @pytest.mark.asyncio
    async def test_check_ban_fails_open(self, clock):
        """A store error during lookup reports not banned."""
        store = MagicMock()
        store.deactivate_expired_bans.side_effect = AbuseStoreError("connection lost")
        tracker = AbuseTracker(store, clock=clock)

        assert (await tracker.check_ban(IP_HASH)).is_banned is False

    @pytest.mark.asyncio
    async def test_event_write_failure_is_swallowed(self, clock):
        store = MagicMock()
        store.append_event.side_effect = AbuseStoreError("disk full")
        tracker = AbuseTracker(store, clock=clock)

        entry = await tracker.log_abuse_event(IP_HASH, AbuseEventType.SUSPICIOUS_PATTERN, AbuseSeverity.LOW)
        assert entry is None


def test_default_tracker_starts_disabled():
    assert get_abuse_tracker().enabled is False
    tracker = AbuseTracker(InMemoryAbuseStore())
    set_abuse_tracker(tracker)
    assert get_abuse_tracker() is tracker
