"""Abuse tracking: visits, flags, bans and escalation.

Per identity hash the lifecycle is:

    new -> tracked -> flagged -> temp-banned -> perm-banned

Temporary bans lapse lazily: every ban lookup first deactivates expired
bans, so there is no background timer.

Escalation rules:
- every flag increments flag_count; >= 3 flags creates a 24h temporary ban,
  >= 10 flags creates a permanent ban (highest threshold wins)
- >= 3 content violations in 24h auto-flag the identity
- >= 2 prompt injection attempts in 24h ban for 24h
- >= 10 rate limit hits in 1h ban for 1h

Rolling-window counts are derived from the event log at write time.

Store failures never abort the request path: side-effect methods log and
return a neutral result. Only explicit ban/unban calls propagate
AbuseStoreError so admin callers can report it.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from services.abuse_models import (
    BAN_DURATIONS,
    DEFAULT_BAN_DURATIONS,
    AbuseEventType,
    AbuseLogEntry,
    AbuseSeverity,
    BanCheckResult,
    BanDuration,
    BanReason,
    BanType,
    FlagReason,
    IPBan,
    IPTrackingRecord,
    TrackingResult,
)
from services.abuse_store import AbuseStore, AbuseStoreError, new_ban_id
from services.ip_hash import hash_ip, hash_prefix

logger = logging.getLogger(__name__)

CONTENT_VIOLATION_THRESHOLD = 3
RATE_LIMIT_HIT_THRESHOLD = 10
PROMPT_INJECTION_THRESHOLD = 2

FLAGS_FOR_TEMP_BAN = 3
FLAGS_FOR_PERMA_BAN = 10

CONTENT_VIOLATION_WINDOW = timedelta(hours=24)
PROMPT_INJECTION_WINDOW = timedelta(hours=24)
RATE_LIMIT_WINDOW = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AbuseTracker:
    """Async facade over an AbuseStore implementing the escalation policy."""

    def __init__(self, store: Optional[AbuseStore], clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock
        if store is None:
            logger.warning("No abuse store configured, abuse tracking disabled")

    @property
    def enabled(self) -> bool:
        return self.store is not None

    async def _call(self, method: str, *args):
        return await asyncio.to_thread(getattr(self.store, method), *args)

    # ==================== Visits ====================

    async def track_visit(
        self,
        ip: str,
        user_agent: Optional[str] = None,
        country: Optional[str] = None,
    ) -> TrackingResult:
        """Record a request from ``ip``.

        A banned identity is not tracked; a ban_bypass_attempt event is
        logged instead.
        """
        ip_hash = hash_ip(ip)
        if not self.enabled:
            return TrackingResult(ip_hash=ip_hash)

        ban_check = await self.check_ban(ip_hash)
        if ban_check.is_banned:
            await self.log_abuse_event(
                ip_hash,
                AbuseEventType.BAN_BYPASS_ATTEMPT,
                AbuseSeverity.MEDIUM,
                {
                    "ban_id": ban_check.ban.id if ban_check.ban else None,
                    "ban_reason": ban_check.ban.reason.value if ban_check.ban else None,
                },
            )
            return TrackingResult(
                ip_hash=ip_hash,
                is_flagged=True,
                is_banned=True,
                ban=ban_check.ban,
                remaining_ms=ban_check.remaining_ms,
            )

        metadata: dict[str, Any] = {}
        if user_agent:
            metadata["userAgent"] = user_agent
        if country:
            metadata["country"] = country

        try:
            record, is_new = await self._call("upsert_visit", ip_hash, metadata, self._clock())
        except AbuseStoreError as e:
            logger.error(f"track_visit failed for {hash_prefix(ip_hash)}: {e}")
            return TrackingResult(ip_hash=ip_hash)

        if is_new:
            logger.info(f"New visitor {hash_prefix(ip_hash)}")
        return TrackingResult(ip_hash=ip_hash, is_new_visitor=is_new, is_flagged=record.is_flagged)

    async def increment_debate_count(self, ip_hash: str) -> Optional[IPTrackingRecord]:
        if not self.enabled:
            return None
        try:
            return await self._call("increment_debate_count", ip_hash, self._clock())
        except AbuseStoreError as e:
            logger.error(f"increment_debate_count failed for {hash_prefix(ip_hash)}: {e}")
            return None

    async def get_tracking_record(self, ip_hash: str) -> Optional[IPTrackingRecord]:
        if not self.enabled:
            return None
        try:
            return await self._call("get_tracking", ip_hash)
        except AbuseStoreError as e:
            logger.error(f"get_tracking_record failed for {hash_prefix(ip_hash)}: {e}")
            return None

    # ==================== Bans ====================

    async def check_ban(self, ip_hash: str) -> BanCheckResult:
        """Return the active ban for ``ip_hash``, deactivating expired bans first."""
        if not self.enabled:
            return BanCheckResult(is_banned=False)

        now = self._clock()
        try:
            expired = await self._call("deactivate_expired_bans", now)
            if expired:
                logger.info(f"Deactivated {expired} expired ban(s)")
            ban = await self._call("get_active_ban", ip_hash)
        except AbuseStoreError as e:
            logger.error(f"check_ban failed for {hash_prefix(ip_hash)}, failing open: {e}")
            return BanCheckResult(is_banned=False)

        if ban is None:
            return BanCheckResult(is_banned=False)

        remaining_ms = None
        if ban.expires_at is not None:
            remaining = (ban.expires_at - now).total_seconds() * 1000
            remaining_ms = int(remaining) if remaining > 0 else None
        return BanCheckResult(is_banned=True, ban=ban, remaining_ms=remaining_ms)

    async def ban_ip(
        self,
        ip_hash: str,
        reason: BanReason,
        ban_type: Optional[BanType] = None,
        duration: Optional[BanDuration] = None,
        description: Optional[str] = None,
        created_by: str = "system",
    ) -> IPBan:
        """Create a ban, or return the existing active one unchanged.

        A permanent ban request replaces an active temporary ban so that
        escalation is never swallowed by the idempotency guard.

        Raises:
            AbuseStoreError: if the store is not configured or fails.
        """
        if not self.enabled:
            raise AbuseStoreError("Abuse store is not configured")

        reason = BanReason(reason)
        duration = BanDuration(duration) if duration else DEFAULT_BAN_DURATIONS[reason]
        ban_type = BanType(ban_type) if ban_type else BanType.TEMPORARY
        # Permanence on either axis makes the ban permanent
        if ban_type is BanType.PERMANENT or duration is BanDuration.PERMANENT:
            ban_type = BanType.PERMANENT
            duration = BanDuration.PERMANENT

        existing = await self.check_ban(ip_hash)
        if existing.is_banned and existing.ban is not None:
            if ban_type is BanType.PERMANENT and existing.ban.ban_type is BanType.TEMPORARY:
                logger.info(f"Escalating ban {existing.ban.id} for {hash_prefix(ip_hash)} to permanent")
                await self._call("deactivate_bans", ip_hash, existing.ban.id)
            else:
                logger.info(
                    f"Active ban already exists for {hash_prefix(ip_hash)} "
                    f"({existing.ban.reason.value}), skipping duplicate"
                )
                return existing.ban

        now = self._clock()
        delta = BAN_DURATIONS[duration]
        ban = IPBan(
            id=new_ban_id(),
            ip_hash=ip_hash,
            ban_type=ban_type,
            reason=reason,
            description=description,
            expires_at=now + delta if delta is not None else None,
            created_by=created_by,
            is_active=True,
            created_at=now,
        )

        stored, created = await self._call("insert_ban_if_absent", ban)
        if created:
            logger.warning(
                f"Banned {hash_prefix(ip_hash)}: type={ban_type.value}, reason={reason.value}, "
                f"duration={duration.value}"
            )
            await self.log_abuse_event(
                ip_hash,
                AbuseEventType.MANUAL_FLAG,
                AbuseSeverity.HIGH,
                {
                    "action": "ban_created",
                    "ban_id": stored.id,
                    "ban_type": ban_type.value,
                    "reason": reason.value,
                    "duration": duration.value,
                    "created_by": created_by,
                },
            )
        return stored

    async def unban_ip(self, ip_hash: str) -> bool:
        """Deactivate every active ban for ``ip_hash``.

        Raises:
            AbuseStoreError: if the store is not configured or fails.
        """
        if not self.enabled:
            raise AbuseStoreError("Abuse store is not configured")
        count = await self._call("deactivate_bans", ip_hash, None)
        if count:
            logger.info(f"Unbanned {hash_prefix(ip_hash)} ({count} ban(s) deactivated)")
        return count > 0

    # ==================== Flags ====================

    async def flag_ip(
        self,
        ip_hash: str,
        reason: FlagReason,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[IPTrackingRecord]:
        """Flag an identity and escalate to a ban if thresholds are crossed."""
        if not self.enabled:
            return None

        try:
            record = await self._call("increment_flag", ip_hash, FlagReason(reason), self._clock())
        except AbuseStoreError as e:
            logger.error(f"flag_ip failed for {hash_prefix(ip_hash)}: {e}")
            return None

        await self.log_abuse_event(
            ip_hash,
            AbuseEventType.MANUAL_FLAG,
            AbuseSeverity.HIGH if record.flag_count >= FLAGS_FOR_TEMP_BAN else AbuseSeverity.MEDIUM,
            {"reason": FlagReason(reason).value, "flag_count": record.flag_count, **(details or {})},
        )

        try:
            if record.flag_count >= FLAGS_FOR_PERMA_BAN:
                await self.ban_ip(
                    ip_hash,
                    BanReason.MANUAL,
                    ban_type=BanType.PERMANENT,
                    description=f"Auto-banned after {record.flag_count} flags",
                )
            elif record.flag_count >= FLAGS_FOR_TEMP_BAN:
                await self.ban_ip(
                    ip_hash,
                    BanReason.MANUAL,
                    ban_type=BanType.TEMPORARY,
                    duration=BanDuration.ONE_DAY,
                    description=f"Auto-banned after {record.flag_count} flags",
                )
        except AbuseStoreError as e:
            logger.error(f"Auto-ban after flag failed for {hash_prefix(ip_hash)}: {e}")

        return record

    # ==================== Events ====================

    async def log_abuse_event(
        self,
        ip_hash: str,
        event_type: AbuseEventType,
        severity: AbuseSeverity,
        details: Optional[dict[str, Any]] = None,
        endpoint: Optional[str] = None,
    ) -> Optional[AbuseLogEntry]:
        if not self.enabled:
            return None

        entry = AbuseLogEntry(
            id=new_ban_id(),
            ip_hash=ip_hash,
            event_type=event_type,
            severity=severity,
            endpoint=endpoint,
            details=details or {},
            created_at=self._clock(),
        )
        try:
            await self._call("append_event", entry)
        except AbuseStoreError as e:
            logger.error(f"Failed to log {event_type.value} event for {hash_prefix(ip_hash)}: {e}")
            return None
        return entry

    async def _count_recent(self, ip_hash: str, event_type: AbuseEventType, window: timedelta) -> int:
        return await self._call("count_events", ip_hash, event_type, self._clock() - window)

    async def record_content_violation(
        self,
        ip_hash: str,
        details: Optional[dict[str, Any]] = None,
        endpoint: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return
        await self.log_abuse_event(
            ip_hash, AbuseEventType.CONTENT_VIOLATION, AbuseSeverity.MEDIUM, details, endpoint
        )
        try:
            count = await self._count_recent(ip_hash, AbuseEventType.CONTENT_VIOLATION, CONTENT_VIOLATION_WINDOW)
        except AbuseStoreError as e:
            logger.error(f"Content violation count failed for {hash_prefix(ip_hash)}: {e}")
            return

        if count >= CONTENT_VIOLATION_THRESHOLD:
            await self.flag_ip(
                ip_hash,
                FlagReason.MULTIPLE_CONTENT_VIOLATIONS,
                {"violation_count": count, "window": "24h"},
            )

    async def record_prompt_injection(
        self,
        ip_hash: str,
        details: Optional[dict[str, Any]] = None,
        endpoint: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return
        await self.log_abuse_event(
            ip_hash, AbuseEventType.PROMPT_INJECTION, AbuseSeverity.HIGH, details, endpoint
        )
        try:
            count = await self._count_recent(ip_hash, AbuseEventType.PROMPT_INJECTION, PROMPT_INJECTION_WINDOW)
            if count >= PROMPT_INJECTION_THRESHOLD:
                await self.ban_ip(
                    ip_hash,
                    BanReason.PROMPT_INJECTION,
                    duration=BanDuration.ONE_DAY,
                    description=f"{count} prompt injection attempts in 24h",
                )
        except AbuseStoreError as e:
            logger.error(f"Prompt injection escalation failed for {hash_prefix(ip_hash)}: {e}")

    async def record_rate_limit_hit(
        self,
        ip_hash: str,
        endpoint: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return
        await self.log_abuse_event(
            ip_hash, AbuseEventType.RATE_LIMIT_HIT, AbuseSeverity.LOW, None, endpoint
        )
        try:
            count = await self._count_recent(ip_hash, AbuseEventType.RATE_LIMIT_HIT, RATE_LIMIT_WINDOW)
            if count >= RATE_LIMIT_HIT_THRESHOLD:
                await self.ban_ip(
                    ip_hash,
                    BanReason.RATE_LIMIT_ABUSE,
                    duration=BanDuration.ONE_HOUR,
                    description=f"{count} rate limit hits in 1h",
                )
        except AbuseStoreError as e:
            logger.error(f"Rate limit escalation failed for {hash_prefix(ip_hash)}: {e}")

    async def get_abuse_stats_for_ip(self, ip_hash: str) -> dict[str, Any]:
        empty = {"total_events": 0, "last_24h": 0, "by_severity": {}, "by_type": {}}
        if not self.enabled:
            return empty
        try:
            events = await self._call("list_events", ip_hash, None, None)
        except AbuseStoreError as e:
            logger.error(f"get_abuse_stats_for_ip failed for {hash_prefix(ip_hash)}: {e}")
            return empty

        cutoff = self._clock() - timedelta(hours=24)
        by_severity: dict[str, int] = {}
        by_type: dict[str, int] = {}
        for event in events:
            by_severity[event.severity.value] = by_severity.get(event.severity.value, 0) + 1
            by_type[event.event_type.value] = by_type.get(event.event_type.value, 0) + 1

        return {
            "total_events": len(events),
            "last_24h": sum(1 for e in events if e.created_at >= cutoff),
            "by_severity": by_severity,
            "by_type": by_type,
        }


_default_tracker: Optional[AbuseTracker] = None


def get_abuse_tracker() -> AbuseTracker:
    """Process-wide tracker; disabled until one is set at startup."""
    global _default_tracker
    if _default_tracker is None:
        _default_tracker = AbuseTracker(None)
    return _default_tracker


def set_abuse_tracker(tracker: Optional[AbuseTracker]) -> None:
    global _default_tracker
    _default_tracker = tracker
