"""Models for IP tracking, bans and abuse events."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class BanType(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"


class BanReason(str, Enum):
    RATE_LIMIT_ABUSE = "rate_limit_abuse"
    CONTENT_FILTER_VIOLATION = "content_filter_violation"
    PROMPT_INJECTION = "prompt_injection"
    SPAM = "spam"
    HARASSMENT = "harassment"
    ILLEGAL_CONTENT = "illegal_content"
    BOT_ACTIVITY = "bot_activity"
    MANUAL = "manual"


class BanDuration(str, Enum):
    ONE_HOUR = "1h"
    ONE_DAY = "24h"
    ONE_WEEK = "7d"
    THIRTY_DAYS = "30d"
    PERMANENT = "permanent"


class FlagReason(str, Enum):
    MULTIPLE_CONTENT_VIOLATIONS = "multiple_content_violations"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    PROMPT_INJECTION_ATTEMPT = "prompt_injection_attempt"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    REPORTED_BY_SYSTEM = "reported_by_system"


class AbuseEventType(str, Enum):
    CONTENT_VIOLATION = "content_violation"
    RATE_LIMIT_HIT = "rate_limit_hit"
    PROMPT_INJECTION = "prompt_injection"
    BAN_BYPASS_ATTEMPT = "ban_bypass_attempt"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    MANUAL_FLAG = "manual_flag"


class AbuseSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


BAN_DURATIONS: dict[BanDuration, Optional[timedelta]] = {
    BanDuration.ONE_HOUR: timedelta(hours=1),
    BanDuration.ONE_DAY: timedelta(hours=24),
    BanDuration.ONE_WEEK: timedelta(days=7),
    BanDuration.THIRTY_DAYS: timedelta(days=30),
    BanDuration.PERMANENT: None,
}

DEFAULT_BAN_DURATIONS: dict[BanReason, BanDuration] = {
    BanReason.RATE_LIMIT_ABUSE: BanDuration.ONE_HOUR,
    BanReason.CONTENT_FILTER_VIOLATION: BanDuration.ONE_DAY,
    BanReason.PROMPT_INJECTION: BanDuration.ONE_DAY,
    BanReason.SPAM: BanDuration.ONE_WEEK,
    BanReason.HARASSMENT: BanDuration.THIRTY_DAYS,
    BanReason.ILLEGAL_CONTENT: BanDuration.PERMANENT,
    BanReason.BOT_ACTIVITY: BanDuration.ONE_WEEK,
    BanReason.MANUAL: BanDuration.ONE_DAY,
}


class IPTrackingRecord(BaseModel):
    """Per-identity tracking row. Never hard-deleted."""

    ip_hash: str
    first_seen: datetime
    last_seen: datetime
    visit_count: int = 1
    flag_count: int = 0
    is_flagged: bool = False
    flag_reasons: list[FlagReason] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class IPBan(BaseModel):
    """Ban row. Deactivated, never deleted."""

    id: str
    ip_hash: str
    ban_type: BanType
    reason: BanReason
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_by: str = "system"
    is_active: bool = True
    created_at: datetime


class AbuseLogEntry(BaseModel):
    """Append-only abuse event."""

    id: str
    ip_hash: str
    event_type: AbuseEventType
    severity: AbuseSeverity
    endpoint: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class BanCheckResult(BaseModel):
    is_banned: bool
    ban: Optional[IPBan] = None
    remaining_ms: Optional[int] = None


class TrackingResult(BaseModel):
    ip_hash: str
    is_new_visitor: bool = False
    is_flagged: bool = False
    is_banned: bool = False
    ban: Optional[IPBan] = None
    remaining_ms: Optional[int] = None
