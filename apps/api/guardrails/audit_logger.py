"""Security audit logging for moderation and abuse events.

Every event is written as one JSON line to the dedicated ``security.audit``
logger and kept in a bounded in-memory ring buffer for fast diagnostics
(recent events, per-IP counts). The buffer is process-local and evicts the
oldest entry first.

Events logged:
- Rate limit violations
- Content filter violations
- Prompt injection attempts
- CSRF / origin violations

Usage:
    from guardrails.audit_logger import SecurityAuditLog

    audit = SecurityAuditLog()
    audit.log_injection_attempt(context, "/api/debate", "dangerous_pattern", topic)
    recent = audit.get_recent_logs(event_type=AuditEventType.INJECTION_ATTEMPT)
"""

import json
import logging
import uuid
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from guardrails.content_filter import ContentFilterResult
from services.ip_hash import SecurityContext

# Dedicated security logger so events can be routed to a separate sink
security_logger = logging.getLogger("security.audit")
security_logger.setLevel(logging.INFO)

MAX_LOG_ENTRIES = 1000

FILTER_PREVIEW_CHARS = 200
INJECTION_PREVIEW_CHARS = 500


class AuditEventType(str, Enum):
    RATE_LIMIT = "rate_limit"
    CONTENT_FILTER = "content_filter"
    CSRF = "csrf"
    INJECTION_ATTEMPT = "injection_attempt"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_SEVERITY_RANK = {
    AuditSeverity.LOW: 0,
    AuditSeverity.MEDIUM: 1,
    AuditSeverity.HIGH: 2,
    AuditSeverity.CRITICAL: 3,
}

_LOG_LEVELS = {
    AuditSeverity.CRITICAL: logging.ERROR,
    AuditSeverity.HIGH: logging.WARNING,
}


@dataclass
class AuditLogEntry:
    """Structured security event."""

    type: AuditEventType
    severity: AuditSeverity
    ip: str
    endpoint: str
    details: dict[str, Any]
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_log_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


def _preview(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class SecurityAuditLog:
    """Ring buffer of recent security events plus structured log output."""

    def __init__(self, max_entries: int = MAX_LOG_ENTRIES):
        self._entries: deque[AuditLogEntry] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    def log(
        self,
        event_type: AuditEventType,
        severity: AuditSeverity,
        context: SecurityContext,
        endpoint: str,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            type=event_type,
            severity=severity,
            ip=context.ip,
            session_id=context.session_id,
            user_agent=context.user_agent,
            endpoint=endpoint,
            details=details or {},
        )
        self._entries.append(entry)

        level = _LOG_LEVELS.get(severity, logging.INFO)
        security_logger.log(level, json.dumps(entry.to_log_dict(), default=str))
        return entry

    def log_rate_limit_violation(
        self,
        context: SecurityContext,
        endpoint: str,
        limit_type: str,
        current_count: int,
        max_requests: int,
    ) -> AuditLogEntry:
        severity = AuditSeverity.HIGH if current_count > max_requests * 2 else AuditSeverity.MEDIUM
        return self.log(
            AuditEventType.RATE_LIMIT,
            severity,
            context,
            endpoint,
            {
                "limit_type": limit_type,
                "current_count": current_count,
                "max_requests": max_requests,
                "exceeded_by": current_count - max_requests,
            },
        )

    def log_content_filter_violation(
        self,
        context: SecurityContext,
        endpoint: str,
        filter_result: Optional[ContentFilterResult],
        content: str,
        extra: Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """Record a blocked or flagged piece of content.

        Severity is the highest match severity; with no pattern matches
        (e.g. a moderation-stack block) it defaults to medium.
        """
        matches = filter_result.matches if filter_result else []
        if matches:
            severity = max(
                (AuditSeverity(m.severity.value) for m in matches),
                key=_SEVERITY_RANK.__getitem__,
            )
        else:
            severity = AuditSeverity.MEDIUM

        details: dict[str, Any] = {
            "categories": sorted({m.category.value for m in matches}),
            "match_count": len(matches),
            "patterns": [m.pattern for m in matches][:10],
            "blocked": filter_result.should_block if filter_result else True,
            "content_preview": _preview(content, FILTER_PREVIEW_CHARS),
        }
        if extra:
            details.update(extra)

        return self.log(AuditEventType.CONTENT_FILTER, severity, context, endpoint, details)

    def log_injection_attempt(
        self,
        context: SecurityContext,
        endpoint: str,
        injection_type: str,
        payload: str,
    ) -> AuditLogEntry:
        return self.log(
            AuditEventType.INJECTION_ATTEMPT,
            AuditSeverity.CRITICAL,
            context,
            endpoint,
            {
                "injection_type": injection_type,
                "payload_preview": _preview(payload, INJECTION_PREVIEW_CHARS),
                "payload_length": len(payload),
            },
        )

    def log_csrf_violation(
        self,
        context: SecurityContext,
        endpoint: str,
        reason: str,
    ) -> AuditLogEntry:
        return self.log(
            AuditEventType.CSRF,
            AuditSeverity.HIGH,
            context,
            endpoint,
            {"reason": reason, "origin": context.origin, "referer": context.referer},
        )

    def get_recent_logs(
        self,
        limit: int = 100,
        event_type: Optional[AuditEventType] = None,
        severity: Optional[AuditSeverity] = None,
        ip: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> list[AuditLogEntry]:
        """Newest-first slice of the buffer, optionally filtered."""
        entries = [
            e
            for e in reversed(self._entries)
            if (event_type is None or e.type is event_type)
            and (severity is None or e.severity is severity)
            and (ip is None or e.ip == ip)
            and (since is None or e.timestamp >= since)
        ]
        return entries[:limit]

    def get_abuse_stats(self, since: Optional[datetime] = None) -> dict[str, Any]:
        entries = [e for e in self._entries if since is None or e.timestamp >= since]
        ip_counts = Counter(e.ip for e in entries)

        return {
            "total": len(entries),
            "by_type": {t.value: sum(1 for e in entries if e.type is t) for t in AuditEventType},
            "by_severity": {s.value: sum(1 for e in entries if e.severity is s) for s in AuditSeverity},
            "top_ips": [{"ip": ip, "count": count} for ip, count in ip_counts.most_common(10)],
        }

    def clear(self) -> None:
        self._entries.clear()


_default_audit_log: Optional[SecurityAuditLog] = None


def get_audit_log() -> SecurityAuditLog:
    global _default_audit_log
    if _default_audit_log is None:
        _default_audit_log = SecurityAuditLog()
    return _default_audit_log


def set_audit_log(audit_log: Optional[SecurityAuditLog]) -> None:
    global _default_audit_log
    _default_audit_log = audit_log
