"""Durable storage for IP tracking, bans and abuse events.

Two implementations of the same interface:
- InMemoryAbuseStore: process-local, for development and tests
- PostgresAbuseStore: psycopg2-backed, relies on row-level atomic updates
  and a partial unique index for idempotent ban inserts

Methods are synchronous; AbuseTracker runs them via ``asyncio.to_thread``.
All failures surface as AbuseStoreError.
"""

import logging
import os
import threading
import uuid
from datetime import datetime
from typing import Any, Optional, Protocol

import psycopg2
from psycopg2.extras import Json

from services.abuse_models import (
    AbuseEventType,
    AbuseLogEntry,
    AbuseSeverity,
    BanReason,
    BanType,
    FlagReason,
    IPBan,
    IPTrackingRecord,
)

logger = logging.getLogger(__name__)


class AbuseStoreError(Exception):
    """Raised when the abuse store cannot complete an operation."""


class AbuseStore(Protocol):
    def get_tracking(self, ip_hash: str) -> Optional[IPTrackingRecord]: ...

    def upsert_visit(
        self, ip_hash: str, metadata: dict[str, Any], now: datetime
    ) -> tuple[IPTrackingRecord, bool]: ...

    def increment_flag(self, ip_hash: str, reason: FlagReason, now: datetime) -> IPTrackingRecord: ...

    def increment_debate_count(self, ip_hash: str, now: datetime) -> Optional[IPTrackingRecord]: ...

    def deactivate_expired_bans(self, now: datetime) -> int: ...

    def get_active_ban(self, ip_hash: str) -> Optional[IPBan]: ...

    def insert_ban_if_absent(self, ban: IPBan) -> tuple[IPBan, bool]: ...

    def deactivate_bans(self, ip_hash: str, ban_id: Optional[str] = None) -> int: ...

    def append_event(self, entry: AbuseLogEntry) -> None: ...

    def count_events(self, ip_hash: str, event_type: AbuseEventType, since: datetime) -> int: ...

    def list_events(
        self, ip_hash: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[AbuseLogEntry]: ...


class InMemoryAbuseStore:
    """Thread-safe in-process store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tracking: dict[str, IPTrackingRecord] = {}
        self._bans: list[IPBan] = []
        self._events: list[AbuseLogEntry] = []

    def get_tracking(self, ip_hash: str) -> Optional[IPTrackingRecord]:
        with self._lock:
            record = self._tracking.get(ip_hash)
            return record.model_copy(deep=True) if record else None

    def upsert_visit(
        self, ip_hash: str, metadata: dict[str, Any], now: datetime
    ) -> tuple[IPTrackingRecord, bool]:
        with self._lock:
            record = self._tracking.get(ip_hash)
            if record is None:
                record = IPTrackingRecord(
                    ip_hash=ip_hash,
                    first_seen=now,
                    last_seen=now,
                    visit_count=1,
                    metadata={**metadata, "debatesCreated": 0},
                )
                self._tracking[ip_hash] = record
                return record.model_copy(deep=True), True

            record.visit_count += 1
            record.last_seen = now
            record.metadata = {**record.metadata, **metadata}
            return record.model_copy(deep=True), False

    def increment_flag(self, ip_hash: str, reason: FlagReason, now: datetime) -> IPTrackingRecord:
        with self._lock:
            record = self._tracking.get(ip_hash)
            if record is None:
                record = IPTrackingRecord(
                    ip_hash=ip_hash,
                    first_seen=now,
                    last_seen=now,
                    visit_count=0,
                    metadata={"debatesCreated": 0},
                )
                self._tracking[ip_hash] = record

            record.flag_count += 1
            record.is_flagged = True
            if reason not in record.flag_reasons:
                record.flag_reasons.append(reason)
            return record.model_copy(deep=True)

    def increment_debate_count(self, ip_hash: str, now: datetime) -> Optional[IPTrackingRecord]:
        with self._lock:
            record = self._tracking.get(ip_hash)
            if record is None:
                return None
            record.metadata = {
                **record.metadata,
                "debatesCreated": record.metadata.get("debatesCreated", 0) + 1,
                "lastDebateAt": now.isoformat(),
            }
            return record.model_copy(deep=True)

    def deactivate_expired_bans(self, now: datetime) -> int:
        with self._lock:
            expired = [
                ban for ban in self._bans if ban.is_active and ban.expires_at is not None and ban.expires_at <= now
            ]
            for ban in expired:
                ban.is_active = False
            return len(expired)

    def _active_ban(self, ip_hash: str) -> Optional[IPBan]:
        active = [ban for ban in self._bans if ban.ip_hash == ip_hash and ban.is_active]
        if not active:
            return None
        return max(active, key=lambda ban: ban.created_at)

    def get_active_ban(self, ip_hash: str) -> Optional[IPBan]:
        with self._lock:
            ban = self._active_ban(ip_hash)
            return ban.model_copy() if ban else None

    def insert_ban_if_absent(self, ban: IPBan) -> tuple[IPBan, bool]:
        with self._lock:
            existing = self._active_ban(ban.ip_hash)
            if existing is not None:
                return existing.model_copy(), False
            stored = ban.model_copy()
            self._bans.append(stored)
            return stored.model_copy(), True

    def deactivate_bans(self, ip_hash: str, ban_id: Optional[str] = None) -> int:
        with self._lock:
            count = 0
            for ban in self._bans:
                if ban.ip_hash == ip_hash and ban.is_active and (ban_id is None or ban.id == ban_id):
                    ban.is_active = False
                    count += 1
            return count

    def append_event(self, entry: AbuseLogEntry) -> None:
        with self._lock:
            self._events.append(entry.model_copy(deep=True))

    def count_events(self, ip_hash: str, event_type: AbuseEventType, since: datetime) -> int:
        with self._lock:
            return sum(
                1
                for e in self._events
                if e.ip_hash == ip_hash and e.event_type is event_type and e.created_at >= since
            )

    def list_events(
        self, ip_hash: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[AbuseLogEntry]:
        with self._lock:
            events = [
                e.model_copy(deep=True)
                for e in reversed(self._events)
                if e.ip_hash == ip_hash and (since is None or e.created_at >= since)
            ]
        return events[:limit] if limit else events

    def all_bans(self) -> list[IPBan]:
        """Every ban row, active or not. Diagnostics only."""
        with self._lock:
            return [ban.model_copy() for ban in self._bans]


_TRACKING_COLUMNS = (
    "ip_hash, first_seen, last_seen, visit_count, flag_count, is_flagged, flag_reasons, metadata"
)
_BAN_COLUMNS = "id, ip_hash, ban_type, reason, description, expires_at, created_by, is_active, created_at"
_EVENT_COLUMNS = "id, ip_hash, event_type, severity, endpoint, details, created_at"


def _tracking_from_row(row) -> IPTrackingRecord:
    return IPTrackingRecord(
        ip_hash=row[0],
        first_seen=row[1],
        last_seen=row[2],
        visit_count=row[3],
        flag_count=row[4],
        is_flagged=row[5],
        flag_reasons=[FlagReason(r) for r in (row[6] or [])],
        metadata=row[7] or {},
    )


def _ban_from_row(row) -> IPBan:
    return IPBan(
        id=str(row[0]),
        ip_hash=row[1],
        ban_type=BanType(row[2]),
        reason=BanReason(row[3]),
        description=row[4],
        expires_at=row[5],
        created_by=row[6],
        is_active=row[7],
        created_at=row[8],
    )


def _event_from_row(row) -> AbuseLogEntry:
    return AbuseLogEntry(
        id=str(row[0]),
        ip_hash=row[1],
        event_type=AbuseEventType(row[2]),
        severity=AbuseSeverity(row[3]),
        endpoint=row[4],
        details=row[5] or {},
        created_at=row[6],
    )


class PostgresAbuseStore:
    """psycopg2-backed store.

    Concurrency relies on the database: counters are bumped with single
    ``UPDATE ... RETURNING`` statements, visits use ``INSERT ... ON CONFLICT``,
    and a partial unique index on active bans makes ban inserts idempotent.
    """

    def __init__(self, database_url: Optional[str] = None):
        """Initialize the store.

        Args:
            database_url: Postgres connection string. If None, uses DATABASE_URL env var.
        """
        self.database_url = database_url or os.getenv("DATABASE_URL")
        self._connection = None
        self._conn_lock = threading.Lock()

    def _get_connection(self):
        """Get or create database connection."""
        if not self.database_url:
            raise AbuseStoreError("No DATABASE_URL configured")

        if self._connection is None or self._connection.closed:
            try:
                self._connection = psycopg2.connect(self.database_url)
            except psycopg2.Error as e:
                logger.error(f"Failed to connect to database: {e}")
                raise AbuseStoreError(f"Failed to connect to database: {e}") from e

        return self._connection

    def _run(self, operation: str, fn):
        # One shared connection; serialize use of it across worker threads
        with self._conn_lock:
            conn = self._get_connection()
            try:
                with conn.cursor() as cur:
                    result = fn(cur)
                conn.commit()
                return result
            except psycopg2.Error as e:
                logger.error(f"Abuse store {operation} failed: {e}")
                self._rollback(conn)
                raise AbuseStoreError(f"{operation} failed: {e}") from e

    def _rollback(self, conn) -> None:
        try:
            conn.rollback()
        except psycopg2.Error as e:
            # Broken connection; the next call reconnects
            logger.warning(f"Abuse store rollback failed, dropping connection: {e}")
            self._connection = None

    def ensure_tables_exist(self) -> None:
        """Create abuse tracking tables and indexes if they don't exist."""

        def create(cur):
            cur.execute("""
                CREATE TABLE IF NOT EXISTS ip_tracking (
                    ip_hash VARCHAR(64) PRIMARY KEY,
                    first_seen TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    last_seen TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    visit_count INTEGER NOT NULL DEFAULT 1,
                    flag_count INTEGER NOT NULL DEFAULT 0,
                    is_flagged BOOLEAN NOT NULL DEFAULT FALSE,
                    flag_reasons TEXT[] NOT NULL DEFAULT '{}',
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS ip_bans (
                    id UUID PRIMARY KEY,
                    ip_hash VARCHAR(64) NOT NULL,
                    ban_type VARCHAR(20) NOT NULL CHECK (ban_type IN ('temporary', 'permanent')),
                    reason VARCHAR(50) NOT NULL,
                    description TEXT,
                    expires_at TIMESTAMP WITH TIME ZONE,
                    created_by VARCHAR(255) NOT NULL DEFAULT 'system',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS abuse_logs (
                    id UUID PRIMARY KEY,
                    ip_hash VARCHAR(64) NOT NULL,
                    event_type VARCHAR(50) NOT NULL,
                    severity VARCHAR(20) NOT NULL,
                    endpoint VARCHAR(255),
                    details JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                )
            """)

            # At most one active ban per identity
            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_ip_bans_one_active "
                "ON ip_bans(ip_hash) WHERE is_active"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_ip_bans_expires_at ON ip_bans(expires_at) WHERE is_active")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_abuse_logs_lookup "
                "ON abuse_logs(ip_hash, event_type, created_at DESC)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_ip_tracking_flagged ON ip_tracking(is_flagged)")

        self._run("ensure_tables_exist", create)
        logger.info("Abuse tracking tables created/verified successfully")

    # ==================== Tracking ====================

    def get_tracking(self, ip_hash: str) -> Optional[IPTrackingRecord]:
        def select(cur):
            cur.execute(f"SELECT {_TRACKING_COLUMNS} FROM ip_tracking WHERE ip_hash = %s", (ip_hash,))
            return cur.fetchone()

        row = self._run("get_tracking", select)
        return _tracking_from_row(row) if row else None

    def upsert_visit(
        self, ip_hash: str, metadata: dict[str, Any], now: datetime
    ) -> tuple[IPTrackingRecord, bool]:
        def upsert(cur):
            # xmax = 0 only for freshly inserted rows
            cur.execute(
                f"""
                INSERT INTO ip_tracking (ip_hash, first_seen, last_seen, visit_count, metadata)
                VALUES (%s, %s, %s, 1, %s)
                ON CONFLICT (ip_hash) DO UPDATE
                SET visit_count = ip_tracking.visit_count + 1,
                    last_seen = EXCLUDED.last_seen,
                    metadata = ip_tracking.metadata || %s
                RETURNING {_TRACKING_COLUMNS}, (xmax = 0) AS inserted
                """,
                (ip_hash, now, now, Json({**metadata, "debatesCreated": 0}), Json(metadata)),
            )
            return cur.fetchone()

        row = self._run("upsert_visit", upsert)
        return _tracking_from_row(row), bool(row[8])

    def increment_flag(self, ip_hash: str, reason: FlagReason, now: datetime) -> IPTrackingRecord:
        def flag(cur):
            cur.execute(
                f"""
                INSERT INTO ip_tracking
                    (ip_hash, first_seen, last_seen, visit_count, flag_count, is_flagged, flag_reasons, metadata)
                VALUES (%s, %s, %s, 0, 1, TRUE, ARRAY[%s]::TEXT[], %s)
                ON CONFLICT (ip_hash) DO UPDATE
                SET flag_count = ip_tracking.flag_count + 1,
                    is_flagged = TRUE,
                    flag_reasons = CASE
                        WHEN %s = ANY(ip_tracking.flag_reasons) THEN ip_tracking.flag_reasons
                        ELSE array_append(ip_tracking.flag_reasons, %s)
                    END
                RETURNING {_TRACKING_COLUMNS}
                """,
                (ip_hash, now, now, reason.value, Json({"debatesCreated": 0}), reason.value, reason.value),
            )
            return cur.fetchone()

        return _tracking_from_row(self._run("increment_flag", flag))

    def increment_debate_count(self, ip_hash: str, now: datetime) -> Optional[IPTrackingRecord]:
        def bump(cur):
            cur.execute(
                f"""
                UPDATE ip_tracking
                SET metadata = metadata || jsonb_build_object(
                    'debatesCreated', COALESCE((metadata->>'debatesCreated')::int, 0) + 1,
                    'lastDebateAt', %s::text
                )
                WHERE ip_hash = %s
                RETURNING {_TRACKING_COLUMNS}
                """,
                (now.isoformat(), ip_hash),
            )
            return cur.fetchone()

        row = self._run("increment_debate_count", bump)
        return _tracking_from_row(row) if row else None

    # ==================== Bans ====================

    def deactivate_expired_bans(self, now: datetime) -> int:
        def deactivate(cur):
            cur.execute(
                """
                UPDATE ip_bans SET is_active = FALSE
                WHERE is_active AND expires_at IS NOT NULL AND expires_at <= %s
                """,
                (now,),
            )
            return cur.rowcount

        return self._run("deactivate_expired_bans", deactivate)

    def get_active_ban(self, ip_hash: str) -> Optional[IPBan]:
        def select(cur):
            cur.execute(
                f"""
                SELECT {_BAN_COLUMNS} FROM ip_bans
                WHERE ip_hash = %s AND is_active
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (ip_hash,),
            )
            return cur.fetchone()

        row = self._run("get_active_ban", select)
        return _ban_from_row(row) if row else None

    def insert_ban_if_absent(self, ban: IPBan) -> tuple[IPBan, bool]:
        def insert(cur):
            cur.execute(
                f"""
                INSERT INTO ip_bans ({_BAN_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, TRUE, %s)
                ON CONFLICT (ip_hash) WHERE is_active DO NOTHING
                RETURNING {_BAN_COLUMNS}
                """,
                (
                    ban.id,
                    ban.ip_hash,
                    ban.ban_type.value,
                    ban.reason.value,
                    ban.description,
                    ban.expires_at,
                    ban.created_by,
                    ban.created_at,
                ),
            )
            row = cur.fetchone()
            if row:
                return row, True
            cur.execute(
                f"SELECT {_BAN_COLUMNS} FROM ip_bans WHERE ip_hash = %s AND is_active LIMIT 1",
                (ban.ip_hash,),
            )
            return cur.fetchone(), False

        row, created = self._run("insert_ban_if_absent", insert)
        if row is None:
            # The conflicting ban was deactivated between the two statements
            raise AbuseStoreError("insert_ban_if_absent lost a race, retry")
        return _ban_from_row(row), created

    def deactivate_bans(self, ip_hash: str, ban_id: Optional[str] = None) -> int:
        def deactivate(cur):
            if ban_id is None:
                cur.execute("UPDATE ip_bans SET is_active = FALSE WHERE ip_hash = %s AND is_active", (ip_hash,))
            else:
                cur.execute(
                    "UPDATE ip_bans SET is_active = FALSE WHERE ip_hash = %s AND id = %s AND is_active",
                    (ip_hash, ban_id),
                )
            return cur.rowcount

        return self._run("deactivate_bans", deactivate)

    # ==================== Events ====================

    def append_event(self, entry: AbuseLogEntry) -> None:
        def insert(cur):
            cur.execute(
                f"""
                INSERT INTO abuse_logs ({_EVENT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.ip_hash,
                    entry.event_type.value,
                    entry.severity.value,
                    entry.endpoint,
                    Json(entry.details),
                    entry.created_at,
                ),
            )

        self._run("append_event", insert)

    def count_events(self, ip_hash: str, event_type: AbuseEventType, since: datetime) -> int:
        def count(cur):
            cur.execute(
                """
                SELECT COUNT(*) FROM abuse_logs
                WHERE ip_hash = %s AND event_type = %s AND created_at >= %s
                """,
                (ip_hash, event_type.value, since),
            )
            return cur.fetchone()[0]

        return self._run("count_events", count)

    def list_events(
        self, ip_hash: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[AbuseLogEntry]:
        def select(cur):
            query = f"SELECT {_EVENT_COLUMNS} FROM abuse_logs WHERE ip_hash = %s"
            params: list[Any] = [ip_hash]
            if since is not None:
                query += " AND created_at >= %s"
                params.append(since)
            query += " ORDER BY created_at DESC"
            if limit:
                query += " LIMIT %s"
                params.append(limit)
            cur.execute(query, params)
            return cur.fetchall()

        return [_event_from_row(row) for row in self._run("list_events", select)]


def new_ban_id() -> str:
    return str(uuid.uuid4())
