"""Salted one-way hashing of client IPs plus per-request context extraction.

Raw IPs are never persisted; every durable record is keyed by
``hash_ip(ip)``, a SHA-256 over ``"{salt}:{normalized_ip}"``.
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Mapping, Optional

from config import DEFAULT_IP_HASH_SALT, get_settings

logger = logging.getLogger(__name__)

_IP_HASH_RE = re.compile(r"^[a-f0-9]{64}$")

_salt_warning_logged = False


@dataclass(frozen=True)
class SecurityContext:
    """Per-request metadata. Ephemeral; only the IP hash is ever stored."""

    ip: str
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    origin: Optional[str] = None
    referer: Optional[str] = None


def _resolve_salt() -> str:
    global _salt_warning_logged

    settings = get_settings()
    if settings.ip_hash_salt:
        return settings.ip_hash_salt

    if not _salt_warning_logged:
        _salt_warning_logged = True
        if settings.is_production:
            logger.error("IP_HASH_SALT is not set in production; IP hashes are using the public fallback salt")
        else:
            logger.warning("IP_HASH_SALT is not set, using fallback salt (development only)")
    return DEFAULT_IP_HASH_SALT


def normalize_ip(ip: str) -> str:
    normalized = ip.strip().lower()
    if normalized.startswith("::ffff:"):
        normalized = normalized[len("::ffff:"):]
    return normalized


def hash_ip(ip: str, salt: Optional[str] = None) -> str:
    """Return the 64-char lowercase hex SHA-256 of the salted, normalized IP."""
    salt = salt or _resolve_salt()
    payload = f"{salt}:{normalize_ip(ip)}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def is_valid_ip_hash(value: str) -> bool:
    return bool(value) and bool(_IP_HASH_RE.match(value))


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Resolve the client IP from proxy headers, falling back to loopback."""
    forwarded = _header(headers, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    for name in ("x-real-ip", "cf-connecting-ip"):
        value = _header(headers, name)
        if value:
            return value.strip()

    return "127.0.0.1"


def get_client_metadata(headers: Mapping[str, str]) -> dict:
    metadata = {}
    user_agent = _header(headers, "user-agent")
    if user_agent:
        metadata["userAgent"] = user_agent
    country = _header(headers, "cf-ipcountry")
    if country:
        metadata["country"] = country
    return metadata


def extract_security_context(headers: Mapping[str, str]) -> SecurityContext:
    forwarded = _header(headers, "x-forwarded-for")
    ip = (forwarded.split(",")[0].strip() if forwarded else None) or _header(headers, "x-real-ip") or "unknown"

    return SecurityContext(
        ip=ip,
        session_id=_header(headers, "x-session-id"),
        user_agent=_header(headers, "user-agent"),
        origin=_header(headers, "origin"),
        referer=_header(headers, "referer"),
    )


def hash_prefix(ip_hash: str) -> str:
    """Truncated hash for log lines."""
    return f"{ip_hash[:16]}..."
