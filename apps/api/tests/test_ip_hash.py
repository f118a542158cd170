"""Tests for salted IP hashing and request context extraction."""

import hashlib
import logging

import config
from config import DEFAULT_IP_HASH_SALT
from services.ip_hash import (
    extract_security_context,
    get_client_ip,
    get_client_metadata,
    hash_ip,
    hash_prefix,
    is_valid_ip_hash,
)

TEST_SALT = "test-salt"


class TestHashIp:
    def test_salted_sha256(self):
        """Hash is SHA-256 over 'salt:ip'."""
        expected = hashlib.sha256(f"{TEST_SALT}:203.0.113.7".encode()).hexdigest()
        assert hash_ip("203.0.113.7") == expected

    def test_deterministic_and_valid(self):
        """Same input and salt give the same 64-char hex digest."""
        first = hash_ip("198.51.100.1")
        assert first == hash_ip("198.51.100.1")
        assert is_valid_ip_hash(first)

    def test_ipv4_mapped_ipv6_normalized(self):
        """::ffff:-prefixed addresses hash like their IPv4 form."""
        assert hash_ip("::ffff:192.0.2.5") == hash_ip("192.0.2.5")
        assert hash_ip("  192.0.2.5 ") == hash_ip("192.0.2.5")

    def test_explicit_salt(self):
        """An explicit salt overrides settings."""
        assert hash_ip("192.0.2.5", salt="other") != hash_ip("192.0.2.5")

    def test_fallback_salt_warns_once(self, monkeypatch, caplog):
        """Missing salt uses the fallback and warns a single time."""
        monkeypatch.setenv("IP_HASH_SALT", "")
        config.get_settings.cache_clear()

        with caplog.at_level(logging.WARNING, logger="services.ip_hash"):
            value = hash_ip("192.0.2.5")
            hash_ip("192.0.2.6")

        expected = hashlib.sha256(f"{DEFAULT_IP_HASH_SALT}:192.0.2.5".encode()).hexdigest()
        assert value == expected
        warnings = [r for r in caplog.records if "IP_HASH_SALT" in r.getMessage()]
        assert len(warnings) == 1
        assert warnings[0].levelno == logging.WARNING

    def test_fallback_salt_in_production_logs_error(self, monkeypatch, caplog):
        """Production without a salt logs at error level."""
        monkeypatch.setenv("IP_HASH_SALT", "")
        monkeypatch.setenv("ENVIRONMENT", "production")
        config.get_settings.cache_clear()

        with caplog.at_level(logging.WARNING, logger="services.ip_hash"):
            hash_ip("192.0.2.5")

        assert any(r.levelno == logging.ERROR and "IP_HASH_SALT" in r.getMessage() for r in caplog.records)


class TestHashValidation:
    def test_is_valid_ip_hash(self):
        assert is_valid_ip_hash("a" * 64)
        assert not is_valid_ip_hash("A" * 64)
        assert not is_valid_ip_hash("a" * 63)
        assert not is_valid_ip_hash("g" * 64)
        assert not is_valid_ip_hash("")

    def test_hash_prefix(self):
        assert hash_prefix("0123456789abcdef" + "0" * 48) == "0123456789abcdef..."


class TestClientIp:
    def test_forwarded_for_first_entry(self):
        """The first X-Forwarded-For entry wins."""
        assert get_client_ip({"x-forwarded-for": "203.0.113.1, 10.0.0.1"}) == "203.0.113.1"

    def test_real_ip_then_cloudflare(self):
        assert get_client_ip({"x-real-ip": "203.0.113.2"}) == "203.0.113.2"
        assert get_client_ip({"cf-connecting-ip": "203.0.113.3"}) == "203.0.113.3"

    def test_loopback_fallback(self):
        """No proxy headers resolves to loopback."""
        assert get_client_ip({}) == "127.0.0.1"

    def test_metadata(self):
        metadata = get_client_metadata({"user-agent": "pytest", "cf-ipcountry": "NL"})
        assert metadata == {"userAgent": "pytest", "country": "NL"}


class TestSecurityContext:
    def test_extracts_headers(self):
        """Context carries IP, session, agent, origin and referer."""
        context = extract_security_context(
            {
                "x-forwarded-for": "203.0.113.9, 10.0.0.1",
                "x-session-id": "sess-1",
                "user-agent": "pytest",
                "origin": "http://localhost:3000",
                "referer": "http://localhost:3000/new",
            }
        )
        assert context.ip == "203.0.113.9"
        assert context.session_id == "sess-1"
        assert context.user_agent == "pytest"
        assert context.origin == "http://localhost:3000"
        assert context.referer == "http://localhost:3000/new"

    def test_unknown_without_proxy_headers(self):
        """Without proxy headers the IP is reported as unknown."""
        assert extract_security_context({}).ip == "unknown"
