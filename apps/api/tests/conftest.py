import pytest

import config
from guardrails.audit_logger import set_audit_log
from guardrails.moderation_stack import set_moderation_stack
from guardrails.validate_input import set_input_validator
from middleware.rate_limit import set_rate_limiter
from services import ip_hash
from services.abuse_tracker import set_abuse_tracker

TEST_SALT = "test-salt"
TEST_ADMIN_KEY = "test-admin-key"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Offline settings: no provider keys, in-memory abuse store, fixed salt.

    Tests that need a provider inject a fake through the capability protocol.
    """
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("IP_HASH_SALT", TEST_SALT)
    monkeypatch.setenv("ADMIN_API_KEY", TEST_ADMIN_KEY)
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_security_state():
    """Drop process-wide defaults so no state leaks between tests."""
    ip_hash._salt_warning_logged = False
    yield
    set_input_validator(None)
    set_moderation_stack(None)
    set_abuse_tracker(None)
    set_audit_log(None)
    set_rate_limiter(None)
    ip_hash._salt_warning_logged = False
