"""Debate input guardrails.

This package validates user-supplied debate input before it reaches an LLM
or storage. It protects against:
- Prompt injection and jailbreak phrasing
- Harmful, hateful and extremist topics (including euphemisms)
- Stored XSS via topics, rules and messages
- Profanity and manipulation attempts

Usage:
    from guardrails import validate_debate_topic, SecurityContext

    result = await validate_debate_topic(topic, SecurityContext(ip=client_ip))
    if result.blocked:
        # Fixed policy message in result.errors
        pass
"""

from .audit_logger import (
    AuditEventType,
    AuditLogEntry,
    AuditSeverity,
    SecurityAuditLog,
    get_audit_log,
    set_audit_log,
)
from .content_filter import (
    ContentFilterConfig,
    ContentFilterMatch,
    ContentFilterResult,
    FilterCategory,
    FilterSeverity,
    filter_content,
    filter_custom_rule,
    filter_debate_topic,
    get_filter_stats,
    is_prompt_injection,
)
from .moderation_stack import (
    BusinessRuleResult,
    ModerationConfig,
    ModerationStack,
    apply_business_rules,
    calculate_keyword_risk,
    get_moderation_stack,
    moderate_content,
    set_moderation_stack,
)
from .moderation_types import (
    BlockReason,
    ContentCategory,
    ModerationLayer,
    ModerationResult,
    SeverityLevel,
    TargetType,
)
from .sanitizer import (
    SanitizationContext,
    SanitizationOptions,
    SanitizationResult,
    contains_dangerous_patterns,
    escape_for_json,
    escape_html,
    sanitize,
    sanitize_custom_rule,
    sanitize_for_rendering,
    sanitize_message,
    sanitize_topic,
)
from .validate_input import (
    DebateConfigInput,
    DebateConfigValidationResult,
    InputValidator,
    ValidationResult,
    validate_and_sanitize_debate_config,
    validate_custom_rules,
    validate_debate_topic,
)
from services.ip_hash import SecurityContext

__all__ = [
    # Sanitizer
    "SanitizationContext",
    "SanitizationOptions",
    "SanitizationResult",
    "sanitize",
    "sanitize_topic",
    "sanitize_custom_rule",
    "sanitize_message",
    "sanitize_for_rendering",
    "contains_dangerous_patterns",
    "escape_html",
    "escape_for_json",
    # Pattern filter
    "ContentFilterConfig",
    "ContentFilterMatch",
    "ContentFilterResult",
    "FilterCategory",
    "FilterSeverity",
    "filter_content",
    "filter_debate_topic",
    "filter_custom_rule",
    "is_prompt_injection",
    "get_filter_stats",
    # Moderation
    "BlockReason",
    "BusinessRuleResult",
    "ContentCategory",
    "ModerationConfig",
    "ModerationLayer",
    "ModerationResult",
    "ModerationStack",
    "SeverityLevel",
    "TargetType",
    "apply_business_rules",
    "calculate_keyword_risk",
    "get_moderation_stack",
    "set_moderation_stack",
    "moderate_content",
    # Audit
    "AuditEventType",
    "AuditLogEntry",
    "AuditSeverity",
    "SecurityAuditLog",
    "get_audit_log",
    "set_audit_log",
    # Validation
    "DebateConfigInput",
    "DebateConfigValidationResult",
    "InputValidator",
    "SecurityContext",
    "ValidationResult",
    "validate_debate_topic",
    "validate_custom_rules",
    "validate_and_sanitize_debate_config",
]
