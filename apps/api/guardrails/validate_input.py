"""Debate input validation: sanitization, pattern filter and moderation stack.

Entry points for the debate-creation API. Each call returns a verdict and
never raises for bad input:

- input errors (empty, length, enum) come back as ``errors``
- security denials come back as ``blocked=True`` with a ``BlockReason``,
  are written to the audit log and, when the caller's IP is known, are
  recorded with the abuse tracker

Usage:
    from guardrails.validate_input import validate_debate_topic

    result = await validate_debate_topic(topic, context)
    if not result.valid:
        raise HTTPException(status_code=400, detail=result.errors)
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from guardrails.audit_logger import SecurityAuditLog, get_audit_log
from guardrails.content_filter import (
    ContentFilterResult,
    FilterCategory,
    filter_custom_rule,
    filter_debate_topic,
    is_prompt_injection,
)
from guardrails.moderation_stack import ModerationStack, get_moderation_stack
from guardrails.moderation_types import BlockReason, ContentCategory, ModerationResult
from guardrails.sanitizer import contains_dangerous_patterns, sanitize_custom_rule, sanitize_topic
from services.abuse_tracker import AbuseTracker, get_abuse_tracker
from services.ip_hash import SecurityContext, hash_ip

logger = logging.getLogger(__name__)

DEBATE_ENDPOINT = "/api/debate"

MIN_TOPIC_LENGTH = 10
MAX_TOPIC_LENGTH = 500
MAX_CUSTOM_RULES = 5
MAX_RULE_LENGTH = 200

VALID_TURNS = (2, 4, 6, 8, 10)
VALID_FORMATS = ("standard", "oxford", "lincoln-douglas")
DEFAULT_FORMAT = "standard"

TOS_VIOLATION_MESSAGE = (
    "Your input contains content that violates our Terms of Service. "
    "Repeated violations may result in access termination."
)
RULE_TOS_VIOLATION_MESSAGE = "Your custom rule contains content that violates our Terms of Service."

MODERATION_ERROR_MESSAGES = {
    BlockReason.HARMFUL_CONTENT: (
        "Your input contains content that violates our Terms of Service. "
        "This type of content is strictly prohibited."
    ),
    BlockReason.SENSITIVE_TOPIC: (
        "This topic involves sensitive content that cannot be debated on our platform. "
        "Please choose a different topic."
    ),
    BlockReason.CONTENT_POLICY: "Your input was flagged by our content moderation system. Please revise your topic.",
}
DEFAULT_FILTER_MESSAGE = "Your input was flagged by our content filter. Please revise your topic."

_CATEGORY_BLOCK_REASONS = {
    ContentCategory.CHILD_SAFETY: BlockReason.HARMFUL_CONTENT,
    ContentCategory.SELF_HARM: BlockReason.HARMFUL_CONTENT,
    ContentCategory.VIOLENT: BlockReason.HARMFUL_CONTENT,
    ContentCategory.ILLEGAL: BlockReason.HARMFUL_CONTENT,
    ContentCategory.HATE: BlockReason.SENSITIVE_TOPIC,
    ContentCategory.EXTREMIST: BlockReason.SENSITIVE_TOPIC,
}

_FILTER_BLOCK_REASONS = {
    FilterCategory.PROMPT_INJECTION: BlockReason.PROMPT_INJECTION,
    FilterCategory.HARMFUL_CONTENT: BlockReason.HARMFUL_CONTENT,
    FilterCategory.PROFANITY: BlockReason.PROFANITY,
    FilterCategory.MANIPULATION: BlockReason.MANIPULATION,
}

# Verdicts from the regex layers rather than the moderation stack
REGEX_SOURCE = "regex"


@dataclass
class ValidationResult:
    valid: bool
    sanitized_value: str = ""
    errors: list[str] = field(default_factory=list)
    blocked: bool = False
    block_reason: Optional[BlockReason] = None
    filter_result: Optional[ContentFilterResult] = None
    moderation_source: Optional[str] = None


class DebateConfigInput(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    topic: str
    turns: int
    format: Optional[str] = None
    custom_rules: list[str] = Field(default_factory=list, alias="customRules")


@dataclass
class DebateConfigValidationResult:
    valid: bool
    blocked: bool = False
    block_reason: Optional[BlockReason] = None
    sanitized_config: Optional[dict[str, Any]] = None
    errors: list[str] = field(default_factory=list)


def block_reason_for_category(category: ContentCategory) -> BlockReason:
    return _CATEGORY_BLOCK_REASONS.get(category, BlockReason.CONTENT_POLICY)


def block_reason_for_filter(filter_result: ContentFilterResult) -> BlockReason:
    """Reason from the first matched category, prompt injection first."""
    for category in _FILTER_BLOCK_REASONS:
        if any(m.category is category for m in filter_result.matches):
            return _FILTER_BLOCK_REASONS[category]
    return BlockReason.CONTENT_POLICY


def moderation_error_message(block_reason: BlockReason) -> str:
    return MODERATION_ERROR_MESSAGES.get(block_reason, DEFAULT_FILTER_MESSAGE)


class InputValidator:
    """Runs the validation pipeline and records denials."""

    def __init__(
        self,
        moderation_stack: ModerationStack,
        abuse_tracker: Optional[AbuseTracker] = None,
        audit_log: Optional[SecurityAuditLog] = None,
        endpoint: str = DEBATE_ENDPOINT,
    ):
        self.moderation_stack = moderation_stack
        self.abuse_tracker = abuse_tracker
        self.audit_log = audit_log if audit_log is not None else get_audit_log()
        self.endpoint = endpoint

    # ==================== Recording ====================

    @staticmethod
    def _audit_context(context: Optional[SecurityContext]) -> SecurityContext:
        return context or SecurityContext(ip="unknown")

    async def _record_abuse(
        self,
        context: Optional[SecurityContext],
        kind: str,
        details: dict[str, Any],
    ) -> None:
        """Best-effort abuse tracking; skipped without a tracker or client IP."""
        if self.abuse_tracker is None or context is None or not context.ip or context.ip == "unknown":
            return
        try:
            ip_hash = hash_ip(context.ip)
            if kind == "injection":
                await self.abuse_tracker.record_prompt_injection(ip_hash, details, self.endpoint)
            else:
                await self.abuse_tracker.record_content_violation(ip_hash, details, self.endpoint)
        except Exception as e:
            logger.error(f"Failed to record {kind} abuse event for {self.endpoint}: {e}")

    async def _block_dangerous(
        self,
        context: Optional[SecurityContext],
        text: str,
        details: dict[str, Any],
    ) -> None:
        self.audit_log.log_injection_attempt(self._audit_context(context), self.endpoint, "dangerous_pattern", text)
        await self._record_abuse(context, "injection", {"type": "dangerous_pattern", **details})

    async def _block_filter(
        self,
        context: Optional[SecurityContext],
        text: str,
        filter_result: ContentFilterResult,
        source: str,
        details: dict[str, Any],
    ) -> bool:
        """Record a pattern-filter block. Returns True for prompt injection."""
        audit_context = self._audit_context(context)
        self.audit_log.log_content_filter_violation(audit_context, self.endpoint, filter_result, text)

        if is_prompt_injection(text):
            self.audit_log.log_injection_attempt(audit_context, self.endpoint, f"{source}_injection", text)
            await self._record_abuse(context, "injection", {"type": f"{source}_injection", **details})
            return True

        await self._record_abuse(context, "content", {"type": f"{source}_content_violation", **details})
        return False

    async def _block_moderation(
        self,
        context: Optional[SecurityContext],
        text: str,
        moderation: ModerationResult,
        block_reason: BlockReason,
        details: dict[str, Any],
    ) -> None:
        logger.info(
            f"Moderation blocked content: category={moderation.category.value}, "
            f"severity={moderation.severity.value}, layer={moderation.layer.value}, "
            f"risk={moderation.risk_score}"
        )
        moderation_details = {
            "category": moderation.category.value,
            "severity": moderation.severity.value,
            "layer": moderation.layer.value,
            "block_reason": block_reason.value,
        }
        self.audit_log.log_content_filter_violation(
            self._audit_context(context), self.endpoint, None, text, extra=moderation_details
        )
        await self._record_abuse(
            context, "content", {"type": "moderation_stack", **moderation_details, **details}
        )

    # ==================== Topic ====================

    async def validate_debate_topic(
        self,
        topic: Optional[str],
        context: Optional[SecurityContext] = None,
    ) -> ValidationResult:
        if not topic or not topic.strip():
            return ValidationResult(valid=False, errors=["Topic is required"])

        # Raw input, so stripping cannot hide a payload
        if contains_dangerous_patterns(topic):
            await self._block_dangerous(context, topic, {"topic": topic})
            return ValidationResult(
                valid=False,
                errors=[TOS_VIOLATION_MESSAGE],
                blocked=True,
                block_reason=BlockReason.DANGEROUS_PATTERN,
                moderation_source=REGEX_SOURCE,
            )

        sanitized = sanitize_topic(topic)
        errors = []
        if sanitized.sanitized_length < MIN_TOPIC_LENGTH:
            errors.append(f"Topic must be at least {MIN_TOPIC_LENGTH} characters")
        if sanitized.sanitized_length > MAX_TOPIC_LENGTH:
            errors.append(f"Topic must be less than {MAX_TOPIC_LENGTH} characters")
        if errors:
            return ValidationResult(valid=False, errors=errors)

        filter_result = filter_debate_topic(topic)
        if filter_result.should_block:
            injected = await self._block_filter(context, topic, filter_result, "topic", {"topic": topic})
            block_reason = BlockReason.PROMPT_INJECTION if injected else block_reason_for_filter(filter_result)
            return ValidationResult(
                valid=False,
                errors=[TOS_VIOLATION_MESSAGE if injected else moderation_error_message(block_reason)],
                blocked=True,
                block_reason=block_reason,
                filter_result=filter_result,
                moderation_source=REGEX_SOURCE,
            )

        moderation = await self.moderation_stack.moderate(sanitized.value)
        if not moderation.allowed:
            block_reason = block_reason_for_category(moderation.category)
            await self._block_moderation(context, topic, moderation, block_reason, {"topic": topic})
            return ValidationResult(
                valid=False,
                errors=[moderation_error_message(block_reason)],
                blocked=True,
                block_reason=block_reason,
                filter_result=filter_result,
                moderation_source=moderation.layer.value,
            )

        logger.info(
            f"Topic approved: category={moderation.category.value}, "
            f"layer={moderation.layer.value}, risk={moderation.risk_score}"
        )
        return ValidationResult(
            valid=True,
            sanitized_value=sanitized.value,
            filter_result=filter_result,
            moderation_source=moderation.layer.value,
        )

    # ==================== Custom rules ====================

    async def validate_custom_rules(
        self,
        rules: list[str],
        context: Optional[SecurityContext] = None,
    ) -> ValidationResult:
        """Validate every rule and aggregate errors instead of stopping at the first."""
        if len(rules) > MAX_CUSTOM_RULES:
            return ValidationResult(
                valid=False,
                errors=[f"Maximum {MAX_CUSTOM_RULES} custom rules allowed"],
                moderation_source=REGEX_SOURCE,
            )

        errors: list[str] = []
        sanitized_rules: list[str] = []
        blocked = False
        block_reason: Optional[BlockReason] = None
        aggregate_filter_result: Optional[ContentFilterResult] = None
        moderation_source = REGEX_SOURCE

        for i, rule in enumerate(rules):
            if not rule or not rule.strip():
                continue
            details = {"rule": rule, "rule_index": i}

            if contains_dangerous_patterns(rule):
                blocked = True
                block_reason = BlockReason.DANGEROUS_PATTERN
                errors.append(RULE_TOS_VIOLATION_MESSAGE)
                await self._block_dangerous(context, rule, details)
                continue

            filter_result = filter_custom_rule(rule)
            if filter_result.should_block:
                blocked = True
                aggregate_filter_result = filter_result
                if await self._block_filter(context, rule, filter_result, "custom_rule", details):
                    block_reason = BlockReason.PROMPT_INJECTION
                    errors.append(RULE_TOS_VIOLATION_MESSAGE)
                else:
                    block_reason = BlockReason.CONTENT_POLICY
                    errors.append(f"Rule {i + 1} was flagged by content filter")
                continue

            sanitized = sanitize_custom_rule(rule)
            if sanitized.sanitized_length > MAX_RULE_LENGTH:
                errors.append(f"Rule {i + 1} must be less than {MAX_RULE_LENGTH} characters")
                continue

            moderation = await self.moderation_stack.moderate(sanitized.value)
            if not moderation.allowed:
                blocked = True
                block_reason = block_reason_for_category(moderation.category)
                moderation_source = moderation.layer.value
                errors.append(f"Rule {i + 1} was flagged by content moderation")
                await self._block_moderation(context, rule, moderation, block_reason, details)
                continue

            sanitized_rules.append(sanitized.value)

        return ValidationResult(
            valid=not errors and not blocked,
            sanitized_value=json.dumps(sanitized_rules),
            errors=errors,
            blocked=blocked,
            block_reason=block_reason,
            filter_result=aggregate_filter_result,
            moderation_source=moderation_source,
        )

    # ==================== Full config ====================

    async def validate_and_sanitize_debate_config(
        self,
        config: DebateConfigInput,
        context: Optional[SecurityContext] = None,
    ) -> DebateConfigValidationResult:
        errors: list[str] = []
        blocked = False
        block_reason: Optional[BlockReason] = None

        topic_result = await self.validate_debate_topic(config.topic, context)
        if not topic_result.valid:
            errors.extend(topic_result.errors)
            if topic_result.blocked:
                blocked = True
                block_reason = topic_result.block_reason

        if config.turns not in VALID_TURNS:
            errors.append("Invalid number of turns. Must be 2, 4, 6, 8, or 10")

        debate_format = config.format or DEFAULT_FORMAT
        if debate_format not in VALID_FORMATS:
            errors.append("Invalid debate format")

        sanitized_rules: list[str] = []
        if config.custom_rules:
            rules_result = await self.validate_custom_rules(config.custom_rules, context)
            if rules_result.valid:
                sanitized_rules = json.loads(rules_result.sanitized_value)
            else:
                errors.extend(rules_result.errors)
                if rules_result.blocked:
                    blocked = True
                    block_reason = block_reason or rules_result.block_reason

        if errors:
            return DebateConfigValidationResult(
                valid=False,
                blocked=blocked,
                block_reason=block_reason,
                errors=errors,
            )

        return DebateConfigValidationResult(
            valid=True,
            sanitized_config={
                "topic": topic_result.sanitized_value,
                "turns": config.turns,
                "format": debate_format,
                "custom_rules": sanitized_rules,
            },
        )


_default_validator: Optional[InputValidator] = None


def get_input_validator() -> InputValidator:
    global _default_validator
    if _default_validator is None:
        _default_validator = InputValidator(
            moderation_stack=get_moderation_stack(),
            abuse_tracker=get_abuse_tracker(),
            audit_log=get_audit_log(),
        )
    return _default_validator


def set_input_validator(validator: Optional[InputValidator]) -> None:
    global _default_validator
    _default_validator = validator


async def validate_debate_topic(topic: Optional[str], context: Optional[SecurityContext] = None) -> ValidationResult:
    return await get_input_validator().validate_debate_topic(topic, context)


async def validate_custom_rules(rules: list[str], context: Optional[SecurityContext] = None) -> ValidationResult:
    return await get_input_validator().validate_custom_rules(rules, context)


async def validate_and_sanitize_debate_config(
    config: DebateConfigInput,
    context: Optional[SecurityContext] = None,
) -> DebateConfigValidationResult:
    return await get_input_validator().validate_and_sanitize_debate_config(config, context)
