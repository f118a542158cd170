"""Regex content filter for debate input.

Classifies text against four pattern groups (prompt injection, harmful
content, manipulation, profanity) plus optional caller-supplied block
patterns, and decides whether the content must be blocked, logged, or
softly redacted.

Matching is exhaustive: every hit from every enabled group is reported,
so callers can aggregate by category and severity.

Usage:
    from guardrails.content_filter import filter_debate_topic

    result = filter_debate_topic(topic)
    if result.should_block:
        ...
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class FilterCategory(str, Enum):
    PROFANITY = "profanity"
    PROMPT_INJECTION = "prompt_injection"
    HARMFUL_CONTENT = "harmful_content"
    MANIPULATION = "manipulation"
    PII = "pii"
    SPAM = "spam"


class FilterSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class FilterPattern:
    pattern: re.Pattern
    category: FilterCategory
    severity: FilterSeverity
    description: str


@dataclass(frozen=True)
class ContentFilterMatch:
    category: FilterCategory
    severity: FilterSeverity
    pattern: str
    matched_text: str
    position: int


@dataclass(frozen=True)
class ContentFilterResult:
    passed: bool
    matches: list[ContentFilterMatch] = field(default_factory=list)
    sanitized_content: str | None = None
    should_block: bool = False
    should_log: bool = False


class ContentFilterConfig(BaseModel):
    """Toggles for a filter run. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enable_profanity_filter: bool = True
    enable_prompt_injection_detection: bool = True
    enable_harmful_content_detection: bool = True
    strict_mode: bool = False
    custom_block_patterns: list[str] = []
    custom_allow_patterns: list[str] = []


def _patterns(
    category: FilterCategory, entries: list[tuple[str, FilterSeverity, str]]
) -> list[FilterPattern]:
    return [
        FilterPattern(re.compile(regex, re.IGNORECASE), category, severity, description)
        for regex, severity, description in entries
    ]


# Each tuple: (regex_pattern, severity, description)
PROMPT_INJECTION_PATTERNS = _patterns(
    FilterCategory.PROMPT_INJECTION,
    [
        (
            r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
            FilterSeverity.CRITICAL,
            "Instruction override attempt",
        ),
        (
            r"disregard\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)",
            FilterSeverity.CRITICAL,
            "Instruction override attempt",
        ),
        (
            r"forget\s+(all\s+)?(previous|prior|above|your)\s+(instructions?|prompts?|rules?|training)",
            FilterSeverity.CRITICAL,
            "Memory manipulation attempt",
        ),
        (
            r"you\s+are\s+now\s+(in\s+)?(a\s+)?(new|different|dan|developer|jailbreak)",
            FilterSeverity.CRITICAL,
            "Role manipulation attempt",
        ),
        (
            r"\bdan\s+mode\b|\bdeveloper\s+mode\b|\bjailbreak\s+mode\b",
            FilterSeverity.CRITICAL,
            "Jailbreak attempt",
        ),
        (
            r"pretend\s+(you('re|are)\s+)?(not\s+)?(an?\s+)?ai",
            FilterSeverity.HIGH,
            "Identity manipulation attempt",
        ),
        (
            r"act\s+as\s+(if\s+)?(you\s+)?(have\s+)?no\s+(restrictions?|limitations?|rules?)",
            FilterSeverity.CRITICAL,
            "Restriction bypass attempt",
        ),
        (
            r"\[system\]|\[assistant\]|\[user\]|<\|im_start\|>|<\|im_end\|>",
            FilterSeverity.CRITICAL,
            "Token injection attempt",
        ),
        (r"```(system|assistant|user)\b", FilterSeverity.HIGH, "Code block injection attempt"),
        (
            r"\{\{.*?(system|prompt|instruction).*?\}\}",
            FilterSeverity.HIGH,
            "Template injection attempt",
        ),
    ],
)

HARMFUL_CONTENT_PATTERNS = _patterns(
    FilterCategory.HARMFUL_CONTENT,
    [
        (
            r"\b(make|create|build|construct)\s+(a\s+)?(bomb|explosive|weapon)",
            FilterSeverity.CRITICAL,
            "Weapon creation request",
        ),
        (r"\bhow\s+to\s+(hack|steal|break\s+into)", FilterSeverity.HIGH, "Illegal activity request"),
        (
            r"\b(kill|murder|harm|hurt)\s+(myself|yourself|someone|people)",
            FilterSeverity.CRITICAL,
            "Violence-related content",
        ),
    ],
)

MANIPULATION_PATTERNS = _patterns(
    FilterCategory.MANIPULATION,
    [
        (r"\byou\s+must\s+(always|never)\b", FilterSeverity.MEDIUM, "Behavior override attempt"),
        (
            r"\boverride\s+(your\s+)?(safety|content|moderation)\s+(filters?|rules?|guidelines?)",
            FilterSeverity.CRITICAL,
            "Safety override attempt",
        ),
        (
            r"\bbypass\s+(your\s+)?(restrictions?|limitations?|filters?)",
            FilterSeverity.CRITICAL,
            "Filter bypass attempt",
        ),
    ],
)

PROFANITY_PATTERNS = _patterns(
    FilterCategory.PROFANITY,
    [
        (
            r"\b(fuck|shit|ass|bitch|damn|crap|bastard|dick|cock|pussy)\b",
            FilterSeverity.LOW,
            "Profanity detected",
        ),
        (
            r"\b(nigger|nigga|faggot|retard|kike|spic|chink|wetback)\b",
            FilterSeverity.CRITICAL,
            "Slur detected",
        ),
    ],
)


def _compile_custom(patterns: list[str], kind: str) -> list[re.Pattern]:
    compiled = []
    for source in patterns:
        try:
            compiled.append(re.compile(source, re.IGNORECASE))
        except re.error as e:
            logger.warning(f"Skipping invalid custom {kind} pattern {source!r}: {e}")
    return compiled


def _active_patterns(config: ContentFilterConfig) -> list[FilterPattern]:
    patterns: list[FilterPattern] = []

    if config.enable_prompt_injection_detection:
        patterns.extend(PROMPT_INJECTION_PATTERNS)

    if config.enable_harmful_content_detection:
        patterns.extend(HARMFUL_CONTENT_PATTERNS)
        patterns.extend(MANIPULATION_PATTERNS)

    if config.enable_profanity_filter:
        patterns.extend(PROFANITY_PATTERNS)

    for compiled in _compile_custom(config.custom_block_patterns, "block"):
        patterns.append(
            FilterPattern(compiled, FilterCategory.SPAM, FilterSeverity.MEDIUM, "Custom block pattern")
        )

    return patterns


def _is_allowed(content: str, config: ContentFilterConfig) -> bool:
    return any(p.search(content) for p in _compile_custom(config.custom_allow_patterns, "allow"))


def _find_matches(content: str, patterns: list[FilterPattern]) -> list[ContentFilterMatch]:
    return [
        ContentFilterMatch(
            category=fp.category,
            severity=fp.severity,
            pattern=fp.description,
            matched_text=m.group(0),
            position=m.start(),
        )
        for fp in patterns
        for m in fp.pattern.finditer(content)
    ]


def _should_block(matches: list[ContentFilterMatch], config: ContentFilterConfig) -> bool:
    if not matches:
        return False

    if any(m.severity is FilterSeverity.CRITICAL for m in matches):
        return True

    if config.strict_mode and any(m.severity is FilterSeverity.HIGH for m in matches):
        return True

    # These categories disqualify content regardless of severity
    return any(
        m.category in (FilterCategory.PROMPT_INJECTION, FilterCategory.HARMFUL_CONTENT)
        for m in matches
    )


def _should_log(matches: list[ContentFilterMatch]) -> bool:
    return any(
        m.severity in (FilterSeverity.CRITICAL, FilterSeverity.HIGH)
        or m.category is FilterCategory.PROMPT_INJECTION
        for m in matches
    )


def _redact_low_profanity(content: str, matches: list[ContentFilterMatch]) -> str:
    for match in matches:
        if match.category is FilterCategory.PROFANITY and match.severity is FilterSeverity.LOW:
            content = re.sub(
                re.escape(match.matched_text),
                "*" * len(match.matched_text),
                content,
                flags=re.IGNORECASE,
            )
    return content


def filter_content(content: str, config: ContentFilterConfig | None = None) -> ContentFilterResult:
    """Run the pattern filter over content.

    Args:
        content: Raw text to classify.
        config: Which pattern groups to run; defaults to all groups, non-strict.

    Returns:
        ContentFilterResult. ``sanitized_content`` is None when blocked,
        otherwise the content with low-severity profanity masked.
    """
    config = config or ContentFilterConfig()

    if _is_allowed(content, config):
        return ContentFilterResult(passed=True, matches=[], sanitized_content=content)

    matches = _find_matches(content, _active_patterns(config))
    should_block = _should_block(matches, config)
    should_log = _should_log(matches)

    if should_block:
        sanitized = None
    elif matches:
        sanitized = _redact_low_profanity(content, matches)
    else:
        sanitized = content

    return ContentFilterResult(
        passed=not should_block,
        matches=matches,
        sanitized_content=sanitized,
        should_block=should_block,
        should_log=should_log,
    )


def filter_debate_topic(topic: str) -> ContentFilterResult:
    return filter_content(topic, ContentFilterConfig(strict_mode=True))


def filter_custom_rule(rule: str) -> ContentFilterResult:
    return filter_content(rule, ContentFilterConfig(enable_profanity_filter=False, strict_mode=True))


def is_prompt_injection(content: str) -> bool:
    """Check content against the prompt-injection patterns only."""
    result = filter_content(
        content,
        ContentFilterConfig(
            enable_profanity_filter=False,
            enable_harmful_content_detection=False,
            strict_mode=True,
        ),
    )
    return any(m.category is FilterCategory.PROMPT_INJECTION for m in result.matches)


def get_filter_stats(results: list[ContentFilterResult]) -> dict:
    """Aggregate a batch of filter results by outcome, category and severity."""
    by_category = {c.value: 0 for c in FilterCategory}
    by_severity = {s.value: 0 for s in FilterSeverity}
    blocked = 0
    flagged = 0

    for result in results:
        if result.should_block:
            blocked += 1
        if result.should_log:
            flagged += 1
        for match in result.matches:
            by_category[match.category.value] += 1
            by_severity[match.severity.value] += 1

    return {
        "total": len(results),
        "blocked": blocked,
        "flagged": flagged,
        "by_category": by_category,
        "by_severity": by_severity,
    }
