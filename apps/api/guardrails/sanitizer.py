"""Context-aware input sanitization.

Text is cleaned differently depending on where it is headed:
- storage: strip markup, decode common entities, drop control characters
- llm: storage cleaning plus removal of prompt-injection surface patterns
- display: HTML-escape everything, or keep a small allow-list of tags

Truncation to the configured maximum length is always the last step.
Detection of dangerous patterns is a separate check that callers run on
the *raw* input before sanitizing, because sanitizing can erase the
evidence needed to block an attacker outright.

Usage:
    from guardrails.sanitizer import contains_dangerous_patterns, sanitize_topic

    if contains_dangerous_patterns(raw_topic):
        ...  # block and record
    result = sanitize_topic(raw_topic)
    clean = result.value
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


DEFAULT_MAX_LENGTHS = {
    "topic": 500,
    "custom_rule": 200,
    "message": 10000,
    "username": 50,
    "default": 1000,
}

# Storage and llm passes never lengthen the text, so they loop to a fixpoint.
# Display escaping re-encodes what it decodes and is bounded instead.
_MAX_DISPLAY_PASSES = 5


class SanitizationContext(str, Enum):
    """Where the sanitized text will be used."""

    STORAGE = "storage"
    LLM = "llm"
    DISPLAY = "display"


class SanitizationOptions(BaseModel):
    """Options for a single sanitize() call. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    context: SanitizationContext
    max_length: int | None = Field(default=None, gt=0)
    allow_html: bool = False
    strip_newlines: bool = False


@dataclass(frozen=True)
class SanitizationResult:
    value: str
    was_modified: bool
    original_length: int
    sanitized_length: int


# Patterns stripped from model-bound text and searched for in raw input
LLM_DANGEROUS_PATTERNS: list[str] = [
    # Template and tag injection
    r"\{\{[\s\S]+?\}\}",
    r"\[\[[\s\S]+?\]\]",
    r"<\|[\s\S]*?\|>",
    r"```(system|assistant|user|developer|command)",
    r"<(system|assistant|user|developer)>",
    r"</(system|assistant|user|developer)>",
    r"#\s*system",
    r"#\s*assistant",
    # Role manipulation
    r"\bas\s+an?\s+ai\b",
    r"\byou\s+are\s+chatgpt\b",
    r"\byou\s+are\s+now\b",
    r"\byou\s+must\s+act\s+as\b",
    r"\bpretend\s+to\s+be\b",
    # System prompt references
    r"\bsystem\s+prompt\b",
    r"\bbase\s+prompt\b",
    r"\binitial\s+instructions?\b",
    r"\bpersona\b",
    # Policy override
    r"\bignore\s+the\s+(guidelines|rules|policy)\b",
    r"\bno\s+longer\s+follow\b",
    r"\bdisregard\s+(the|all|any)\s+(instructions|policies)\b",
    r"\boverride\s+(your|the)\s+(settings|instructions)\b",
    r"\bplease?\s+(break|bypass)\b",
    # Instruction override
    r"\bignore\s+(previous|above|all|any)\s+instructions?\b",
    r"\bdisregard\s+(previous|above|all|any)\s+instructions?\b",
    r"\bforget\s+(previous|above|all|any)\s+instructions?\b",
    r"\boverride\s+(previous|above|all|any)\s+instructions?\b",
    r"\bignore\s+(all\s+)?other\s+(requests?|instructions?|messages?|prompts?)\b",
    r"\bignore\s+(everything|all|any)\s+(else|and|except)\b",
    r"\bdisregard\s+((previous|above|all|any)\s+)?other\s+(requests?|instructions?|messages?|prompts?)\b",
    r"\bforget\s+((previous|above|all|any)\s+)?other\s+(requests?|instructions?|messages?|prompts?)\b",
    # Jailbreak modes
    r"\bjailbreak\b",
    r"\bdan(\s+mode)?\b",
    r"\bdev(eloper)?\s+mode\b",
    r"\bgod\s+mode\b",
    r"\bassistant\.?debug\b",
    r"\bsimulation\s+mode\b",
    r"\bcharacter\s+mode\b",
    r"\buncensored\b",
    r"\bunrestricted\b",
    r"\braw\s+output\b",
    # Code injection
    r"\b(set|let)\s+\w+\s*=",
    r"(--|#)\s*override",
    r";\s*(system|prompt)",
    # Output manipulation
    r"\bbelow\s+is\s+my\s+system\s+prompt\b",
    r"\bthe\s+assistant\s+should\s+now\b",
    r"\boutput\s+the\s+following\s+exactly\b",
    r"\bverbatim\s+response\b",
    r"\bdo\s+not\s+add\s+anything\b",
    # Character-spaced obfuscation
    r"i\s*n\s*s\s*t\s*r\s*u\s*c\s*t\s*i\s*o\s*n",
    r"o\s*v\s*e\s*r\s*r\s*i\s*d\s*e",
    r"j\s*a\s*i\s*l\s*b\s*r\s*e\s*a\s*k",
    # Hex escapes
    r"\\x[0-9a-f]{2}",
    r"0x[0-9a-f]{2}",
    # base64: "ignore", "instructions", "jailbreak"
    r"aWdub3Jl",
    r"aW5zdHJ1Y3Rpb25z",
    r"amFpbGJyZWFr",
    # ROT13: "ignore", "discover"
    r"vtaber",
    r"qvfpbire",
]

# Homoglyph ranges: fullwidth forms, Cyrillic, Latin Extended-A.
# Compiled case-sensitively: under case folding U+017F and U+0130/U+0131 match ASCII s and i.
HOMOGLYPH_PATTERNS: list[str] = [
    r"[\uFF00-\uFFEF]",
    r"[\u0400-\u04FF]",
    r"[\u0100-\u017F]",
]

_COMPILED_DANGEROUS = [re.compile(p, re.IGNORECASE) for p in LLM_DANGEROUS_PATTERNS] + [
    re.compile(p) for p in HOMOGLYPH_PATTERNS
]

HTML_ESCAPE_MAP = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "`": "&#x60;",
    "=": "&#x3D;",
}

_ENTITY_DECODE_MAP = {entity.lower(): char for char, entity in HTML_ESCAPE_MAP.items()}
_ENTITY_DECODE_MAP["&nbsp;"] = " "

_ESCAPE_RE = re.compile(r"[&<>\"'`=/]")
# Single pass so decode(escape(s)) == s
_ENTITY_RE = re.compile(r"&(?:nbsp|amp|lt|gt|quot|#x27|#x2F|#x60|#x3D);", re.IGNORECASE)
_PARTIAL_ENTITY_RE = re.compile(r"&[#a-zA-Z0-9]{0,5}$")

_SCRIPT_BLOCK_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_STYLE_BLOCK_RE = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

ALLOWED_DISPLAY_TAGS = ["b", "i", "em", "strong", "p", "br", "ul", "ol", "li"]
_ALLOWED_TAG_PATTERN = "|".join(ALLOWED_DISPLAY_TAGS)
_ALLOWED_TAG_ATTRS_RE = re.compile(rf"<({_ALLOWED_TAG_PATTERN})(\s[^>]*)?>", re.IGNORECASE)
_DISALLOWED_TAG_RE = re.compile(rf"<(?!/?({_ALLOWED_TAG_PATTERN})\s*/?>)[^>]*>", re.IGNORECASE)


def escape_html(text: str) -> str:
    return _ESCAPE_RE.sub(lambda m: HTML_ESCAPE_MAP[m.group(0)], text)


def decode_entities(text: str) -> str:
    return _ENTITY_RE.sub(lambda m: _ENTITY_DECODE_MAP[m.group(0).lower()], text)


def strip_html(text: str) -> str:
    """Remove script/style blocks and all tags, then decode common entities."""
    text = _SCRIPT_BLOCK_RE.sub("", text)
    text = _STYLE_BLOCK_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    return decode_entities(text).strip()


def _strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS_RE.sub("", text)


def _sanitize_for_storage(text: str) -> str:
    return _strip_control_chars(strip_html(text)).strip()


def _sanitize_for_llm(text: str) -> str:
    for pattern in _COMPILED_DANGEROUS:
        text = pattern.sub("", text)
    text = _strip_control_chars(text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return text.strip()


def _sanitize_for_display(text: str, allow_html: bool) -> str:
    if allow_html:
        text = _SCRIPT_BLOCK_RE.sub("", text)
        text = _STYLE_BLOCK_RE.sub("", text)
        text = _ALLOWED_TAG_ATTRS_RE.sub(r"<\1>", text)
        text = _DISALLOWED_TAG_RE.sub("", text)
        return text.strip()
    return escape_html(strip_html(text))


def _truncate(text: str, max_length: int, context: SanitizationContext) -> str:
    if len(text) <= max_length:
        return text
    text = text[:max_length]
    if context is SanitizationContext.DISPLAY:
        # Never leave half an entity behind
        text = _PARTIAL_ENTITY_RE.sub("", text)
    return text.rstrip()


def _sanitize_once(text: str, options: SanitizationOptions) -> str:
    if options.context is SanitizationContext.STORAGE:
        text = _sanitize_for_storage(text)
    elif options.context is SanitizationContext.LLM:
        text = _sanitize_for_llm(_sanitize_for_storage(text))
    else:
        text = _sanitize_for_display(text, options.allow_html)

    if options.strip_newlines:
        text = re.sub(r"\n+", " ", text)
        text = re.sub(r"\s+", " ", text)

    max_length = options.max_length or DEFAULT_MAX_LENGTHS["default"]
    return _truncate(text, max_length, options.context)


def sanitize(input: str, options: SanitizationOptions) -> SanitizationResult:
    """Sanitize text for the given context.

    Cleaning is repeated until the value stops changing, so removing one
    pattern cannot splice together another and sanitize() is idempotent.
    Never raises.
    """
    value = input or ""
    passes = 0
    while True:
        cleaned = _sanitize_once(value, options)
        if cleaned == value:
            break
        value = cleaned
        passes += 1
        if options.context is SanitizationContext.DISPLAY and passes >= _MAX_DISPLAY_PASSES:
            break

    return SanitizationResult(
        value=value,
        was_modified=value != input,
        original_length=len(input or ""),
        sanitized_length=len(value),
    )


def sanitize_topic(input: str) -> SanitizationResult:
    return sanitize(
        input,
        SanitizationOptions(
            context=SanitizationContext.LLM,
            max_length=DEFAULT_MAX_LENGTHS["topic"],
            strip_newlines=True,
        ),
    )


def sanitize_custom_rule(input: str) -> SanitizationResult:
    return sanitize(
        input,
        SanitizationOptions(
            context=SanitizationContext.LLM,
            max_length=DEFAULT_MAX_LENGTHS["custom_rule"],
            strip_newlines=True,
        ),
    )


def sanitize_message(input: str) -> SanitizationResult:
    return sanitize(
        input,
        SanitizationOptions(
            context=SanitizationContext.STORAGE,
            max_length=DEFAULT_MAX_LENGTHS["message"],
        ),
    )


def sanitize_for_rendering(input: str, allow_html: bool = False) -> SanitizationResult:
    return sanitize(
        input,
        SanitizationOptions(context=SanitizationContext.DISPLAY, allow_html=allow_html),
    )


def contains_dangerous_patterns(input: str) -> bool:
    """Check raw, unsanitized input for any prompt-injection surface pattern."""
    if not input:
        return False
    return any(pattern.search(input) for pattern in _COMPILED_DANGEROUS)


def find_dangerous_patterns(input: str) -> list[str]:
    """Return the source of every dangerous pattern present in the input."""
    if not input:
        return []
    return [pattern.pattern for pattern in _COMPILED_DANGEROUS if pattern.search(input)]


def escape_for_json(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
