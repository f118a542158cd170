"""Shared types for the moderation stack and its providers."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ContentCategory(str, Enum):
    SAFE = "safe"
    HUMOR = "humor"
    POLITICAL = "political"
    CONTROVERSIAL = "controversial"
    EXTREMIST = "extremist"
    SEXUAL = "sexual"
    VIOLENT = "violent"
    SELF_HARM = "self_harm"
    HATE = "hate"
    ILLEGAL = "illegal"
    CHILD_SAFETY = "child_safety"


class SeverityLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TargetType(str, Enum):
    NONE = "none"
    HUMAN = "human"
    GROUP = "group"
    OBJECT = "object"
    ANIMAL = "animal"
    FICTIONAL = "fictional"


class ModerationLayer(str, Enum):
    """The layer that produced a moderation verdict."""

    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    EMBEDDING = "embedding"
    BUSINESS_RULES = "business_rules"
    EXTERNAL = "external"


class BlockReason(str, Enum):
    """User-facing reason attached to a blocked validation."""

    PROMPT_INJECTION = "prompt_injection"
    HARMFUL_CONTENT = "harmful_content"
    PROFANITY = "profanity"
    MANIPULATION = "manipulation"
    DANGEROUS_PATTERN = "dangerous_pattern"
    SENSITIVE_TOPIC = "sensitive_topic"
    CONTENT_POLICY = "content_policy"


@dataclass(frozen=True)
class SemanticClassification:
    category: ContentCategory
    severity: SeverityLevel
    target: TargetType
    is_humor: bool
    is_fictional: bool
    reasoning: str


def fail_open_classification(reasoning: str) -> SemanticClassification:
    """Classification used whenever the classifier cannot answer."""
    return SemanticClassification(
        category=ContentCategory.SAFE,
        severity=SeverityLevel.NONE,
        target=TargetType.NONE,
        is_humor=False,
        is_fictional=False,
        reasoning=reasoning,
    )


@dataclass(frozen=True)
class EmbeddingMatch:
    flagged: bool
    max_similarity: float = 0.0
    matched_concepts: list[str] = field(default_factory=list)
    cluster: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ExternalModerationResult:
    flagged: bool
    categories: list[str] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)
    block_reason: Optional[BlockReason] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ModerationResult:
    """Verdict of the moderation stack. Never mutated after construction."""

    allowed: bool
    category: ContentCategory
    severity: SeverityLevel
    target: TargetType
    risk_score: float
    layer: ModerationLayer
    block_reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
