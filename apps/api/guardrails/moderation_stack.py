"""Five-layer moderation stack for debate topics and custom rules.

Layers run strictly in order and the first conclusive verdict wins:

1. Keyword risk scorer: informs risk, never blocks.
2. Semantic classifier: the humor escape hatch allows immediately.
3. Embedding similarity: blocks euphemistic harmful phrasing.
4. Business rules: deterministic table over the semantic classification.
5. External moderation gate: skipped for clearly safe, low-risk content.

``ModerationResult.layer`` names the layer that decided.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from guardrails.embedding_filter import (
    HARMFUL_CLUSTER,
    EmbeddingSimilarityFilter,
    build_embedding_filter,
)
from guardrails.external_moderation import (
    ModerationProvider,
    NullModerationProvider,
    build_moderation_provider,
)
from guardrails.moderation_types import (
    ContentCategory,
    ModerationLayer,
    ModerationResult,
    SeverityLevel,
    TargetType,
)
from guardrails.semantic_classifier import (
    NullSemanticClassifier,
    SemanticClassifier,
    build_semantic_classifier,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Layer 1: keyword risk
# =============================================================================

CRITICAL_RISK = 0.9
HIGH_RISK = 0.6
MEDIUM_RISK = 0.3

CRITICAL_KEYWORDS = [
    # Child safety
    re.compile(r"\b(child|minor|underage)\s*(porn|sex|abuse|exploitation)", re.IGNORECASE),
    re.compile(r"\b(csam|pedophil\w*|paedophil\w*)\b", re.IGNORECASE),
    # Slurs
    re.compile(r"\b(nigger|nigga|faggot|retard|kike|spic|chink)\b", re.IGNORECASE),
    # Violence instructions
    re.compile(r"\bhow\s+to\s+(kill|murder|assassinate)\s+(someone|a\s+person|people)\b", re.IGNORECASE),
    re.compile(r"\b(bomb|explosive)\s+(making|instructions?|recipe)\b", re.IGNORECASE),
    # Self-harm instructions
    re.compile(r"\b(suicide|self[- ]?harm)\s+(methods?|instructions?|how\s+to)\b", re.IGNORECASE),
    # Drug manufacturing
    re.compile(r"\bhow\s+to\s+(make|cook|synthesize)\s+(meth|heroin|fentanyl)\b", re.IGNORECASE),
]

HIGH_RISK_KEYWORDS = [
    re.compile(r"\b(genocide|ethnic\s+cleansing|mass\s+murder)\b", re.IGNORECASE),
    re.compile(r"\b(terrorist|terrorism|extremist)\b", re.IGNORECASE),
    re.compile(r"\b(white\s+supremacy|racial\s+superiority)\b", re.IGNORECASE),
    re.compile(r"\b(holocaust\s+denial)\b", re.IGNORECASE),
    re.compile(r"\b(rape|sexual\s+assault|molestation)\b", re.IGNORECASE),
]

# Legitimate debate subjects that still warrant the external gate
MEDIUM_RISK_KEYWORDS = [
    re.compile(r"\b(abortion|euthanasia|death\s+penalty)\b", re.IGNORECASE),
    re.compile(r"\b(gun\s+control|immigration|border)\b", re.IGNORECASE),
    re.compile(r"\b(religion|atheism|god)\b", re.IGNORECASE),
]

_KEYWORD_BUCKETS = (
    (CRITICAL_KEYWORDS, CRITICAL_RISK),
    (HIGH_RISK_KEYWORDS, HIGH_RISK),
    (MEDIUM_RISK_KEYWORDS, MEDIUM_RISK),
)


def calculate_keyword_risk(content: str) -> tuple[float, list[str]]:
    """Return ``(risk_score, matched_patterns)``; the score is the max bucket hit."""
    risk_score = 0.0
    matched_patterns: list[str] = []
    for patterns, bucket_risk in _KEYWORD_BUCKETS:
        for pattern in patterns:
            if pattern.search(content):
                risk_score = max(risk_score, bucket_risk)
                matched_patterns.append(pattern.pattern)
    return risk_score, matched_patterns


# =============================================================================
# Layer 4: business rules
# =============================================================================


@dataclass(frozen=True)
class BusinessRuleResult:
    allowed: bool
    reason: Optional[str] = None


def apply_business_rules(
    category: ContentCategory,
    severity: SeverityLevel,
    target: TargetType,
    is_humor: bool,
) -> BusinessRuleResult:
    """Platform policy over the semantic classification."""
    if is_humor and category == ContentCategory.HUMOR:
        return BusinessRuleResult(allowed=True)

    # Always blocked
    if category == ContentCategory.CHILD_SAFETY:
        return BusinessRuleResult(allowed=False, reason="Content involving minors is not allowed")
    if category == ContentCategory.SELF_HARM and severity != SeverityLevel.NONE:
        return BusinessRuleResult(allowed=False, reason="Self-harm content is not allowed")
    if category == ContentCategory.EXTREMIST:
        return BusinessRuleResult(allowed=False, reason="Extremist content is not allowed")
    if category == ContentCategory.ILLEGAL and severity == SeverityLevel.CRITICAL:
        return BusinessRuleResult(allowed=False, reason="Illegal activity instructions are not allowed")

    # Blocked by severity
    if category == ContentCategory.HATE and severity not in (SeverityLevel.NONE, SeverityLevel.LOW):
        return BusinessRuleResult(allowed=False, reason="Hate speech is not allowed")
    if category == ContentCategory.VIOLENT and severity == SeverityLevel.CRITICAL:
        return BusinessRuleResult(allowed=False, reason="Graphic violence advocacy is not allowed")
    if category == ContentCategory.SEXUAL and severity != SeverityLevel.NONE:
        return BusinessRuleResult(allowed=False, reason="Sexual content is not appropriate for this platform")

    if category in (
        ContentCategory.SAFE,
        ContentCategory.HUMOR,
        ContentCategory.POLITICAL,
        ContentCategory.CONTROVERSIAL,
    ):
        return BusinessRuleResult(allowed=True)

    if severity in (SeverityLevel.NONE, SeverityLevel.LOW, SeverityLevel.MEDIUM):
        return BusinessRuleResult(allowed=True)

    return BusinessRuleResult(allowed=False, reason="Content flagged as potentially harmful")


# =============================================================================
# Stack
# =============================================================================


class ModerationConfig(BaseModel):
    """Tunables for the stack. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    embedding_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    external_gate_skip_risk: float = Field(default=MEDIUM_RISK, ge=0.0, le=1.0)
    score_thresholds: Optional[dict[str, float]] = None


class ModerationStack:
    """Runs the five layers against a piece of content.

    Every provider is a capability with a fail-open default, so a stack
    built with no arguments runs offline: keyword scoring and business
    rules still apply, the rest answer "safe" or "no match".
    """

    def __init__(
        self,
        classifier: Optional[SemanticClassifier] = None,
        embedding_filter: Optional[EmbeddingSimilarityFilter] = None,
        moderation_provider: Optional[ModerationProvider] = None,
        config: Optional[ModerationConfig] = None,
    ):
        self.config = config or ModerationConfig()
        self.classifier = classifier or NullSemanticClassifier()
        self.embedding_filter = embedding_filter or EmbeddingSimilarityFilter(
            provider=None, threshold=self.config.embedding_threshold
        )
        self.moderation_provider = moderation_provider or NullModerationProvider()

    @classmethod
    def from_settings(cls, config: Optional[ModerationConfig] = None) -> "ModerationStack":
        """Build the stack with providers chosen from configured API keys."""
        config = config or ModerationConfig()
        embedding_filter = build_embedding_filter()
        if config.embedding_threshold is not None:
            embedding_filter.threshold = config.embedding_threshold
        return cls(
            classifier=build_semantic_classifier(),
            embedding_filter=embedding_filter,
            moderation_provider=build_moderation_provider(config.score_thresholds),
            config=config,
        )

    async def moderate(self, content: str) -> ModerationResult:
        start = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        # Layer 1
        risk_score, matched_patterns = calculate_keyword_risk(content)
        logger.info(f"Keyword layer: risk={risk_score}, matched={len(matched_patterns)}")

        # Layer 2
        semantic = await self.classifier.classify(content)
        if semantic.is_humor and semantic.category == ContentCategory.HUMOR:
            logger.info(f"Classified as humor, skipping further checks ({elapsed_ms()}ms)")
            return ModerationResult(
                allowed=True,
                category=ContentCategory.HUMOR,
                severity=SeverityLevel.NONE,
                target=semantic.target,
                risk_score=0.0,
                layer=ModerationLayer.SEMANTIC,
                details={"reasoning": semantic.reasoning},
            )

        # Layer 3
        embedding = await self.embedding_filter.check(content)
        if embedding.flagged:
            category = ContentCategory.VIOLENT if embedding.cluster == HARMFUL_CLUSTER else ContentCategory.EXTREMIST
            logger.info(
                f"Blocked by embedding similarity: category={category.value}, "
                f"similarity={embedding.max_similarity} ({elapsed_ms()}ms)"
            )
            return ModerationResult(
                allowed=False,
                category=category,
                severity=SeverityLevel.HIGH,
                target=semantic.target,
                risk_score=max(risk_score, embedding.max_similarity),
                layer=ModerationLayer.EMBEDDING,
                block_reason="Content matches patterns associated with harmful ideologies",
                details={
                    "matched_concepts": embedding.matched_concepts,
                    "similarity": embedding.max_similarity,
                    "cluster": embedding.cluster,
                },
            )

        # Layer 4
        business = apply_business_rules(semantic.category, semantic.severity, semantic.target, semantic.is_humor)
        if not business.allowed:
            logger.info(
                f"Blocked by business rules: category={semantic.category.value}, "
                f"reason={business.reason} ({elapsed_ms()}ms)"
            )
            return ModerationResult(
                allowed=False,
                category=semantic.category,
                severity=semantic.severity,
                target=semantic.target,
                risk_score=risk_score,
                layer=ModerationLayer.BUSINESS_RULES,
                block_reason=business.reason,
            )

        # Layer 5
        if semantic.category == ContentCategory.SAFE and risk_score < self.config.external_gate_skip_risk:
            logger.info(f"Content is safe, skipping external moderation ({elapsed_ms()}ms)")
            return ModerationResult(
                allowed=True,
                category=semantic.category,
                severity=semantic.severity,
                target=semantic.target,
                risk_score=risk_score,
                layer=ModerationLayer.SEMANTIC,
            )

        external = await self.moderation_provider.moderate(content)
        if external.flagged:
            logger.info(f"Blocked by external moderation: {external.categories} ({elapsed_ms()}ms)")
            return ModerationResult(
                allowed=False,
                category=semantic.category,
                severity=SeverityLevel.HIGH,
                target=semantic.target,
                risk_score=max(risk_score, 0.8),
                layer=ModerationLayer.EXTERNAL,
                block_reason=f"Flagged by content safety: {', '.join(external.categories)}",
                details={
                    "external_categories": external.categories,
                    "external_block_reason": external.block_reason.value if external.block_reason else None,
                },
            )

        logger.info(f"Content approved by all layers: category={semantic.category.value} ({elapsed_ms()}ms)")
        return ModerationResult(
            allowed=True,
            category=semantic.category,
            severity=semantic.severity,
            target=semantic.target,
            risk_score=risk_score,
            layer=ModerationLayer.EXTERNAL,
            details={"external_error": external.error} if external.error else {},
        )


_default_stack: Optional[ModerationStack] = None


def get_moderation_stack() -> ModerationStack:
    global _default_stack
    if _default_stack is None:
        _default_stack = ModerationStack.from_settings()
    return _default_stack


def set_moderation_stack(stack: Optional[ModerationStack]) -> None:
    global _default_stack
    _default_stack = stack


async def moderate_content(content: str) -> ModerationResult:
    """Moderate with the process-wide default stack."""
    return await get_moderation_stack().moderate(content)
