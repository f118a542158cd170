"""External moderation gate (OpenAI moderation endpoint).

The provider's own ``flagged`` verdict is combined with per-category score
thresholds tuned for a debate platform. A small list of well-known absurdist
topics bypasses the gate entirely. Every failure mode returns
``flagged=False`` with ``error`` set.
"""

import logging
import re
import time
from typing import Optional, Protocol

import httpx

from config import get_settings
from guardrails.moderation_types import BlockReason, ExternalModerationResult

logger = logging.getLogger(__name__)

OPENAI_MODERATIONS_URL = "https://api.openai.com/v1/moderations"

# "violence" is high so hypothetical "fight" debates pass.
SCORE_THRESHOLDS: dict[str, float] = {
    "sexual/minors": 0.1,
    "self-harm/instructions": 0.2,
    "self-harm/intent": 0.2,
    "hate/threatening": 0.3,
    "harassment/threatening": 0.3,
    "violence/graphic": 0.5,
    "hate": 0.5,
    "violence": 0.75,
    "self-harm": 0.5,
    "harassment": 0.6,
    "sexual": 0.7,
}

# Specific known-safe topics only, never generic formats.
HUMOR_PATTERNS = [
    re.compile(r"horse[- ]?sized\s+duck", re.IGNORECASE),
    re.compile(r"duck[- ]?sized\s+horse", re.IGNORECASE),
    re.compile(r"is\s+a?\s*hot\s?dog\s+a\s+sandwich", re.IGNORECASE),
    re.compile(r"is\s+cereal\s+a?\s*soup", re.IGNORECASE),
    re.compile(r"pineapple\s+(on|belongs?\s+on)\s+pizza", re.IGNORECASE),
    re.compile(r"is\s+water\s+wet", re.IGNORECASE),
    re.compile(r"milk\s+(before|first|or)\s+cereal", re.IGNORECASE),
    re.compile(r"toilet\s+seat\s+(up|down)", re.IGNORECASE),
    re.compile(r"gif\s+(pronounced|pronunciation)", re.IGNORECASE),
    re.compile(r"tabs?\s+(vs?|or|versus)\s+spaces?", re.IGNORECASE),
]

_CRITICAL_CATEGORIES = (
    "sexual/minors",
    "self-harm/instructions",
    "self-harm/intent",
    "hate/threatening",
    "harassment/threatening",
    "violence/graphic",
)
_SENSITIVE_CATEGORIES = ("hate", "violence", "self-harm", "harassment")


class ModerationProvider(Protocol):
    async def moderate(self, content: str) -> ExternalModerationResult: ...


def is_humorous_topic(content: str) -> bool:
    return any(pattern.search(content) for pattern in HUMOR_PATTERNS)


def map_categories_to_block_reason(categories: dict[str, bool]) -> Optional[BlockReason]:
    """Block reason from the provider's own boolean category flags."""
    if any(categories.get(name) for name in _CRITICAL_CATEGORIES):
        return BlockReason.HARMFUL_CONTENT
    if any(categories.get(name) for name in _SENSITIVE_CATEGORIES):
        return BlockReason.SENSITIVE_TOPIC
    if categories.get("sexual"):
        return BlockReason.CONTENT_POLICY
    return None


def _block_reason_from_flagged(flagged_categories: list[str]) -> BlockReason:
    if any("minor" in c or "child" in c for c in flagged_categories):
        return BlockReason.HARMFUL_CONTENT
    if any("self-harm" in c for c in flagged_categories):
        return BlockReason.HARMFUL_CONTENT
    if any("threatening" in c for c in flagged_categories):
        return BlockReason.HARMFUL_CONTENT
    if any("hate" in c or "violence" in c for c in flagged_categories):
        return BlockReason.SENSITIVE_TOPIC
    return BlockReason.CONTENT_POLICY


def evaluate_moderation_scores(
    provider_flagged: bool,
    categories: dict[str, bool],
    scores: dict[str, float],
    thresholds: Optional[dict[str, float]] = None,
) -> ExternalModerationResult:
    """Combine the provider verdict with local score thresholds.

    A category is flagged when its score reaches its threshold or the
    provider marked it. The block reason comes from the provider's flags
    first, then from the names of the flagged categories.
    """
    thresholds = SCORE_THRESHOLDS if thresholds is None else thresholds

    flagged_categories = [
        category for category, threshold in thresholds.items() if scores.get(category, 0.0) >= threshold
    ]
    for category, value in categories.items():
        if value and category not in flagged_categories:
            flagged_categories.append(category)

    flagged = provider_flagged or bool(flagged_categories)
    block_reason = None
    if flagged:
        block_reason = map_categories_to_block_reason(categories)
        if block_reason is None:
            block_reason = _block_reason_from_flagged(flagged_categories)

    return ExternalModerationResult(
        flagged=flagged,
        categories=flagged_categories,
        scores=dict(scores),
        block_reason=block_reason,
    )


class NullModerationProvider:
    """Used when no moderation API key is configured."""

    async def moderate(self, content: str) -> ExternalModerationResult:
        if is_humorous_topic(content):
            return ExternalModerationResult(flagged=False)
        return ExternalModerationResult(flagged=False, error="API key not configured")


class OpenAIModerationProvider:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        thresholds: Optional[dict[str, float]] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_moderation_model
        self.timeout = timeout or settings.openai_timeout
        self.thresholds = thresholds

    async def moderate(self, content: str) -> ExternalModerationResult:
        if is_humorous_topic(content):
            logger.info(f"External moderation: humorous topic, bypassing: {content[:50]!r}")
            return ExternalModerationResult(flagged=False)

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    OPENAI_MODERATIONS_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"input": content, "model": self.model},
                )
            latency_ms = int((time.monotonic() - start) * 1000)

            if response.status_code != 200:
                logger.error(
                    f"External moderation API error: status={response.status_code}, "
                    f"latency_ms={latency_ms}, body={response.text[:200]}"
                )
                return ExternalModerationResult(flagged=False, error=f"API error: {response.status_code}")

            results = response.json().get("results") or []
        except httpx.TimeoutException:
            logger.error(f"External moderation API timed out after {self.timeout}s")
            return ExternalModerationResult(flagged=False, error="Request timed out")
        except Exception as e:
            logger.error(f"External moderation API request failed: {e}")
            return ExternalModerationResult(flagged=False, error=str(e))

        if not results:
            logger.warning("External moderation API returned empty results")
            return ExternalModerationResult(flagged=False, error="No moderation result returned")

        result = results[0]
        evaluation = evaluate_moderation_scores(
            provider_flagged=bool(result.get("flagged")),
            categories=result.get("categories") or {},
            scores=result.get("category_scores") or {},
            thresholds=self.thresholds,
        )

        significant = {k: round(v, 3) for k, v in evaluation.scores.items() if v > 0.1}
        logger.info(
            f"External moderation completed: flagged={evaluation.flagged}, "
            f"categories={evaluation.categories}, block_reason="
            f"{evaluation.block_reason.value if evaluation.block_reason else None}, "
            f"significant_scores={significant}, latency_ms={latency_ms}"
        )
        return evaluation


def build_moderation_provider(thresholds: Optional[dict[str, float]] = None) -> ModerationProvider:
    settings = get_settings()
    if not settings.openai_api_key:
        logger.warning("External moderation: no OPENAI_API_KEY, skipping gate")
        return NullModerationProvider()
    return OpenAIModerationProvider(thresholds=thresholds)
