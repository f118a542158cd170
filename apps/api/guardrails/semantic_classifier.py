"""Semantic category classifier for debate topics.

An LLM reads the topic and returns category, severity, target and
humor/fiction flags. The classifier is a capability behind a small
protocol: when no model is configured, or the call fails, it answers with
a fail-open "safe" classification so later layers still run.
"""

import json
import logging
from typing import Optional, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from config import get_settings
from guardrails.moderation_types import (
    ContentCategory,
    SemanticClassification,
    SeverityLevel,
    TargetType,
    fail_open_classification,
)

logger = logging.getLogger(__name__)


class SemanticClassifier(Protocol):
    async def classify(self, content: str) -> SemanticClassification: ...


CLASSIFIER_PROMPT = """You are a content classifier for a debate platform. Analyze the given debate topic and classify it.

Return a JSON object with these fields:
- category: one of "safe", "humor", "political", "controversial", "extremist", "sexual", "violent", "self_harm", "hate", "illegal", "child_safety"
- severity: one of "none", "low", "medium", "high", "critical"
- target: who/what is targeted - "none", "human", "group", "object", "animal", "fictional"
- isHumor: boolean - is this clearly a joke/absurdist topic?
- isFictional: boolean - is this about fictional scenarios?
- reasoning: brief explanation

Classification guidelines:
- "humor": Absurdist debates like "is a hotdog a sandwich", "would you rather fight X-sized Y"
- "political": Standard political topics (elections, policies, etc.) - generally allowed
- "controversial": Sensitive but legitimate debates (abortion, death penalty) - allowed with care
- "extremist": Promotes extremist ideologies - not allowed
- "hate": Targets groups for discrimination - not allowed
- "child_safety": Involves harm to minors - never allowed
- "self_harm": Promotes suicide/self-harm - never allowed

Debates with "fight" or "battle" in hypothetical/humorous contexts (like fighting animals) are HUMOR, not violence.

Only output valid JSON, no other text."""


def parse_classification(raw: str) -> SemanticClassification:
    """Parse the model's JSON reply.

    Raises:
        ValueError: if the reply is not JSON or uses unknown enum values.
    """
    content = raw.strip()
    if "```json" in content:
        content = content.split("```json")[1].split("```")[0]
    elif "```" in content:
        content = content.split("```")[1].split("```")[0]

    data = json.loads(content.strip())
    return SemanticClassification(
        category=ContentCategory(data.get("category", "safe")),
        severity=SeverityLevel(data.get("severity", "none")),
        target=TargetType(data.get("target", "none")),
        is_humor=bool(data.get("isHumor", False)),
        is_fictional=bool(data.get("isFictional", False)),
        reasoning=str(data.get("reasoning", "")),
    )


class NullSemanticClassifier:
    """Used when no classifier model is configured."""

    async def classify(self, content: str) -> SemanticClassification:
        return fail_open_classification("No classifier configured")


class AnthropicSemanticClassifier:
    """Claude-backed classifier, temperature 0, JSON-only reply."""

    def __init__(self, llm: Optional[ChatAnthropic] = None):
        if llm is None:
            settings = get_settings()
            llm = ChatAnthropic(
                model=settings.anthropic_classifier_model,
                api_key=settings.anthropic_api_key,
                temperature=0,
                max_tokens=300,
            )
        self.llm = llm

    async def classify(self, content: str) -> SemanticClassification:
        messages = [
            SystemMessage(content=CLASSIFIER_PROMPT),
            HumanMessage(content=f'Classify this debate topic: "{content}"'),
        ]
        try:
            response = await self.llm.ainvoke(messages)
            classification = parse_classification(str(response.content))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Semantic classifier returned unparsable output, defaulting to safe: {e}")
            return fail_open_classification("Unparsable classifier output")
        except Exception as e:
            logger.error(f"Semantic classifier error, defaulting to safe: {e}")
            return fail_open_classification("Error during classification")

        logger.info(
            f"Semantic classification: category={classification.category.value}, "
            f"severity={classification.severity.value}, humor={classification.is_humor}"
        )
        return classification


def build_semantic_classifier() -> SemanticClassifier:
    settings = get_settings()
    if not settings.anthropic_api_key:
        logger.warning("Semantic classifier: no ANTHROPIC_API_KEY, defaulting every topic to safe")
        return NullSemanticClassifier()
    return AnthropicSemanticClassifier()
