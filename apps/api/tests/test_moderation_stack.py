"""Tests for the five-layer moderation stack and its providers.

Providers are replaced with in-process fakes that implement the same
protocols, so no network access is needed.

Run with: pytest tests/test_moderation_stack.py -v
"""

from dataclasses import FrozenInstanceError
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import ValidationError

import config
from guardrails.embedding_filter import (
    EXTREMIST_CLUSTER,
    HARMFUL_CLUSTER,
    EmbeddingProviderError,
    EmbeddingSimilarityFilter,
    OpenAIEmbeddingProvider,
    build_embedding_filter,
    cosine_similarity,
)
from guardrails.external_moderation import (
    NullModerationProvider,
    OpenAIModerationProvider,
    build_moderation_provider,
    evaluate_moderation_scores,
    is_humorous_topic,
    map_categories_to_block_reason,
)
from guardrails.moderation_stack import (
    ModerationConfig,
    ModerationStack,
    apply_business_rules,
    calculate_keyword_risk,
    get_moderation_stack,
    moderate_content,
    set_moderation_stack,
)
from guardrails.moderation_types import (
    BlockReason,
    ContentCategory,
    ExternalModerationResult,
    ModerationLayer,
    SemanticClassification,
    SeverityLevel,
    TargetType,
)
from guardrails.semantic_classifier import (
    AnthropicSemanticClassifier,
    NullSemanticClassifier,
    build_semantic_classifier,
    parse_classification,
)


# =============================================================================
# Fakes
# =============================================================================


def classification(
    category=ContentCategory.SAFE,
    severity=SeverityLevel.NONE,
    target=TargetType.NONE,
    is_humor=False,
):
    return SemanticClassification(
        category=category,
        severity=severity,
        target=target,
        is_humor=is_humor,
        is_fictional=False,
        reasoning="test",
    )


class FakeClassifier:
    def __init__(self, result: SemanticClassification):
        self.result = result
        self.calls: list[str] = []

    async def classify(self, content: str) -> SemanticClassification:
        self.calls.append(content)
        return self.result


class FakeEmbeddingProvider:
    """Looks up fixed vectors; unknown text maps to an orthogonal vector."""

    def __init__(self, vectors: dict[str, list[float]], fail: bool = False):
        self.vectors = vectors
        self.fail = fail
        self.calls = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.fail:
            raise EmbeddingProviderError("provider down")
        return [self.vectors.get(text, [0.0, 0.0, 1.0]) for text in texts]


class FakeModerationProvider:
    def __init__(self, result: ExternalModerationResult):
        self.result = result
        self.calls: list[str] = []

    async def moderate(self, content: str) -> ExternalModerationResult:
        self.calls.append(content)
        return self.result


CONCEPTS = {
    EXTREMIST_CLUSTER: ["purge outsiders"],
    HARMFUL_CLUSTER: ["attack plan"],
}

VECTORS = {
    "purge outsiders": [1.0, 0.0, 0.0],
    "attack plan": [0.0, 1.0, 0.0],
    "coded slogan": [0.9, 0.1, 0.0],
    "veiled plan": [0.1, 0.9, 0.0],
}


def embedding_filter(fail: bool = False) -> EmbeddingSimilarityFilter:
    return EmbeddingSimilarityFilter(FakeEmbeddingProvider(VECTORS, fail=fail), concepts=CONCEPTS, threshold=0.8)


def make_stack(
    semantic: SemanticClassification = None,
    external: ExternalModerationResult = None,
    embedding: EmbeddingSimilarityFilter = None,
    **config,
) -> ModerationStack:
    return ModerationStack(
        classifier=FakeClassifier(semantic or classification()),
        embedding_filter=embedding or embedding_filter(),
        moderation_provider=FakeModerationProvider(external or ExternalModerationResult(flagged=False)),
        config=ModerationConfig(**config) if config else None,
    )


# =============================================================================
# Layer 1: keyword risk
# =============================================================================


class TestKeywordRisk:
    def test_clean_topic(self):
        assert calculate_keyword_risk("Should schools start later?") == (0.0, [])

    def test_medium_topic(self):
        """Legitimate sensitive subjects score medium."""
        risk, matched = calculate_keyword_risk("Should euthanasia be legal?")
        assert risk == 0.3
        assert len(matched) == 1

    def test_high_topic(self):
        risk, _ = calculate_keyword_risk("Is terrorism ever justified?")
        assert risk == 0.6

    def test_max_bucket_wins(self):
        """The score is the highest bucket hit; all patterns are listed."""
        risk, matched = calculate_keyword_risk("bomb making and immigration")
        assert risk == 0.9
        assert len(matched) == 2


# =============================================================================
# Layer 4: business rules
# =============================================================================


class TestBusinessRules:
    @pytest.mark.parametrize(
        "category,severity,is_humor,allowed",
        [
            (ContentCategory.HUMOR, SeverityLevel.HIGH, True, True),
            (ContentCategory.CHILD_SAFETY, SeverityLevel.NONE, False, False),
            (ContentCategory.SELF_HARM, SeverityLevel.LOW, False, False),
            (ContentCategory.SELF_HARM, SeverityLevel.NONE, False, True),
            (ContentCategory.EXTREMIST, SeverityLevel.LOW, False, False),
            (ContentCategory.ILLEGAL, SeverityLevel.CRITICAL, False, False),
            (ContentCategory.ILLEGAL, SeverityLevel.MEDIUM, False, True),
            (ContentCategory.HATE, SeverityLevel.LOW, False, True),
            (ContentCategory.HATE, SeverityLevel.MEDIUM, False, False),
            (ContentCategory.VIOLENT, SeverityLevel.HIGH, False, False),
            (ContentCategory.VIOLENT, SeverityLevel.CRITICAL, False, False),
            (ContentCategory.VIOLENT, SeverityLevel.MEDIUM, False, True),
            (ContentCategory.SEXUAL, SeverityLevel.LOW, False, False),
            (ContentCategory.POLITICAL, SeverityLevel.HIGH, False, True),
            (ContentCategory.CONTROVERSIAL, SeverityLevel.CRITICAL, False, True),
            (ContentCategory.SAFE, SeverityLevel.NONE, False, True),
        ],
    )
    def test_policy_table(self, category, severity, is_humor, allowed):
        result = apply_business_rules(category, severity, TargetType.NONE, is_humor)
        assert result.allowed is allowed
        assert (result.reason is None) is allowed

    def test_humor_flag_without_humor_category_does_not_escape(self):
        """Only humor category plus humor flag short-circuits."""
        result = apply_business_rules(ContentCategory.EXTREMIST, SeverityLevel.LOW, TargetType.GROUP, True)
        assert result.allowed is False


# =============================================================================
# The stack
# =============================================================================


class TestModerationStack:
    @pytest.mark.asyncio
    async def test_humor_escape(self):
        """Humor is allowed at the semantic layer with zero risk."""
        stack = make_stack(semantic=classification(ContentCategory.HUMOR, SeverityLevel.LOW, is_humor=True))
        result = await stack.moderate("coded slogan")

        assert result.allowed is True
        assert result.layer is ModerationLayer.SEMANTIC
        assert result.category is ContentCategory.HUMOR
        assert result.risk_score == 0.0
        assert stack.moderation_provider.calls == []

    @pytest.mark.asyncio
    async def test_embedding_blocks_extremist_cluster(self):
        stack = make_stack()
        result = await stack.moderate("coded slogan")

        assert result.allowed is False
        assert result.layer is ModerationLayer.EMBEDDING
        assert result.category is ContentCategory.EXTREMIST
        assert result.severity is SeverityLevel.HIGH
        assert result.details["matched_concepts"] == ["purge outsiders"]
        assert result.details["cluster"] == EXTREMIST_CLUSTER
        assert result.risk_score == pytest.approx(0.9939, abs=1e-4)
        assert stack.moderation_provider.calls == []

    @pytest.mark.asyncio
    async def test_embedding_harmful_cluster_is_violent(self):
        result = await make_stack().moderate("veiled plan")
        assert result.category is ContentCategory.VIOLENT

    @pytest.mark.asyncio
    async def test_embedding_failure_is_no_match(self):
        """A failing embedding provider lets later layers decide."""
        stack = make_stack(embedding=embedding_filter(fail=True))
        result = await stack.moderate("coded slogan")
        assert result.allowed is True
        assert result.layer is ModerationLayer.SEMANTIC

    @pytest.mark.asyncio
    async def test_business_rules_block(self):
        stack = make_stack(semantic=classification(ContentCategory.HATE, SeverityLevel.HIGH, TargetType.GROUP))
        result = await stack.moderate("some topic about a group")

        assert result.allowed is False
        assert result.layer is ModerationLayer.BUSINESS_RULES
        assert result.block_reason == "Hate speech is not allowed"
        assert stack.moderation_provider.calls == []

    @pytest.mark.asyncio
    async def test_safe_low_risk_skips_external(self):
        stack = make_stack()
        result = await stack.moderate("Should schools start later?")

        assert result.allowed is True
        assert result.layer is ModerationLayer.SEMANTIC
        assert stack.moderation_provider.calls == []

    @pytest.mark.asyncio
    async def test_medium_risk_reaches_external(self):
        """Keyword risk at the skip threshold sends safe content to the gate."""
        flagged = ExternalModerationResult(
            flagged=True, categories=["hate"], block_reason=BlockReason.SENSITIVE_TOPIC
        )
        stack = make_stack(external=flagged)
        result = await stack.moderate("Should immigration be reduced?")

        assert stack.moderation_provider.calls == ["Should immigration be reduced?"]
        assert result.allowed is False
        assert result.layer is ModerationLayer.EXTERNAL
        assert result.risk_score == 0.8
        assert result.details["external_block_reason"] == "sensitive_topic"
        assert result.details["external_categories"] == ["hate"]

    @pytest.mark.asyncio
    async def test_non_safe_category_reaches_external(self):
        stack = make_stack(semantic=classification(ContentCategory.POLITICAL, SeverityLevel.LOW))
        result = await stack.moderate("Should voting be compulsory?")

        assert result.allowed is True
        assert result.layer is ModerationLayer.EXTERNAL
        assert result.category is ContentCategory.POLITICAL
        assert len(stack.moderation_provider.calls) == 1

    @pytest.mark.asyncio
    async def test_external_error_fails_open(self):
        stack = make_stack(
            semantic=classification(ContentCategory.CONTROVERSIAL, SeverityLevel.MEDIUM),
            external=ExternalModerationResult(flagged=False, error="Request timed out"),
        )
        result = await stack.moderate("Should the death penalty be abolished?")

        assert result.allowed is True
        assert result.details == {"external_error": "Request timed out"}

    @pytest.mark.asyncio
    async def test_skip_threshold_configurable(self):
        stack = make_stack(external_gate_skip_risk=0.5)
        await stack.moderate("Should immigration be reduced?")
        assert stack.moderation_provider.calls == []

    @pytest.mark.asyncio
    async def test_offline_stack(self):
        """With no providers the stack still answers."""
        result = await ModerationStack().moderate("Would you rather fight one horse-sized duck?")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_result_is_immutable(self):
        result = await make_stack().moderate("Should schools start later?")
        with pytest.raises(FrozenInstanceError):
            result.allowed = False

    def test_config_rejects_unknown_keys(self):
        with pytest.raises(ValidationError):
            ModerationConfig(embedding_thresold=0.5)

    def test_from_settings_offline(self):
        """No API keys gives fail-open providers."""
        stack = ModerationStack.from_settings(ModerationConfig(embedding_threshold=0.9))
        assert isinstance(stack.classifier, NullSemanticClassifier)
        assert isinstance(stack.moderation_provider, NullModerationProvider)
        assert stack.embedding_filter.provider is None
        assert stack.embedding_filter.threshold == 0.9

    @pytest.mark.asyncio
    async def test_default_stack(self):
        stack = make_stack()
        set_moderation_stack(stack)
        assert get_moderation_stack() is stack
        result = await moderate_content("Should schools start later?")
        assert result.allowed is True


# =============================================================================
# Embedding filter
# =============================================================================


class TestEmbeddingFilter:
    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    @pytest.mark.asyncio
    async def test_concepts_embedded_once(self):
        f = embedding_filter()
        await f.check("coded slogan")
        await f.check("something else")
        assert f.provider.calls == 3

    @pytest.mark.asyncio
    async def test_below_threshold(self):
        match = await embedding_filter().check("unrelated")
        assert match.flagged is False
        assert match.cluster is None
        assert match.matched_concepts == []

    @pytest.mark.asyncio
    async def test_no_provider(self):
        match = await EmbeddingSimilarityFilter(provider=None, threshold=0.8).check("anything")
        assert match.flagged is False
        assert match.error == "No embedding provider configured"

    @pytest.mark.asyncio
    async def test_provider_error(self):
        match = await embedding_filter(fail=True).check("anything")
        assert match.flagged is False
        assert match.error == "provider down"

    def test_default_threshold_from_settings(self):
        assert EmbeddingSimilarityFilter(provider=None).threshold == 0.82

    def test_build_with_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        config.get_settings.cache_clear()
        assert isinstance(build_embedding_filter().provider, OpenAIEmbeddingProvider)


def mock_async_client(client_cls: MagicMock, response=None, side_effect=None) -> MagicMock:
    """Wire a patched httpx.AsyncClient so ``async with`` yields a client whose post is mocked."""
    client = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=side_effect)
    client_cls.return_value.__aenter__ = AsyncMock(return_value=client)
    client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
    return client


class TestOpenAIEmbeddingProvider:
    @pytest.mark.asyncio
    @patch("guardrails.embedding_filter.httpx.AsyncClient")
    async def test_orders_by_index(self, client_cls):
        response = MagicMock(status_code=200)
        response.json.return_value = {
            "data": [
                {"index": 1, "embedding": [0.0, 1.0]},
                {"index": 0, "embedding": [1.0, 0.0]},
            ]
        }
        client = mock_async_client(client_cls, response=response)

        provider = OpenAIEmbeddingProvider(api_key="sk-test", model="text-embedding-3-small")
        vectors = await provider.embed(["a", "b"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        _, kwargs = client.post.call_args
        assert kwargs["json"] == {"model": "text-embedding-3-small", "input": ["a", "b"]}
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    @patch("guardrails.embedding_filter.httpx.AsyncClient")
    async def test_http_error_wrapped(self, client_cls):
        mock_async_client(client_cls, side_effect=httpx.ConnectError("refused"))
        with pytest.raises(EmbeddingProviderError):
            await OpenAIEmbeddingProvider(api_key="sk-test").embed(["a"])

    @pytest.mark.asyncio
    @patch("guardrails.embedding_filter.httpx.AsyncClient")
    async def test_malformed_response_wrapped(self, client_cls):
        response = MagicMock(status_code=200)
        response.json.return_value = {"unexpected": True}
        mock_async_client(client_cls, response=response)
        with pytest.raises(EmbeddingProviderError):
            await OpenAIEmbeddingProvider(api_key="sk-test").embed(["a"])


# =============================================================================
# External moderation
# =============================================================================


class TestModerationScores:
    def test_below_thresholds(self):
        """A 0.6 violence score passes the raised violence threshold."""
        result = evaluate_moderation_scores(False, {}, {"violence": 0.6})
        assert result.flagged is False
        assert result.block_reason is None

    def test_violence_above_threshold(self):
        result = evaluate_moderation_scores(False, {}, {"violence": 0.8})
        assert result.flagged is True
        assert result.categories == ["violence"]
        assert result.block_reason is BlockReason.SENSITIVE_TOPIC

    def test_minor_threshold_is_low(self):
        result = evaluate_moderation_scores(False, {}, {"sexual/minors": 0.15})
        assert result.block_reason is BlockReason.HARMFUL_CONTENT

    def test_provider_flags_are_honoured(self):
        """Categories the provider marked are flagged even below threshold."""
        result = evaluate_moderation_scores(True, {"harassment": True}, {"harassment": 0.2})
        assert result.flagged is True
        assert "harassment" in result.categories
        assert result.block_reason is BlockReason.SENSITIVE_TOPIC

    def test_fallback_reason_from_category_names(self):
        result = evaluate_moderation_scores(False, {}, {"self-harm/intent": 0.3})
        assert result.block_reason is BlockReason.HARMFUL_CONTENT

    def test_custom_thresholds(self):
        result = evaluate_moderation_scores(False, {}, {"violence": 0.6}, thresholds={"violence": 0.5})
        assert result.flagged is True

    @pytest.mark.parametrize(
        "categories,expected",
        [
            ({"violence/graphic": True}, BlockReason.HARMFUL_CONTENT),
            ({"hate": True}, BlockReason.SENSITIVE_TOPIC),
            ({"sexual": True}, BlockReason.CONTENT_POLICY),
            ({"sexual": False}, None),
        ],
    )
    def test_map_categories(self, categories, expected):
        assert map_categories_to_block_reason(categories) is expected

    @pytest.mark.parametrize(
        "topic,expected",
        [
            ("Would you rather fight 100 duck-sized horses or one horse-sized duck?", True),
            ("Is a hotdog a sandwich?", True),
            ("Tabs vs spaces", True),
            ("Would you rather fight a bear?", False),
        ],
    )
    def test_humor_patterns(self, topic, expected):
        assert is_humorous_topic(topic) is expected


class TestModerationProviders:
    @pytest.mark.asyncio
    async def test_null_provider(self):
        result = await NullModerationProvider().moderate("Should voting be compulsory?")
        assert result.flagged is False
        assert result.error == "API key not configured"
        assert (await NullModerationProvider().moderate("Is water wet?")).error is None

    @pytest.mark.asyncio
    @patch("guardrails.external_moderation.httpx.AsyncClient")
    async def test_flagged_response(self, client_cls):
        response = MagicMock(status_code=200)
        response.json.return_value = {
            "results": [
                {
                    "flagged": True,
                    "categories": {"hate": True, "violence": False},
                    "category_scores": {"hate": 0.7, "violence": 0.1},
                }
            ]
        }
        client = mock_async_client(client_cls, response=response)

        result = await OpenAIModerationProvider(api_key="sk-test", model="omni-moderation-latest").moderate(
            "some hateful topic"
        )

        assert result.flagged is True
        assert result.categories == ["hate"]
        assert result.block_reason is BlockReason.SENSITIVE_TOPIC
        _, kwargs = client.post.call_args
        assert kwargs["json"] == {"input": "some hateful topic", "model": "omni-moderation-latest"}

    @pytest.mark.asyncio
    @patch("guardrails.external_moderation.httpx.AsyncClient")
    async def test_humor_bypasses_request(self, client_cls):
        client = mock_async_client(client_cls)
        result = await OpenAIModerationProvider(api_key="sk-test").moderate("Is cereal a soup?")
        assert result.flagged is False
        client.post.assert_not_called()

    @pytest.mark.asyncio
    @patch("guardrails.external_moderation.httpx.AsyncClient")
    async def test_non_200(self, client_cls):
        response = MagicMock(status_code=500, text="server error")
        mock_async_client(client_cls, response=response)
        result = await OpenAIModerationProvider(api_key="sk-test").moderate("topic")
        assert result.flagged is False
        assert result.error == "API error: 500"

    @pytest.mark.asyncio
    @patch("guardrails.external_moderation.httpx.AsyncClient")
    async def test_timeout(self, client_cls):
        mock_async_client(client_cls, side_effect=httpx.ReadTimeout("slow"))
        result = await OpenAIModerationProvider(api_key="sk-test").moderate("topic")
        assert result.error == "Request timed out"

    @pytest.mark.asyncio
    @patch("guardrails.external_moderation.httpx.AsyncClient")
    async def test_empty_results(self, client_cls):
        response = MagicMock(status_code=200)
        response.json.return_value = {"results": []}
        mock_async_client(client_cls, response=response)
        result = await OpenAIModerationProvider(api_key="sk-test").moderate("topic")
        assert result.error == "No moderation result returned"

    def test_build_provider(self, monkeypatch):
        assert isinstance(build_moderation_provider(), NullModerationProvider)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        config.get_settings.cache_clear()
        provider = build_moderation_provider({"hate": 0.9})
        assert isinstance(provider, OpenAIModerationProvider)
        assert provider.thresholds == {"hate": 0.9}


# =============================================================================
# Semantic classifier
# =============================================================================


def llm_replying(content: str) -> MagicMock:
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=MagicMock(content=content))
    return llm


class TestSemanticClassifier:
    def test_parse_plain_json(self):
        result = parse_classification(
            '{"category": "political", "severity": "low", "target": "group", '
            '"isHumor": false, "isFictional": false, "reasoning": "policy"}'
        )
        assert result.category is ContentCategory.POLITICAL
        assert result.target is TargetType.GROUP

    def test_parse_fenced_json(self):
        result = parse_classification('```json\n{"category": "humor", "isHumor": true}\n```')
        assert result.category is ContentCategory.HUMOR
        assert result.is_humor is True
        assert result.severity is SeverityLevel.NONE

    @pytest.mark.asyncio
    async def test_classify(self):
        llm = llm_replying('{"category": "controversial", "severity": "medium", "target": "none"}')
        result = await AnthropicSemanticClassifier(llm=llm).classify("Should zoos exist?")

        assert result.category is ContentCategory.CONTROVERSIAL
        messages = llm.ainvoke.call_args[0][0]
        assert "Should zoos exist?" in messages[-1].content

    @pytest.mark.asyncio
    async def test_unparsable_reply_is_safe(self):
        result = await AnthropicSemanticClassifier(llm=llm_replying("I think it's fine")).classify("topic")
        assert result.category is ContentCategory.SAFE
        assert result.reasoning == "Unparsable classifier output"

    @pytest.mark.asyncio
    async def test_unknown_category_is_safe(self):
        result = await AnthropicSemanticClassifier(llm=llm_replying('{"category": "weird"}')).classify("topic")
        assert result.category is ContentCategory.SAFE

    @pytest.mark.asyncio
    async def test_llm_error_is_safe(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("overloaded"))
        result = await AnthropicSemanticClassifier(llm=llm).classify("topic")
        assert result.category is ContentCategory.SAFE
        assert result.reasoning == "Error during classification"

    @pytest.mark.asyncio
    async def test_null_classifier(self):
        result = await NullSemanticClassifier().classify("topic")
        assert result.category is ContentCategory.SAFE

    @patch("guardrails.semantic_classifier.ChatAnthropic")
    def test_build_with_key(self, chat_cls, monkeypatch):
        assert isinstance(build_semantic_classifier(), NullSemanticClassifier)

        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        config.get_settings.cache_clear()
        classifier = build_semantic_classifier()

        assert isinstance(classifier, AnthropicSemanticClassifier)
        assert chat_cls.call_args.kwargs["temperature"] == 0
