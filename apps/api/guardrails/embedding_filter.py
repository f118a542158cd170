"""Embedding-similarity filter for euphemistic harmful content.

Keyword and classifier layers miss coded language ("purify the nation").
This layer embeds the input and compares it against a bank of known
harmful concepts grouped into clusters. A maximum cosine similarity at or
above the threshold flags the content, and the matched cluster decides
the category.

Provider unavailability or errors are treated as "no match".
"""

import asyncio
import logging
import math
from typing import Optional, Protocol

import httpx

from config import get_settings
from guardrails.moderation_types import EmbeddingMatch

logger = logging.getLogger(__name__)

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"

EXTREMIST_CLUSTER = "extremist_ideology"
HARMFUL_CLUSTER = "harmful_content"

DEFAULT_CONCEPT_BANK: dict[str, list[str]] = {
    EXTREMIST_CLUSTER: [
        "purify the nation of undesirable people",
        "our people are being replaced and must fight back",
        "a homeland only for our own race",
        "a final solution for the problem group",
        "cleanse society of inferior bloodlines",
        "the coming race war is necessary",
        "secure the existence of our race and a future for our children",
        "armed uprising to overthrow the government and install our order",
    ],
    HARMFUL_CLUSTER: [
        "encourage someone to end their own life",
        "ways to hurt a child without anyone noticing",
        "how to poison someone without getting caught",
        "plan an attack on a crowded public place",
        "make someone disappear permanently",
        "starve yourself until you are thin enough",
    ],
}


class EmbeddingProvider(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


class EmbeddingProviderError(Exception):
    pass


class OpenAIEmbeddingProvider:
    """Embeddings over the OpenAI REST API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_embedding_model
        self.timeout = timeout or settings.openai_timeout

    async def embed(self, texts: list[str]) -> list[list[float]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    OPENAI_EMBEDDINGS_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"model": self.model, "input": texts},
                )
            response.raise_for_status()
            data = response.json()["data"]
        except httpx.TimeoutException as e:
            raise EmbeddingProviderError("Embedding request timed out") from e
        except httpx.HTTPError as e:
            raise EmbeddingProviderError(f"Embedding request failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise EmbeddingProviderError(f"Malformed embedding response: {e}") from e

        return [item["embedding"] for item in sorted(data, key=lambda item: item["index"])]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class EmbeddingSimilarityFilter:
    """Compares input embeddings against a cached concept bank."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider],
        concepts: Optional[dict[str, list[str]]] = None,
        threshold: Optional[float] = None,
    ):
        self.provider = provider
        self.concepts = concepts or DEFAULT_CONCEPT_BANK
        self.threshold = threshold if threshold is not None else get_settings().embedding_similarity_threshold
        self._concept_vectors: Optional[list[tuple[str, str, list[float]]]] = None
        self._load_lock = asyncio.Lock()

    async def _load_concepts(self) -> list[tuple[str, str, list[float]]]:
        async with self._load_lock:
            if self._concept_vectors is None:
                flat = [(cluster, text) for cluster, texts in self.concepts.items() for text in texts]
                vectors = await self.provider.embed([text for _, text in flat])
                self._concept_vectors = [
                    (cluster, text, vector) for (cluster, text), vector in zip(flat, vectors)
                ]
                logger.info(f"Embedded {len(self._concept_vectors)} harmful concepts")
            return self._concept_vectors

    async def check(self, content: str) -> EmbeddingMatch:
        if self.provider is None:
            return EmbeddingMatch(flagged=False, error="No embedding provider configured")

        try:
            concepts = await self._load_concepts()
            [vector] = await self.provider.embed([content])
        except Exception as e:
            logger.error(f"Embedding filter unavailable, treating as no match: {e}")
            return EmbeddingMatch(flagged=False, error=str(e))

        scored = sorted(
            ((cosine_similarity(vector, concept_vector), cluster, text) for cluster, text, concept_vector in concepts),
            reverse=True,
        )
        if not scored:
            return EmbeddingMatch(flagged=False)

        max_similarity, top_cluster, _ = scored[0]
        matched = [text for score, _, text in scored if score >= self.threshold]
        flagged = max_similarity >= self.threshold

        return EmbeddingMatch(
            flagged=flagged,
            max_similarity=round(max_similarity, 4),
            matched_concepts=matched,
            cluster=top_cluster if flagged else None,
        )


def build_embedding_filter() -> EmbeddingSimilarityFilter:
    settings = get_settings()
    if not settings.openai_api_key:
        logger.warning("Embedding filter: no OPENAI_API_KEY, layer disabled")
        return EmbeddingSimilarityFilter(provider=None)
    return EmbeddingSimilarityFilter(provider=OpenAIEmbeddingProvider())
