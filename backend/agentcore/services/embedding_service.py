"""
EmbeddingService: converts text to dense vectors for knowledge search.

  * Single and batched embedding through an EmbeddingProvider (OpenAI-compatible
    /embeddings over httpx by default).
  * Results are cached in a KeyValueStore under embedding_{model}_{sha256(text)}.
    The cache is advisory: two concurrent misses for the same text both hit the
    provider.
  * embed_batch splits input into sub-batches, sends only cache misses upstream
    and returns vectors in the caller's order.
"""
from __future__ import annotations

import hashlib
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence

import httpx

from agentcore.config.settings import get_settings
from agentcore.monitoring.metrics import EMBEDDING_CACHE_LOOKUPS
from agentcore.providers.base import ProviderError, provider_retry
from agentcore.services.errors import DimensionMismatch, ExternalCallFailure
from agentcore.services.kv_store import KeyValueStore, get_kv_store

logger = logging.getLogger(__name__)

# USD per 1K tokens.
_EMBEDDING_PRICES = {
    "text-embedding-ada-002": 0.0001,
    "text-embedding-3-small": 0.00002,
    "text-embedding-3-large": 0.00013,
}
_DEFAULT_PRICE = 0.0001


class EmbeddingProvider(ABC):
    @abstractmethod
    def embed_batch(self, texts: list[str], model: str) -> list[list[float]]:
        """Return one vector per input text, in input order."""

    def embed(self, text: str, model: str) -> list[float]:
        return self.embed_batch([text], model)[0]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    def __init__(
        self,
        api_key: str | None,
        api_base: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    @provider_retry
    def embed_batch(self, texts: list[str], model: str) -> list[list[float]]:
        if not self.api_key:
            raise ProviderError("embedding provider: api_key is required", status_code=401)
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {"input": [text[:8000] for text in texts], "model": model}
        try:
            resp = self._client.post(f"{self.api_base}/embeddings", headers=headers, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"embedding API error {exc.response.status_code}: {exc.response.text[:500]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"embedding request failed: {exc}") from exc

        rows = sorted(data.get("data") or [], key=lambda row: row.get("index", 0))
        return [list(row["embedding"]) for row in rows]


class EmbeddingService:
    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: KeyValueStore,
        batch_size: int = 100,
        cache_ttl_seconds: int = 86400,
        default_model: str = "text-embedding-ada-002",
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.batch_size = max(1, batch_size)
        self.cache_ttl_seconds = cache_ttl_seconds
        self.default_model = default_model

    # ── Public API ────────────────────────────────────────────────────────

    @staticmethod
    def cache_key(text: str, model: str) -> str:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"embedding_{model}_{digest}"

    def embed(self, text: str, model: str | None = None) -> list[float]:
        return self.embed_batch([text], model)[0]

    def embed_batch(self, texts: Sequence[str], model: str | None = None) -> list[list[float]]:
        model = model or self.default_model
        results: list[list[float] | None] = [None] * len(texts)

        for offset in range(0, len(texts), self.batch_size):
            batch = texts[offset : offset + self.batch_size]
            missing: list[int] = []
            for i, text in enumerate(batch):
                cached = self.cache.get(self.cache_key(text, model))
                if cached is not None:
                    EMBEDDING_CACHE_LOOKUPS.labels(result="hit").inc()
                    results[offset + i] = list(cached)
                else:
                    EMBEDDING_CACHE_LOOKUPS.labels(result="miss").inc()
                    missing.append(i)

            if not missing:
                continue

            vectors = self._call_provider([batch[i] for i in missing], model)
            for i, vector in zip(missing, vectors):
                results[offset + i] = vector
                self.cache.set(self.cache_key(batch[i], model), vector, self.cache_ttl_seconds)

        return [vector or [] for vector in results]

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    @staticmethod
    def cost(token_count: int, model: str) -> float:
        return round(token_count / 1000 * _EMBEDDING_PRICES.get(model, _DEFAULT_PRICE), 8)

    # ── Internal ──────────────────────────────────────────────────────────

    def _call_provider(self, texts: list[str], model: str) -> list[list[float]]:
        try:
            vectors = self.provider.embed_batch(texts, model)
        except ExternalCallFailure:
            logger.error("Embedding call failed (model=%s, batch=%d)", model, len(texts))
            raise
        if len(vectors) != len(texts):
            raise ExternalCallFailure(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise DimensionMismatch(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


_embedding_svc: EmbeddingService | None = None


def get_embedding_service() -> EmbeddingService:
    global _embedding_svc
    if _embedding_svc is None:
        settings = get_settings()
        _embedding_svc = EmbeddingService(
            provider=OpenAIEmbeddingProvider(settings.openai_api_key, settings.openai_base_url),
            cache=get_kv_store(),
            batch_size=settings.embedding_batch_size,
            cache_ttl_seconds=settings.embedding_cache_ttl_seconds,
            default_model=settings.embedding_model,
        )
    return _embedding_svc
