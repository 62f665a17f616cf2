from __future__ import annotations

import json

import httpx
import pytest

from agentcore.providers.base import ProviderError
from agentcore.services.embedding_service import (
    EmbeddingService,
    OpenAIEmbeddingProvider,
    cosine_similarity,
)
from agentcore.services.errors import DimensionMismatch, ExternalCallFailure
from agentcore.services.kv_store import InMemoryKeyValueStore


class TestEmbedBatch:
    """Batching, caching and ordering of EmbeddingService.embed_batch."""

    def test_results_follow_input_order(self, embedding_service, fake_embeddings):
        texts = ["alpha", "beta", "gamma", "delta", "epsilon", "zeta"]
        vectors = embedding_service.embed_batch(texts)
        assert vectors == [fake_embeddings.vector(t) for t in texts]

    def test_order_survives_mixed_hits_and_misses(self, embedding_service, fake_embeddings):
        embedding_service.embed_batch(["beta", "delta"])
        fake_embeddings.calls.clear()

        texts = ["alpha", "beta", "gamma", "delta"]
        vectors = embedding_service.embed_batch(texts)

        assert vectors == [fake_embeddings.vector(t) for t in texts]
        assert fake_embeddings.calls == [["alpha", "gamma"]]

    def test_only_misses_reach_provider(self, embedding_service, fake_embeddings):
        embedding_service.embed("same text")
        embedding_service.embed("same text")
        assert fake_embeddings.calls == [["same text"]]

    def test_splits_into_sub_batches(self, fake_embeddings):
        service = EmbeddingService(fake_embeddings, cache=InMemoryKeyValueStore(), batch_size=2)
        service.embed_batch(["a", "b", "c", "d", "e"])
        assert [len(call) for call in fake_embeddings.calls] == [2, 2, 1]

    def test_cache_key_includes_model(self, embedding_service, fake_embeddings):
        embedding_service.embed("text", model="model-a")
        embedding_service.embed("text", model="model-b")
        assert len(fake_embeddings.calls) == 2
        assert EmbeddingService.cache_key("text", "model-a").startswith("embedding_model-a_")

    def test_cache_entry_expires(self, fake_embeddings):
        now = [0.0]
        store = InMemoryKeyValueStore(clock=lambda: now[0])
        service = EmbeddingService(fake_embeddings, cache=store, cache_ttl_seconds=10)
        service.embed("text")
        now[0] = 11.0
        service.embed("text")
        assert len(fake_embeddings.calls) == 2

    def test_count_mismatch_is_external_failure(self, kv_store):
        class ShortProvider:
            def embed_batch(self, texts, model):
                return [[1.0]]

        service = EmbeddingService(ShortProvider(), cache=kv_store)
        with pytest.raises(ExternalCallFailure):
            service.embed_batch(["a", "b"])


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatch):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])

    def test_service_similarity_delegates(self, embedding_service):
        assert embedding_service.similarity([3.0, 4.0], [6.0, 8.0]) == pytest.approx(1.0)


def test_embedding_cost_per_model():
    assert EmbeddingService.cost(1000, "text-embedding-ada-002") == pytest.approx(0.0001)
    assert EmbeddingService.cost(2000, "text-embedding-3-small") == pytest.approx(0.00004)
    assert EmbeddingService.cost(1000, "unknown-model") == pytest.approx(0.0001)


def test_openai_embedding_provider_sorts_by_index():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    client = httpx.Client(transport=httpx.MockTransport(handler))
    provider = OpenAIEmbeddingProvider("sk-test", "https://api.example.com/v1/", client=client)
    vectors = provider.embed_batch(["first", "second"], "text-embedding-ada-002")

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert captured["url"] == "https://api.example.com/v1/embeddings"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"] == {"input": ["first", "second"], "model": "text-embedding-ada-002"}


def test_openai_embedding_provider_client_error_not_retried():
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(400, json={"error": "bad input"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    provider = OpenAIEmbeddingProvider("sk-test", client=client)
    with pytest.raises(ProviderError) as exc_info:
        provider.embed_batch(["x"], "text-embedding-ada-002")
    assert exc_info.value.status_code == 400
    assert calls["n"] == 1


def test_openai_embedding_provider_requires_key():
    provider = OpenAIEmbeddingProvider(None, client=httpx.Client(transport=httpx.MockTransport(lambda r: None)))
    with pytest.raises(ProviderError):
        provider.embed_batch(["x"], "m")

