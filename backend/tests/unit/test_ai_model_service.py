from __future__ import annotations

import uuid

import pytest

from agentcore.persistence.models import AiModel, AiModelUsage, UsageStatus
from agentcore.providers.base import ProviderError
from agentcore.services.ai_model_service import AiModelService
from agentcore.services.errors import NotFound, RateLimitExceeded, ValidationError
from agentcore.services.kv_store import InMemoryKeyValueStore
from agentcore.services.rate_limiter import RateLimiter

MESSAGES = [{"role": "user", "content": "hello there"}]


def _usage(db_session):
    return db_session.query(AiModelUsage).all()


class TestCatalogue:
    def test_cost_calculation(self, ai_model):
        assert ai_model.calculate_cost(1000, 1000) == pytest.approx(0.0035)
        assert ai_model.calculate_cost(0, 0) == 0.0

    def test_resolve_by_id_and_qualified_id(self, ai_models, ai_model):
        assert ai_models.resolve_model("gpt-3.5-turbo") is ai_model
        assert ai_models.resolve_model("openai/gpt-3.5-turbo") is ai_model
        with pytest.raises(NotFound):
            ai_models.resolve_model("anthropic/gpt-3.5-turbo")

    def test_default_prefers_flag_then_priority(self, ai_models, db_session, ai_model):
        db_session.add(AiModel(provider="openai", model_id="gpt-4o", name="GPT-4o", priority=99))
        db_session.add(AiModel(provider="openai", model_id="old", name="Old", is_active=False, is_default=True))
        db_session.commit()

        assert ai_models.get_default_model() is ai_model
        assert [m.model_id for m in ai_models.get_available_models()] == ["gpt-4o", "gpt-3.5-turbo"]
        assert ai_models.get_default_model("mistral") is None


class TestCallModel:
    def test_success_logs_usage(self, ai_models, db_session, ai_model, test_user, fake_llm):
        result = ai_models.call_model(ai_model, test_user.id, MESSAGES, {"max_tokens": 99999}, context="ctx")

        assert result.content == "echo: hello there"
        assert result.total_tokens == 150
        assert result.cost == pytest.approx(0.00025)
        assert result.request_id.startswith("req_")
        assert fake_llm.calls[-1]["params"] == {"max_tokens": 4096}

        (usage,) = _usage(db_session)
        assert usage.status == UsageStatus.success
        assert usage.request_id == result.request_id
        assert usage.context == "ctx"

    def test_failure_logs_error_usage_and_reraises(self, db_session, ai_model, test_user, failing_llm, kv_store):
        service = AiModelService(db_session, failing_llm, RateLimiter(kv_store))
        with pytest.raises(ProviderError):
            service.call_model(ai_model, test_user.id, MESSAGES)

        (usage,) = _usage(db_session)
        assert usage.status == UsageStatus.error
        assert usage.error_message == "upstream exploded"
        assert usage.input_tokens == 0

    def test_provider_mapping(self, db_session, ai_model, test_user, fake_llm, kv_store):
        service = AiModelService(db_session, {"openai": fake_llm}, RateLimiter(kv_store))
        assert service.call_model(ai_model, test_user.id, MESSAGES).content == "echo: hello there"

        ai_model.provider = "mistral"
        with pytest.raises(ValidationError):
            service.call_model(ai_model, test_user.id, MESSAGES)

    def test_rate_limit(self, ai_models, ai_model, test_user, other_user):
        for _ in range(60):
            ai_models.call_model(ai_model, test_user.id, MESSAGES)
        with pytest.raises(RateLimitExceeded) as excinfo:
            ai_models.call_model(ai_model, test_user.id, MESSAGES)
        assert 1 <= excinfo.value.retry_after <= 60

        # Windows are per user.
        ai_models.call_model(ai_model, other_user.id, MESSAGES)


class TestStreamModel:
    def test_usage_logged_after_completion(self, ai_models, db_session, ai_model, test_user):
        stream = ai_models.stream_model(ai_model, test_user.id, MESSAGES)
        chunks = []
        while True:
            try:
                chunks.append(next(stream))
            except StopIteration as stop:
                result = stop.value
                break
            assert _usage(db_session) == []

        assert "".join(c.content_delta for c in chunks) == "echo: hello there "
        assert result.input_tokens == 40
        assert result.output_tokens == 20
        (usage,) = _usage(db_session)
        assert usage.output_tokens == 20

    def test_early_close_records_nothing(self, ai_models, db_session, ai_model, test_user, fake_llm):
        stream = ai_models.stream_model(ai_model, test_user.id, MESSAGES)
        next(stream)
        stream.close()

        assert fake_llm.stream_closed
        assert not fake_llm.stream_finished
        assert _usage(db_session) == []

    def test_streaming_unsupported(self, ai_models, ai_model, test_user):
        ai_model.supports_streaming = False
        with pytest.raises(ValidationError):
            ai_models.stream_model(ai_model, test_user.id, MESSAGES)


class TestUsageStats:
    def test_stats_include_errors(self, db_session, ai_models, ai_model, test_user, failing_llm, kv_store):
        ai_models.call_model(ai_model, test_user.id, MESSAGES)
        ai_models.call_model(ai_model, test_user.id, MESSAGES)
        broken = AiModelService(db_session, failing_llm, RateLimiter(kv_store))
        with pytest.raises(ProviderError):
            broken.call_model(ai_model, test_user.id, MESSAGES)

        stats = ai_models.get_user_usage_stats(test_user.id, "day")
        assert stats["total_requests"] == 3
        assert stats["total_tokens"] == 300
        assert stats["total_cost"] == pytest.approx(0.0005)
        assert stats["success_rate"] == pytest.approx(66.67)

    def test_unknown_period(self, ai_models, test_user):
        with pytest.raises(ValidationError):
            ai_models.get_user_usage_stats(test_user.id, "decade")


class TestRateLimiterAndStore:
    def test_fixed_window_resets(self):
        now = [0.0]
        store = InMemoryKeyValueStore(clock=lambda: now[0])
        limiter = RateLimiter(store, requests_per_minute=2)
        user, model = uuid.uuid4(), uuid.uuid4()

        assert limiter.check(user, model) == 1
        assert limiter.check(user, model) == 0
        now[0] = 45.0
        with pytest.raises(RateLimitExceeded) as excinfo:
            limiter.check(user, model)
        assert excinfo.value.retry_after == 15

        now[0] = 60.0
        assert limiter.check(user, model) == 1

    def test_disabled_limiter(self, kv_store):
        limiter = RateLimiter(kv_store, requests_per_minute=1, enabled=False)
        for _ in range(5):
            limiter.check("u", "m")

    def test_store_ttl(self):
        now = [0.0]
        store = InMemoryKeyValueStore(clock=lambda: now[0])
        store.set("k", [1.0], ttl_seconds=10)
        store.set("forever", "v")
        now[0] = 10.0
        assert store.get("k") is None
        assert store.get("forever") == "v"
