"""
Shared test fixtures for the agentcore backend.
"""
import os
import string
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Force test settings before any agentcore import
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_JSON", "false")

# Import Base and ALL models so they register with metadata
from agentcore.config.settings import Settings
from agentcore.persistence.database import Base
import agentcore.persistence.models  # noqa: F401 registers all models
from agentcore.persistence.models import AiModel, User
from agentcore.providers.base import ChatResponse, LLMProvider, ProviderError, StreamChunk
from agentcore.services.ai_model_service import AiModelService
from agentcore.services.conversation_service import ConversationService
from agentcore.services.document_parsers import ParserRegistry
from agentcore.services.embedding_service import EmbeddingProvider, EmbeddingService
from agentcore.services.file_storage import LocalFileStorage
from agentcore.services.knowledge_service import KnowledgeService
from agentcore.services.kv_store import InMemoryKeyValueStore
from agentcore.services.memory_service import MemoryService
from agentcore.services.rate_limiter import RateLimiter
from agentcore.services.vector_store import VectorStoreRegistry
from agentcore.services.workflow_engine import WorkflowEngine
from agentcore.services.workflow_nodes import NodeHandlerRegistry
from agentcore.services.workflow_service import WorkflowService


# ── Fakes ─────────────────────────────────────────────────────────────────


class FakeLLMProvider(LLMProvider):
    """Replies from a queue (or echoes the last user message) and records every call."""

    provider_type = "fake"

    def __init__(self, replies=None, fail_with=None):
        super().__init__(name="openai")
        self.replies = list(replies or [])
        self.fail_with = fail_with
        self.calls: list[dict] = []
        self.stream_closed = False
        self.stream_finished = False

    def _reply(self, messages):
        if self.replies:
            return self.replies.pop(0)
        return f"echo: {messages[-1]['content']}"

    def chat(self, model_id, messages, **params):
        self.calls.append({"model_id": model_id, "messages": messages, "params": params})
        if self.fail_with is not None:
            raise self.fail_with
        return ChatResponse(content=self._reply(messages), input_tokens=100, output_tokens=50)

    def stream(self, model_id, messages, **params):
        self.calls.append({"model_id": model_id, "messages": messages, "params": params, "stream": True})
        reply = self._reply(messages)
        try:
            for word in reply.split(" "):
                yield StreamChunk(content_delta=word + " ")
            yield StreamChunk(input_tokens=40, output_tokens=20)
            self.stream_finished = True
        finally:
            self.stream_closed = True


class FakeEmbeddingProvider(EmbeddingProvider):
    """Letter-frequency vectors: deterministic and similar for similar text."""

    def __init__(self):
        self.calls: list[list[str]] = []

    def embed_batch(self, texts, model):
        self.calls.append(list(texts))
        return [self.vector(text) for text in texts]

    @staticmethod
    def vector(text):
        lowered = text.lower()
        return [float(lowered.count(ch)) for ch in string.ascii_lowercase] + [1.0]


class FrozenClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


# ── Database ──────────────────────────────────────────────────────────────


@pytest.fixture()
def db_engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db_session(db_engine):
    session = sessionmaker(bind=db_engine, autoflush=False, autocommit=False)()
    yield session
    session.close()


@pytest.fixture()
def test_settings(tmp_path):
    return Settings(
        app_env="test",
        database_url="sqlite://",
        storage_dir=str(tmp_path / "storage"),
        workflow_retry_delay_seconds=0.0,
    )


@pytest.fixture()
def test_user(db_session):
    user = User(id=uuid.uuid4(), email=f"user-{uuid.uuid4().hex[:8]}@example.com", name="Test User")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture()
def other_user(db_session):
    user = User(id=uuid.uuid4(), email=f"other-{uuid.uuid4().hex[:8]}@example.com", name="Other User")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture()
def ai_model(db_session):
    model = AiModel(
        id=uuid.uuid4(),
        provider="openai",
        model_id="gpt-3.5-turbo",
        name="GPT-3.5 Turbo",
        supports_streaming=True,
        max_tokens=4096,
        input_cost_per_1k_tokens=0.0015,
        output_cost_per_1k_tokens=0.002,
        rate_limits={"requests_per_minute": 60},
        priority=10,
        is_active=True,
        is_default=True,
    )
    db_session.add(model)
    db_session.commit()
    return model


# ── Services ──────────────────────────────────────────────────────────────


@pytest.fixture()
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture()
def fake_llm():
    return FakeLLMProvider()


@pytest.fixture()
def fake_embeddings():
    return FakeEmbeddingProvider()


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def ai_models(db_session, fake_llm, kv_store):
    return AiModelService(db_session, fake_llm, RateLimiter(kv_store, requests_per_minute=60))


@pytest.fixture()
def memory_service(db_session, clock, test_settings):
    return MemoryService(db_session, clock=clock, settings=test_settings)


@pytest.fixture()
def embedding_service(fake_embeddings, kv_store):
    return EmbeddingService(fake_embeddings, cache=kv_store, batch_size=4)


@pytest.fixture()
def knowledge_service(db_session, embedding_service, test_settings):
    return KnowledgeService(
        db_session,
        embeddings=embedding_service,
        storage=LocalFileStorage(test_settings.storage_dir),
        parsers=ParserRegistry.default(),
        vector_stores=VectorStoreRegistry(db_session, test_settings),
        settings=test_settings,
    )


@pytest.fixture()
def failing_llm():
    return FakeLLMProvider(fail_with=ProviderError("upstream exploded", status_code=500))


@pytest.fixture()
def conversation_service(db_session, ai_models, memory_service):
    return ConversationService(db_session, ai_models, memory_service)


# ── Workflows ─────────────────────────────────────────────────────────────


@pytest.fixture()
def node_handlers(db_session, ai_models, knowledge_service, memory_service):
    return NodeHandlerRegistry.default(
        db_session, ai_models, knowledge=knowledge_service, memory=memory_service
    )


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def workflow_engine(db_session, node_handlers, test_settings, sleeps):
    return WorkflowEngine(db_session, node_handlers, settings=test_settings, sleep=sleeps.append)


@pytest.fixture()
def workflow_service(db_session, workflow_engine):
    return WorkflowService(db_session, workflow_engine)
