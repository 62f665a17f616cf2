"""
Process bootstrap: logging, migrations and service wiring.

There is no HTTP surface here. Callers (workers, scripts, an embedding
application) call :func:`startup` once and then :func:`build_services` per
unit of work with a session from
:func:`agentcore.persistence.database.session_scope`.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from agentcore.config.settings import Settings, get_settings
from agentcore.logging.setup import configure_logging
from agentcore.persistence.migrations import run_migrations
from agentcore.providers.base import LLMProvider
from agentcore.providers.openai_compatible import OpenAICompatibleProvider
from agentcore.services.ai_model_service import AiModelService
from agentcore.services.conversation_service import ConversationService
from agentcore.services.embedding_service import EmbeddingService
from agentcore.services.knowledge_service import KnowledgeService
from agentcore.services.kv_store import KeyValueStore, get_kv_store
from agentcore.services.memory_service import MemoryService
from agentcore.services.rate_limiter import RateLimiter
from agentcore.services.workflow_engine import WorkflowEngine
from agentcore.services.workflow_nodes import NodeHandlerRegistry
from agentcore.services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)


def startup(migrate: bool = True) -> bool:
    """Configure logging and apply migrations. Returns False when migrations failed."""
    configure_logging()
    if not migrate:
        return True
    try:
        run_migrations()
    except Exception as exc:  # pragma: no cover
        logger.error("DB migration failed, running in degraded mode: %s", exc, exc_info=True)
        return False
    return True


@dataclass
class Services:
    ai_models: AiModelService
    memory: MemoryService
    knowledge: KnowledgeService
    workflows: WorkflowService
    conversations: ConversationService


def build_services(
    db: Session,
    provider: LLMProvider | None = None,
    embeddings: EmbeddingService | None = None,
    kv_store: KeyValueStore | None = None,
    settings: Settings | None = None,
) -> Services:
    settings = settings or get_settings()
    limiter = RateLimiter(
        kv_store or get_kv_store(),
        requests_per_minute=settings.rate_limit_requests_per_minute,
        enabled=settings.rate_limit_enabled,
    )
    ai_models = AiModelService(db, provider or OpenAICompatibleProvider.from_settings(), limiter)
    memory = MemoryService(db, settings=settings)
    knowledge = KnowledgeService(db, embeddings=embeddings, settings=settings)
    handlers = NodeHandlerRegistry.default(db, ai_models, knowledge=knowledge, memory=memory)
    engine = WorkflowEngine(db, handlers, settings=settings)
    return Services(
        ai_models=ai_models,
        memory=memory,
        knowledge=knowledge,
        workflows=WorkflowService(db, engine),
        conversations=ConversationService(db, ai_models, memory),
    )
