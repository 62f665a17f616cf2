import logging
from dataclasses import dataclass, field
from functools import lru_cache
from os import getenv
from typing import Literal

logger = logging.getLogger(__name__)

_DEFAULT_FILE_TYPES = ("pdf", "docx", "txt", "md", "html", "csv", "json")


@dataclass
class Settings:
    app_name: str = "agentcore"
    app_env: Literal["dev", "test", "prod"] = "dev"
    database_url: str = "sqlite:///./agentcore.db"
    log_level: str = "INFO"
    log_json: bool = True
    storage_dir: str = "./storage"

    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    llm_timeout_seconds: float = 120.0
    default_chat_model: str = "gpt-3.5-turbo"

    embedding_model: str = "text-embedding-ada-002"
    embedding_batch_size: int = 100
    embedding_cache_ttl_seconds: int = 86400
    embedding_dimensions: int = 1536

    default_chunk_size: int = 1000
    default_chunk_overlap: int = 200
    max_file_size_bytes: int = 50 * 1024 * 1024
    supported_file_types: tuple[str, ...] = field(default=_DEFAULT_FILE_TYPES)
    default_vector_db: str = "database"

    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = None
    pinecone_api_key: str | None = None
    pinecone_index_host: str | None = None

    rate_limit_enabled: bool = True
    rate_limit_requests_per_minute: int = 60

    memory_short_term_ttl: int = 3600
    memory_working_ttl: int = 86400
    memory_long_term_ttl: int = 2592000

    workflow_max_execution_time: int = 3600
    workflow_max_parallel_tasks: int = 10
    workflow_max_retry_attempts: int = 3
    workflow_retry_delay_seconds: float = 5.0
    workflow_default_error_strategy: Literal["stop", "continue", "retry"] = "stop"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    def _as_bool(value: str | None, default: bool = False) -> bool:
        if value is None:
            return default
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}

    def _as_list(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            return default
        return tuple(item.strip().lower().lstrip(".") for item in value.split(",") if item.strip())

    app_env = getenv("APP_ENV", "dev")
    openai_api_key = getenv("OPENAI_API_KEY")
    if app_env == "prod" and not openai_api_key:
        logger.warning("OPENAI_API_KEY not set; LLM and embedding calls will be rejected upstream")

    return Settings(
        app_name=getenv("APP_NAME", "agentcore"),
        app_env=app_env,
        database_url=getenv("DATABASE_URL", "sqlite:///./agentcore.db"),
        log_level=getenv("LOG_LEVEL", "INFO"),
        log_json=_as_bool(getenv("LOG_JSON"), True),
        storage_dir=getenv("STORAGE_DIR", "./storage"),
        openai_api_key=openai_api_key,
        openai_base_url=getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        llm_timeout_seconds=float(getenv("LLM_TIMEOUT_SECONDS", "120")),
        default_chat_model=getenv("DEFAULT_CHAT_MODEL", "gpt-3.5-turbo"),
        embedding_model=getenv("EMBEDDING_MODEL", "text-embedding-ada-002"),
        embedding_batch_size=int(getenv("EMBEDDING_BATCH_SIZE", "100")),
        embedding_cache_ttl_seconds=int(getenv("EMBEDDING_CACHE_TTL_SECONDS", "86400")),
        embedding_dimensions=int(getenv("EMBEDDING_DIMENSIONS", "1536")),
        default_chunk_size=int(getenv("KNOWLEDGE_CHUNK_SIZE", "1000")),
        default_chunk_overlap=int(getenv("KNOWLEDGE_CHUNK_OVERLAP", "200")),
        max_file_size_bytes=int(getenv("KNOWLEDGE_MAX_FILE_SIZE_BYTES", str(50 * 1024 * 1024))),
        supported_file_types=_as_list(getenv("KNOWLEDGE_SUPPORTED_FILE_TYPES"), _DEFAULT_FILE_TYPES),
        default_vector_db=getenv("DEFAULT_VECTOR_DB", "database"),
        qdrant_url=getenv("QDRANT_URL", "http://localhost:6333"),
        qdrant_api_key=getenv("QDRANT_API_KEY"),
        pinecone_api_key=getenv("PINECONE_API_KEY"),
        pinecone_index_host=getenv("PINECONE_INDEX_HOST"),
        rate_limit_enabled=_as_bool(getenv("RATE_LIMIT_ENABLED"), True),
        rate_limit_requests_per_minute=int(getenv("RATE_LIMIT_REQUESTS_PER_MINUTE", "60")),
        memory_short_term_ttl=int(getenv("MEMORY_SHORT_TERM_TTL", "3600")),
        memory_working_ttl=int(getenv("MEMORY_WORKING_TTL", "86400")),
        memory_long_term_ttl=int(getenv("MEMORY_LONG_TERM_TTL", "2592000")),
        workflow_max_execution_time=int(getenv("WORKFLOW_MAX_EXECUTION_TIME", "3600")),
        workflow_max_parallel_tasks=int(getenv("WORKFLOW_MAX_PARALLEL_TASKS", "10")),
        workflow_max_retry_attempts=int(getenv("WORKFLOW_MAX_RETRY_ATTEMPTS", "3")),
        workflow_retry_delay_seconds=float(getenv("WORKFLOW_RETRY_DELAY", "5")),
        workflow_default_error_strategy=getenv("WORKFLOW_ERROR_STRATEGY", "stop"),
    )
