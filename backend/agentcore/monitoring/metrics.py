from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

WORKFLOW_NODE_EXECUTIONS = Counter(
    "agentcore_workflow_node_executions_total", "Workflow node executions", ["node_type", "status"]
)
WORKFLOW_NODE_LATENCY = Histogram(
    "agentcore_workflow_node_latency_seconds", "Workflow node execution latency", ["node_type"]
)
WORKFLOW_EXECUTIONS = Counter("agentcore_workflow_executions_total", "Workflow runs by outcome", ["status"])
EMBEDDING_CACHE_LOOKUPS = Counter(
    "agentcore_embedding_cache_lookups_total", "Embedding cache lookups", ["result"]
)
DOCUMENTS_PROCESSED = Counter("agentcore_documents_processed_total", "Knowledge documents processed", ["status"])
LLM_REQUESTS = Counter("agentcore_llm_requests_total", "LLM provider requests", ["provider", "status"])
RATE_LIMIT_REJECTIONS = Counter("agentcore_rate_limit_rejections_total", "Requests rejected by the rate limiter")


def metrics_payload() -> tuple[bytes, str]:
    """Serialized registry plus its content type, for whatever HTTP layer exposes it."""
    return generate_latest(), CONTENT_TYPE_LATEST
