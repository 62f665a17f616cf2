"""
Workflow node handlers.

Each node ``type`` maps to one NodeHandler in a NodeHandlerRegistry. A handler
receives a NodeContext (the node's raw config plus a resolver bound to the run's
variables and earlier node results) and returns a JSON-serialisable dict. A
``cost`` key in that dict is added to the execution's running total.
"""
from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.orm import Session

from agentcore.persistence.models import KnowledgeBase, MemoryType
from agentcore.services.ai_model_service import AiModelService
from agentcore.services.condition_evaluator import ConditionEvaluator
from agentcore.services.errors import ExternalCallFailure, NotFound, UnknownNodeType, ValidationError
from agentcore.services.knowledge_service import KnowledgeService
from agentcore.services.memory_service import MemoryService
from agentcore.services.variable_resolver import VariableResolver

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class NodeContext:
    node_id: str
    node_type: str
    config: dict[str, Any]
    resolver: VariableResolver
    user_id: uuid.UUID
    workflow_id: uuid.UUID
    execution_id: str
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Config value with placeholders resolved."""
        if key not in self.config:
            return default
        return self.resolver.resolve(self.config[key])

    def require(self, key: str) -> Any:
        value = self.get(key, _MISSING)
        if value is _MISSING or value in ("", None):
            raise ValidationError(f"Node {self.node_id} ({self.node_type}) requires '{key}'")
        return value

    @property
    def memory_context(self) -> str:
        return f"workflow_{self.workflow_id}"


class NodeHandler(ABC):
    node_type: str = ""

    @abstractmethod
    def execute(self, context: NodeContext) -> dict[str, Any]:
        ...


class AiCallHandler(NodeHandler):
    node_type = "ai_call"

    def __init__(self, ai_models: AiModelService) -> None:
        self.ai_models = ai_models

    def execute(self, context: NodeContext) -> dict[str, Any]:
        prompt = context.require("prompt")
        model_id = context.get("model")
        model = self.ai_models.resolve_model(model_id) if model_id else self.ai_models.get_default_model()
        if model is None:
            raise ValidationError("No AI model available for ai_call node")

        messages = []
        system_prompt = context.get("system_prompt")
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        result = self.ai_models.call_model(
            model,
            context.user_id,
            messages,
            {"temperature": context.get("temperature"), "max_tokens": context.get("max_tokens")},
            context=context.memory_context,
        )
        return {
            "response": result.content,
            "tokens_used": result.total_tokens,
            "input_tokens": result.input_tokens,
            "output_tokens": result.output_tokens,
            "cost": result.cost,
        }


class KnowledgeSearchHandler(NodeHandler):
    node_type = "knowledge_search"

    def __init__(self, knowledge: KnowledgeService) -> None:
        self.knowledge = knowledge

    def execute(self, context: NodeContext) -> dict[str, Any]:
        kb_id = context.require("knowledge_base_id")
        query = context.require("query")
        try:
            kb = self.knowledge.db.get(KnowledgeBase, uuid.UUID(str(kb_id)))
        except ValueError as exc:
            raise ValidationError(f"Invalid knowledge_base_id: {kb_id}") from exc
        if kb is None or not kb.is_accessible_by(context.user_id):
            raise NotFound(f"Knowledge base not found: {kb_id}")

        results = self.knowledge.search(
            kb,
            query,
            top_k=int(context.get("top_k", 5)),
            similarity_threshold=context.get("similarity_threshold"),
        )
        sources = list(dict.fromkeys(r["document_id"] for r in results))
        return {"results": results, "sources": sources}


class MemoryStoreHandler(NodeHandler):
    node_type = "memory_store"

    def __init__(self, memory: MemoryService) -> None:
        self.memory = memory

    def execute(self, context: NodeContext) -> dict[str, Any]:
        memory = self.memory.store(
            context.user_id,
            context.get("memory_type", MemoryType.working.value),
            context.require("key"),
            context.get("value", ""),
            context=context.get("context", context.memory_context),
            importance=context.get("importance"),
        )
        return {"success": True, "memory_id": str(memory.id)}


class MemoryRetrieveHandler(NodeHandler):
    node_type = "memory_retrieve"

    def __init__(self, memory: MemoryService) -> None:
        self.memory = memory

    def execute(self, context: NodeContext) -> dict[str, Any]:
        memory = self.memory.retrieve(
            context.user_id,
            context.get("memory_type", MemoryType.working.value),
            context.require("key"),
            context=context.get("context", context.memory_context),
        )
        if memory is None:
            return {"value": context.get("fallback_value"), "found": False}
        return {"value": memory.decoded_value(), "found": True}


class ConditionHandler(NodeHandler):
    node_type = "condition"

    def execute(self, context: NodeContext) -> dict[str, Any]:
        # The evaluator resolves placeholders itself, as values.
        expression = context.config.get("condition")
        if not isinstance(expression, str) or not expression.strip():
            raise ValidationError(f"Node {context.node_id} (condition) requires 'condition'")
        return {"result": ConditionEvaluator(context.resolver).evaluate(expression)}


class DataTransformHandler(NodeHandler):
    node_type = "data_transform"

    def execute(self, context: NodeContext) -> dict[str, Any]:
        data = context.get("input_data")
        transform = context.get("transform_type", "passthrough")
        if transform == "json_parse":
            if not isinstance(data, str):
                return {"output_data": data}
            try:
                return {"output_data": json.loads(data)}
            except json.JSONDecodeError as exc:
                raise ValidationError(f"Node {context.node_id}: input_data is not valid JSON") from exc
        if transform == "json_encode":
            return {"output_data": json.dumps(data, ensure_ascii=False)}
        return {"output_data": data}


class ApiCallHandler(NodeHandler):
    node_type = "api_call"

    def __init__(self, http_client: httpx.Client | None = None, timeout: float = 30.0) -> None:
        self._client = http_client
        self.timeout = timeout

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def execute(self, context: NodeContext) -> dict[str, Any]:
        url = context.require("url")
        method = str(context.get("method", "GET")).upper()
        headers = context.get("headers") or {}
        body = context.get("body")

        request_kwargs: dict[str, Any] = {"headers": headers}
        if body is not None and method not in ("GET", "HEAD", "DELETE"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        try:
            resp = self._http().request(method, url, **request_kwargs)
        except httpx.HTTPError as exc:
            raise ExternalCallFailure(f"API call to {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise ExternalCallFailure(f"API call to {url} failed with status {resp.status_code}")

        try:
            payload: Any = resp.json()
        except ValueError:
            payload = resp.text
        return {"response": payload, "status_code": resp.status_code, "headers": dict(resp.headers)}


class NodeHandlerRegistry:
    def __init__(self, handlers: dict[str, NodeHandler] | None = None) -> None:
        self._handlers: dict[str, NodeHandler] = dict(handlers or {})

    @classmethod
    def default(
        cls,
        db: Session,
        ai_models: AiModelService,
        knowledge: KnowledgeService | None = None,
        memory: MemoryService | None = None,
        http_client: httpx.Client | None = None,
    ) -> "NodeHandlerRegistry":
        memory = memory or MemoryService(db)
        knowledge = knowledge or KnowledgeService(db)
        registry = cls()
        for handler in (
            AiCallHandler(ai_models),
            KnowledgeSearchHandler(knowledge),
            MemoryStoreHandler(memory),
            MemoryRetrieveHandler(memory),
            ConditionHandler(),
            DataTransformHandler(),
            ApiCallHandler(http_client),
        ):
            registry.register(handler.node_type, handler)
        return registry

    def register(self, node_type: str, handler: NodeHandler) -> None:
        self._handlers[node_type] = handler

    def node_types(self) -> list[str]:
        return sorted(self._handlers)

    def get(self, node_type: str) -> NodeHandler:
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownNodeType(f"Unknown node type: {node_type}")
        return handler
