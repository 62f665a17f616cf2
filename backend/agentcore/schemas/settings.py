from __future__ import annotations

from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from agentcore.services.errors import ValidationError

SettingsT = TypeVar("SettingsT", bound=BaseModel)


class WorkflowSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    max_execution_time: int = Field(default=3600, gt=0)
    max_parallel_tasks: int = Field(default=10, gt=0)
    error_strategy: Literal["stop", "continue", "retry"] = "stop"
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=5.0, ge=0)


class KnowledgeBaseSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    similarity_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    max_results: int = Field(default=10, gt=0)
    rerank_enabled: bool = True
    search_strategy: Literal["semantic", "keyword", "hybrid"] = "hybrid"


class ConversationSettings(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str = "gpt-3.5-turbo"
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, gt=0)
    streaming: bool = True
    system_prompt: str | None = None
    max_context_messages: int = Field(default=20, gt=0)


def merge_settings(
    model: type[SettingsT],
    stored: dict[str, Any] | None,
    overrides: dict[str, Any] | None = None,
    defaults: dict[str, Any] | None = None,
) -> SettingsT:
    """Layer defaults < stored < overrides and validate the result."""
    data = {**(defaults or {}), **(stored or {}), **{k: v for k, v in (overrides or {}).items() if v is not None}}
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise ValidationError(f"Invalid {model.__name__}: {'; '.join(errors)}", errors) from exc
