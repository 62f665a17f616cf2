from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from agentcore.services.errors import ExternalCallFailure

_RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


class ProviderError(ExternalCallFailure):
    """Domain-level provider exception."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        # Transport errors carry no status code and are always worth another try.
        return self.status_code is None or self.status_code in _RETRYABLE_STATUS


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


provider_retry = retry(
    retry=retry_if_exception(_is_retryable),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    stop=stop_after_attempt(3),
    reraise=True,
)


@dataclass
class ChatResponse:
    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class StreamChunk:
    content_delta: str = ""
    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def has_usage(self) -> bool:
        return self.input_tokens is not None or self.output_tokens is not None


class LLMProvider(ABC):
    """Opaque chat capability used by the model service and workflow nodes."""

    provider_type: str = "base"

    def __init__(self, name: str, config: dict[str, Any] | None = None) -> None:
        self.name = name
        self.config = config or {}

    def validate_config(self) -> None:
        """Raise ProviderError when required configuration is missing."""

    @abstractmethod
    def chat(self, model_id: str, messages: list[dict[str, str]], **params: Any) -> ChatResponse:
        """Run one completion and return the text plus token usage."""

    @abstractmethod
    def stream(self, model_id: str, messages: list[dict[str, str]], **params: Any) -> Iterator[StreamChunk]:
        """Yield partial completions; closing the iterator must release the upstream stream."""
