from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

import httpx

from agentcore.config.settings import get_settings
from agentcore.monitoring.metrics import LLM_REQUESTS
from agentcore.providers.base import ChatResponse, LLMProvider, ProviderError, StreamChunk, provider_retry

logger = logging.getLogger(__name__)

_PASSTHROUGH_PARAMS = ("temperature", "top_p", "max_tokens", "stop", "presence_penalty", "frequency_penalty")


class OpenAICompatibleProvider(LLMProvider):
    """
    Client for any endpoint exposing an OpenAI-compatible /chat/completions API
    (OpenAI, DeepSeek, Mistral, Ollama, vLLM, ...).

    config keys: api_key, api_base, timeout.
    """

    provider_type = "openai"
    _default_base_url = "https://api.openai.com/v1"

    def __init__(
        self,
        name: str = "openai",
        config: dict[str, Any] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(name, config)
        self._client = client

    @classmethod
    def from_settings(cls) -> "OpenAICompatibleProvider":
        settings = get_settings()
        return cls(
            config={
                "api_key": settings.openai_api_key,
                "api_base": settings.openai_base_url,
                "timeout": settings.llm_timeout_seconds,
            }
        )

    def validate_config(self) -> None:
        if not self.config.get("api_key"):
            raise ProviderError(f"{self.name}: api_key is required", status_code=401)

    def _base_url(self) -> str:
        return (self.config.get("api_base") or self._default_base_url).rstrip("/")

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.get("api_key"):
            headers["Authorization"] = f"Bearer {self.config['api_key']}"
        return headers

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=float(self.config.get("timeout", 120)))
        return self._client

    def _payload(self, model_id: str, messages: list[dict[str, str]], params: dict[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model_id, "messages": messages}
        for key in _PASSTHROUGH_PARAMS:
            if params.get(key) is not None:
                payload[key] = params[key]
        return payload

    @provider_retry
    def chat(self, model_id: str, messages: list[dict[str, str]], **params: Any) -> ChatResponse:
        payload = self._payload(model_id, messages, params)
        try:
            response = self._http().post(
                f"{self._base_url()}/chat/completions", headers=self._headers(), json=payload
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            LLM_REQUESTS.labels(provider=self.name, status="error").inc()
            raise ProviderError(
                f"{self.provider_type} API error {exc.response.status_code}: {exc.response.text[:500]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            LLM_REQUESTS.labels(provider=self.name, status="error").inc()
            raise ProviderError(f"{self.provider_type} request failed: {exc}") from exc

        LLM_REQUESTS.labels(provider=self.name, status="success").inc()
        choices = data.get("choices") or [{}]
        usage = data.get("usage") or {}
        return ChatResponse(
            content=(choices[0].get("message") or {}).get("content") or "",
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            raw=data,
        )

    def stream(self, model_id: str, messages: list[dict[str, str]], **params: Any) -> Iterator[StreamChunk]:
        payload = {
            **self._payload(model_id, messages, params),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        url = f"{self._base_url()}/chat/completions"
        try:
            with self._http().stream("POST", url, headers=self._headers(), json=payload) as response:
                if response.status_code >= 400:
                    response.read()
                    raise ProviderError(
                        f"{self.provider_type} API error {response.status_code}: {response.text[:500]}",
                        status_code=response.status_code,
                    )
                for raw_line in response.iter_lines():
                    chunk = self._parse_sse_line(raw_line)
                    if chunk is None:
                        continue
                    if chunk is _DONE:
                        break
                    yield chunk
        except httpx.RequestError as exc:
            LLM_REQUESTS.labels(provider=self.name, status="error").inc()
            raise ProviderError(f"{self.provider_type} stream failed: {exc}") from exc
        LLM_REQUESTS.labels(provider=self.name, status="success").inc()

    @staticmethod
    def _parse_sse_line(raw_line: str | bytes):
        if not raw_line:
            return None
        line = raw_line.decode("utf-8", errors="ignore") if isinstance(raw_line, bytes) else raw_line
        if not line.startswith("data:"):
            return None
        data_raw = line[5:].strip()
        if data_raw == "[DONE]":
            return _DONE
        try:
            event = json.loads(data_raw)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE payload")
            return None

        choice = (event.get("choices") or [{}])[0]
        delta = (choice.get("delta") or {}).get("content") or ""
        usage = event.get("usage")
        if isinstance(usage, dict):
            return StreamChunk(
                content_delta=delta,
                input_tokens=int(usage.get("prompt_tokens") or 0),
                output_tokens=int(usage.get("completion_tokens") or 0),
            )
        if not delta:
            return None
        return StreamChunk(content_delta=delta)


_DONE = StreamChunk()
