"""
AI model service: model catalogue lookups plus metered, rate-limited LLM calls.

Every call (streaming or not) leaves one AiModelUsage row behind with its
token counts, cost and latency, whether it succeeded or not.
"""
from __future__ import annotations

import logging
import secrets
import time
import uuid
from collections.abc import Generator, Mapping
from contextlib import closing
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from agentcore.persistence.models import AiModel, AiModelUsage, UsageStatus, now_utc
from agentcore.providers.base import LLMProvider, StreamChunk
from agentcore.services.chunker import estimate_tokens
from agentcore.services.errors import NotFound, ValidationError
from agentcore.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

_PERIODS = {"day": 1, "week": 7, "month": 30, "year": 365}


@dataclass
class LLMResult:
    content: str
    input_tokens: int
    output_tokens: int
    cost: float
    response_time_ms: int
    request_id: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def new_request_id() -> str:
    return f"req_{int(time.time())}_{secrets.token_hex(4)}"


class AiModelService:
    def __init__(
        self,
        db: Session,
        provider: LLMProvider | Mapping[str, LLMProvider],
        rate_limiter: RateLimiter,
    ) -> None:
        self.db = db
        self.providers = provider
        self.rate_limiter = rate_limiter

    # ── Catalogue ─────────────────────────────────────────────────────────

    def get_available_models(self) -> list[AiModel]:
        return (
            self.db.query(AiModel)
            .filter(AiModel.is_active.is_(True))
            .order_by(AiModel.priority.desc(), AiModel.provider, AiModel.name)
            .all()
        )

    def get_models_by_provider(self, provider: str) -> list[AiModel]:
        return (
            self.db.query(AiModel)
            .filter(AiModel.is_active.is_(True), AiModel.provider == provider)
            .order_by(AiModel.priority.desc(), AiModel.name)
            .all()
        )

    def get_default_model(self, provider: str | None = None) -> AiModel | None:
        q = self.db.query(AiModel).filter(AiModel.is_active.is_(True))
        if provider:
            q = q.filter(AiModel.provider == provider)
        return q.order_by(AiModel.is_default.desc(), AiModel.priority.desc(), AiModel.name).first()

    def resolve_model(self, model_id: str) -> AiModel:
        """Find an active model by ``model_id`` or by ``provider/model_id``."""
        q = self.db.query(AiModel).filter(AiModel.is_active.is_(True))
        if "/" in model_id:
            provider, _, bare_id = model_id.partition("/")
            model = q.filter(AiModel.provider == provider, AiModel.model_id == bare_id).first()
        else:
            model = q.filter(AiModel.model_id == model_id).order_by(AiModel.priority.desc()).first()
        if model is None:
            raise NotFound(f"AI model not found: {model_id}")
        return model

    # ── Calls ─────────────────────────────────────────────────────────────

    def call_model(
        self,
        model: AiModel,
        user_id: uuid.UUID,
        messages: list[dict[str, str]],
        params: dict[str, Any] | None = None,
        context: str | None = None,
    ) -> LLMResult:
        self.rate_limiter.check(user_id, model.id, model.get_rate_limit("requests_per_minute"))
        request_id = new_request_id()
        provider = self._provider_for(model)
        started = time.perf_counter()
        try:
            response = provider.chat(model.model_id, messages, **self._params(model, params))
        except Exception as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            self._log_usage(model, user_id, request_id, 0, 0, 0.0, elapsed_ms, context, error=str(exc))
            logger.error(
                "LLM call failed: %s",
                exc,
                extra={"user_id": user_id, "model": model.full_identifier, "request_id": request_id},
            )
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        cost = model.calculate_cost(response.input_tokens, response.output_tokens)
        self._log_usage(
            model, user_id, request_id, response.input_tokens, response.output_tokens, cost, elapsed_ms, context
        )
        return LLMResult(
            content=response.content,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost=cost,
            response_time_ms=elapsed_ms,
            request_id=request_id,
        )

    def stream_model(
        self,
        model: AiModel,
        user_id: uuid.UUID,
        messages: list[dict[str, str]],
        params: dict[str, Any] | None = None,
        context: str | None = None,
    ) -> Generator[StreamChunk, None, LLMResult]:
        """Yield chunks as they arrive; the generator's return value is the final LLMResult.

        Usage is logged only once the upstream stream is exhausted. Closing the
        generator early closes the upstream stream and records nothing.
        """
        if not model.supports_streaming:
            raise ValidationError(f"Model {model.full_identifier} does not support streaming")
        return self._stream(model, user_id, messages, params, context)

    def _stream(
        self,
        model: AiModel,
        user_id: uuid.UUID,
        messages: list[dict[str, str]],
        params: dict[str, Any] | None,
        context: str | None,
    ) -> Generator[StreamChunk, None, LLMResult]:
        self.rate_limiter.check(user_id, model.id, model.get_rate_limit("requests_per_minute"))
        request_id = new_request_id()
        provider = self._provider_for(model)
        started = time.perf_counter()
        parts: list[str] = []
        input_tokens: int | None = None
        output_tokens: int | None = None

        try:
            with closing(provider.stream(model.model_id, messages, **self._params(model, params))) as upstream:
                for chunk in upstream:
                    if chunk.has_usage:
                        input_tokens = chunk.input_tokens if chunk.input_tokens is not None else input_tokens
                        output_tokens = chunk.output_tokens if chunk.output_tokens is not None else output_tokens
                    if chunk.content_delta:
                        parts.append(chunk.content_delta)
                    yield chunk
        except GeneratorExit:
            logger.info("LLM stream closed by consumer", extra={"user_id": user_id, "request_id": request_id})
            raise
        except Exception as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            self._log_usage(model, user_id, request_id, 0, 0, 0.0, elapsed_ms, context, error=str(exc))
            raise

        content = "".join(parts)
        if input_tokens is None:
            input_tokens = sum(estimate_tokens(m.get("content") or "") for m in messages)
        if output_tokens is None:
            output_tokens = estimate_tokens(content)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        cost = model.calculate_cost(input_tokens, output_tokens)
        self._log_usage(model, user_id, request_id, input_tokens, output_tokens, cost, elapsed_ms, context)
        return LLMResult(content, input_tokens, output_tokens, cost, elapsed_ms, request_id)

    # ── Usage ─────────────────────────────────────────────────────────────

    def get_user_usage_stats(self, user_id: uuid.UUID, period: str = "month") -> dict[str, Any]:
        if period not in _PERIODS:
            raise ValidationError(f"Unknown period: {period}")
        since = now_utc() - timedelta(days=_PERIODS[period])
        row = (
            self.db.query(
                func.count(AiModelUsage.id).label("requests"),
                func.coalesce(func.sum(AiModelUsage.input_tokens + AiModelUsage.output_tokens), 0).label("tokens"),
                func.coalesce(func.sum(AiModelUsage.cost), 0).label("cost"),
                func.avg(AiModelUsage.response_time_ms).label("avg_ms"),
                func.coalesce(
                    func.sum(case((AiModelUsage.status == UsageStatus.success, 1), else_=0)), 0
                ).label("successes"),
            )
            .filter(AiModelUsage.user_id == user_id, AiModelUsage.created_at >= since)
            .one()
        )
        requests = int(row.requests or 0)
        return {
            "period": period,
            "total_requests": requests,
            "total_tokens": int(row.tokens),
            "total_cost": round(float(row.cost), 6),
            "avg_response_time_ms": round(float(row.avg_ms or 0), 2),
            "success_rate": round(int(row.successes) / requests * 100, 2) if requests else 0.0,
        }

    # ── Internal ──────────────────────────────────────────────────────────

    def _provider_for(self, model: AiModel) -> LLMProvider:
        if isinstance(self.providers, LLMProvider):
            return self.providers
        provider = self.providers.get(model.provider)
        if provider is None:
            raise ValidationError(f"No provider configured for {model.provider}")
        return provider

    @staticmethod
    def _params(model: AiModel, params: dict[str, Any] | None) -> dict[str, Any]:
        merged = {k: v for k, v in (params or {}).items() if v is not None}
        if model.max_tokens and merged.get("max_tokens", 0) > model.max_tokens:
            merged["max_tokens"] = model.max_tokens
        return merged

    def _log_usage(
        self,
        model: AiModel,
        user_id: uuid.UUID,
        request_id: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        response_time_ms: int,
        context: str | None,
        error: str | None = None,
    ) -> AiModelUsage:
        usage = AiModelUsage(
            user_id=user_id,
            ai_model_id=model.id,
            request_id=request_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            response_time_ms=response_time_ms,
            status=UsageStatus.error if error else UsageStatus.success,
            error_message=error,
            context=context,
        )
        self.db.add(usage)
        self.db.commit()
        return usage
