"""
ConversationService: one chat turn end to end.

send_message():
  1. append the user message
  2. resolve the model (explicit override > conversation setting > system default)
  3. build context: system prompt, relevant memories, last N messages
  4. call the model, append the assistant message
  5. remember the exchange and any stated preferences / name
  6. auto-title, refresh conversation counters

stream_message() does the same, but persists the assistant side only once the
upstream stream has been fully consumed.
"""
from __future__ import annotations

import hashlib
import logging
import re
import uuid
from collections.abc import Generator
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from agentcore.persistence.models import (
    AiModel,
    Conversation,
    MemoryType,
    Message,
    MessageRole,
    now_utc,
)
from agentcore.providers.base import StreamChunk
from agentcore.schemas.settings import ConversationSettings, merge_settings
from agentcore.services.ai_model_service import AiModelService, LLMResult
from agentcore.services.errors import NotFound, ValidationError
from agentcore.services.memory_service import MemoryService

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50
RELEVANT_MEMORY_LIMIT = 5

_PREFERENCE_RE = re.compile(r"I (like|prefer|love|hate|dislike) (.+)", re.IGNORECASE)
_NAME_RE = re.compile(r"My name is (.+)", re.IGNORECASE)


class ConversationService:
    def __init__(self, db: Session, ai_models: AiModelService, memory: MemoryService) -> None:
        self.db = db
        self.ai_models = ai_models
        self.memory = memory

    # ── Conversations ─────────────────────────────────────────────────────

    def create_conversation(self, user_id: uuid.UUID, data: dict[str, Any] | None = None) -> Conversation:
        data = data or {}
        settings = data.get("settings") or {}
        merge_settings(ConversationSettings, settings)
        conversation = Conversation(
            id=uuid.uuid4(),
            user_id=user_id,
            title=data.get("title"),
            settings=settings,
            message_count=0,
            total_tokens=0,
            total_cost=0.0,
        )
        self.db.add(conversation)
        self.db.commit()
        return conversation

    def get_settings(self, conversation: Conversation, options: dict[str, Any] | None = None) -> ConversationSettings:
        overrides = {k: v for k, v in (options or {}).items() if k in ConversationSettings.model_fields}
        return merge_settings(ConversationSettings, conversation.settings, overrides)

    def archive(self, conversation: Conversation) -> Conversation:
        conversation.is_archived = True
        self.db.commit()
        return conversation

    def unarchive(self, conversation: Conversation) -> Conversation:
        conversation.is_archived = False
        self.db.commit()
        return conversation

    def get_history(self, conversation: Conversation, limit: int = 50) -> list[Message]:
        rows = (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation.id)
            .order_by(Message.sequence.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(rows))

    def search_conversations(self, user_id: uuid.UUID, query: str, limit: int = 20) -> list[Conversation]:
        pattern = f"%{query}%"
        matching = self.db.query(Message.conversation_id).filter(Message.content.ilike(pattern))
        return (
            self.db.query(Conversation)
            .filter(
                Conversation.user_id == user_id,
                or_(Conversation.title.ilike(pattern), Conversation.id.in_(matching)),
            )
            .order_by(Conversation.last_message_at.desc(), Conversation.created_at.desc())
            .limit(limit)
            .all()
        )

    # ── Turns ─────────────────────────────────────────────────────────────

    def send_message(
        self, conversation: Conversation, content: str, options: dict[str, Any] | None = None
    ) -> Message:
        settings = self.get_settings(conversation, options)
        model = self._resolve_model(settings, options)

        user_message = self._append(conversation, MessageRole.user, content)
        messages = self._build_context(conversation, settings, content)
        result = self.ai_models.call_model(
            model,
            conversation.user_id,
            messages,
            {"temperature": settings.temperature, "max_tokens": settings.max_tokens},
            context=f"conversation_{conversation.id}",
        )
        return self._complete_turn(conversation, user_message, model, result)

    def stream_message(
        self, conversation: Conversation, content: str, options: dict[str, Any] | None = None
    ) -> Generator[StreamChunk, None, Message]:
        """Return a generator of StreamChunks; its return value is the stored assistant Message.

        Closing the generator before the stream ends closes the upstream request
        and leaves no assistant message behind.
        """
        settings = self.get_settings(conversation, options)
        model = self._resolve_model(settings, options)
        if not model.supports_streaming:
            raise ValidationError(f"Model {model.full_identifier} does not support streaming")

        user_message = self._append(conversation, MessageRole.user, content)
        messages = self._build_context(conversation, settings, content)
        upstream = self.ai_models.stream_model(
            model,
            conversation.user_id,
            messages,
            {"temperature": settings.temperature, "max_tokens": settings.max_tokens},
            context=f"conversation_{conversation.id}",
        )
        return self._relay(conversation, user_message, model, upstream)

    def _relay(
        self,
        conversation: Conversation,
        user_message: Message,
        model: AiModel,
        upstream: Generator[StreamChunk, None, LLMResult],
    ) -> Generator[StreamChunk, None, Message]:
        result = yield from upstream
        return self._complete_turn(conversation, user_message, model, result)

    def _complete_turn(
        self, conversation: Conversation, user_message: Message, model: AiModel, result: LLMResult
    ) -> Message:
        assistant = self._append(
            conversation,
            MessageRole.assistant,
            result.content,
            ai_model_id=model.id,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost=result.cost,
            response_time_ms=result.response_time_ms,
            meta={"request_id": result.request_id, "model": model.full_identifier},
        )
        self._remember(conversation, user_message, assistant)
        self._auto_title(conversation)
        self.update_stats(conversation)
        return assistant

    # ── Stats ─────────────────────────────────────────────────────────────

    def update_stats(self, conversation: Conversation) -> Conversation:
        count, tokens, cost, last_at = (
            self.db.query(
                func.count(Message.id),
                func.coalesce(func.sum(Message.input_tokens + Message.output_tokens), 0),
                func.coalesce(func.sum(Message.cost), 0),
                func.max(Message.created_at),
            )
            .filter(Message.conversation_id == conversation.id)
            .one()
        )
        conversation.message_count = int(count)
        conversation.total_tokens = int(tokens)
        conversation.total_cost = round(float(cost), 6)
        conversation.last_message_at = last_at
        self.db.commit()
        return conversation

    # ── Internal ──────────────────────────────────────────────────────────

    def _resolve_model(self, settings: ConversationSettings, options: dict[str, Any] | None) -> AiModel:
        override = (options or {}).get("model")
        if override:
            return self.ai_models.resolve_model(override)
        try:
            return self.ai_models.resolve_model(settings.model)
        except NotFound:
            model = self.ai_models.get_default_model()
        if model is None:
            raise ValidationError("No AI model available")
        return model

    def _append(self, conversation: Conversation, role: MessageRole, content: str, **fields: Any) -> Message:
        last = (
            self.db.query(func.max(Message.sequence))
            .filter(Message.conversation_id == conversation.id)
            .scalar()
        )
        message = Message(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            sequence=(last or 0) + 1,
            role=role,
            content=content,
            created_at=now_utc(),
            **fields,
        )
        self.db.add(message)
        self.db.commit()
        return message

    def _build_context(
        self, conversation: Conversation, settings: ConversationSettings, query: str
    ) -> list[dict[str, str]]:
        context: list[dict[str, str]] = []
        if settings.system_prompt:
            context.append({"role": "system", "content": settings.system_prompt})

        memories = self.memory.retrieve_relevant(
            conversation.user_id, query, f"conversation_{conversation.id}", RELEVANT_MEMORY_LIMIT
        )
        if memories:
            text = "Relevant memories:\n" + "".join(f"- {m['value']}\n" for m in memories)
            context.append({"role": "system", "content": text})

        for message in self.get_history(conversation, settings.max_context_messages):
            context.append({"role": MessageRole(message.role).value, "content": message.content})
        return context

    def _remember(self, conversation: Conversation, user_message: Message, assistant: Message) -> None:
        context = f"conversation_{conversation.id}"
        user_id = conversation.user_id
        try:
            self.memory.store(
                user_id,
                MemoryType.short_term,
                f"exchange_{user_message.id}",
                f"User: {user_message.content}\nAssistant: {assistant.content}",
                context=context,
                importance=3,
            )

            preference = _PREFERENCE_RE.search(user_message.content)
            if preference:
                text = f"{preference.group(1)} {preference.group(2)}"
                self.memory.store(
                    user_id,
                    MemoryType.long_term,
                    "preference_" + hashlib.md5(text.encode()).hexdigest(),
                    f"User preference: {text}",
                    context=context,
                    importance=7,
                )

            name = _NAME_RE.search(user_message.content)
            if name:
                self.memory.store(
                    user_id,
                    MemoryType.long_term,
                    "user_name",
                    f"User's name: {name.group(1)}",
                    context=context,
                    importance=10,
                )
        except Exception:
            self.db.rollback()
            logger.exception(
                "Failed to store conversation memories",
                extra={"conversation_id": conversation.id, "user_id": user_id},
            )

    def _auto_title(self, conversation: Conversation) -> None:
        if conversation.title:
            return
        first = (
            self.db.query(Message)
            .filter(Message.conversation_id == conversation.id, Message.role == MessageRole.user)
            .order_by(Message.sequence)
            .first()
        )
        if first is None:
            return
        text = first.content.strip()
        conversation.title = text[:TITLE_LENGTH] + ("..." if len(text) > TITLE_LENGTH else "")
        self.db.commit()
