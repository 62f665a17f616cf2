"""
Memory service: typed key/value facts per user with scores and expiry.

Memory types and default retention:
  short_term  1 hour    base importance 1
  working     1 day     base importance 3
  long_term   30 days   base importance 5
  meta        never     base importance 10

retrieve_relevant() is a word-overlap heuristic (substring gate + Jaccard score),
not semantic search.
"""
from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session

from agentcore.config.settings import Settings, get_settings
from agentcore.persistence.models import MemoryStore, MemoryType, now_utc
from agentcore.services.errors import ValidationError

logger = logging.getLogger(__name__)

_BASE_IMPORTANCE = {
    MemoryType.short_term: 1,
    MemoryType.long_term: 5,
    MemoryType.working: 3,
    MemoryType.meta: 10,
}
CONSOLIDATION_IMPORTANCE = 7
CONSOLIDATION_MIN_ACCESSES = 2

# (type, cap) groups scanned by retrieve_relevant, in priority order.
_RELEVANT_GROUPS = ((MemoryType.meta, 5), (MemoryType.long_term, 10))
_CONTEXT_CAP = 10
_WORKING_CAP = 5


def _as_type(memory_type: MemoryType | str) -> MemoryType:
    try:
        return MemoryType(memory_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown memory type: {memory_type}") from exc


class MemoryService:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = now_utc,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self._now = clock
        self.settings = settings or get_settings()

    # ── Policy ────────────────────────────────────────────────────────────

    def default_ttl(self, memory_type: MemoryType) -> int | None:
        return {
            MemoryType.short_term: self.settings.memory_short_term_ttl,
            MemoryType.working: self.settings.memory_working_ttl,
            MemoryType.long_term: self.settings.memory_long_term_ttl,
            MemoryType.meta: None,
        }[memory_type]

    @staticmethod
    def default_importance(memory_type: MemoryType, value: Any) -> int:
        score = _BASE_IMPORTANCE.get(memory_type, 1)
        if isinstance(value, str):
            if len(value) > 1000:
                score += 2
            elif len(value) > 500:
                score += 1
        return score

    # ── Store / retrieve ──────────────────────────────────────────────────

    def store(
        self,
        user_id: uuid.UUID,
        memory_type: MemoryType | str,
        key: str,
        value: Any,
        context: str | None = None,
        metadata: dict[str, Any] | None = None,
        importance: int | None = None,
        ttl_seconds: int | None = None,
    ) -> MemoryStore:
        """Insert or overwrite the memory identified by (user, type, key, context)."""
        mtype = _as_type(memory_type)
        now = self._now()
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl(mtype)
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)

        memory = self._identity_query(user_id, mtype, key, context).first()
        if memory is None:
            memory = MemoryStore(id=uuid.uuid4(), user_id=user_id, memory_type=mtype, key=key, context=context)
            self.db.add(memory)

        memory.value = text
        memory.meta = metadata
        memory.importance_score = importance if importance is not None else self.default_importance(mtype, value)
        memory.expires_at = now + timedelta(seconds=ttl) if ttl else None
        memory.access_count = 1
        memory.last_accessed_at = now
        self.db.commit()

        logger.debug("Memory stored: %s/%s", mtype.value, key, extra={"user_id": user_id})
        return memory

    def retrieve(
        self,
        user_id: uuid.UUID,
        memory_type: MemoryType | str,
        key: str,
        context: str | None = None,
    ) -> MemoryStore | None:
        q = self._not_expired(
            self.db.query(MemoryStore).filter(
                MemoryStore.user_id == user_id,
                MemoryStore.memory_type == _as_type(memory_type),
                MemoryStore.key == key,
            )
        )
        if context:
            q = q.filter(MemoryStore.context == context)
        memory = q.first()
        if memory is not None:
            memory.access_count = (memory.access_count or 0) + 1
            memory.last_accessed_at = self._now()
            self.db.commit()
        return memory

    def get_by_type(self, user_id: uuid.UUID, memory_type: MemoryType | str, limit: int = 100) -> list[MemoryStore]:
        return (
            self._not_expired(
                self.db.query(MemoryStore).filter(
                    MemoryStore.user_id == user_id,
                    MemoryStore.memory_type == _as_type(memory_type),
                )
            )
            .order_by(MemoryStore.importance_score.desc())
            .limit(limit)
            .all()
        )

    def get_by_context(self, user_id: uuid.UUID, context: str, limit: int = 50) -> list[MemoryStore]:
        return (
            self._not_expired(
                self.db.query(MemoryStore).filter(
                    MemoryStore.user_id == user_id,
                    MemoryStore.context == context,
                )
            )
            .order_by(MemoryStore.last_accessed_at.desc())
            .limit(limit)
            .all()
        )

    def search(
        self,
        user_id: uuid.UUID,
        query: str,
        types: list[MemoryType | str] | None = None,
        context: str | None = None,
        limit: int = 50,
    ) -> list[MemoryStore]:
        pattern = f"%{query}%"
        q = self._not_expired(
            self.db.query(MemoryStore).filter(
                MemoryStore.user_id == user_id,
                or_(MemoryStore.key.ilike(pattern), MemoryStore.value.ilike(pattern)),
            )
        )
        if types:
            q = q.filter(MemoryStore.memory_type.in_([_as_type(t) for t in types]))
        if context:
            q = q.filter(MemoryStore.context == context)
        return q.order_by(MemoryStore.importance_score.desc()).limit(limit).all()

    def retrieve_relevant(
        self,
        user_id: uuid.UUID,
        query: str,
        context: str | None = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        groups = [self.get_by_type(user_id, memory_type, cap) for memory_type, cap in _RELEVANT_GROUPS]
        if context:
            groups.append(self.get_by_context(user_id, context, _CONTEXT_CAP))
        groups.append(self.get_by_type(user_id, MemoryType.working, _WORKING_CAP))

        # A memory can sit in its type group and the context group.
        seen: set[uuid.UUID] = set()
        scored: list[dict[str, Any]] = []
        for memory in (m for group in groups for m in group):
            if memory.id in seen or not self._is_relevant(memory, query):
                continue
            seen.add(memory.id)
            scored.append(
                {
                    "type": MemoryType(memory.memory_type).value,
                    "key": memory.key,
                    "value": memory.decoded_value(),
                    "importance": memory.importance_score,
                    "relevance": self._relevance(memory, query),
                }
            )

        scored.sort(key=lambda m: m["relevance"] * 0.7 + m["importance"] * 0.3, reverse=True)
        return scored[:limit]

    # ── Maintenance ───────────────────────────────────────────────────────

    def update_importance(self, memory: MemoryStore, importance: int) -> MemoryStore:
        memory.importance_score = importance
        self.db.commit()
        return memory

    def extend(self, memory: MemoryStore, new_expiration: datetime | None = None) -> MemoryStore:
        if new_expiration is None:
            ttl = self.default_ttl(MemoryType(memory.memory_type))
            new_expiration = self._now() + timedelta(seconds=ttl) if ttl else None
        memory.expires_at = new_expiration
        self.db.commit()
        return memory

    def delete(self, memory: MemoryStore) -> None:
        self.db.delete(memory)
        self.db.commit()

    def cleanup_expired(self) -> int:
        deleted = (
            self.db.query(MemoryStore)
            .filter(MemoryStore.expires_at.is_not(None), MemoryStore.expires_at <= self._now())
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Expired memories cleaned up: %d", deleted)
        return deleted

    def cleanup_by_importance(self, user_id: uuid.UUID, limit: int = 1000) -> int:
        total = self.db.query(func.count(MemoryStore.id)).filter(MemoryStore.user_id == user_id).scalar() or 0
        if total <= limit:
            return 0

        doomed = [
            row_id
            for (row_id,) in self.db.query(MemoryStore.id)
            .filter(MemoryStore.user_id == user_id)
            .order_by(MemoryStore.importance_score.asc(), MemoryStore.last_accessed_at.asc())
            .limit(total - limit)
            .all()
        ]
        deleted = (
            self.db.query(MemoryStore)
            .filter(MemoryStore.id.in_(doomed))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("Memories cleaned up by importance: %d", deleted, extra={"user_id": user_id})
        return deleted

    def consolidate(self, user_id: uuid.UUID) -> int:
        """Promote frequently used, important short-term memories to long-term."""
        sources = (
            self.db.query(MemoryStore)
            .filter(
                MemoryStore.user_id == user_id,
                MemoryStore.memory_type == MemoryType.short_term,
                MemoryStore.importance_score >= CONSOLIDATION_IMPORTANCE,
                MemoryStore.access_count >= CONSOLIDATION_MIN_ACCESSES,
            )
            .all()
        )
        for memory in sources:
            self.store(
                user_id,
                MemoryType.long_term,
                memory.key,
                memory.value,
                context=memory.context,
                metadata=memory.meta,
                importance=memory.importance_score,
            )
            self.db.delete(memory)
        self.db.commit()
        logger.info("Memories consolidated: %d", len(sources), extra={"user_id": user_id})
        return len(sources)

    def get_statistics(self, user_id: uuid.UUID) -> dict[str, Any]:
        rows = (
            self.db.query(
                MemoryStore.memory_type,
                func.count(MemoryStore.id),
                func.avg(MemoryStore.importance_score),
                func.max(MemoryStore.importance_score),
                func.coalesce(func.sum(MemoryStore.access_count), 0),
            )
            .filter(MemoryStore.user_id == user_id)
            .group_by(MemoryStore.memory_type)
            .all()
        )
        by_type = {
            t.value: {"count": 0, "avg_importance": 0.0, "max_importance": 0, "total_accesses": 0}
            for t in MemoryType
        }
        for memory_type, count, avg_importance, max_importance, accesses in rows:
            by_type[MemoryType(memory_type).value] = {
                "count": int(count),
                "avg_importance": round(float(avg_importance or 0), 2),
                "max_importance": int(max_importance or 0),
                "total_accesses": int(accesses or 0),
            }

        total = sum(item["count"] for item in by_type.values())
        expired = (
            self.db.query(func.count(MemoryStore.id))
            .filter(
                MemoryStore.user_id == user_id,
                MemoryStore.expires_at.is_not(None),
                MemoryStore.expires_at <= self._now(),
            )
            .scalar()
            or 0
        )
        return {
            "total_memories": total,
            "expired_memories": expired,
            "active_memories": total - expired,
            "by_type": by_type,
        }

    # ── Internal ──────────────────────────────────────────────────────────

    def _identity_query(
        self, user_id: uuid.UUID, memory_type: MemoryType, key: str, context: str | None
    ) -> Query:
        q = self.db.query(MemoryStore).filter(
            MemoryStore.user_id == user_id,
            MemoryStore.memory_type == memory_type,
            MemoryStore.key == key,
        )
        if context is None:
            return q.filter(MemoryStore.context.is_(None))
        return q.filter(MemoryStore.context == context)

    def _not_expired(self, q: Query) -> Query:
        return q.filter(or_(MemoryStore.expires_at.is_(None), MemoryStore.expires_at > self._now()))

    @staticmethod
    def _memory_text(memory: MemoryStore) -> str:
        return f"{memory.key} {memory.value}".lower()

    def _is_relevant(self, memory: MemoryStore, query: str) -> bool:
        text = self._memory_text(memory)
        return any(len(word) > 3 and word in text for word in query.lower().split())

    def _relevance(self, memory: MemoryStore, query: str) -> float:
        query_words = set(query.lower().split())
        memory_words = set(self._memory_text(memory).split())
        union = query_words | memory_words
        if not union:
            return 0.0
        return len(query_words & memory_words) / len(union)
