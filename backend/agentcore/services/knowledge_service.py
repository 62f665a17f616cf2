"""
KnowledgeService: knowledge base lifecycle, document ingestion and retrieval.

Ingestion pipeline (process):
  1. pending -> processing
  2. Parse the stored file with the parser registered for its extension
  3. Chunk with the knowledge base's chunk_size / chunk_overlap
  4. Embed all chunks in batches, store each vector in the configured backend
  5. processing -> completed, refresh knowledge base counters

Any exception after step 1 moves the document to failed with error_message set.
Chunk rows written before the failure are kept (delete_document removes them).
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from agentcore.config.settings import Settings, get_settings
from agentcore.monitoring.metrics import DOCUMENTS_PROCESSED
from agentcore.persistence.models import (
    DocumentStatus,
    KnowledgeBase,
    KnowledgeChunk,
    KnowledgeDocument,
)
from agentcore.schemas.settings import KnowledgeBaseSettings, merge_settings
from agentcore.services.chunker import chunk_text, validate_chunk_params
from agentcore.services.document_parsers import ParserRegistry
from agentcore.services.embedding_service import EmbeddingService, get_embedding_service
from agentcore.services.errors import DuplicateDocument, UnsupportedFormat, ValidationError
from agentcore.services.file_storage import LocalFileStorage
from agentcore.services.vector_store import VectorHit, VectorStoreRegistry

logger = logging.getLogger(__name__)

Reranker = Callable[[str, list[dict[str, Any]]], list[dict[str, Any]]]

TOP_K_DEFAULT = 5


def passthrough_reranker(query: str, results: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return results


class KnowledgeService:
    def __init__(
        self,
        db: Session,
        embeddings: EmbeddingService | None = None,
        storage: LocalFileStorage | None = None,
        parsers: ParserRegistry | None = None,
        vector_stores: VectorStoreRegistry | None = None,
        reranker: Reranker | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.embeddings = embeddings or get_embedding_service()
        self.storage = storage or LocalFileStorage(self.settings.storage_dir)
        self.parsers = parsers or ParserRegistry.default()
        self.vector_stores = vector_stores or VectorStoreRegistry(db, self.settings)
        self.reranker = reranker or passthrough_reranker

    # ── Knowledge bases ───────────────────────────────────────────────────

    def create_knowledge_base(self, user_id: uuid.UUID, data: dict[str, Any]) -> KnowledgeBase:
        chunk_size = int(data.get("chunk_size", self.settings.default_chunk_size))
        chunk_overlap = int(data.get("chunk_overlap", self.settings.default_chunk_overlap))
        validate_chunk_params(chunk_size, chunk_overlap)
        if not data.get("name"):
            raise ValidationError("Knowledge base name is required")

        settings = merge_settings(KnowledgeBaseSettings, data.get("settings"))
        kb = KnowledgeBase(
            id=uuid.uuid4(),
            user_id=user_id,
            name=data["name"],
            description=data.get("description", ""),
            is_public=bool(data.get("is_public", False)),
            vector_db_type=data.get("vector_db_type", self.settings.default_vector_db),
            embedding_model=data.get("embedding_model", self.settings.embedding_model),
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            settings=settings.model_dump(),
        )
        # Resolve the backend before persisting so an unknown type is rejected up front.
        store = self.vector_stores.for_knowledge_base(kb)
        self.db.add(kb)
        self.db.flush()
        store.create_index(kb)
        self.db.commit()
        logger.info("Knowledge base created", extra={"knowledge_base_id": kb.id, "user_id": user_id})
        return kb

    def update_knowledge_base(self, kb: KnowledgeBase, data: dict[str, Any]) -> KnowledgeBase:
        chunk_size = int(data.get("chunk_size", kb.chunk_size))
        chunk_overlap = int(data.get("chunk_overlap", kb.chunk_overlap))
        validate_chunk_params(chunk_size, chunk_overlap)
        for field_name in ("name", "description", "is_public", "embedding_model"):
            if field_name in data:
                setattr(kb, field_name, data[field_name])
        kb.chunk_size = chunk_size
        kb.chunk_overlap = chunk_overlap
        if "settings" in data:
            kb.settings = merge_settings(KnowledgeBaseSettings, kb.settings, data["settings"]).model_dump()
        self.db.commit()
        return kb

    def get_settings(self, kb: KnowledgeBase) -> KnowledgeBaseSettings:
        return merge_settings(KnowledgeBaseSettings, kb.settings)

    # ── Ingestion ─────────────────────────────────────────────────────────

    def ingest(
        self,
        kb: KnowledgeBase,
        file_bytes: bytes,
        filename: str,
        metadata: dict[str, Any] | None = None,
        process: bool = True,
    ) -> KnowledgeDocument:
        file_type = self._validate_file(file_bytes, filename)
        content_hash = hashlib.sha256(file_bytes).hexdigest()

        existing = (
            self.db.query(KnowledgeDocument)
            .filter(
                KnowledgeDocument.knowledge_base_id == kb.id,
                KnowledgeDocument.content_hash == content_hash,
            )
            .first()
        )
        if existing is not None:
            raise DuplicateDocument(
                f"Document already exists in this knowledge base: {existing.original_filename}",
                existing_document_id=existing.id,
            )

        stored_name = f"{uuid.uuid4().hex}.{file_type}"
        file_path = self.storage.save(kb.id, stored_name, file_bytes)
        document = KnowledgeDocument(
            id=uuid.uuid4(),
            knowledge_base_id=kb.id,
            filename=stored_name,
            original_filename=filename,
            file_type=file_type,
            file_size=len(file_bytes),
            file_path=file_path,
            content_hash=content_hash,
            status=DocumentStatus.pending,
            meta=dict(metadata or {}),
        )
        self.db.add(document)
        self.db.commit()
        logger.info(
            "Document uploaded",
            extra={"document_id": document.id, "knowledge_base_id": kb.id},
        )

        if process:
            self.process(document)
        return document

    def process(self, document: KnowledgeDocument) -> KnowledgeDocument:
        kb = self.db.get(KnowledgeBase, document.knowledge_base_id)
        if kb is None:
            raise ValidationError(f"Knowledge base {document.knowledge_base_id} not found")

        document.mark_processing()
        self.db.commit()

        try:
            content = self.parsers.parse(document.file_path, document.file_type)
            document.content = content
            self.db.commit()

            chunks = self._create_chunks(kb, document, content)
            self._embed_and_store(kb, chunks)

            document.mark_completed(
                chunk_count=len(chunks),
                token_count=sum(chunk.token_count for chunk in chunks),
            )
            self.db.commit()
            self.update_counts(kb)
        except Exception as exc:
            self.db.rollback()
            logger.error(
                "Document processing failed: %s",
                exc,
                exc_info=True,
                extra={"document_id": document.id, "knowledge_base_id": kb.id},
            )
            document.mark_failed(str(exc) or type(exc).__name__)
            self.db.commit()
            DOCUMENTS_PROCESSED.labels(status="failed").inc()
            raise

        DOCUMENTS_PROCESSED.labels(status="completed").inc()
        logger.info(
            "Document processed: %d chunks",
            document.chunk_count,
            extra={"document_id": document.id, "knowledge_base_id": kb.id},
        )
        return document

    # ── Retrieval ─────────────────────────────────────────────────────────

    def search(
        self,
        kb: KnowledgeBase,
        query: str,
        top_k: int = TOP_K_DEFAULT,
        similarity_threshold: float | None = None,
        strategy: str | None = None,
    ) -> list[dict[str, Any]]:
        kb_settings = self.get_settings(kb)
        threshold = kb_settings.similarity_threshold if similarity_threshold is None else similarity_threshold
        strategy = strategy or kb_settings.search_strategy
        top_k = min(top_k, kb_settings.max_results)

        if strategy == "keyword":
            results = self._keyword_search(kb, query, top_k, threshold)
        elif strategy == "semantic":
            results = self._semantic_search(kb, query, top_k, threshold)
        else:
            results = self._merge_hybrid(
                self._semantic_search(kb, query, top_k, threshold),
                self._keyword_search(kb, query, top_k, threshold),
            )

        if kb_settings.rerank_enabled:
            results = self.reranker(query, results)
        return results[:top_k]

    def _semantic_search(
        self, kb: KnowledgeBase, query: str, top_k: int, threshold: float
    ) -> list[dict[str, Any]]:
        query_vector = self.embeddings.embed(query, kb.embedding_model)
        store = self.vector_stores.for_knowledge_base(kb)
        return self._format_hits(store.search(kb, query_vector, top_k, threshold))

    @staticmethod
    def _merge_hybrid(
        semantic: list[dict[str, Any]], keyword: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Union both result lists by chunk, fusing scores as 1 - (1 - s)(1 - k).

        The fused score never drops below either input, so every hit still
        clears the threshold, and a chunk found by both never ranks below either alone.
        """
        merged: dict[str, dict[str, Any]] = {}
        for result in semantic + keyword:
            current = merged.get(result["chunk_id"])
            if current is None:
                merged[result["chunk_id"]] = dict(result)
                continue
            current["score"] = round(1 - (1 - current["score"]) * (1 - result["score"]), 6)
        return sorted(merged.values(), key=lambda r: r["score"], reverse=True)

    # ── Deletion ──────────────────────────────────────────────────────────

    def delete_document(self, document: KnowledgeDocument) -> None:
        kb = self.db.get(KnowledgeBase, document.knowledge_base_id)
        chunks = (
            self.db.query(KnowledgeChunk)
            .filter(KnowledgeChunk.document_id == document.id)
            .order_by(KnowledgeChunk.chunk_index)
            .all()
        )

        # Backend deletes first: a failure here must surface before local rows go away.
        if kb is not None:
            store = self.vector_stores.for_knowledge_base(kb)
            for chunk in chunks:
                if chunk.vector_id:
                    store.delete(kb, chunk.vector_id)

        for chunk in chunks:
            self.db.delete(chunk)
        self.db.flush()

        self.storage.delete(document.file_path)
        self.db.delete(document)
        self.db.commit()

        if kb is not None:
            self.update_counts(kb)
        logger.info("Document deleted", extra={"document_id": document.id})

    # ── Aggregates ────────────────────────────────────────────────────────

    def update_counts(self, kb: KnowledgeBase) -> None:
        kb.document_count = (
            self.db.query(func.count(KnowledgeDocument.id))
            .filter(KnowledgeDocument.knowledge_base_id == kb.id)
            .scalar()
            or 0
        )
        kb.chunk_count = (
            self.db.query(func.count(KnowledgeChunk.id))
            .filter(KnowledgeChunk.knowledge_base_id == kb.id)
            .scalar()
            or 0
        )
        kb.total_tokens = int(
            self.db.query(func.coalesce(func.sum(KnowledgeDocument.token_count), 0))
            .filter(
                KnowledgeDocument.knowledge_base_id == kb.id,
                KnowledgeDocument.status == DocumentStatus.completed,
            )
            .scalar()
            or 0
        )
        self.db.commit()

    def get_statistics(self, kb: KnowledgeBase) -> dict[str, Any]:
        by_status_rows = (
            self.db.query(KnowledgeDocument.status, func.count(KnowledgeDocument.id))
            .filter(KnowledgeDocument.knowledge_base_id == kb.id)
            .group_by(KnowledgeDocument.status)
            .all()
        )
        by_status = {status.value: 0 for status in DocumentStatus}
        for status, count in by_status_rows:
            by_status[DocumentStatus(status).value] = int(count)

        embedding_cost = (
            self.db.query(func.coalesce(func.sum(KnowledgeChunk.embedding_cost), 0.0))
            .filter(KnowledgeChunk.knowledge_base_id == kb.id)
            .scalar()
        )
        return {
            "total_documents": kb.document_count,
            "total_chunks": kb.chunk_count,
            "total_tokens": kb.total_tokens,
            "documents_by_status": by_status,
            "embedding_cost": round(float(embedding_cost or 0.0), 6),
            "estimated_cost": self.embeddings.cost(kb.total_tokens or 0, kb.embedding_model),
            "vector_db_type": kb.vector_db_type,
            "embedding_model": kb.embedding_model,
        }

    # ── Internal ──────────────────────────────────────────────────────────

    def _validate_file(self, file_bytes: bytes, filename: str) -> str:
        if not file_bytes:
            raise ValidationError("File is empty")
        if len(file_bytes) > self.settings.max_file_size_bytes:
            raise ValidationError(
                f"File exceeds maximum size of {self.settings.max_file_size_bytes} bytes"
            )
        file_type = Path(filename).suffix.lower().lstrip(".")
        if file_type not in self.settings.supported_file_types or not self.parsers.supports(file_type):
            raise UnsupportedFormat(f"Unsupported file type: .{file_type or '?'}")
        return file_type

    def _create_chunks(
        self, kb: KnowledgeBase, document: KnowledgeDocument, content: str
    ) -> list[KnowledgeChunk]:
        rows: list[KnowledgeChunk] = []
        for piece in chunk_text(content, kb.chunk_size, kb.chunk_overlap):
            row = KnowledgeChunk(
                id=uuid.uuid4(),
                document_id=document.id,
                knowledge_base_id=kb.id,
                chunk_index=piece.index,
                content=piece.content,
                start_position=piece.start,
                end_position=piece.end,
                token_count=piece.token_count,
                meta={"doc_filename": document.original_filename, "chunk_idx": piece.index},
            )
            self.db.add(row)
            rows.append(row)
        self.db.commit()
        return rows

    def _embed_and_store(self, kb: KnowledgeBase, chunks: list[KnowledgeChunk]) -> None:
        if not chunks:
            return
        vectors = self.embeddings.embed_batch([chunk.content for chunk in chunks], kb.embedding_model)
        store = self.vector_stores.for_knowledge_base(kb)
        for chunk, vector in zip(chunks, vectors):
            chunk.vector_id = store.store(
                kb,
                vector,
                {
                    "chunk_id": str(chunk.id),
                    "document_id": str(chunk.document_id),
                    "chunk_index": chunk.chunk_index,
                },
            )
            chunk.embedding_cost = self.embeddings.cost(chunk.token_count, kb.embedding_model)
            self.db.commit()

    def _format_hits(self, hits: list[VectorHit]) -> list[dict[str, Any]]:
        chunk_ids = [uuid.UUID(str(hit.metadata["chunk_id"])) for hit in hits if hit.metadata.get("chunk_id")]
        if not chunk_ids:
            return []
        chunks = {
            chunk.id: chunk
            for chunk in self.db.query(KnowledgeChunk).filter(KnowledgeChunk.id.in_(chunk_ids)).all()
        }
        results: list[dict[str, Any]] = []
        for hit in hits:
            chunk_id = hit.metadata.get("chunk_id")
            chunk = chunks.get(uuid.UUID(str(chunk_id))) if chunk_id else None
            if chunk is None:
                logger.warning("Vector hit %s has no matching chunk row", hit.id)
                continue
            results.append(
                {
                    "content": chunk.content,
                    "score": round(hit.score, 6),
                    "chunk_id": str(chunk.id),
                    "document_id": str(chunk.document_id),
                    "metadata": dict(chunk.meta or {}),
                }
            )
        return results

    def _keyword_search(
        self, kb: KnowledgeBase, query: str, top_k: int, threshold: float
    ) -> list[dict[str, Any]]:
        keywords = [w.strip() for w in query.split() if len(w.strip()) > 2][:8]
        if not keywords:
            return []

        rows = (
            self.db.query(KnowledgeChunk)
            .filter(
                KnowledgeChunk.knowledge_base_id == kb.id,
                or_(*[KnowledgeChunk.content.ilike(f"%{kw}%") for kw in keywords]),
            )
            .limit(top_k * 10)
            .all()
        )

        def score(row: KnowledgeChunk) -> float:
            text = row.content.lower()
            return sum(1.0 for kw in keywords if kw.lower() in text) / len(keywords)

        scored = [(score(row), row) for row in rows]
        scored = [item for item in scored if item[0] >= threshold]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            {
                "content": row.content,
                "score": round(value, 6),
                "chunk_id": str(row.id),
                "document_id": str(row.document_id),
                "metadata": dict(row.meta or {}),
            }
            for value, row in scored[:top_k]
        ]
