"""
Vector store adapters.

Every backend implements the same four operations and applies the similarity
threshold itself, so callers never post-filter. A knowledge base picks its
backend through ``vector_db_type``; VectorStoreRegistry resolves that name to
an adapter instance.

Backends:
  memory    process-local dict, one namespace per knowledge base
  database  vectors kept on KnowledgeChunk.embedding, cosine ranked in Python
  qdrant    Qdrant REST API (collection per knowledge base)
  pinecone  Pinecone data-plane REST API (namespace per knowledge base)
"""
from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agentcore.config.settings import Settings, get_settings
from agentcore.persistence.models import KnowledgeBase, KnowledgeChunk
from agentcore.services.embedding_service import cosine_similarity
from agentcore.services.errors import ExternalCallFailure, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class VectorHit:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorStore(ABC):
    name: str = "base"

    @abstractmethod
    def create_index(self, kb: KnowledgeBase) -> None:
        ...

    @abstractmethod
    def store(self, kb: KnowledgeBase, vector: list[float], metadata: dict[str, Any]) -> str:
        """Persist one vector and return its backend id."""

    @abstractmethod
    def search(
        self, kb: KnowledgeBase, query_vector: list[float], top_k: int, threshold: float
    ) -> list[VectorHit]:
        """Return at most top_k hits with score >= threshold, best first."""

    @abstractmethod
    def delete(self, kb: KnowledgeBase, vector_id: str) -> None:
        ...


def _rank(hits: list[VectorHit], top_k: int, threshold: float) -> list[VectorHit]:
    kept = [hit for hit in hits if hit.score >= threshold]
    kept.sort(key=lambda hit: hit.score, reverse=True)
    return kept[:top_k]


class InMemoryVectorStore(VectorStore):
    name = "memory"

    def __init__(self) -> None:
        self._indexes: dict[str, dict[str, tuple[list[float], dict[str, Any]]]] = {}
        self._lock = threading.Lock()

    def create_index(self, kb: KnowledgeBase) -> None:
        with self._lock:
            self._indexes.setdefault(kb.index_name, {})

    def store(self, kb: KnowledgeBase, vector: list[float], metadata: dict[str, Any]) -> str:
        vector_id = str(uuid.uuid4())
        with self._lock:
            self._indexes.setdefault(kb.index_name, {})[vector_id] = (list(vector), dict(metadata))
        return vector_id

    def search(
        self, kb: KnowledgeBase, query_vector: list[float], top_k: int, threshold: float
    ) -> list[VectorHit]:
        with self._lock:
            rows = list(self._indexes.get(kb.index_name, {}).items())
        hits = [
            VectorHit(id=vector_id, score=cosine_similarity(query_vector, vector), metadata=dict(meta))
            for vector_id, (vector, meta) in rows
        ]
        return _rank(hits, top_k, threshold)

    def delete(self, kb: KnowledgeBase, vector_id: str) -> None:
        with self._lock:
            self._indexes.get(kb.index_name, {}).pop(vector_id, None)

    def count(self, kb: KnowledgeBase) -> int:
        with self._lock:
            return len(self._indexes.get(kb.index_name, {}))


class DatabaseVectorStore(VectorStore):
    """Keeps vectors on the chunk rows themselves; metadata must carry chunk_id."""

    name = "database"

    def __init__(self, db: Session, scan_limit: int = 5000) -> None:
        self.db = db
        self.scan_limit = scan_limit

    def create_index(self, kb: KnowledgeBase) -> None:
        return None

    def store(self, kb: KnowledgeBase, vector: list[float], metadata: dict[str, Any]) -> str:
        chunk_id = metadata.get("chunk_id")
        if not chunk_id:
            raise ValidationError("database vector store requires metadata.chunk_id")
        chunk = self.db.get(KnowledgeChunk, uuid.UUID(str(chunk_id)))
        if chunk is None:
            raise ExternalCallFailure(f"Chunk {chunk_id} not found for vector storage")
        chunk.embedding = list(vector)
        self.db.flush()
        return str(chunk.id)

    def search(
        self, kb: KnowledgeBase, query_vector: list[float], top_k: int, threshold: float
    ) -> list[VectorHit]:
        chunks = (
            self.db.query(KnowledgeChunk)
            .filter(KnowledgeChunk.knowledge_base_id == kb.id)
            .limit(self.scan_limit)
            .all()
        )
        hits = [
            VectorHit(
                id=str(chunk.id),
                score=cosine_similarity(query_vector, chunk.embedding),
                metadata={
                    "chunk_id": str(chunk.id),
                    "document_id": str(chunk.document_id),
                    "chunk_index": chunk.chunk_index,
                },
            )
            # JSON null comes back as None, not SQL NULL.
            for chunk in chunks
            if isinstance(chunk.embedding, list)
        ]
        return _rank(hits, top_k, threshold)

    def delete(self, kb: KnowledgeBase, vector_id: str) -> None:
        chunk = self.db.get(KnowledgeChunk, uuid.UUID(vector_id))
        if chunk is not None:
            chunk.embedding = None
            self.db.flush()


class _HttpVectorStore(VectorStore):
    def __init__(self, base_url: str, headers: dict[str, str], client: httpx.Client | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Content-Type": "application/json", **headers}
        self._client = client or httpx.Client(timeout=30)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _send(self, method: str, path: str, payload: dict[str, Any] | None) -> httpx.Response:
        return self._client.request(method, f"{self.base_url}{path}", headers=self.headers, json=payload)

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = self._send(method, path, payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExternalCallFailure(
                f"{self.name} {method} {path} failed with {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc
        except httpx.RequestError as exc:
            raise ExternalCallFailure(f"{self.name} {method} {path} failed: {exc}") from exc
        if not response.content:
            return {}
        return response.json()


class QdrantVectorStore(_HttpVectorStore):
    name = "qdrant"

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        dimensions: int = 1536,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(url, {"api-key": api_key} if api_key else {}, client)
        self.dimensions = dimensions

    def create_index(self, kb: KnowledgeBase) -> None:
        self._request(
            "PUT",
            f"/collections/{kb.index_name}",
            {"vectors": {"size": self.dimensions, "distance": "Cosine"}},
        )

    def store(self, kb: KnowledgeBase, vector: list[float], metadata: dict[str, Any]) -> str:
        vector_id = str(uuid.uuid4())
        self._request(
            "PUT",
            f"/collections/{kb.index_name}/points?wait=true",
            {"points": [{"id": vector_id, "vector": list(vector), "payload": metadata}]},
        )
        return vector_id

    def search(
        self, kb: KnowledgeBase, query_vector: list[float], top_k: int, threshold: float
    ) -> list[VectorHit]:
        data = self._request(
            "POST",
            f"/collections/{kb.index_name}/points/search",
            {
                "vector": list(query_vector),
                "limit": top_k,
                "with_payload": True,
                "score_threshold": threshold,
            },
        )
        hits = [
            VectorHit(id=str(row["id"]), score=float(row.get("score", 0.0)), metadata=row.get("payload") or {})
            for row in data.get("result") or []
        ]
        return _rank(hits, top_k, threshold)

    def delete(self, kb: KnowledgeBase, vector_id: str) -> None:
        self._request(
            "POST",
            f"/collections/{kb.index_name}/points/delete?wait=true",
            {"points": [vector_id]},
        )


class PineconeVectorStore(_HttpVectorStore):
    name = "pinecone"

    def __init__(self, index_host: str, api_key: str, client: httpx.Client | None = None) -> None:
        host = index_host if index_host.startswith("http") else f"https://{index_host}"
        super().__init__(host, {"Api-Key": api_key}, client)

    def create_index(self, kb: KnowledgeBase) -> None:
        # Namespaces are created implicitly on first upsert.
        return None

    def store(self, kb: KnowledgeBase, vector: list[float], metadata: dict[str, Any]) -> str:
        vector_id = str(uuid.uuid4())
        self._request(
            "POST",
            "/vectors/upsert",
            {
                "vectors": [{"id": vector_id, "values": list(vector), "metadata": metadata}],
                "namespace": kb.index_name,
            },
        )
        return vector_id

    def search(
        self, kb: KnowledgeBase, query_vector: list[float], top_k: int, threshold: float
    ) -> list[VectorHit]:
        data = self._request(
            "POST",
            "/query",
            {
                "vector": list(query_vector),
                "topK": top_k,
                "includeMetadata": True,
                "namespace": kb.index_name,
            },
        )
        hits = [
            VectorHit(id=str(row["id"]), score=float(row.get("score", 0.0)), metadata=row.get("metadata") or {})
            for row in data.get("matches") or []
        ]
        return _rank(hits, top_k, threshold)

    def delete(self, kb: KnowledgeBase, vector_id: str) -> None:
        self._request("POST", "/vectors/delete", {"ids": [vector_id], "namespace": kb.index_name})


class VectorStoreRegistry:
    """Resolves KnowledgeBase.vector_db_type to a (cached) adapter instance."""

    def __init__(
        self,
        db: Session,
        settings: Settings | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.http_client = http_client
        self._instances: dict[str, VectorStore] = {}

    def register(self, name: str, store: VectorStore) -> None:
        self._instances[name] = store

    def supported_types(self) -> list[str]:
        return sorted({"memory", "database", "qdrant", "pinecone", *self._instances})

    def for_knowledge_base(self, kb: KnowledgeBase) -> VectorStore:
        return self.get(kb.vector_db_type or self.settings.default_vector_db)

    def get(self, name: str) -> VectorStore:
        if name not in self._instances:
            self._instances[name] = self._build(name)
        return self._instances[name]

    def _build(self, name: str) -> VectorStore:
        s = self.settings
        if name == "memory":
            return _shared_memory_store
        if name == "database":
            return DatabaseVectorStore(self.db)
        if name == "qdrant":
            return QdrantVectorStore(s.qdrant_url, s.qdrant_api_key, s.embedding_dimensions, self.http_client)
        if name == "pinecone":
            if not (s.pinecone_index_host and s.pinecone_api_key):
                raise ValidationError("pinecone backend requires PINECONE_INDEX_HOST and PINECONE_API_KEY")
            return PineconeVectorStore(s.pinecone_index_host, s.pinecone_api_key, self.http_client)
        raise ValidationError(f"Unsupported vector database type: {name}")


_shared_memory_store = InMemoryVectorStore()
