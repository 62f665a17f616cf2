from __future__ import annotations

from pathlib import Path

import pytest

from agentcore.persistence.models import DocumentStatus, KnowledgeBase, KnowledgeChunk, KnowledgeDocument
from agentcore.services.document_parsers import DocumentParser
from agentcore.services.errors import (
    DuplicateDocument,
    ExternalCallFailure,
    UnsupportedFormat,
    ValidationError,
)

SENTENCE = "query results ranked by similarity. "
CONTENT = (SENTENCE * 70)[:2500]


@pytest.fixture()
def kb(knowledge_service, test_user):
    return knowledge_service.create_knowledge_base(test_user.id, {"name": "Docs"})


def _chunks(db_session, document):
    return (
        db_session.query(KnowledgeChunk)
        .filter(KnowledgeChunk.document_id == document.id)
        .order_by(KnowledgeChunk.chunk_index)
        .all()
    )


class TestKnowledgeBases:
    def test_defaults_from_settings(self, kb):
        assert kb.chunk_size == 1000
        assert kb.chunk_overlap == 200
        assert kb.vector_db_type == "database"
        assert kb.settings["similarity_threshold"] == 0.7

    def test_invalid_chunk_geometry_rejected(self, knowledge_service, test_user):
        with pytest.raises(ValidationError):
            knowledge_service.create_knowledge_base(
                test_user.id, {"name": "Bad", "chunk_size": 100, "chunk_overlap": 100}
            )

    def test_unknown_vector_backend_is_not_persisted(self, knowledge_service, db_session, test_user):
        with pytest.raises(ValidationError):
            knowledge_service.create_knowledge_base(test_user.id, {"name": "X", "vector_db_type": "faiss"})
        assert db_session.query(KnowledgeBase).count() == 0


class TestIngestion:
    def test_document_is_chunked_embedded_and_searchable(
        self, knowledge_service, db_session, fake_embeddings, kb
    ):
        document = knowledge_service.ingest(kb, CONTENT.encode(), "guide.txt")

        assert document.status == DocumentStatus.completed
        assert document.chunk_count == 3
        chunks = _chunks(db_session, document)
        assert [(c.start_position, c.end_position) for c in chunks] == [(0, 1000), (800, 1800), (1600, 2500)]
        assert all(c.vector_id and c.embedding for c in chunks)
        assert sum(len(batch) for batch in fake_embeddings.calls) == 3

        db_session.refresh(kb)
        assert kb.document_count == 1
        assert kb.chunk_count == 3
        assert kb.total_tokens == document.token_count

        results = knowledge_service.search(kb, "ranked similarity results", top_k=5, similarity_threshold=0.1)
        assert 0 < len(results) <= 5
        scores = [r["score"] for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(score >= 0.1 for score in scores)
        assert results[0]["metadata"]["doc_filename"] == "guide.txt"

    def test_top_k_caps_results(self, knowledge_service, kb):
        knowledge_service.ingest(kb, CONTENT.encode(), "guide.txt")
        assert len(knowledge_service.search(kb, "similarity", top_k=2, similarity_threshold=0.0)) == 2

    def test_duplicate_content_rejected(self, knowledge_service, kb):
        first = knowledge_service.ingest(kb, b"same bytes", "a.txt")
        with pytest.raises(DuplicateDocument) as excinfo:
            knowledge_service.ingest(kb, b"same bytes", "b.txt")
        assert excinfo.value.existing_document_id == first.id

    def test_unsupported_extension_rejected(self, knowledge_service, kb):
        with pytest.raises(UnsupportedFormat):
            knowledge_service.ingest(kb, b"MZ", "tool.exe")

    def test_empty_file_rejected(self, knowledge_service, kb):
        with pytest.raises(ValidationError):
            knowledge_service.ingest(kb, b"", "empty.txt")

    def test_parser_failure_marks_document_failed(self, knowledge_service, db_session, kb):
        class BrokenParser(DocumentParser):
            def parse(self, path):
                raise RuntimeError("cannot read file")

        knowledge_service.parsers.register("txt", BrokenParser())
        with pytest.raises(RuntimeError):
            knowledge_service.ingest(kb, b"text", "broken.txt")

        document = db_session.query(KnowledgeDocument).one()
        assert document.status == DocumentStatus.failed
        assert document.error_message == "cannot read file"

    def test_embedding_failure_keeps_chunk_rows(
        self, knowledge_service, db_session, fake_embeddings, monkeypatch, kb
    ):
        def boom(texts, model):
            raise ExternalCallFailure("embedding backend down")

        monkeypatch.setattr(fake_embeddings, "embed_batch", boom)
        with pytest.raises(ExternalCallFailure):
            knowledge_service.ingest(kb, CONTENT.encode(), "guide.txt")

        document = db_session.query(KnowledgeDocument).one()
        assert document.status == DocumentStatus.failed
        assert document.chunk_count == 0
        assert len(_chunks(db_session, document)) == 3

    def test_deferred_processing(self, knowledge_service, kb):
        document = knowledge_service.ingest(kb, b"later", "later.txt", process=False)
        assert document.status == DocumentStatus.pending
        knowledge_service.process(document)
        assert document.status == DocumentStatus.completed


class TestRetrievalAndMaintenance:
    def test_keyword_search(self, knowledge_service, kb):
        knowledge_service.ingest(kb, b"alpha beta gamma", "one.txt")
        knowledge_service.ingest(kb, b"alpha only here", "two.txt")

        results = knowledge_service.search(kb, "alpha gamma", similarity_threshold=0.0, strategy="keyword")
        assert [r["score"] for r in results] == [1.0, 0.5]

    def test_hybrid_search_merges_sources_once_per_chunk(self, knowledge_service, kb):
        knowledge_service.ingest(kb, b"alpha beta gamma", "one.txt")
        knowledge_service.ingest(kb, b"alpha only here", "two.txt")

        def by_chunk(strategy):
            results = knowledge_service.search(kb, "alpha gamma", similarity_threshold=0.0, strategy=strategy)
            return {r["chunk_id"]: r["score"] for r in results}

        semantic, keyword = by_chunk("semantic"), by_chunk("keyword")
        hybrid = knowledge_service.search(kb, "alpha gamma", similarity_threshold=0.0)

        assert len(hybrid) == len({r["chunk_id"] for r in hybrid}) == 2
        for result in hybrid:
            assert result["score"] >= semantic.get(result["chunk_id"], 0.0)
            assert result["score"] >= keyword.get(result["chunk_id"], 0.0)

    def test_hybrid_fusion_ranks_agreement_first(self, knowledge_service):
        semantic = [{"chunk_id": "a", "score": 0.5}, {"chunk_id": "b", "score": 0.6}]
        keyword = [{"chunk_id": "a", "score": 0.5}, {"chunk_id": "c", "score": 0.4}]

        merged = knowledge_service._merge_hybrid(semantic, keyword)

        assert [(r["chunk_id"], r["score"]) for r in merged] == [("a", 0.75), ("b", 0.6), ("c", 0.4)]
        assert semantic[0]["score"] == 0.5

    def test_max_results_caps_top_k(self, knowledge_service, test_user):
        kb = knowledge_service.create_knowledge_base(test_user.id, {"name": "Small", "settings": {"max_results": 2}})
        knowledge_service.ingest(kb, CONTENT.encode(), "guide.txt")

        assert len(knowledge_service.search(kb, "similarity", top_k=5, similarity_threshold=0.0)) == 2

    def test_memory_backend_round_trip(self, knowledge_service, test_user):
        kb = knowledge_service.create_knowledge_base(test_user.id, {"name": "Fast", "vector_db_type": "memory"})
        knowledge_service.ingest(kb, CONTENT.encode(), "guide.txt")

        results = knowledge_service.search(kb, "similarity", top_k=5, similarity_threshold=0.1)
        assert len(results) == 3

    def test_reranker_is_applied(self, knowledge_service, kb):
        knowledge_service.ingest(kb, CONTENT.encode(), "guide.txt")
        seen = []

        def rerank(query, results):
            seen.append(query)
            return [dict(r, reranked=True) for r in results]

        knowledge_service.reranker = rerank
        results = knowledge_service.search(kb, "similarity", similarity_threshold=0.0)

        assert seen == ["similarity"]
        assert results and all(r["reranked"] for r in results)

    def test_delete_document_removes_chunks_and_file(self, knowledge_service, db_session, kb):
        document = knowledge_service.ingest(kb, CONTENT.encode(), "guide.txt")
        path = document.file_path
        assert Path(path).exists()

        knowledge_service.delete_document(document)

        assert db_session.query(KnowledgeChunk).count() == 0
        assert not Path(path).exists()
        db_session.refresh(kb)
        assert kb.document_count == 0
        assert kb.chunk_count == 0

    def test_statistics(self, knowledge_service, kb):
        knowledge_service.ingest(kb, CONTENT.encode(), "guide.txt")
        stats = knowledge_service.get_statistics(kb)

        assert stats["total_documents"] == 1
        assert stats["total_chunks"] == 3
        assert stats["documents_by_status"]["completed"] == 1
        assert stats["documents_by_status"]["failed"] == 0
        assert stats["vector_db_type"] == "database"
        assert stats["embedding_cost"] > 0
