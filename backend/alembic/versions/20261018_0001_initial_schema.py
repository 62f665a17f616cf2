"""Initial schema: models, conversations, knowledge bases, memory, workflows.

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None

_USAGE_STATUS = ("success", "error")
_MESSAGE_ROLE = ("user", "assistant", "system")
_DOCUMENT_STATUS = ("pending", "processing", "completed", "failed")
_MEMORY_TYPE = ("short_term", "long_term", "working", "meta")
_WORKFLOW_STATUS = ("draft", "active", "inactive", "archived")
_EXECUTION_STATUS = ("pending", "running", "completed", "failed", "cancelled")
_NODE_LOG_STATUS = ("running", "completed", "failed", "skipped")


def _id() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _fk(name: str, target: str, nullable: bool = False, ondelete: str | None = None) -> sa.Column:
    return sa.Column(name, UUID(as_uuid=True), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def upgrade() -> None:
    existing_tables = set(sa.inspect(op.get_bind()).get_table_names())

    # ── 1. users / ai models ──────────────────────────────────────────────
    if "users" not in existing_tables:
        op.create_table(
            "users",
            _id(),
            sa.Column("email", sa.String(255), nullable=False, unique=True),
            sa.Column("name", sa.String(128)),
            _ts("created_at"),
        )

    if "ai_models" not in existing_tables:
        op.create_table(
            "ai_models",
            _id(),
            sa.Column("provider", sa.String(64), nullable=False),
            sa.Column("model_id", sa.String(128), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("supports_streaming", sa.Boolean()),
            sa.Column("supports_functions", sa.Boolean()),
            sa.Column("supports_vision", sa.Boolean()),
            sa.Column("max_tokens", sa.Integer()),
            sa.Column("input_cost_per_1k_tokens", sa.Float()),
            sa.Column("output_cost_per_1k_tokens", sa.Float()),
            sa.Column("rate_limits", sa.JSON()),
            sa.Column("priority", sa.Integer()),
            sa.Column("is_active", sa.Boolean()),
            sa.Column("is_default", sa.Boolean()),
            _ts("created_at"),
            sa.UniqueConstraint("provider", "model_id", name="uq_ai_models_provider_model"),
        )

    if "ai_model_usage" not in existing_tables:
        op.create_table(
            "ai_model_usage",
            _id(),
            _fk("user_id", "users.id"),
            _fk("ai_model_id", "ai_models.id"),
            sa.Column("request_id", sa.String(64), nullable=False),
            sa.Column("input_tokens", sa.Integer()),
            sa.Column("output_tokens", sa.Integer()),
            sa.Column("cost", sa.Float()),
            sa.Column("response_time_ms", sa.Integer()),
            sa.Column("status", sa.Enum(*_USAGE_STATUS, name="usagestatus")),
            sa.Column("error_message", sa.Text()),
            sa.Column("context", sa.String(255)),
            _ts("created_at"),
        )
        op.create_index("ix_ai_model_usage_user_created", "ai_model_usage", ["user_id", "created_at"])

    # ── 2. conversations ──────────────────────────────────────────────────
    if "conversations" not in existing_tables:
        op.create_table(
            "conversations",
            _id(),
            _fk("user_id", "users.id"),
            sa.Column("title", sa.String(255)),
            sa.Column("settings", sa.JSON()),
            sa.Column("message_count", sa.Integer()),
            sa.Column("total_tokens", sa.Integer()),
            sa.Column("total_cost", sa.Float()),
            sa.Column("is_archived", sa.Boolean()),
            _ts("last_message_at"),
            _ts("created_at"),
            _ts("updated_at"),
        )

    if "messages" not in existing_tables:
        op.create_table(
            "messages",
            _id(),
            _fk("conversation_id", "conversations.id", ondelete="CASCADE"),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("role", sa.Enum(*_MESSAGE_ROLE, name="messagerole"), nullable=False),
            sa.Column("content", sa.Text()),
            _fk("ai_model_id", "ai_models.id", nullable=True),
            sa.Column("input_tokens", sa.Integer()),
            sa.Column("output_tokens", sa.Integer()),
            sa.Column("cost", sa.Float()),
            sa.Column("response_time_ms", sa.Integer()),
            sa.Column("meta", sa.JSON()),
            _ts("created_at"),
            sa.UniqueConstraint("conversation_id", "sequence", name="uq_messages_conversation_sequence"),
        )
        op.create_index("ix_messages_conversation_sequence", "messages", ["conversation_id", "sequence"])

    # ── 3. knowledge ──────────────────────────────────────────────────────
    if "knowledge_bases" not in existing_tables:
        op.create_table(
            "knowledge_bases",
            _id(),
            _fk("user_id", "users.id"),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("description", sa.Text()),
            sa.Column("is_public", sa.Boolean()),
            sa.Column("vector_db_type", sa.String(32)),
            sa.Column("embedding_model", sa.String(128)),
            sa.Column("chunk_size", sa.Integer()),
            sa.Column("chunk_overlap", sa.Integer()),
            sa.Column("settings", sa.JSON()),
            sa.Column("document_count", sa.Integer()),
            sa.Column("chunk_count", sa.Integer()),
            sa.Column("total_tokens", sa.Integer()),
            sa.Column("active", sa.Boolean()),
            _ts("created_at"),
            _ts("updated_at"),
        )

    if "knowledge_documents" not in existing_tables:
        op.create_table(
            "knowledge_documents",
            _id(),
            _fk("knowledge_base_id", "knowledge_bases.id", ondelete="CASCADE"),
            sa.Column("filename", sa.String(255), nullable=False),
            sa.Column("original_filename", sa.String(255), nullable=False),
            sa.Column("file_type", sa.String(16), nullable=False),
            sa.Column("file_size", sa.Integer()),
            sa.Column("file_path", sa.String(1024), nullable=False),
            sa.Column("content_hash", sa.String(64), nullable=False),
            sa.Column("content", sa.Text()),
            sa.Column("status", sa.Enum(*_DOCUMENT_STATUS, name="documentstatus")),
            sa.Column("chunk_count", sa.Integer()),
            sa.Column("token_count", sa.Integer()),
            sa.Column("error_message", sa.Text()),
            sa.Column("meta", sa.JSON()),
            _ts("processed_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("knowledge_base_id", "content_hash", name="uq_knowledge_documents_kb_hash"),
        )

    if "knowledge_chunks" not in existing_tables:
        op.create_table(
            "knowledge_chunks",
            _id(),
            _fk("document_id", "knowledge_documents.id", ondelete="CASCADE"),
            _fk("knowledge_base_id", "knowledge_bases.id", ondelete="CASCADE"),
            sa.Column("chunk_index", sa.Integer(), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("start_position", sa.Integer(), nullable=False),
            sa.Column("end_position", sa.Integer(), nullable=False),
            sa.Column("token_count", sa.Integer()),
            sa.Column("vector_id", sa.String(128)),
            sa.Column("embedding", sa.JSON()),
            sa.Column("embedding_cost", sa.Float()),
            sa.Column("meta", sa.JSON()),
            _ts("created_at"),
        )
        op.create_index("ix_knowledge_chunks_document_index", "knowledge_chunks", ["document_id", "chunk_index"])
        op.create_index("ix_knowledge_chunks_kb", "knowledge_chunks", ["knowledge_base_id"])

    # ── 4. memory ─────────────────────────────────────────────────────────
    if "memory_stores" not in existing_tables:
        op.create_table(
            "memory_stores",
            _id(),
            _fk("user_id", "users.id"),
            sa.Column("memory_type", sa.Enum(*_MEMORY_TYPE, name="memorytype"), nullable=False),
            sa.Column("key", sa.String(255), nullable=False),
            sa.Column("value", sa.Text()),
            sa.Column("context", sa.String(255)),
            sa.Column("meta", sa.JSON()),
            sa.Column("importance_score", sa.Integer()),
            sa.Column("access_count", sa.Integer()),
            _ts("last_accessed_at"),
            _ts("expires_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("user_id", "memory_type", "key", "context", name="uq_memory_stores_identity"),
        )
        op.create_index("ix_memory_stores_user_type", "memory_stores", ["user_id", "memory_type"])
        op.create_index("ix_memory_stores_expires_at", "memory_stores", ["expires_at"])

    # ── 5. workflows ──────────────────────────────────────────────────────
    if "workflows" not in existing_tables:
        op.create_table(
            "workflows",
            _id(),
            _fk("user_id", "users.id"),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text()),
            sa.Column("definition", sa.JSON()),
            sa.Column("version", sa.String(32)),
            sa.Column("status", sa.Enum(*_WORKFLOW_STATUS, name="workflowstatus")),
            sa.Column("settings", sa.JSON()),
            sa.Column("variables", sa.JSON()),
            sa.Column("is_public", sa.Boolean()),
            sa.Column("is_template", sa.Boolean()),
            sa.Column("category", sa.String(64)),
            sa.Column("tags", sa.JSON()),
            sa.Column("execution_count", sa.Integer()),
            _ts("last_executed_at"),
            _ts("created_at"),
            _ts("updated_at"),
        )

    if "workflow_executions" not in existing_tables:
        op.create_table(
            "workflow_executions",
            _id(),
            sa.Column("execution_id", sa.String(128), nullable=False, unique=True),
            _fk("workflow_id", "workflows.id", ondelete="CASCADE"),
            _fk("user_id", "users.id"),
            sa.Column("status", sa.Enum(*_EXECUTION_STATUS, name="executionstatus")),
            sa.Column("input_data", sa.JSON()),
            sa.Column("output_data", sa.JSON()),
            sa.Column("variables", sa.JSON()),
            sa.Column("error_message", sa.Text()),
            sa.Column("total_cost", sa.Float()),
            sa.Column("total_nodes", sa.Integer()),
            sa.Column("completed_nodes", sa.Integer()),
            sa.Column("failed_nodes", sa.Integer()),
            sa.Column("execution_time_ms", sa.Integer()),
            _ts("started_at"),
            _ts("completed_at"),
            _ts("created_at"),
        )
        op.create_index(
            "ix_workflow_executions_workflow_status", "workflow_executions", ["workflow_id", "status"]
        )

    if "workflow_execution_logs" not in existing_tables:
        op.create_table(
            "workflow_execution_logs",
            _id(),
            _fk("workflow_execution_id", "workflow_executions.id", ondelete="CASCADE"),
            sa.Column("node_id", sa.String(128), nullable=False),
            sa.Column("node_type", sa.String(64), nullable=False),
            sa.Column("status", sa.Enum(*_NODE_LOG_STATUS, name="nodelogstatus")),
            sa.Column("input_data", sa.JSON()),
            sa.Column("output_data", sa.JSON()),
            sa.Column("error_message", sa.Text()),
            sa.Column("cost", sa.Float()),
            sa.Column("attempts", sa.Integer()),
            sa.Column("execution_time_ms", sa.Integer()),
            _ts("started_at"),
            _ts("completed_at"),
            _ts("created_at"),
        )


def downgrade() -> None:
    for table in (
        "workflow_execution_logs",
        "workflow_executions",
        "workflows",
        "memory_stores",
        "knowledge_chunks",
        "knowledge_documents",
        "knowledge_bases",
        "messages",
        "conversations",
        "ai_model_usage",
        "ai_models",
        "users",
    ):
        op.drop_table(table)
