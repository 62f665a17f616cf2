import logging

import pytest

from agentcore.main import Services, build_services, startup
from agentcore.persistence.database import build_engine, get_db, session_scope
from agentcore.persistence.migrations import BACKEND_ROOT, alembic_config
from agentcore.persistence.models import MemoryType


@pytest.fixture()
def services(db_session, fake_llm, embedding_service, kv_store, test_settings):
    return build_services(
        db_session, provider=fake_llm, embeddings=embedding_service, kv_store=kv_store, settings=test_settings
    )


def test_services_share_one_session_and_memory(services, db_session, test_user, ai_model):
    assert isinstance(services, Services)
    assert services.conversations.memory is services.memory
    assert services.workflows.db is db_session

    conversation = services.conversations.create_conversation(test_user.id)
    services.conversations.send_message(conversation, "hello")

    assert services.memory.get_by_type(test_user.id, MemoryType.short_term)
    assert services.ai_models.get_user_usage_stats(test_user.id, "day")["total_requests"] == 1


def test_wired_workflow_runs(services, test_user):
    workflow = services.workflows.create_workflow(
        test_user.id,
        {
            "name": "Encode",
            "definition": {
                "nodes": [
                    {
                        "id": "up",
                        "type": "data_transform",
                        "config": {"input_data": "{input.word}", "transform_type": "json_encode"},
                    }
                ],
                "edges": [],
            },
        },
    )
    services.workflows.activate(workflow)

    result = services.workflows.execute(workflow, test_user.id, {"word": "hey"})

    assert result.success
    assert result.output["up"]["output_data"] == "\"hey\""


def test_session_scope_closes_on_error():
    with pytest.raises(RuntimeError):
        with session_scope() as db:
            assert db.is_active
            raise RuntimeError("boom")


def test_startup_without_migrations(monkeypatch):
    monkeypatch.setenv("LOG_JSON", "false")
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        assert startup(migrate=False) is True
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)


def test_sqlite_refused_in_prod(monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("PYTEST_CURRENT_TEST", raising=False)
    with pytest.raises(RuntimeError, match="SQLite is not supported"):
        build_engine("sqlite:///./prod.db", "prod")
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        build_engine("", "dev")


def test_sqlite_allowed_outside_prod():
    engine = build_engine("sqlite://", "dev")
    assert engine.dialect.name == "sqlite"
    engine.dispose()


def test_alembic_config_points_at_backend():
    config = alembic_config("postgresql+psycopg://u:p@db:5432/agentcore")
    assert config.get_main_option("script_location") == str(BACKEND_ROOT / "alembic")
    assert config.get_main_option("sqlalchemy.url") == "postgresql+psycopg://u:p@db:5432/agentcore"
    assert config.config_file_name is None


def test_get_db_yields_and_closes_session():
    dependency = get_db()
    db = next(dependency)
    assert db.is_active
    with pytest.raises(StopIteration):
        next(dependency)
