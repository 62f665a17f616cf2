from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from agentcore.config.settings import get_settings

BACKEND_ROOT = Path(__file__).resolve().parents[2]


def alembic_config(database_url: str | None = None) -> Config:
    ini_path = BACKEND_ROOT / "alembic.ini"
    scripts = BACKEND_ROOT / "alembic"
    for required in (ini_path, scripts):
        if not required.exists():
            raise RuntimeError(f"Alembic setup incomplete, missing {required}")

    config = Config(str(ini_path))
    config.set_main_option("script_location", str(scripts))
    config.set_main_option("sqlalchemy.url", database_url or get_settings().database_url)
    # env.py must not swap the JSON handler for the one declared in alembic.ini.
    config.config_file_name = None
    return config


def run_migrations(revision: str = "head", database_url: str | None = None) -> None:
    """Upgrade the schema to ``revision``."""
    command.upgrade(alembic_config(database_url), revision)
