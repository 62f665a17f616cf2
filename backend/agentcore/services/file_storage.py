from __future__ import annotations

import logging
import uuid
from pathlib import Path

from agentcore.config.settings import get_settings

logger = logging.getLogger(__name__)


class LocalFileStorage:
    """Stores uploaded knowledge files under <root>/knowledge/<kb_id>/."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root or get_settings().storage_dir)

    def save(self, knowledge_base_id: uuid.UUID, filename: str, data: bytes) -> str:
        directory = self.root / "knowledge" / str(knowledge_base_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_bytes(data)
        return str(path)

    def delete(self, path: str) -> None:
        target = Path(path)
        if target.exists():
            target.unlink()
        else:
            logger.warning("Stored file already missing: %s", path)

    def exists(self, path: str) -> bool:
        return Path(path).exists()
