"""
Local storage for uploaded drawings, schedules and BOQ files.
Rows keep the relative path; the orchestrator resolves it when it
needs the bytes.
"""

import shutil
from pathlib import Path
from typing import Optional

import structlog

from estimateai.config import settings
from estimateai.storage.paths import upload_path

logger = structlog.get_logger(__name__)


class ArtifactStore:

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.ARTIFACT_ROOT)
        self.root.mkdir(parents=True, exist_ok=True)

    def save_upload(self, project_id, file_id, file_name: str, data: bytes) -> str:
        """Write an upload and return its path relative to the store root."""
        relative_path = upload_path(project_id, file_id, file_name)
        target = self.root / relative_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("upload_stored", path=relative_path, size_bytes=len(data))
        return relative_path

    def remove_upload(self, relative_path: str) -> bool:
        """
        Remove an upload and its per-file directory.
        Returns False when nothing was on disk.
        """
        target = self.root / relative_path
        if not target.exists():
            logger.warning("upload_missing", path=relative_path)
            return False
        shutil.rmtree(target.parent)
        logger.info("upload_removed", path=relative_path)
        return True

    def full_path(self, relative_path: str) -> Path:
        return self.root / relative_path
