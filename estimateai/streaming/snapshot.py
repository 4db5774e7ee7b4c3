"""
Project snapshot assembly for the progress stream.
"""

import hashlib
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from estimateai.config import settings
from estimateai.jobs.logs import list_logs
from estimateai.models.tables import ProjectFile, ProjectItem
from estimateai.schemas.projects import ProjectSnapshot


async def build_snapshot(
    session: AsyncSession,
    project_id: uuid.UUID,
    log_limit: Optional[int] = None,
) -> ProjectSnapshot:
    files = (
        await session.execute(
            select(ProjectFile)
            .where(ProjectFile.project_id == project_id)
            .order_by(ProjectFile.created_at)
        )
    ).scalars().all()
    items = (
        await session.execute(
            select(ProjectItem)
            .where(ProjectItem.project_id == project_id)
            .order_by(ProjectItem.created_at, ProjectItem.position)
        )
    ).scalars().all()
    logs = await list_logs(session, project_id, limit=log_limit or settings.STREAM_LOG_LIMIT)
    return ProjectSnapshot.build(list(files), list(items), logs)


def snapshot_fingerprint(snapshot: ProjectSnapshot) -> str:
    """Changes whenever a file changes state or items/logs are added or removed."""
    digest = hashlib.sha256()
    for f in snapshot.files:
        digest.update(f"{f.id}:{f.status}:{f.updated_at.isoformat()}|".encode())
    digest.update(b"#")
    for item in snapshot.items:
        digest.update(f"{item.id}|".encode())
    digest.update(b"#")
    for entry in snapshot.logs:
        digest.update(f"{entry.id}|".encode())
    return digest.hexdigest()
