"""
Append-only project log.
Entries are ordered by their autoincrement id and listed newest first.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from estimateai.models.enums import LogLevel
from estimateai.models.tables import ProjectLog

logger = structlog.get_logger(__name__)

MAX_LOG_PAGE = 200


async def append_log(
    session: AsyncSession,
    project_id: uuid.UUID,
    message: str,
    level: LogLevel = LogLevel.INFO,
    file_id: Optional[uuid.UUID] = None,
    job_id: Optional[uuid.UUID] = None,
) -> ProjectLog:
    entry = ProjectLog(
        project_id=project_id,
        file_id=file_id,
        job_id=job_id,
        level=LogLevel(level).value,
        message=message,
    )
    session.add(entry)
    await session.flush()
    logger.debug("project_log_appended", project_id=str(project_id), level=entry.level, message=message)
    return entry


async def list_logs(
    session: AsyncSession,
    project_id: uuid.UUID,
    limit: int = 50,
    file_id: Optional[uuid.UUID] = None,
) -> list[ProjectLog]:
    """Most recent entries first."""
    limit = max(1, min(limit, MAX_LOG_PAGE))
    query = select(ProjectLog).where(ProjectLog.project_id == project_id)
    if file_id is not None:
        query = query.where(ProjectLog.file_id == file_id)
    query = query.order_by(ProjectLog.id.desc()).limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())
