"""
Project and project file endpoints.
Handles project creation, multipart file upload, listing, deletion,
extracted items and the project log.
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from estimateai.config import settings
from estimateai.dependencies import get_artifact_store, get_db, verify_api_key
from estimateai.jobs.logs import append_log, list_logs
from estimateai.jobs.store import JobStore
from estimateai.models.enums import FileStatus, FileType
from estimateai.models.tables import ExtractionJob, Project, ProjectFile, ProjectItem
from estimateai.schemas.projects import (
    FileUploadResponse,
    ItemListResponse,
    LogListResponse,
    ProjectCreateRequest,
    ProjectFileOut,
    ProjectItemOut,
    ProjectLogOut,
    ProjectOut,
)
from estimateai.storage.artifact_store import ArtifactStore
from estimateai.storage.paths import safe_file_name

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"], dependencies=[Depends(verify_api_key)])


async def load_project(session: AsyncSession, project_id: uuid.UUID) -> Project:
    project = await session.get(Project, project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


@router.post("", response_model=ProjectOut, status_code=status.HTTP_201_CREATED)
async def create_project(body: ProjectCreateRequest, session: AsyncSession = Depends(get_db)):
    project = Project(name=body.name.strip())
    session.add(project)
    await session.flush()
    logger.info("project_created", project_id=str(project.id))
    return ProjectOut.model_validate(project)


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(project_id: uuid.UUID, session: AsyncSession = Depends(get_db)):
    return ProjectOut.model_validate(await load_project(session, project_id))


@router.post("/{project_id}/files", response_model=FileUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_files(
    project_id: uuid.UUID,
    drawings: list[UploadFile] = File(default=[]),
    schedules: list[UploadFile] = File(default=[]),
    boq: list[UploadFile] = File(default=[]),
    session: AsyncSession = Depends(get_db),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Upload drawings, schedules and BOQ files. Extraction starts separately."""
    await load_project(session, project_id)
    batches = (
        (FileType.DRAWING, drawings),
        (FileType.SCHEDULE, schedules),
        (FileType.BOQ, boq),
    )
    if not any(uploads for _, uploads in batches):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No files uploaded")

    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024
    created: list[ProjectFile] = []
    for file_type, uploads in batches:
        for upload in uploads:
            data = await upload.read()
            if not data:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Empty file uploaded: {upload.filename}",
                )
            if len(data) > max_bytes:
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"File too large: {upload.filename} ({len(data)} bytes). Max: {max_bytes} bytes",
                )

            file_id = uuid.uuid4()
            name = safe_file_name(upload.filename or f"{file_type.value}.bin")
            stored_path = store.save_upload(project_id, file_id, name, data)
            record = ProjectFile(
                id=file_id,
                project_id=project_id,
                original_name=name,
                stored_path=stored_path,
                mime_type=upload.content_type,
                size_bytes=len(data),
                file_type=file_type.value,
                status=FileStatus.PENDING.value,
            )
            session.add(record)
            created.append(record)

    await session.flush()
    await append_log(session, project_id, f"Uploaded {len(created)} file(s).")
    logger.info("files_uploaded", project_id=str(project_id), count=len(created))
    return FileUploadResponse(files=[ProjectFileOut.model_validate(f) for f in created])


@router.get("/{project_id}/files", response_model=FileUploadResponse)
async def list_files(project_id: uuid.UUID, session: AsyncSession = Depends(get_db)):
    await load_project(session, project_id)
    result = await session.execute(
        select(ProjectFile)
        .where(ProjectFile.project_id == project_id)
        .order_by(ProjectFile.created_at)
    )
    return FileUploadResponse(files=[ProjectFileOut.model_validate(f) for f in result.scalars().all()])


@router.delete("/{project_id}/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file(
    project_id: uuid.UUID,
    file_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Delete a file with its items and jobs. Refused while a job is active."""
    file = await session.get(ProjectFile, file_id)
    if file is None or file.project_id != project_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    if await JobStore(session).active_for_file(file_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="File has an extraction in progress",
        )

    await session.execute(delete(ProjectItem).where(ProjectItem.file_id == file_id))
    await session.execute(delete(ExtractionJob).where(ExtractionJob.file_id == file_id))
    name = file.original_name
    store.remove_upload(file.stored_path)
    await session.execute(delete(ProjectFile).where(ProjectFile.id == file_id))
    await append_log(session, project_id, f"Deleted {name}.")
    logger.info("file_deleted", project_id=str(project_id), file_id=str(file_id))


@router.get("/{project_id}/items", response_model=ItemListResponse)
async def list_items(
    project_id: uuid.UUID,
    source: Optional[str] = Query(None),
    file_id: Optional[uuid.UUID] = Query(None, alias="fileId"),
    session: AsyncSession = Depends(get_db),
):
    await load_project(session, project_id)
    query = select(ProjectItem).where(ProjectItem.project_id == project_id)
    if source:
        query = query.where(ProjectItem.source == source)
    if file_id:
        query = query.where(ProjectItem.file_id == file_id)
    result = await session.execute(query.order_by(ProjectItem.created_at, ProjectItem.position))
    return ItemListResponse(items=[ProjectItemOut.from_row(i) for i in result.scalars().all()])


@router.get("/{project_id}/logs", response_model=LogListResponse)
async def get_logs(
    project_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    file_id: Optional[uuid.UUID] = Query(None, alias="fileId"),
    session: AsyncSession = Depends(get_db),
):
    """Project log, newest first."""
    await load_project(session, project_id)
    logs = await list_logs(session, project_id, limit=limit, file_id=file_id)
    return LogListResponse(logs=[ProjectLogOut.model_validate(entry) for entry in logs])
