"""
Pydantic schemas for projects, files, items, logs and the progress snapshot.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import Field, field_validator

from estimateai.models.tables import ProjectFile, ProjectItem, ProjectLog
from estimateai.schemas.base import CamelModel


# ── Request Schemas ──────────────────────────────────────────

class ProjectCreateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=200)


# ── Response Schemas ─────────────────────────────────────────

class ProjectOut(CamelModel):
    id: uuid.UUID
    name: str
    status: str
    created_at: datetime
    updated_at: datetime


class ProjectFileOut(CamelModel):
    id: uuid.UUID
    project_id: uuid.UUID
    original_name: str
    file_type: str
    status: str
    size_bytes: int
    created_at: datetime
    updated_at: datetime
    # Tabular BOQ part label -> done | failed, while the file has unfinished parts.
    parts: dict[str, str] = Field(default_factory=dict, validation_alias="parts_json")

    @field_validator("parts", mode="before")
    @classmethod
    def _part_statuses(cls, value: Any) -> dict[str, str]:
        return {label: part["status"] for label, part in (value or {}).items()}


class ItemBox(CamelModel):
    left: float
    top: float
    right: float
    bottom: float


class ProjectItemOut(CamelModel):
    id: uuid.UUID
    file_id: uuid.UUID
    source: str
    item_code: str
    description: str
    notes: str
    box: Optional[ItemBox] = None
    thickness: Optional[float] = None
    fields: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_row(cls, item: ProjectItem) -> "ProjectItemOut":
        return cls(
            id=item.id,
            file_id=item.file_id,
            source=item.source,
            item_code=item.item_code,
            description=item.description,
            notes=item.notes,
            box=ItemBox(**item.box_json) if item.box_json else None,
            thickness=item.thickness,
            fields=item.fields_json or {},
            metadata=item.metadata_json or {},
        )


class ProjectLogOut(CamelModel):
    id: int
    file_id: Optional[uuid.UUID] = None
    level: str
    message: str
    created_at: datetime


class ProjectSnapshot(CamelModel):
    """Full state pushed on every `project-update` stream event."""
    files: list[ProjectFileOut]
    items: list[ProjectItemOut]
    logs: list[ProjectLogOut]

    @classmethod
    def build(
        cls,
        files: list[ProjectFile],
        items: list[ProjectItem],
        logs: list[ProjectLog],
    ) -> "ProjectSnapshot":
        return cls(
            files=[ProjectFileOut.model_validate(f) for f in files],
            items=[ProjectItemOut.from_row(i) for i in items],
            logs=[ProjectLogOut.model_validate(entry) for entry in logs],
        )


class FileUploadResponse(CamelModel):
    files: list[ProjectFileOut]


class ItemListResponse(CamelModel):
    items: list[ProjectItemOut]


class LogListResponse(CamelModel):
    logs: list[ProjectLogOut]