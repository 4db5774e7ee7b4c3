"""
Python enums for persisted status columns.
Values are stored as plain strings.
"""

from enum import Enum


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)


class JobStage(str, Enum):
    """Free-form progress labels shown while a job is processing."""
    QUEUED = "queued"
    PROCESSING = "processing"
    UPLOADING = "uploading"
    EXTRACTING = "extracting"
    FINALIZING = "finalizing"


class FileType(str, Enum):
    DRAWING = "drawing"
    SCHEDULE = "schedule"
    BOQ = "boq"


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    ANALYZING = "analyzing"
    FINALIZED = "finalized"


class ItemSource(str, Enum):
    CAD = "cad"
    SCHEDULE = "schedule"
    BOQ = "boq"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    PRECONDITION_UNMET = "precondition_unmet"
    PARTIAL_FAILURE = "partial_failure"


class ComparisonVerdict(str, Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"


class ComparisonStatus(str, Enum):
    DONE = "done"
    FAILED = "failed"


class RetryReason(str, Enum):
    USER = "user"
    SCHEDULE_READY = "schedule_ready"
