"""Job record data model for conversion requests."""

import uuid
import weakref
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


GENERIC_FAILURE_MESSAGE = (
    "Conversion failed. The file may be corrupted or use an unsupported codec."
)


def new_job_id() -> str:
    return str(uuid.uuid4())


class Job(BaseModel):
    """Tracks the lifecycle of one conversion request.

    ``process_handle`` is a weak reference to the live engine process and is
    only set while the job is processing. It exists so the job can be
    cancelled; it never keeps the process alive.
    """

    id: str = Field(default_factory=new_job_id)
    status: JobStatus = JobStatus.PROCESSING
    progress: int = 0
    input_path: str
    output_path: str
    original_name: str
    error: Optional[str] = None
    downloaded: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    process_handle: Optional[Any] = Field(default=None, exclude=True, repr=False)

    @property
    def handle(self):
        """Dereference the process handle, or None if gone."""
        if self.process_handle is None:
            return None
        return self.process_handle()

    def attach_handle(self, handle) -> None:
        self.process_handle = weakref.ref(handle)

    def detach_handle(self) -> None:
        self.process_handle = None

    def advance_progress(self, percent: float) -> bool:
        """Raise progress to ``percent`` (clamped to 0..100) while processing.

        Returns True if the stored value changed.
        """
        if self.status is not JobStatus.PROCESSING:
            return False
        value = max(0, min(100, int(percent)))
        if value <= self.progress:
            return False
        self.progress = value
        return True

    def finish(self, status: JobStatus, error: Optional[str] = None) -> bool:
        """Move a processing job to a terminal status.

        Returns False, leaving the job untouched, if it is already terminal.
        """
        if self.status.is_terminal:
            return False
        self.status = status
        self.completed_at = datetime.utcnow()
        self.detach_handle()
        if status is JobStatus.COMPLETED:
            self.progress = 100
        elif status is JobStatus.ERROR:
            self.error = error or GENERIC_FAILURE_MESSAGE
        return True


class StatusView(BaseModel):
    """Client-facing projection of a job."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    status: JobStatus
    progress: int
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "StatusView":
        return cls(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            error=job.error,
        )
