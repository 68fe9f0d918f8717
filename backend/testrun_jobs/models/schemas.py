from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Optional, List, Dict, Any, Literal, Union
from datetime import datetime
from enum import Enum

class TestRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

class ResultStatus(str, Enum):
    TO_DO = "toDo"
    IN_PROGRESS = "inProgress"
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"

# Statuses that stop the clock on a result
TERMINAL_RESULT_STATUSES = frozenset({ResultStatus.PASSED, ResultStatus.FAILED, ResultStatus.BLOCKED})

class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"

class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class ExportFormat(str, Enum):
    CSV = "csv"
    JIRA = "jira"
    PDF = "pdf"

class QueueName(str, Enum):
    TEST_RUN = "test-run-jobs"
    EXPORT = "export-jobs"
    SCHEDULED_RUN = "scheduled-run-jobs"

class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class CamelModel(BaseModel):
    """Payloads travel with the camelCase keys the application layer sends"""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


# Job payloads

class BulkStatusUpdateData(CamelModel):
    test_run_id: int
    test_case_ids: List[int]
    status: ResultStatus
    executed_by: Optional[int] = None

    @field_validator("status")
    @classmethod
    def status_must_be_a_transition(cls, value: ResultStatus) -> ResultStatus:
        if value == ResultStatus.TO_DO:
            raise ValueError("toDo is the initial status and cannot be set in bulk")
        return value

class BulkDeleteData(CamelModel):
    test_run_id: int
    result_ids: List[int]

class ExportData(CamelModel):
    test_run_id: int
    project_id: Optional[int] = None
    repository_id: Optional[int] = None

class ScheduledRunData(CamelModel):
    schedule_id: int
    template_id: Optional[int] = None
    project_id: Optional[int] = None


# Queue envelopes, one closed union per queue

class BulkStatusUpdateJob(CamelModel):
    type: Literal["bulk-status-update"] = "bulk-status-update"
    data: BulkStatusUpdateData

class BulkDeleteJob(CamelModel):
    type: Literal["bulk-delete"] = "bulk-delete"
    data: BulkDeleteData

TestRunJob = Annotated[Union[BulkStatusUpdateJob, BulkDeleteJob], Field(discriminator="type")]

class ExportJob(CamelModel):
    # Kept as a plain string so an unsupported format reaches the exporter
    format: str
    data: ExportData

ScheduledRunJob = ScheduledRunData


# Processor results

class BulkStatusUpdateResult(CamelModel):
    success: bool = True
    updated: int

class BulkDeleteResult(CamelModel):
    success: bool = True
    deleted: int

class ExportResult(CamelModel):
    success: bool = True
    filepath: Optional[str] = None
    filename: str
    format: ExportFormat
    pending: bool = False
    message: Optional[str] = None

class ScheduledRunResult(CamelModel):
    success: bool = True
    test_run_id: str
    next_run_at: datetime


# Job submission API

class EnqueueResponse(CamelModel):
    job_id: str
    queue: QueueName
    state: JobState

class JobStateResponse(CamelModel):
    job_id: str
    queue: QueueName
    state: JobState
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

class QueueDepthResponse(CamelModel):
    depths: Dict[str, int]
