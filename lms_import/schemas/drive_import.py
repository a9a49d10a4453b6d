from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

TaskKindName = Literal["course", "module", "lesson-video", "lesson-document", "quiz", "skip"]
TaskStatusName = Literal["pending", "in-progress", "done", "failed", "skipped"]
RunStateName = Literal[
    "queued",
    "running",
    "completed",
    "partially-failed",
    "timed-out-continuing",
    "aborted",
    "disabled",
]


class DriveImportRequest(BaseModel):
    drive_url: str | None = Field(default=None, description="Drive folder share URL")
    drive_folder_id: str | None = Field(default=None, description="Drive folder id, used when no URL is given")
    course_id: str | None = Field(default=None, description="Existing course to import into")
    retry_failed: bool = Field(default=True, description="Re-run tasks that failed in the previous run")

    @property
    def folder_reference(self) -> str:
        return self.drive_url or self.drive_folder_id or ""


class TaskView(BaseModel):
    id: str
    position: int
    kind: TaskKindName
    name: str
    path: str
    parent_id: str | None = None
    source_id: str
    revision: str | None = None
    mime_type: str
    status: TaskStatusName
    error: str | None = None
    record_id: str | None = None
    attempts: int = 0

    model_config = {"from_attributes": True}


class TaskError(BaseModel):
    task_id: str
    name: str
    path: str
    error: str


class RunSummary(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_kind: dict[str, int] = Field(default_factory=dict)
    blocked: int = 0
    errors: list[TaskError] = Field(default_factory=list)


class RunView(BaseModel):
    run_id: str
    root_folder_id: str
    course_id: str | None = None
    state: RunStateName
    cursor: str | None = None
    error: str | None = None
    started_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None
    summary: RunSummary
    tasks: list[TaskView] = Field(default_factory=list)


class ContinuationAccepted(BaseModel):
    run_id: str
    state: RunStateName
    cursor: str | None = None


class TaskPreview(BaseModel):
    summary: RunSummary
    tasks: list[TaskView] = Field(default_factory=list)


class TaskRef(BaseModel):
    run_id: str
    id: str


class ItemImportRequest(BaseModel):
    task: TaskRef | None = None
    course_id: str | None = None


class ItemImportResult(BaseModel):
    success: bool
    status: TaskStatusName
    results: dict[str, Any] = Field(default_factory=dict)


class ImportRunnerPayload(BaseModel):
    """Continuation message handed from one orchestrator invocation to the next.

    Tagged and versioned; fields added by newer producers are ignored.
    """

    type: Literal["drive-import.continue"] = "drive-import.continue"
    version: Literal[1] = 1
    run_id: str
    secret: str = ""
    cursor: str | None = None

    model_config = {"extra": "ignore"}
