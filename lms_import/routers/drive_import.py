from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from sqlalchemy.orm import Session

from lms_import.core.errors import NotFoundError, ValidationError
from lms_import.core.security import RequestContext, require_importer
from lms_import.db.session import get_session
from lms_import.models import ImportRun, ImportTask
from lms_import.schemas.drive_import import (
    ContinuationAccepted,
    DriveImportRequest,
    ImportRunnerPayload,
    ItemImportRequest,
    ItemImportResult,
    RunView,
    TaskPreview,
    TaskView,
)
from lms_import.services.drive import DriveClient, extract_folder_id
from lms_import.services.executor import TaskExecutor
from lms_import.services.orchestrator import (
    HttpContinuationScheduler,
    JobOrchestrator,
    Pipeline,
    RunOutcome,
    latest_run,
    resume_run,
    schedule_continuation,
    verify_runner_secret,
)
from lms_import.services.storage import LocalBucket
from lms_import.services.tasks import build_tasks, enumerate_tree, merge_with_existing, summarize

router = APIRouter(tags=["drive-import"])


@lru_cache
def _default_pipeline() -> Pipeline:
    return Pipeline(
        drive=DriveClient.from_settings(),
        bucket=LocalBucket.from_settings(),
        scheduler=HttpContinuationScheduler(),
    )


def get_pipeline() -> Pipeline:
    return _default_pipeline()


def require_runner_payload(payload: ImportRunnerPayload) -> ImportRunnerPayload:
    verify_runner_secret(payload.secret)
    return payload


def _orchestrator(session: Session, pipeline: Pipeline) -> JobOrchestrator:
    executor = TaskExecutor(session, pipeline.drive, pipeline.bucket)
    return JobOrchestrator(session, executor, clock=pipeline.clock)


def _timestamp(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _run_view(session: Session, run: ImportRun) -> RunView:
    tasks = (
        session.query(ImportTask)
        .filter(ImportTask.run_id == run.id)
        .order_by(ImportTask.position)
        .all()
    )
    return RunView(
        run_id=run.id,
        root_folder_id=run.root_folder_id,
        course_id=run.course_id,
        state=run.state,  # type: ignore[arg-type]
        cursor=run.cursor,
        error=run.error,
        started_at=_timestamp(run.started_at),
        updated_at=_timestamp(run.updated_at),
        finished_at=_timestamp(run.finished_at),
        summary=summarize(tasks),
        tasks=[TaskView.model_validate(task) for task in tasks],
    )


def _respond(
    outcome: RunOutcome,
    session: Session,
    response: Response,
    background_tasks: BackgroundTasks,
    pipeline: Pipeline,
) -> RunView | ContinuationAccepted:
    if outcome.state == "timed-out-continuing":
        background_tasks.add_task(schedule_continuation, outcome, pipeline)
        response.status_code = status.HTTP_202_ACCEPTED
        return ContinuationAccepted(run_id=outcome.run_id, state=outcome.state, cursor=outcome.cursor)

    run = session.get(ImportRun, outcome.run_id)
    assert run is not None
    return _run_view(session, run)


@router.post(
    "/import-from-drive",
    response_model=RunView | ContinuationAccepted,
    responses={status.HTTP_202_ACCEPTED: {"model": ContinuationAccepted}},
)
def import_from_drive(
    request: DriveImportRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(require_importer),
    session: Session = Depends(get_session),
    pipeline: Pipeline = Depends(get_pipeline),
) -> RunView | ContinuationAccepted:
    folder_id = extract_folder_id(request.folder_reference)
    orchestrator = _orchestrator(session, pipeline)
    nodes = enumerate_tree(pipeline.drive, folder_id)
    run = orchestrator.start_run(
        root_folder_id=folder_id,
        nodes=nodes,
        course_id=request.course_id,
        created_by=context.user_id,
        retry_failed=request.retry_failed,
    )
    outcome = orchestrator.run(run.id, expected_cursor=None)
    return _respond(outcome, session, response, background_tasks, pipeline)


@router.get("/import-from-drive/list", response_model=TaskPreview)
def preview_import(
    drive_url: str | None = Query(default=None),
    drive_folder_id: str | None = Query(default=None),
    retry_failed: bool = Query(default=True),
    context: RequestContext = Depends(require_importer),
    session: Session = Depends(get_session),
    pipeline: Pipeline = Depends(get_pipeline),
) -> TaskPreview:
    folder_id = extract_folder_id(drive_url or drive_folder_id or "")
    tasks = build_tasks(enumerate_tree(pipeline.drive, folder_id), run_id="preview")
    prior = latest_run(session, folder_id)
    if prior is not None:
        merge_with_existing(tasks, prior.tasks, retry_failed=retry_failed)
    return TaskPreview(summary=summarize(tasks), tasks=[TaskView.model_validate(task) for task in tasks])


@router.post("/import-from-drive/item", response_model=ItemImportResult)
def import_single_item(
    request: ItemImportRequest,
    context: RequestContext = Depends(require_importer),
    session: Session = Depends(get_session),
    pipeline: Pipeline = Depends(get_pipeline),
) -> ItemImportResult:
    if request.task is None or not request.course_id:
        raise ValidationError("Both task and course_id are required")

    orchestrator = _orchestrator(session, pipeline)
    outcome = orchestrator.retry_task(request.task.run_id, request.task.id, course_id=request.course_id)
    task = session.get(ImportTask, (request.task.run_id, request.task.id))
    return ItemImportResult(
        success=outcome.status != "failed",
        status=outcome.status,  # type: ignore[arg-type]
        results={
            "task": TaskView.model_validate(task).model_dump(),
            "record_id": outcome.record_id,
            "error": outcome.error,
        },
    )


@router.post(
    "/import-from-drive-runner",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ContinuationAccepted,
)
def run_continuation(
    background_tasks: BackgroundTasks,
    payload: ImportRunnerPayload = Depends(require_runner_payload),
    pipeline: Pipeline = Depends(get_pipeline),
) -> ContinuationAccepted:
    background_tasks.add_task(resume_run, payload.run_id, payload.cursor, pipeline)
    return ContinuationAccepted(run_id=payload.run_id, state="timed-out-continuing", cursor=payload.cursor)


@router.get("/import-from-drive/runs/{run_id}", response_model=RunView)
def get_run(
    run_id: str,
    context: RequestContext = Depends(require_importer),
    session: Session = Depends(get_session),
) -> RunView:
    run = session.get(ImportRun, run_id)
    if run is None:
        raise NotFoundError(f"Import run {run_id} not found")
    return _run_view(session, run)


@router.post(
    "/import-from-drive/runs/{run_id}/resume",
    response_model=RunView | ContinuationAccepted,
    responses={status.HTTP_202_ACCEPTED: {"model": ContinuationAccepted}},
)
def resume_import(
    run_id: str,
    response: Response,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(require_importer),
    session: Session = Depends(get_session),
    pipeline: Pipeline = Depends(get_pipeline),
) -> RunView | ContinuationAccepted:
    run = session.get(ImportRun, run_id)
    if run is None:
        raise NotFoundError(f"Import run {run_id} not found")
    outcome = _orchestrator(session, pipeline).run(run_id, expected_cursor=run.cursor)
    return _respond(outcome, session, response, background_tasks, pipeline)


@router.post("/import-from-drive/runs/{run_id}/disable", response_model=RunView)
def disable_import(
    run_id: str,
    context: RequestContext = Depends(require_importer),
    session: Session = Depends(get_session),
    pipeline: Pipeline = Depends(get_pipeline),
) -> RunView:
    run = _orchestrator(session, pipeline).disable(run_id)
    return _run_view(session, run)
