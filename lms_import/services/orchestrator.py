"""Drive import run orchestration.

A run is driven in invocations. Each invocation claims the run with a
conditional update on ``(state, cursor)``, walks the ordered tasks after the
cursor, persists the cursor after every task and stops once its wall-clock
budget is spent. What is left is handed to a continuation, which claims the
run again from the cursor it was given; a stale or duplicate continuation
fails the claim and does nothing.
"""

from __future__ import annotations

import hmac
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Protocol

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lms_import.core.config import get_settings
from lms_import.core.errors import (
    AuthenticationError,
    BudgetExceededError,
    NotFoundError,
    OrchestratorFatalError,
    RunConflictError,
    ValidationError,
)
from lms_import.db.session import session_scope
from lms_import.models import Course, ImportRun, ImportTask
from lms_import.schemas.drive_import import ImportRunnerPayload
from lms_import.services.classifier import TaskKind
from lms_import.services.drive import DriveClient, DriveNode
from lms_import.services.executor import TaskExecutor, TaskOutcome
from lms_import.services.storage import LocalBucket
from lms_import.services.tasks import PARENT_KINDS, TERMINAL_STATUSES, build_tasks, merge_with_existing

LOGGER = logging.getLogger(__name__)

CLAIMABLE_STATES = ("queued", "timed-out-continuing", "aborted")
FINAL_STATES = frozenset({"completed", "partially-failed"})


class ContinuationScheduler(Protocol):
    def schedule(self, payload: ImportRunnerPayload, pipeline: "Pipeline") -> None:
        ...


@dataclass
class Pipeline:
    """External collaborators of a run, shared by requests and continuations."""

    drive: DriveClient
    bucket: LocalBucket
    scheduler: ContinuationScheduler
    clock: Callable[[], float] = field(default=time.monotonic)


@dataclass
class RunOutcome:
    run_id: str
    state: str
    cursor: str | None
    executed: int = 0


def verify_runner_secret(secret: str | None) -> None:
    expected = get_settings().runner_secret
    if not expected or not secret or not hmac.compare_digest(secret.encode(), expected.encode()):
        raise AuthenticationError("Invalid runner secret")


def continuation_payload(run_id: str, cursor: str | None) -> ImportRunnerPayload:
    secret = get_settings().runner_secret
    if not secret:
        raise OrchestratorFatalError("APP_RUNNER_SECRET is not configured; cannot schedule a continuation")
    return ImportRunnerPayload(run_id=run_id, secret=secret, cursor=cursor)


class JobOrchestrator:
    def __init__(
        self,
        session: Session,
        executor: TaskExecutor,
        *,
        budget_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.executor = executor
        self.budget_seconds = budget_seconds or get_settings().import_time_budget_seconds
        self.clock = clock
        # The budget covers the whole invocation, including tree enumeration.
        self.started = clock()

    def budget_exhausted(self) -> bool:
        return self.clock() - self.started >= self.budget_seconds

    def start_run(
        self,
        *,
        root_folder_id: str,
        nodes: list[DriveNode],
        course_id: str | None = None,
        created_by: str | None = None,
        retry_failed: bool = True,
    ) -> ImportRun:
        if course_id is not None and self.session.get(Course, course_id) is None:
            raise ValidationError(f"Course {course_id} does not exist")

        now = int(time.time())
        run = ImportRun(
            id=uuid.uuid4().hex,
            root_folder_id=root_folder_id,
            course_id=course_id,
            course_preset=course_id is not None,
            state="queued",
            cursor=None,
            created_by=created_by,
            started_at=now,
            updated_at=now,
        )
        tasks = build_tasks(nodes, run_id=run.id)
        if not any(task.kind in PARENT_KINDS for task in tasks):
            raise ValidationError("No course or module folders found in the Drive folder")

        prior = latest_run(self.session, root_folder_id)
        if prior is not None:
            if prior.state in ("running", "timed-out-continuing"):
                raise RunConflictError(f"Run {prior.id} for this folder is still in progress")
            # Carried course and module tasks point at the prior course's rows.
            if run.course_preset and prior.course_id is not None and prior.course_id != course_id:
                raise ValidationError(
                    f"Drive folder {root_folder_id} was imported into course {prior.course_id}, "
                    f"not {course_id}"
                )
            prior_tasks = self.session.query(ImportTask).filter(ImportTask.run_id == prior.id).all()
            merge_with_existing(tasks, prior_tasks, retry_failed=retry_failed)
            run.previous_run_id = prior.id
            if not run.course_preset and prior.course_id is not None:
                run.course_id = prior.course_id

        self.session.add(run)
        self.session.add_all(tasks)
        self.session.commit()
        LOGGER.info(
            "Created import run %s for folder %s with %d tasks (previous run: %s)",
            run.id,
            root_folder_id,
            len(tasks),
            run.previous_run_id,
        )
        return run

    def claim(self, run_id: str, expected_cursor: str | None) -> ImportRun:
        """Move a run to ``running`` iff it is claimable at ``expected_cursor``."""

        now = int(time.time())
        stale_before = now - int(2 * self.budget_seconds)
        cursor_matches = (
            ImportRun.cursor.is_(None) if expected_cursor is None else ImportRun.cursor == expected_cursor
        )
        claimable = or_(
            ImportRun.state.in_(CLAIMABLE_STATES),
            and_(ImportRun.state == "running", ImportRun.updated_at < stale_before),
        )
        result = self.session.execute(
            update(ImportRun)
            .where(ImportRun.id == run_id, cursor_matches, claimable)
            .values(state="running", updated_at=now, error=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            run = self.session.get(ImportRun, run_id)
            if run is None:
                raise NotFoundError(f"Import run {run_id} not found")
            raise RunConflictError(
                f"Run {run_id} cannot be claimed at cursor {expected_cursor!r} "
                f"(state {run.state}, cursor {run.cursor!r})"
            )

        # Tasks a dead invocation left mid-flight are retried from scratch.
        self.session.execute(
            update(ImportTask)
            .where(ImportTask.run_id == run_id, ImportTask.status == "in-progress")
            .values(status="pending", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        run = self.session.get(ImportRun, run_id)
        self.session.refresh(run)
        return run

    def run(self, run_id: str, *, expected_cursor: str | None) -> RunOutcome:
        run = self.claim(run_id, expected_cursor)
        LOGGER.info("Import run %s running from cursor %r", run_id, run.cursor)
        try:
            return self._drive(run)
        except BudgetExceededError as signal:
            run.state = "timed-out-continuing"
            run.updated_at = int(time.time())
            self.session.commit()
            LOGGER.info("Import run %s paused at cursor %r; continuing in the background", run_id, signal.cursor)
            return RunOutcome(run_id=run_id, state=run.state, cursor=signal.cursor)
        except SQLAlchemyError as exc:
            self._abort(run_id, f"Run state could not be persisted: {exc}")
            raise OrchestratorFatalError(f"Import run {run_id} aborted: {exc}") from exc
        except OrchestratorFatalError as exc:
            self._abort(run_id, exc.message)
            raise

    def _drive(self, run: ImportRun) -> RunOutcome:
        tasks = (
            self.session.query(ImportTask)
            .filter(ImportTask.run_id == run.id)
            .order_by(ImportTask.position)
            .all()
        )
        by_id = {task.id: task for task in tasks}
        start = 0
        if run.cursor is not None:
            if run.cursor not in by_id:
                raise OrchestratorFatalError(f"Cursor {run.cursor} does not match any task of run {run.id}")
            start = by_id[run.cursor].position + 1

        executed = 0
        remaining = tasks[start:]
        for index, task in enumerate(remaining):
            if task.status == "pending":
                parent = by_id.get(task.parent_id) if task.parent_id else None
                if task.kind == TaskKind.SKIP.value or parent is None or parent.status == "done":
                    self.executor.execute(task)
                    executed += 1
            run.cursor = task.id
            run.updated_at = int(time.time())
            self.session.commit()

            if index + 1 < len(remaining) and self.budget_exhausted():
                raise BudgetExceededError(run.cursor)

        run.state = terminal_state(tasks)
        run.finished_at = int(time.time())
        run.updated_at = run.finished_at
        self.session.commit()
        LOGGER.info("Import run %s finished as %s after %d task executions", run.id, run.state, executed)
        return RunOutcome(run_id=run.id, state=run.state, cursor=run.cursor, executed=executed)

    def _abort(self, run_id: str, message: str) -> None:
        LOGGER.error("Aborting import run %s: %s", run_id, message)
        try:
            self.session.rollback()
            self.session.execute(
                update(ImportRun)
                .where(ImportRun.id == run_id)
                .values(state="aborted", error=message, updated_at=int(time.time()))
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError:
            LOGGER.exception("Could not mark import run %s as aborted", run_id)
            self.session.rollback()

    def retry_task(self, run_id: str, task_id: str, *, course_id: str | None) -> TaskOutcome:
        """Execute one task of a run again, outside the cursor walk."""

        run = self.session.get(ImportRun, run_id)
        if run is None:
            raise NotFoundError(f"Import run {run_id} not found")
        if run.state == "running":
            raise RunConflictError(f"Run {run_id} is running; retry the task once it pauses or finishes")
        if course_id and run.course_id and course_id != run.course_id:
            raise ValidationError(f"Task belongs to course {run.course_id}, not {course_id}")

        task = self.session.get(ImportTask, (run_id, task_id))
        if task is None:
            raise NotFoundError(f"Task {task_id} not found in run {run_id}")

        previous_state = self._hold_for_retry(run)
        LOGGER.info("Retrying import task %s (%s '%s') of run %s", task.id, task.kind, task.path, run_id)
        try:
            outcome = self.executor.execute(task)
        finally:
            self._release_after_retry(run_id, previous_state)
        return outcome

    def _hold_for_retry(self, run: ImportRun) -> str:
        """Mark the run ``running`` for the retry so continuations cannot claim it meanwhile."""

        observed = run.state
        result = self.session.execute(
            update(ImportRun)
            .where(ImportRun.id == run.id, ImportRun.state == observed, ImportRun.state != "running")
            .values(state="running", updated_at=int(time.time()))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise RunConflictError(f"Run {run.id} is running; retry the task once it pauses or finishes")
        self.session.commit()
        return observed

    def _release_after_retry(self, run_id: str, previous_state: str) -> None:
        self.session.rollback()
        state = previous_state
        if previous_state in FINAL_STATES:
            tasks = self.session.query(ImportTask).filter(ImportTask.run_id == run_id).all()
            state = terminal_state(tasks)
        self.session.execute(
            update(ImportRun)
            .where(ImportRun.id == run_id, ImportRun.state == "running")
            .values(state=state, updated_at=int(time.time()))
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def disable(self, run_id: str) -> ImportRun:
        run = self.session.get(ImportRun, run_id)
        if run is None:
            raise NotFoundError(f"Import run {run_id} not found")
        if run.state in FINAL_STATES:
            raise RunConflictError(f"Run {run_id} already finished as {run.state}")
        run.state = "disabled"
        run.updated_at = int(time.time())
        self.session.commit()
        LOGGER.info("Import run %s disabled; further continuations will be refused", run_id)
        return run


def latest_run(session: Session, root_folder_id: str) -> ImportRun | None:
    """Head of the chain of runs over ``root_folder_id``."""

    superseded = (
        select(ImportRun.previous_run_id)
        .where(ImportRun.root_folder_id == root_folder_id, ImportRun.previous_run_id.is_not(None))
        .scalar_subquery()
    )
    return (
        session.query(ImportRun)
        .filter(ImportRun.root_folder_id == root_folder_id, ImportRun.id.not_in(superseded))
        .order_by(ImportRun.started_at.desc())
        .first()
    )


def terminal_state(tasks: list[ImportTask]) -> str:
    if all(task.status in TERMINAL_STATUSES for task in tasks):
        return "completed"
    return "partially-failed"


def resume_run(run_id: str, cursor: str | None, pipeline: Pipeline) -> RunOutcome | None:
    """Continue a run from ``cursor`` in a session of its own.

    Runs detached from any request: conflicts mean another invocation got
    there first and are dropped; a pause schedules the next continuation.
    """

    with session_scope() as session:
        executor = TaskExecutor(session, pipeline.drive, pipeline.bucket)
        orchestrator = JobOrchestrator(session, executor, clock=pipeline.clock)
        try:
            outcome = orchestrator.run(run_id, expected_cursor=cursor)
        except (RunConflictError, NotFoundError) as exc:
            LOGGER.info("Dropping continuation of run %s at %r: %s", run_id, cursor, exc.message)
            return None
        except OrchestratorFatalError:
            LOGGER.exception("Continuation of import run %s aborted", run_id)
            return None

    if outcome.state == "timed-out-continuing":
        schedule_continuation(outcome, pipeline)
    return outcome


def schedule_continuation(outcome: RunOutcome, pipeline: Pipeline) -> None:
    try:
        payload = continuation_payload(outcome.run_id, outcome.cursor)
    except OrchestratorFatalError:
        LOGGER.exception("Run %s left paused at %r", outcome.run_id, outcome.cursor)
        return
    pipeline.scheduler.schedule(payload, pipeline)


class InlineContinuationScheduler:
    """Resume in this process, right away."""

    def schedule(self, payload: ImportRunnerPayload, pipeline: Pipeline) -> None:
        resume_run(payload.run_id, payload.cursor, pipeline)


class HttpContinuationScheduler:
    """Hand the payload to the runner endpoint, which resumes after replying."""

    def __init__(
        self,
        url: str | None = None,
        *,
        retries: int | None = None,
        timeout: float = 10.0,
        backoff_seconds: float = 1.0,
    ) -> None:
        settings = get_settings()
        self.url = url or settings.runner_url
        self.retries = settings.continuation_retries if retries is None else retries
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds

    def schedule(self, payload: ImportRunnerPayload, pipeline: Pipeline) -> None:
        body = payload.model_dump()
        for attempt in range(self.retries + 1):
            try:
                response = httpx.post(self.url, json=body, timeout=self.timeout)
                response.raise_for_status()
                LOGGER.info("Scheduled continuation of run %s at %r", payload.run_id, payload.cursor)
                return
            except httpx.HTTPError as exc:
                if attempt >= self.retries:
                    LOGGER.error(
                        "Giving up scheduling continuation of run %s after %d attempts: %s",
                        payload.run_id,
                        attempt + 1,
                        exc,
                    )
                    return
                delay = self.backoff_seconds * (2**attempt)
                LOGGER.warning("Continuation request for run %s failed (%s); retrying in %.1fs", payload.run_id, exc, delay)
                time.sleep(delay)
