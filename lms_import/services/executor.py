"""Side effects of a single import task.

Every operation is an upsert keyed by the owning row and the Drive source id,
so executing a task again updates what the previous attempt wrote instead of
duplicating it. Failures are recorded on the task and never escape
``TaskExecutor.execute``.
"""

from __future__ import annotations

import json
import logging
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import IO

from sqlalchemy import delete
from sqlalchemy.orm import Session

from lms_import.core.errors import TaskExecutionError, ValidationError
from lms_import.models import Course, CourseModule, ImportRun, ImportTask, Lesson, Question
from lms_import.services.classifier import TaskKind, split_code
from lms_import.services.drive import DriveClient
from lms_import.services.quiz import parse_quiz_file
from lms_import.services.storage import LocalBucket, lesson_object_path

LOGGER = logging.getLogger(__name__)

GOOGLE_DOC = "application/vnd.google-apps.document"
GOOGLE_SLIDES = "application/vnd.google-apps.presentation"
GOOGLE_SHEET = "application/vnd.google-apps.spreadsheet"

# Google-native files have no bytes of their own; they are exported.
_CONTENT_EXPORTS = {
    GOOGLE_DOC: ("application/pdf", ".pdf"),
    GOOGLE_SLIDES: ("application/pdf", ".pdf"),
}
_QUIZ_EXPORTS = {
    GOOGLE_DOC: ("text/plain", ".txt"),
    GOOGLE_SHEET: ("text/csv", ".csv"),
}

CONTENT_TYPES = {
    TaskKind.LESSON_VIDEO.value: "video",
    TaskKind.LESSON_DOCUMENT.value: "document",
    TaskKind.QUIZ.value: "quiz",
}


@dataclass
class TaskOutcome:
    status: str
    error: str | None = None
    record_id: str | None = None


def _new_id() -> str:
    return uuid.uuid4().hex


class TaskExecutor:
    def __init__(self, session: Session, drive: DriveClient, bucket: LocalBucket) -> None:
        self.session = session
        self.drive = drive
        self.bucket = bucket
        # Object keys written or replaced by the attempt in flight.
        self._uploaded: list[str] = []
        self._superseded: list[str] = []

    def execute(self, task: ImportTask) -> TaskOutcome:
        if task.kind == TaskKind.SKIP.value:
            task.status = "skipped"
            task.updated_at = int(time.time())
            self.session.commit()
            return TaskOutcome(status="skipped")

        parent = self._parent_of(task)
        if task.parent_id is not None and (parent is None or parent.status != "done"):
            raise ValidationError(f"Task {task.id} cannot start: parent task {task.parent_id} is not done")

        task.status = "in-progress"
        task.attempts += 1
        task.updated_at = int(time.time())
        self.session.commit()

        self._uploaded = []
        self._superseded = []
        try:
            run = self.session.get(ImportRun, task.run_id)
            if run is None:
                raise TaskExecutionError(f"Run {task.run_id} no longer exists")
            record_id = self._dispatch(task, run, parent)
            self.session.flush()
        except Exception as exc:
            self.session.rollback()
            # The restored rows still point at the objects this attempt replaced.
            self._discard(self._uploaded)
            message = str(exc) or exc.__class__.__name__
            LOGGER.warning("Import task %s (%s '%s') failed: %s", task.id, task.kind, task.path, message)
            task.status = "failed"
            task.error = message
            task.updated_at = int(time.time())
            self.session.commit()
            return TaskOutcome(status="failed", error=message, record_id=task.record_id)

        task.status = "done"
        task.error = None
        task.record_id = record_id
        task.updated_at = int(time.time())
        self.session.commit()
        self._discard(self._superseded)
        LOGGER.debug("Import task %s (%s '%s') done -> %s", task.id, task.kind, task.path, record_id)
        return TaskOutcome(status="done", record_id=record_id)

    def _discard(self, keys: list[str]) -> None:
        for key in keys:
            self.bucket.delete(key)
        self._uploaded = []
        self._superseded = []

    def _parent_of(self, task: ImportTask) -> ImportTask | None:
        if task.parent_id is None:
            return None
        return self.session.get(ImportTask, (task.run_id, task.parent_id))

    def _dispatch(self, task: ImportTask, run: ImportRun, parent: ImportTask | None) -> str:
        if task.kind == TaskKind.COURSE.value:
            return self._upsert_course(task, run)
        if parent is None or parent.record_id is None:
            raise TaskExecutionError(f"Task {task.id} has no parent record to attach to")
        if task.kind == TaskKind.MODULE.value:
            return self._upsert_module(task, parent.record_id)
        if task.kind in (TaskKind.LESSON_VIDEO.value, TaskKind.LESSON_DOCUMENT.value):
            return self._import_lesson(task, parent.record_id)
        if task.kind == TaskKind.QUIZ.value:
            return self._import_quiz(task, parent.record_id)
        raise TaskExecutionError(f"Unknown task kind '{task.kind}'")

    def _upsert_course(self, task: ImportTask, run: ImportRun) -> str:
        now = int(time.time())
        code, title = split_code(task.name)

        if run.course_preset:
            course = self.session.get(Course, run.course_id)
            if course is None:
                raise TaskExecutionError(f"Course {run.course_id} does not exist")
            if course.source_id not in (None, task.source_id):
                raise TaskExecutionError(
                    f"Course {course.id} is already linked to Drive folder {course.source_id}"
                )
            other = (
                self.session.query(Course)
                .filter(Course.source_id == task.source_id, Course.id != course.id)
                .one_or_none()
            )
            if other is not None:
                raise TaskExecutionError(f"Drive folder {task.source_id} is already imported as course {other.id}")
            course.source_id = task.source_id
            course.revision = task.revision
            course.code = course.code or code
            course.updated_at = now
            return course.id

        course = self.session.query(Course).filter(Course.source_id == task.source_id).one_or_none()
        if course is None:
            course = Course(id=_new_id(), source_id=task.source_id, created_at=now, title=title, updated_at=now)
            self.session.add(course)
        course.title = title
        course.code = code
        course.revision = task.revision
        course.updated_at = now
        if run.course_id is None:
            # import_runs.course_id references the row, so it must exist first.
            self.session.flush()
            run.course_id = course.id
        return course.id

    def _upsert_module(self, task: ImportTask, course_id: str) -> str:
        code, title = split_code(task.name)
        module = (
            self.session.query(CourseModule)
            .filter(CourseModule.course_id == course_id, CourseModule.source_id == task.source_id)
            .one_or_none()
        )
        if module is None:
            module = CourseModule(id=_new_id(), course_id=course_id, source_id=task.source_id)
            self.session.add(module)
        module.title = title
        module.code = code
        module.order_index = task.order_index
        module.revision = task.revision
        module.updated_at = int(time.time())
        return module.id

    def _lesson_row(self, task: ImportTask, module_id: str) -> Lesson:
        lesson = (
            self.session.query(Lesson)
            .filter(Lesson.module_id == module_id, Lesson.source_id == task.source_id)
            .one_or_none()
        )
        if lesson is None:
            lesson = Lesson(id=_new_id(), module_id=module_id, source_id=task.source_id)
            self.session.add(lesson)
        code, title = split_code(task.name)
        lesson.title = title
        lesson.code = code or f"A{task.order_index + 1:02d}"
        lesson.content_type = CONTENT_TYPES[task.kind]
        lesson.content_url = f"https://drive.google.com/file/d/{task.source_id}/view"
        lesson.order_index = task.order_index
        lesson.updated_at = int(time.time())
        return lesson

    def _module(self, module_id: str) -> CourseModule:
        module = self.session.get(CourseModule, module_id)
        if module is None:
            raise TaskExecutionError(f"Module {module_id} does not exist")
        return module

    def _fetch(self, task: ImportTask, fh: IO[bytes], exports: dict[str, tuple[str, str]]) -> tuple[str, str]:
        """Write the file's bytes to ``fh``; returns (stored filename, stored mime type)."""

        if task.mime_type in exports:
            export_mime, suffix = exports[task.mime_type]
            self.drive.export(task.source_id, export_mime, fh)
            return PurePosixPath(task.name).stem + suffix, export_mime
        if task.mime_type.startswith("application/vnd.google-apps."):
            raise TaskExecutionError(f"Google file type {task.mime_type} cannot be downloaded")
        self.drive.download(task.source_id, fh)
        return task.name, task.mime_type

    def _store(self, task: ImportTask, module: CourseModule, lesson: Lesson, fh: IO[bytes], filename: str) -> None:
        key = lesson_object_path(module.course_id, module.id, task.source_id, filename)
        fh.seek(0)
        lesson.size = self.bucket.upload(key, fh)
        if lesson.storage_path != key:
            self._uploaded.append(key)
            if lesson.storage_path:
                self._superseded.append(lesson.storage_path)
        lesson.storage_path = key

    def _import_lesson(self, task: ImportTask, module_id: str) -> str:
        module = self._module(module_id)
        lesson = self._lesson_row(task, module.id)

        unchanged = (
            lesson.revision is not None
            and lesson.revision == task.revision
            and lesson.storage_path is not None
            and self.bucket.exists(lesson.storage_path)
        )
        if unchanged:
            LOGGER.debug("Lesson %s unchanged at revision %s; keeping stored object", lesson.id, lesson.revision)
            return lesson.id

        with tempfile.TemporaryFile() as spool:
            filename, mime_type = self._fetch(task, spool, _CONTENT_EXPORTS)
            self._store(task, module, lesson, spool, filename)
        lesson.mime_type = mime_type
        lesson.revision = task.revision
        return lesson.id

    def _import_quiz(self, task: ImportTask, module_id: str) -> str:
        module = self._module(module_id)

        with tempfile.TemporaryFile() as spool:
            filename, mime_type = self._fetch(task, spool, _QUIZ_EXPORTS)
            spool.seek(0)
            questions = parse_quiz_file(spool.read(), filename=filename, mime_type=mime_type)

            lesson = self._lesson_row(task, module.id)
            self._store(task, module, lesson, spool, filename)

        lesson.mime_type = mime_type
        lesson.revision = task.revision
        self.session.flush()

        self.session.execute(delete(Question).where(Question.lesson_id == lesson.id))
        for question in questions:
            self.session.add(
                Question(
                    id=_new_id(),
                    lesson_id=lesson.id,
                    order_index=question["order"],
                    prompt=question["question"],
                    type=question["type"],
                    options_json=json.dumps(question["options"], ensure_ascii=False),
                    correct_answer_json=json.dumps(question["correct_answer"]),
                    points=question["points"],
                )
            )
        return lesson.id
