"""Assign each Drive node the role it plays in a course import."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import PurePosixPath
from typing import Iterable

from lms_import.core.config import Settings, get_settings


class TaskKind(str, Enum):
    COURSE = "course"
    MODULE = "module"
    LESSON_VIDEO = "lesson-video"
    LESSON_DOCUMENT = "lesson-document"
    QUIZ = "quiz"
    SKIP = "skip"


VIDEO_MIME_TYPES = frozenset({"application/vnd.google-apps.video"})
DOCUMENT_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "application/vnd.google-apps.document",
        "application/vnd.google-apps.presentation",
    }
)

_CODE_PATTERN = re.compile(r"^([A-Z0-9]+)\s*-\s*(.+)$")


@dataclass(frozen=True)
class ClassifierRules:
    video_extensions: frozenset[str]
    document_extensions: frozenset[str]
    quiz_pattern: re.Pattern[str]

    @classmethod
    def build(
        cls,
        *,
        video_extensions: Iterable[str],
        document_extensions: Iterable[str],
        quiz_name_pattern: str,
    ) -> "ClassifierRules":
        return cls(
            video_extensions=frozenset(ext.lower().lstrip(".") for ext in video_extensions),
            document_extensions=frozenset(ext.lower().lstrip(".") for ext in document_extensions),
            quiz_pattern=re.compile(quiz_name_pattern),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClassifierRules":
        return cls.build(
            video_extensions=settings.video_extensions,
            document_extensions=settings.document_extensions,
            quiz_name_pattern=settings.quiz_name_pattern,
        )


@lru_cache
def _default_rules() -> ClassifierRules:
    return ClassifierRules.from_settings(get_settings())


def _extension(name: str) -> str:
    return PurePosixPath(name).suffix.lower().lstrip(".")


def classify(
    *,
    name: str,
    mime_type: str,
    is_folder: bool,
    path: tuple[str, ...],
    rules: ClassifierRules | None = None,
) -> TaskKind:
    """Return the kind of task a Drive node becomes.

    ``path`` runs from the first level below the import root to the node, so
    its length minus one is the node's depth. Folders at depth 0 and 1 are
    courses and modules; everything else at folder level is skipped. Files
    only become lessons inside a module folder (depth 2 or deeper); the
    first matching rule among video, document and quiz wins.
    """

    rules = rules or _default_rules()
    depth = len(path) - 1
    mime = (mime_type or "").lower()

    if is_folder:
        if depth == 0:
            return TaskKind.COURSE
        if depth == 1:
            return TaskKind.MODULE
        return TaskKind.SKIP

    if depth < 2:
        return TaskKind.SKIP

    extension = _extension(name or "")
    if mime.startswith("video/") or mime in VIDEO_MIME_TYPES or extension in rules.video_extensions:
        return TaskKind.LESSON_VIDEO
    if mime in DOCUMENT_MIME_TYPES or extension in rules.document_extensions:
        return TaskKind.LESSON_DOCUMENT
    if rules.quiz_pattern.search(name or ""):
        return TaskKind.QUIZ
    return TaskKind.SKIP


def split_code(name: str) -> tuple[str | None, str]:
    """Split ``"A01-Introduction.pdf"`` into ``("A01", "Introduction")``."""

    stem = PurePosixPath(name).stem if _extension(name) else name
    match = _CODE_PATTERN.match(stem.strip())
    if match:
        return match.group(1), match.group(2).strip()
    return None, stem.strip()
