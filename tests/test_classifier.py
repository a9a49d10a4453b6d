from __future__ import annotations

import pytest

from lms_import.services.classifier import ClassifierRules, TaskKind, classify, split_code
from lms_import.services.drive import FOLDER_MIME_TYPE


def _file(name: str, mime_type: str, depth: int = 2) -> TaskKind:
    path = tuple(f"level{i}" for i in range(depth)) + (name,)
    return classify(name=name, mime_type=mime_type, is_folder=False, path=path)


def test_folder_depth_decides_course_and_module(app_env) -> None:
    assert classify(name="Course A", mime_type=FOLDER_MIME_TYPE, is_folder=True, path=("Course A",)) is TaskKind.COURSE
    assert (
        classify(name="Module 1", mime_type=FOLDER_MIME_TYPE, is_folder=True, path=("Course A", "Module 1"))
        is TaskKind.MODULE
    )
    assert (
        classify(
            name="Extras",
            mime_type=FOLDER_MIME_TYPE,
            is_folder=True,
            path=("Course A", "Module 1", "Extras"),
        )
        is TaskKind.SKIP
    )


@pytest.mark.parametrize(
    ("name", "mime_type", "expected"),
    [
        ("video1.mp4", "video/mp4", TaskKind.LESSON_VIDEO),
        ("clip.MOV", "application/octet-stream", TaskKind.LESSON_VIDEO),
        ("recording", "application/vnd.google-apps.video", TaskKind.LESSON_VIDEO),
        ("doc1.pdf", "application/pdf", TaskKind.LESSON_DOCUMENT),
        ("slides.pptx", "application/octet-stream", TaskKind.LESSON_DOCUMENT),
        ("Handout", "application/vnd.google-apps.document", TaskKind.LESSON_DOCUMENT),
        ("Quiz - Módulo 1.csv", "text/csv", TaskKind.QUIZ),
        ("Prova final", "application/vnd.google-apps.spreadsheet", TaskKind.QUIZ),
        ("cover.png", "image/png", TaskKind.SKIP),
        ("notes", "", TaskKind.SKIP),
    ],
)
def test_files_inside_a_module(app_env, name: str, mime_type: str, expected: TaskKind) -> None:
    assert _file(name, mime_type) is expected


def test_video_rule_wins_over_quiz_name(app_env) -> None:
    assert _file("quiz walkthrough.mp4", "video/mp4") is TaskKind.LESSON_VIDEO


def test_files_outside_a_module_are_skipped(app_env) -> None:
    assert _file("intro.mp4", "video/mp4", depth=0) is TaskKind.SKIP
    assert _file("syllabus.pdf", "application/pdf", depth=1) is TaskKind.SKIP


def test_classification_is_deterministic(app_env) -> None:
    first = [_file(name, mime) for name, mime in [("a.mp4", "video/mp4"), ("b.bin", "x/unknown")]]
    second = [_file(name, mime) for name, mime in [("a.mp4", "video/mp4"), ("b.bin", "x/unknown")]]
    assert first == second == [TaskKind.LESSON_VIDEO, TaskKind.SKIP]


def test_custom_rules_are_honoured() -> None:
    rules = ClassifierRules.build(
        video_extensions=[".webm"],
        document_extensions=["txt"],
        quiz_name_pattern=r"(?i)exercicio",
    )
    path = ("Course", "Module")

    assert classify(name="talk.webm", mime_type="", is_folder=False, path=path + ("talk.webm",), rules=rules) is (
        TaskKind.LESSON_VIDEO
    )
    assert classify(name="read.txt", mime_type="", is_folder=False, path=path + ("read.txt",), rules=rules) is (
        TaskKind.LESSON_DOCUMENT
    )
    assert classify(
        name="Exercicio 1", mime_type="", is_folder=False, path=path + ("Exercicio 1",), rules=rules
    ) is TaskKind.QUIZ
    assert classify(name="talk.mp4", mime_type="", is_folder=False, path=path + ("talk.mp4",), rules=rules) is (
        TaskKind.SKIP
    )


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("A01-Introduction.pdf", ("A01", "Introduction")),
        ("M2 - Variáveis", ("M2", "Variáveis")),
        ("Course A", (None, "Course A")),
        ("video1.mp4", (None, "video1")),
    ],
)
def test_split_code(name: str, expected: tuple[str | None, str]) -> None:
    assert split_code(name) == expected
