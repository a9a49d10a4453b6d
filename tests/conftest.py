from __future__ import annotations

import sys
from pathlib import Path
from typing import IO, Any, Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import lms_import.db.session as session_module
from lms_import.core.config import get_settings
from lms_import.core.errors import DriveError
from lms_import.core.security import hash_token
from lms_import.models import User
from lms_import.schemas.drive_import import ImportRunnerPayload
from lms_import.services import classifier as classifier_module
from lms_import.services.drive import FOLDER_MIME_TYPE, DriveFile
from lms_import.services.orchestrator import InlineContinuationScheduler, Pipeline
from lms_import.services.storage import LocalBucket

RUNNER_SECRET = "runner-secret-for-tests"
ADMIN_TOKEN = "admin-token"
STUDENT_TOKEN = "student-token"

MIME_BY_EXTENSION = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "csv": "text/csv",
    "txt": "text/plain",
    "png": "image/png",
}


class FakeDrive:
    """In-memory stand-in for ``DriveClient``.

    Trees are nested dicts: a dict value is a folder, a ``bytes`` value a file,
    and a ``(bytes, mime_type)`` tuple a file with an explicit MIME type.
    Ids are derived from the item path, so rebuilding a tree keeps its ids.
    """

    def __init__(self, tree: dict[str, Any], *, root_id: str = "root") -> None:
        self.root_id = root_id
        self.children: dict[str, list[DriveFile]] = {}
        self.contents: dict[str, bytes] = {}
        self.failures: dict[str, str] = {}
        self.downloads: list[str] = []
        self.exports: list[tuple[str, str]] = []
        self._add(root_id, tree, ())

    def _add(self, folder_id: str, tree: dict[str, Any], path: tuple[str, ...]) -> None:
        items = self.children.setdefault(folder_id, [])
        for name, value in tree.items():
            item_path = path + (name,)
            item_id = "id:" + "/".join(item_path)
            if isinstance(value, dict):
                items.append(DriveFile(id=item_id, name=name, mime_type=FOLDER_MIME_TYPE, parents=(folder_id,)))
                self._add(item_id, value, item_path)
                continue
            if isinstance(value, tuple):
                content, mime_type = value
            else:
                content = value
                mime_type = MIME_BY_EXTENSION.get(name.rsplit(".", 1)[-1].lower(), "application/octet-stream")
            items.append(
                DriveFile(
                    id=item_id,
                    name=name,
                    mime_type=mime_type,
                    parents=(folder_id,),
                    revision=f"rev-{len(content)}",
                    size=len(content),
                )
            )
            self.contents[item_id] = content

    def file_id(self, *path: str) -> str:
        return "id:" + "/".join(path)

    def fail(self, file_id: str, message: str = "simulated Drive outage") -> None:
        self.failures[file_id] = message

    def heal(self, file_id: str) -> None:
        self.failures.pop(file_id, None)

    def replace(self, file_id: str, content: bytes) -> None:
        self.contents[file_id] = content
        for folder, items in self.children.items():
            self.children[folder] = [
                DriveFile(
                    id=item.id,
                    name=item.name,
                    mime_type=item.mime_type,
                    parents=item.parents,
                    revision=f"rev-{len(content)}-changed",
                    size=len(content),
                )
                if item.id == file_id
                else item
                for item in items
            ]

    def list_children(self, folder_id: str) -> Iterator[DriveFile]:
        yield from self.children.get(folder_id, [])

    def get_metadata(self, file_id: str) -> DriveFile:
        for items in self.children.values():
            for item in items:
                if item.id == file_id:
                    return item
        raise DriveError(f"File {file_id} not found")

    def download(self, file_id: str, fh: IO[bytes]) -> int:
        if file_id in self.failures:
            raise DriveError(self.failures[file_id])
        self.downloads.append(file_id)
        content = self.contents[file_id]
        fh.write(content)
        return len(content)

    def export(self, file_id: str, mime_type: str, fh: IO[bytes]) -> int:
        if file_id in self.failures:
            raise DriveError(self.failures[file_id])
        self.exports.append((file_id, mime_type))
        content = self.contents[file_id]
        fh.write(content)
        return len(content)


class TickingClock:
    """Monotonic clock that advances ``step`` seconds on every reading."""

    def __init__(self, step: float = 0.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


class RecordingScheduler:
    def __init__(self) -> None:
        self.payloads: list[ImportRunnerPayload] = []

    def schedule(self, payload: ImportRunnerPayload, pipeline: Pipeline) -> None:
        self.payloads.append(payload)


SAMPLE_TREE = {
    "Course A": {
        "Module 1": {
            "video1.mp4": b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 64,
            "doc1.pdf": b"%PDF-1.4 sample",
        },
    },
}


@pytest.fixture()
def app_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.setenv("APP_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("APP_DATABASE_URL", f"sqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setenv("APP_RUNNER_SECRET", RUNNER_SECRET)
    monkeypatch.setenv("APP_IMPORT_TIME_BUDGET_SECONDS", "240")

    get_settings.cache_clear()
    classifier_module._default_rules.cache_clear()
    session_module.reset_engine()
    try:
        yield tmp_path
    finally:
        session_module.reset_engine()
        get_settings.cache_clear()
        classifier_module._default_rules.cache_clear()


@pytest.fixture()
def db_session(app_env: Path):
    session_module.init_db()
    assert session_module.SessionLocal is not None
    session = session_module.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def bucket(app_env: Path) -> LocalBucket:
    return LocalBucket(get_settings().storage_dir)


@pytest.fixture()
def drive() -> FakeDrive:
    return FakeDrive(SAMPLE_TREE)


@pytest.fixture()
def pipeline(drive: FakeDrive, bucket: LocalBucket) -> Pipeline:
    return Pipeline(drive=drive, bucket=bucket, scheduler=InlineContinuationScheduler(), clock=TickingClock())


@pytest.fixture()
def users(db_session) -> dict[str, str]:
    db_session.add_all(
        [
            User(id="admin-1", role="admin", display_name="Admin", local_auth_hash=hash_token(ADMIN_TOKEN)),
            User(id="student-1", role="student", display_name="Student", local_auth_hash=hash_token(STUDENT_TOKEN)),
        ]
    )
    db_session.commit()
    return {"admin": ADMIN_TOKEN, "student": STUDENT_TOKEN}
