from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_TOKEN, STUDENT_TOKEN, RecordingScheduler, TickingClock
from lms_import.core.config import get_settings
from lms_import.main import app
from lms_import.routers.drive_import import get_pipeline

DRIVE_URL = "https://drive.google.com/drive/folders/root?usp=sharing"


def _auth(token: str = ADMIN_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def client(users, pipeline) -> Iterator[TestClient]:
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def short_budget(monkeypatch, pipeline):
    """Two clock ticks per invocation: the first request pauses after two tasks."""
    monkeypatch.setenv("APP_IMPORT_TIME_BUDGET_SECONDS", "2")
    get_settings.cache_clear()
    pipeline.clock = TickingClock(step=1)
    return pipeline


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_import_course_a_end_to_end(client: TestClient, drive) -> None:
    response = client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth())

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "completed"
    assert body["root_folder_id"] == "root"
    assert body["course_id"]
    assert body["summary"]["total"] == 4
    assert body["summary"]["by_status"] == {"done": 4}
    assert body["summary"]["by_kind"] == {"course": 1, "module": 1, "lesson-video": 1, "lesson-document": 1}
    assert [task["path"] for task in body["tasks"]] == [
        "Course A",
        "Course A/Module 1",
        "Course A/Module 1/video1.mp4",
        "Course A/Module 1/doc1.pdf",
    ]
    assert body["cursor"] == body["tasks"][-1]["id"]

    downloads = list(drive.downloads)
    again = client.post("/import-from-drive", json={"drive_folder_id": "root"}, headers=_auth())

    assert again.status_code == 200
    assert again.json()["state"] == "completed"
    assert again.json()["course_id"] == body["course_id"]
    assert all(task["attempts"] == 1 for task in again.json()["tasks"])
    assert drive.downloads == downloads


def test_caller_checks(client: TestClient) -> None:
    assert client.post("/import-from-drive", json={"drive_url": DRIVE_URL}).status_code == 401
    assert (
        client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth("not-a-token")).status_code
        == 401
    )

    forbidden = client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth(STUDENT_TOKEN))
    assert forbidden.status_code == 403
    assert "detail" in forbidden.json()


def test_bad_folder_references_are_rejected(client: TestClient) -> None:
    missing = client.post("/import-from-drive", json={}, headers=_auth())
    assert missing.status_code == 400

    invalid = client.post("/import-from-drive", json={"drive_url": "not a drive link"}, headers=_auth())
    assert invalid.status_code == 400
    assert "Not a Google Drive folder URL" in invalid.json()["detail"]

    unknown_course = client.post(
        "/import-from-drive", json={"drive_url": DRIVE_URL, "course_id": "nope"}, headers=_auth()
    )
    assert unknown_course.status_code == 400


def test_paused_run_is_continued_inline(client: TestClient, short_budget) -> None:
    response = client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth())

    assert response.status_code == 202
    accepted = response.json()
    assert accepted["state"] == "timed-out-continuing"

    run = client.get(f"/import-from-drive/runs/{accepted['run_id']}", headers=_auth()).json()
    assert run["state"] == "completed"
    assert run["summary"]["by_status"] == {"done": 4}
    assert all(task["attempts"] == 1 for task in run["tasks"])


def test_runner_endpoint_checks_secret_and_resumes(client: TestClient, short_budget) -> None:
    scheduler = RecordingScheduler()
    short_budget.scheduler = scheduler

    response = client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth())
    assert response.status_code == 202
    run_id = response.json()["run_id"]
    assert len(scheduler.payloads) == 1
    payload = scheduler.payloads[0].model_dump()
    assert payload["cursor"] == response.json()["cursor"]

    before = client.get(f"/import-from-drive/runs/{run_id}", headers=_auth()).json()
    assert [task["status"] for task in before["tasks"]] == ["done", "done", "pending", "pending"]

    forged = client.post("/import-from-drive-runner", json={**payload, "secret": "guess"})
    assert forged.status_code == 401
    unsigned = client.post("/import-from-drive-runner", json={"run_id": run_id, "cursor": payload["cursor"]})
    assert unsigned.status_code == 401
    unchanged = client.get(f"/import-from-drive/runs/{run_id}", headers=_auth()).json()
    assert unchanged["tasks"] == before["tasks"]
    assert unchanged["state"] == "timed-out-continuing"

    accepted = client.post("/import-from-drive-runner", json={**payload, "note": "from a newer producer"})
    assert accepted.status_code == 202
    after = client.get(f"/import-from-drive/runs/{run_id}", headers=_auth()).json()
    assert after["state"] == "completed"

    # Replaying the same continuation is accepted but does nothing.
    replay = client.post("/import-from-drive-runner", json=payload)
    assert replay.status_code == 202
    final = client.get(f"/import-from-drive/runs/{run_id}", headers=_auth()).json()
    assert [task["attempts"] for task in final["tasks"]] == [1, 1, 1, 1]


def test_failed_item_can_be_retried(client: TestClient, drive) -> None:
    video_id = drive.file_id("Course A", "Module 1", "video1.mp4")
    drive.fail(video_id, "download interrupted")

    response = client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth())
    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "partially-failed"
    assert [error["name"] for error in body["summary"]["errors"]] == ["video1.mp4"]
    failed = next(task for task in body["tasks"] if task["status"] == "failed")
    assert failed["error"] == "download interrupted"

    incomplete = client.post(
        "/import-from-drive/item", json={"task": {"run_id": body["run_id"], "id": failed["id"]}}, headers=_auth()
    )
    assert incomplete.status_code == 400

    drive.heal(video_id)
    retried = client.post(
        "/import-from-drive/item",
        json={"task": {"run_id": body["run_id"], "id": failed["id"]}, "course_id": body["course_id"]},
        headers=_auth(),
    )

    assert retried.status_code == 200
    result = retried.json()
    assert result["success"] is True
    assert result["status"] == "done"
    assert result["results"]["task"]["attempts"] == 2
    assert result["results"]["record_id"]
    run = client.get(f"/import-from-drive/runs/{body['run_id']}", headers=_auth()).json()
    assert run["state"] == "completed"


def test_item_retry_reports_failure(client: TestClient, drive) -> None:
    video_id = drive.file_id("Course A", "Module 1", "video1.mp4")
    drive.fail(video_id, "still broken")
    body = client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth()).json()
    failed = next(task for task in body["tasks"] if task["status"] == "failed")

    retried = client.post(
        "/import-from-drive/item",
        json={"task": {"run_id": body["run_id"], "id": failed["id"]}, "course_id": body["course_id"]},
        headers=_auth(),
    )

    assert retried.status_code == 200
    assert retried.json()["success"] is False
    assert retried.json()["results"]["error"] == "still broken"


def test_preview_lists_tasks_without_importing(client: TestClient, drive) -> None:
    preview = client.get("/import-from-drive/list", params={"drive_url": DRIVE_URL}, headers=_auth())

    assert preview.status_code == 200
    assert preview.json()["summary"]["by_status"] == {"pending": 4}
    assert drive.downloads == []

    client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth())
    after = client.get("/import-from-drive/list", params={"drive_folder_id": "root"}, headers=_auth())
    assert after.json()["summary"]["by_status"] == {"done": 4}


def test_resume_and_disable_endpoints(client: TestClient, short_budget) -> None:
    short_budget.scheduler = RecordingScheduler()
    first = client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth()).json()

    resumed = client.post(f"/import-from-drive/runs/{first['run_id']}/resume", headers=_auth())
    assert resumed.status_code == 200
    assert resumed.json()["state"] == "completed"

    conflict = client.post(f"/import-from-drive/runs/{first['run_id']}/disable", headers=_auth())
    assert conflict.status_code == 409

    assert client.get("/import-from-drive/runs/missing", headers=_auth()).status_code == 404


def test_disabled_run_ignores_continuations(client: TestClient, short_budget, drive) -> None:
    scheduler = RecordingScheduler()
    short_budget.scheduler = scheduler
    first = client.post("/import-from-drive", json={"drive_url": DRIVE_URL}, headers=_auth()).json()

    disabled = client.post(f"/import-from-drive/runs/{first['run_id']}/disable", headers=_auth())
    assert disabled.status_code == 200
    assert disabled.json()["state"] == "disabled"

    response = client.post("/import-from-drive-runner", json=scheduler.payloads[0].model_dump())
    assert response.status_code == 202
    run = client.get(f"/import-from-drive/runs/{first['run_id']}", headers=_auth()).json()
    assert run["state"] == "disabled"
    assert drive.downloads == []
