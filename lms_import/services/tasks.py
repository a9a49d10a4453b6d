"""Ordered task model for a Drive import run."""

from __future__ import annotations

import hashlib
import time
from collections import Counter
from typing import Iterable, Sequence

from lms_import.models import ImportTask
from lms_import.schemas.drive_import import RunSummary, TaskError
from lms_import.services.classifier import ClassifierRules, TaskKind, classify
from lms_import.services.drive import DriveClient, DriveNode, walk

TERMINAL_STATUSES = frozenset({"done", "skipped"})
PARENT_KINDS = frozenset({TaskKind.COURSE.value, TaskKind.MODULE.value})


def task_id_for(id_path: Sequence[str]) -> str:
    """Stable task id derived from the node's Drive id path below the import root."""
    digest = hashlib.sha1("/".join(id_path).encode("utf-8")).hexdigest()
    return digest[:20]


def kind_of(node: DriveNode, rules: ClassifierRules | None = None) -> TaskKind:
    return classify(
        name=node.name,
        mime_type=node.mime_type,
        is_folder=node.is_folder,
        path=node.path,
        rules=rules,
    )


def enumerate_tree(
    client: DriveClient, root_id: str, rules: ClassifierRules | None = None
) -> list[DriveNode]:
    """List the import tree, expanding only course and module folders."""
    return list(walk(client, root_id, descend=lambda node: kind_of(node, rules).value in PARENT_KINDS))


def build_tasks(
    nodes: Iterable[DriveNode],
    *,
    run_id: str,
    rules: ClassifierRules | None = None,
) -> list[ImportTask]:
    """Turn pre-ordered nodes into tasks, keeping the listing order.

    A node's parent task is the nearest ancestor that is a course or module.
    Nodes whose ancestors were not expanded never reach this point, so every
    parent id refers to an earlier task in the returned list.
    """

    now = int(time.time())
    tasks: list[ImportTask] = []
    parent_by_folder: dict[str, str] = {}

    for position, node in enumerate(nodes):
        kind = kind_of(node, rules)
        parent_id = parent_by_folder.get(node.id_path[-2]) if len(node.id_path) > 1 else None
        task = ImportTask(
            run_id=run_id,
            id=task_id_for(node.id_path),
            position=position,
            kind=kind.value,
            parent_id=parent_id,
            source_id=node.file.id,
            revision=node.file.revision,
            name=node.name,
            mime_type=node.mime_type,
            path="/".join(node.path),
            depth=node.depth,
            order_index=node.order_index,
            size=node.file.size,
            status="skipped" if kind is TaskKind.SKIP else "pending",
            error=None,
            record_id=None,
            attempts=0,
            updated_at=now,
        )
        if kind.value in PARENT_KINDS:
            parent_by_folder[node.file.id] = task.id
        tasks.append(task)

    return tasks


def merge_with_existing(
    new_tasks: Sequence[ImportTask],
    prior_tasks: Iterable[ImportTask],
    *,
    retry_failed: bool = True,
) -> list[ImportTask]:
    """Carry statuses from a prior run onto freshly built tasks, matched by id.

    Only finished work is carried, and only while the source revision is
    unchanged; a task whose file changed in Drive is executed again.
    """

    prior_by_id = {task.id: task for task in prior_tasks}
    for task in new_tasks:
        prior = prior_by_id.get(task.id)
        if prior is None or task.status == "skipped":
            continue
        if prior.revision != task.revision:
            continue
        task.attempts = prior.attempts
        if prior.status == "done":
            task.status = "done"
            task.record_id = prior.record_id
        elif prior.status == "failed" and not retry_failed:
            task.status = "failed"
            task.error = prior.error
    return list(new_tasks)


def blocked_ids(tasks: Sequence[ImportTask]) -> set[str]:
    """Pending tasks under a failed (or itself blocked) parent."""
    status_by_id = {task.id: task.status for task in tasks}
    blocked: set[str] = set()
    for task in sorted(tasks, key=lambda t: t.position):
        if task.status != "pending" or task.parent_id is None:
            continue
        if status_by_id.get(task.parent_id) == "failed" or task.parent_id in blocked:
            blocked.add(task.id)
    return blocked


def summarize(tasks: Sequence[ImportTask]) -> RunSummary:
    by_status = Counter(task.status for task in tasks)
    by_kind = Counter(task.kind for task in tasks)
    errors = [
        TaskError(task_id=task.id, name=task.name, path=task.path, error=task.error or "")
        for task in tasks
        if task.status == "failed"
    ]
    return RunSummary(
        total=len(tasks),
        by_status=dict(by_status),
        by_kind=dict(by_kind),
        blocked=len(blocked_ids(tasks)),
        errors=errors,
    )
