from __future__ import annotations

from typing import Any

from keys import ENTITY_TASK
from pm_store import AlreadyLinkedError
from pm_store import NotFoundError
from pm_store import SingleTableStore

UNKNOWN_TASK_TITLE = "Unknown task"


def _linked_title(store: SingleTableStore, domain: str, linked_task_id: str) -> str:
    linked = store.get_task(domain, linked_task_id)
    return str((linked or {}).get("title") or UNKNOWN_TASK_TITLE)


def link_task(
    store: SingleTableStore,
    domain: str,
    task_id: str,
    linked_task_id: str,
    actor: str,
) -> dict[str, Any]:
    """Record ``linked_task_id`` on the source task and log it.

    Two separate writes: the linkedTasks update, then the activity entry.
    Only the source task changes.
    """
    task = store.get_task(domain, task_id)
    if task is None:
        raise NotFoundError(ENTITY_TASK, task_id)
    linked = list(task.get("linkedTasks") or [])
    if linked_task_id in linked:
        raise AlreadyLinkedError(task_id, linked_task_id)

    title = _linked_title(store, domain, linked_task_id)
    store.update_task(domain, task_id, {"linkedTasks": linked + [linked_task_id]}, actor)
    store.add_activity(
        domain,
        task_id,
        {"type": "assignment", "text": f"Linked to task: {title}", "author": actor},
    )
    return _reload(store, domain, task_id)


def unlink_task(
    store: SingleTableStore,
    domain: str,
    task_id: str,
    linked_task_id: str,
    actor: str,
) -> dict[str, Any]:
    task = store.get_task(domain, task_id)
    if task is None:
        raise NotFoundError(ENTITY_TASK, task_id)

    title = _linked_title(store, domain, linked_task_id)
    remaining = [t for t in (task.get("linkedTasks") or []) if t != linked_task_id]
    store.update_task(domain, task_id, {"linkedTasks": remaining}, actor)
    store.add_activity(
        domain,
        task_id,
        {"type": "assignment", "text": f"Unlinked from task: {title}", "author": actor},
    )
    return _reload(store, domain, task_id)


def _reload(store: SingleTableStore, domain: str, task_id: str) -> dict[str, Any]:
    task = store.get_task(domain, task_id)
    if task is None:
        # Deleted between the writes and the re-read.
        raise NotFoundError(ENTITY_TASK, task_id)
    return task
