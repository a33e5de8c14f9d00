from __future__ import annotations

import os
import time
from typing import Any

from botocore.exceptions import ClientError

import api_common
from api_common import Identity
from pm_store import SingleTableStore
from pm_store import StoreError
from pm_store import TASK_STATUSES
from task_links import link_task
from task_links import unlink_task


TABLE_NAME = os.environ.get("TABLE_NAME", "")
CONDITIONAL_WRITES = api_common.truthy(os.environ.get("CONDITIONAL_WRITES"))

CREATE_FIELDS = ("title", "description", "status", "hoursExpected", "assignedTo", "dueDate")
UPDATE_FIELDS = (
    "title",
    "description",
    "status",
    "hoursSpent",
    "hoursExpected",
    "assignedTo",
    "linkedTasks",
    "dueDate",
    "startDate",
)
HOURS_FIELDS = ("hoursSpent", "hoursExpected")
TEXT_FIELDS = ("title", "description", "assignedTo", "dueDate", "startDate")
# Stored tasks always carry these; "" unassigns, null is rejected.
NON_NULL_FIELDS = ("title", "status", "hoursSpent", "hoursExpected", "assignedTo", "linkedTasks")


def _store() -> SingleTableStore:
    return api_common.build_store(TABLE_NAME, conditional_writes=CONDITIONAL_WRITES)


def _validate(fields: dict[str, Any], *, creating: bool) -> str | None:
    if creating and not str(fields.get("title") or "").strip():
        return "title is required"
    for key in NON_NULL_FIELDS:
        if key in fields and fields[key] is None:
            return f"{key} cannot be null"
    for key in TEXT_FIELDS:
        if key in fields and fields[key] is not None and not isinstance(fields[key], str):
            return f"{key} must be a string"
    status = fields.get("status")
    if status is not None and status not in TASK_STATUSES:
        return f"status must be one of: {', '.join(TASK_STATUSES)}"
    for key in HOURS_FIELDS:
        if key in fields and fields[key] is not None and not api_common.is_non_negative_number(fields[key]):
            return f"{key} must be a non-negative number"
    if "linkedTasks" in fields:
        linked = fields["linkedTasks"]
        if not isinstance(linked, list) or not all(isinstance(t, str) and t for t in linked):
            return "linkedTasks must be a list of task ids"
    return None


def _body_or_error(event: dict[str, Any], request_id: str) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    body, err = api_common.parse_body(event)
    if err:
        return None, api_common.error(400, "INVALID_BODY", err, request_id)
    return body, None


def _list(request_id: str, ident: Identity) -> dict[str, Any]:
    return api_common.response(200, {"tasks": _store().list_tasks(ident.domain)}, request_id)


def _create(event: dict[str, Any], request_id: str, ident: Identity) -> dict[str, Any]:
    body, err = _body_or_error(event, request_id)
    if err:
        return err
    assert body is not None
    fields = api_common.pick(body, CREATE_FIELDS)
    problem = _validate(fields, creating=True)
    if problem:
        return api_common.error(400, "INVALID_BODY", problem, request_id)
    task = _store().create_task(ident.domain, fields, ident.email)
    return api_common.response(201, {"task": task}, request_id)


def _show(request_id: str, ident: Identity, task_id: str) -> dict[str, Any]:
    task = _store().get_task(ident.domain, task_id)
    if task is None:
        return api_common.error(404, "TASK_NOT_FOUND", f"task not found: {task_id}", request_id)
    return api_common.response(200, {"task": task}, request_id)


def _update(event: dict[str, Any], request_id: str, ident: Identity, task_id: str) -> dict[str, Any]:
    body, err = _body_or_error(event, request_id)
    if err:
        return err
    assert body is not None
    updates = api_common.pick(body, UPDATE_FIELDS)
    problem = _validate(updates, creating=False)
    if problem:
        return api_common.error(400, "INVALID_BODY", problem, request_id)
    task = _store().update_task(ident.domain, task_id, updates, ident.email)
    return api_common.response(200, {"task": task}, request_id)


def _delete(request_id: str, ident: Identity, task_id: str) -> dict[str, Any]:
    _store().delete_task(ident.domain, task_id)
    return api_common.response(200, {"success": True}, request_id)


def _comment(event: dict[str, Any], request_id: str, ident: Identity, task_id: str) -> dict[str, Any]:
    body, err = _body_or_error(event, request_id)
    if err:
        return err
    assert body is not None
    comment = body.get("comment")
    if not isinstance(comment, str) or not comment.strip():
        return api_common.error(400, "INVALID_BODY", "comment is required", request_id)
    task = _store().add_activity(
        ident.domain,
        task_id,
        {"type": "comment", "text": comment, "author": ident.email},
    )
    return api_common.response(200, {"task": task}, request_id)


def _link(event: dict[str, Any], request_id: str, ident: Identity, task_id: str) -> dict[str, Any]:
    body, err = _body_or_error(event, request_id)
    if err:
        return err
    assert body is not None
    linked_task_id = body.get("linkedTaskId")
    if not isinstance(linked_task_id, str) or not linked_task_id.strip():
        return api_common.error(400, "INVALID_BODY", "linkedTaskId is required", request_id)
    if linked_task_id == task_id:
        return api_common.error(400, "INVALID_BODY", "a task cannot be linked to itself", request_id)
    task = link_task(_store(), ident.domain, task_id, linked_task_id, ident.email)
    return api_common.response(200, {"task": task}, request_id)


def _unlink(request_id: str, ident: Identity, task_id: str, linked_task_id: str) -> dict[str, Any]:
    task = unlink_task(_store(), ident.domain, task_id, linked_task_id, ident.email)
    return api_common.response(200, {"task": task}, request_id)


def _route(event: dict[str, Any], request_id: str, ident: Identity, log: dict[str, Any]) -> dict[str, Any]:
    method = str(event.get("httpMethod") or "").upper()
    segments = api_common.route_segments(event, "tasks")

    # /tasks
    if segments == ["tasks"]:
        if method == "GET":
            log["route"] = "GET /tasks"
            return _list(request_id, ident)
        if method == "POST":
            log["route"] = "POST /tasks"
            return _create(event, request_id, ident)

    # /tasks/{id}
    if len(segments) == 2 and segments[0] == "tasks":
        task_id = segments[1]
        if method == "GET":
            log["route"] = "GET /tasks/{id}"
            return _show(request_id, ident, task_id)
        if method == "PUT":
            log["route"] = "PUT /tasks/{id}"
            return _update(event, request_id, ident, task_id)
        if method == "DELETE":
            log["route"] = "DELETE /tasks/{id}"
            return _delete(request_id, ident, task_id)

    # /tasks/{id}/comments and /tasks/{id}/link
    if len(segments) == 3 and segments[0] == "tasks" and method == "POST":
        if segments[2] == "comments":
            log["route"] = "POST /tasks/{id}/comments"
            return _comment(event, request_id, ident, segments[1])
        if segments[2] == "link":
            log["route"] = "POST /tasks/{id}/link"
            return _link(event, request_id, ident, segments[1])

    # /tasks/{id}/link/{linkedTaskId}
    if len(segments) == 4 and segments[0] == "tasks" and segments[2] == "link" and method == "DELETE":
        log["route"] = "DELETE /tasks/{id}/link/{linkedTaskId}"
        return _unlink(request_id, ident, segments[1], segments[3])

    return api_common.error(404, "NOT_FOUND", f"route not found: {method} {event.get('path') or ''}", request_id)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = api_common.request_id(event)
    log = api_common.new_wide_event(event, "pm_tasks_request", request_id)
    out: dict[str, Any] | None = None
    try:
        out = _handle(event, request_id, log)
        return out
    finally:
        api_common.emit_wide_event(log, start, out)


def _handle(event: dict[str, Any], request_id: str, log: dict[str, Any]) -> dict[str, Any]:
    if not TABLE_NAME:
        return api_common.error(500, "MISCONFIGURED", "TABLE_NAME env var is required", request_id)

    ident = api_common.identity(event)
    if ident is None:
        return api_common.error(401, "UNAUTHORIZED", "missing identity claims", request_id)
    log["domain"] = ident.domain

    try:
        return _route(event, request_id, ident, log)
    except StoreError as e:
        return api_common.store_error_response(e, request_id)
    except ClientError as e:
        return api_common.failure(log, e, "DDB_ERROR", request_id)
    except Exception as e:
        return api_common.failure(log, e, "INTERNAL_ERROR", request_id)
