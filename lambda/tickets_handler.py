from __future__ import annotations

import os
import time
from typing import Any

from botocore.exceptions import ClientError

import api_common
from api_common import Identity
from pm_store import SingleTableStore
from pm_store import StoreError
from pm_store import TICKET_STATUSES
from pm_store import TICKET_TYPES


TABLE_NAME = os.environ.get("TABLE_NAME", "")
CONDITIONAL_WRITES = api_common.truthy(os.environ.get("CONDITIONAL_WRITES"))

TICKET_FIELDS = ("title", "description", "status", "type", "assignedTo")


def _store() -> SingleTableStore:
    return api_common.build_store(TABLE_NAME, conditional_writes=CONDITIONAL_WRITES)


def _validate(fields: dict[str, Any], *, creating: bool) -> str | None:
    if creating and not str(fields.get("title") or "").strip():
        return "title is required"
    for key in ("title", "status", "type"):
        if key in fields and fields[key] is None:
            return f"{key} cannot be null"
    for key in ("title", "description", "assignedTo"):
        if key in fields and fields[key] is not None and not isinstance(fields[key], str):
            return f"{key} must be a string"
    status = fields.get("status")
    if status is not None and status not in TICKET_STATUSES:
        return f"status must be one of: {', '.join(TICKET_STATUSES)}"
    ticket_type = fields.get("type")
    if ticket_type is not None and ticket_type not in TICKET_TYPES:
        return f"type must be one of: {', '.join(TICKET_TYPES)}"
    return None


def _fields_or_error(
    event: dict[str, Any],
    request_id: str,
    *,
    creating: bool,
) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    body, err = api_common.parse_body(event)
    if err:
        return None, api_common.error(400, "INVALID_BODY", err, request_id)
    assert body is not None
    fields = api_common.pick(body, TICKET_FIELDS)
    problem = _validate(fields, creating=creating)
    if problem:
        return None, api_common.error(400, "INVALID_BODY", problem, request_id)
    return fields, None


def _route(event: dict[str, Any], request_id: str, ident: Identity, log: dict[str, Any]) -> dict[str, Any]:
    method = str(event.get("httpMethod") or "").upper()
    segments = api_common.route_segments(event, "tickets")

    # /tickets
    if segments == ["tickets"]:
        if method == "GET":
            log["route"] = "GET /tickets"
            return api_common.response(200, {"tickets": _store().list_tickets(ident.domain)}, request_id)
        if method == "POST":
            log["route"] = "POST /tickets"
            fields, err = _fields_or_error(event, request_id, creating=True)
            if err:
                return err
            assert fields is not None
            ticket = _store().create_ticket(ident.domain, fields, ident.email)
            return api_common.response(201, {"ticket": ticket}, request_id)

    # /tickets/{id}
    if len(segments) == 2 and segments[0] == "tickets":
        ticket_id = segments[1]
        if method == "GET":
            log["route"] = "GET /tickets/{id}"
            ticket = _store().get_ticket(ident.domain, ticket_id)
            if ticket is None:
                return api_common.error(404, "TICKET_NOT_FOUND", f"ticket not found: {ticket_id}", request_id)
            return api_common.response(200, {"ticket": ticket}, request_id)
        if method == "PUT":
            log["route"] = "PUT /tickets/{id}"
            fields, err = _fields_or_error(event, request_id, creating=False)
            if err:
                return err
            assert fields is not None
            ticket = _store().update_ticket(ident.domain, ticket_id, fields, ident.email)
            return api_common.response(200, {"ticket": ticket}, request_id)
        if method == "DELETE":
            log["route"] = "DELETE /tickets/{id}"
            _store().delete_ticket(ident.domain, ticket_id)
            return api_common.response(200, {"success": True}, request_id)

    return api_common.error(404, "NOT_FOUND", f"route not found: {method} {event.get('path') or ''}", request_id)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = api_common.request_id(event)
    log = api_common.new_wide_event(event, "pm_tickets_request", request_id)
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
