from __future__ import annotations

import os
import time
from typing import Any

from botocore.exceptions import ClientError

import api_common
from api_common import Identity
from keys import email_host
from pm_store import SingleTableStore
from pm_store import StoreError
from pm_store import USER_ROLES


TABLE_NAME = os.environ.get("TABLE_NAME", "")
CONDITIONAL_WRITES = api_common.truthy(os.environ.get("CONDITIONAL_WRITES"))

CREATE_FIELDS = ("email", "name", "role")
UPDATE_FIELDS = ("name", "role")


def _store() -> SingleTableStore:
    return api_common.build_store(TABLE_NAME, conditional_writes=CONDITIONAL_WRITES)


def _validate(fields: dict[str, Any], *, creating: bool) -> str | None:
    if creating:
        email = fields.get("email")
        if not isinstance(email, str) or not email_host(email.strip()):
            return "a valid email is required"
        if not str(fields.get("name") or "").strip():
            return "name is required"
    if "name" in fields and not isinstance(fields["name"], str):
        return "name must be a string"
    if "role" in fields and fields["role"] not in USER_ROLES:
        return f"role must be one of: {', '.join(USER_ROLES)}"
    return None


def _fields_or_error(
    event: dict[str, Any],
    request_id: str,
    allowed: tuple[str, ...],
    *,
    creating: bool,
) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
    body, err = api_common.parse_body(event)
    if err:
        return None, api_common.error(400, "INVALID_BODY", err, request_id)
    assert body is not None
    fields = api_common.pick(body, allowed)
    problem = _validate(fields, creating=creating)
    if problem:
        return None, api_common.error(400, "INVALID_BODY", problem, request_id)
    if creating:
        fields["email"] = fields["email"].strip()
    return fields, None


def _route(event: dict[str, Any], request_id: str, ident: Identity, log: dict[str, Any]) -> dict[str, Any]:
    method = str(event.get("httpMethod") or "").upper()
    segments = api_common.route_segments(event, "users")

    # /users
    if segments == ["users"]:
        if method == "GET":
            log["route"] = "GET /users"
            return api_common.response(200, {"users": _store().list_users(ident.domain)}, request_id)
        if method == "POST":
            log["route"] = "POST /users"
            fields, err = _fields_or_error(event, request_id, CREATE_FIELDS, creating=True)
            if err:
                return err
            assert fields is not None
            user = _store().create_user(ident.domain, fields)
            return api_common.response(201, {"user": user}, request_id)

    # /users/{id}
    if len(segments) == 2 and segments[0] == "users":
        user_id = segments[1]
        if method == "GET":
            log["route"] = "GET /users/{id}"
            user = _store().get_user(ident.domain, user_id)
            if user is None:
                return api_common.error(404, "USER_NOT_FOUND", f"user not found: {user_id}", request_id)
            return api_common.response(200, {"user": user}, request_id)
        if method == "PUT":
            log["route"] = "PUT /users/{id}"
            fields, err = _fields_or_error(event, request_id, UPDATE_FIELDS, creating=False)
            if err:
                return err
            assert fields is not None
            user = _store().update_user(ident.domain, user_id, fields)
            return api_common.response(200, {"user": user}, request_id)
        if method == "DELETE":
            log["route"] = "DELETE /users/{id}"
            _store().delete_user(ident.domain, user_id)
            return api_common.response(200, {"success": True}, request_id)

    return api_common.error(404, "NOT_FOUND", f"route not found: {method} {event.get('path') or ''}", request_id)


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = api_common.request_id(event)
    log = api_common.new_wide_event(event, "pm_users_request", request_id)
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
