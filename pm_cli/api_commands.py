from __future__ import annotations

import argparse
import json
import sys
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlparse
from urllib.request import Request, urlopen

from .cli_shared import (
    PM_API_URL,
    PM_ID_TOKEN,
    GlobalOpts,
    OpError,
    UsageError,
    _jwt_payload,
    _load_json_object,
    _print_json,
    _require_str,
)


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def _api_auth(g: GlobalOpts) -> tuple[str, str]:
    endpoint = _require_str(g.endpoint, "API endpoint", hint=f"--endpoint or env {PM_API_URL}")
    id_token = _require_str(g.id_token, "Cognito ID token", hint=f"--id-token or env {PM_ID_TOKEN}")
    parsed = urlparse(endpoint)
    if parsed.scheme not in {"https", "http"} or not parsed.netloc:
        raise UsageError(f"invalid API endpoint: {endpoint!r} (expected an http(s) URL)")
    try:
        _jwt_payload(id_token)
    except OpError as e:
        raise UsageError(f"invalid Cognito ID token: {e}") from e
    return endpoint, id_token


def _api_request(
    *,
    method: str,
    endpoint: str,
    id_token: str,
    path: str,
    body_obj: dict[str, Any] | None = None,
) -> dict[str, Any]:
    ep = endpoint.rstrip("/")
    p = path if path.startswith("/") else f"/{path}"
    url = f"{ep}{p}"

    body_bytes = None
    headers = {
        "authorization": f"Bearer {id_token}",
    }
    if body_obj is not None:
        body_bytes = json.dumps(body_obj, separators=(",", ":")).encode("utf-8")
        headers["content-type"] = "application/json"

    status, _hdrs, data = _http_request(
        method=method,
        url=url,
        headers=headers,
        body=body_bytes,
    )
    text = data.decode("utf-8", errors="replace")
    parsed: Any
    try:
        parsed = json.loads(text) if text else {}
    except ValueError:
        parsed = {"raw": text}

    if status < 200 or status >= 300:
        code = ""
        if isinstance(parsed, dict):
            code = str(parsed.get("errorCode") or "").strip()
            msg = str(parsed.get("message") or parsed.get("error") or text).strip()
        else:
            msg = str(parsed)
        detail = f" code={code}" if code else ""
        raise OpError(f"api request failed: status={status}{detail} method={method} path={p} message={msg}")

    if isinstance(parsed, dict):
        return parsed
    return {"result": parsed}


def _call(g: GlobalOpts, method: str, path: str, body_obj: dict[str, Any] | None = None) -> dict[str, Any]:
    endpoint, id_token = _api_auth(g)
    return _api_request(
        method=method,
        endpoint=endpoint,
        id_token=id_token,
        path=path,
        body_obj=body_obj,
    )


def _seg(value: str, name: str) -> str:
    v = str(value or "").strip()
    if not v:
        raise UsageError(f"{name} cannot be empty")
    return quote(v, safe="")


def _wants_json(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "json_output", False))


def _cell(value: Any) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    text = str(value or "").strip()
    if not text:
        return "-"
    return text


def _print_table(*, headers: list[str], rows: list[list[str]], empty_message: str) -> None:
    if not rows:
        sys.stdout.write(f"{empty_message}\n")
        return
    widths: list[int] = [len(h) for h in headers]
    for row in rows:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], len(val))
    header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    divider_line = "  ".join("-" * widths[i] for i in range(len(headers)))
    sys.stdout.write(header_line + "\n")
    sys.stdout.write(divider_line + "\n")
    for row in rows:
        sys.stdout.write("  ".join(row[i].ljust(widths[i]) for i in range(len(headers))) + "\n")


def _fields_from_args(args: argparse.Namespace, mapping: tuple[tuple[str, str], ...]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for attr, key in mapping:
        val = getattr(args, attr, None)
        if val is not None:
            out[key] = val
    raw_patch = str(getattr(args, "patch", "") or "").strip()
    if raw_patch:
        out.update(_load_json_object(raw=raw_patch, label="--patch JSON"))
    return out


def _items(out: dict[str, Any], key: str) -> list[dict[str, Any]]:
    items = out.get(key)
    if not isinstance(items, list):
        return []
    return [i for i in items if isinstance(i, dict)]


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

_TASK_CREATE_ARGS = (
    ("title", "title"),
    ("description", "description"),
    ("status", "status"),
    ("hours_expected", "hoursExpected"),
    ("assigned_to", "assignedTo"),
    ("due_date", "dueDate"),
)
_TASK_UPDATE_ARGS = _TASK_CREATE_ARGS + (
    ("hours_spent", "hoursSpent"),
    ("start_date", "startDate"),
)


def _print_task_line(verb: str, task: dict[str, Any]) -> None:
    sys.stdout.write(
        f"{verb} task {_cell(task.get('id'))} [{_cell(task.get('status'))}] title={_cell(task.get('title'))}\n"
    )


def cmd_tasks_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(g, "GET", "/tasks")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    status = str(getattr(args, "status", "") or "").strip()
    rows = []
    for t in _items(out, "tasks"):
        if status and t.get("status") != status:
            continue
        rows.append(
            [
                _cell(t.get("id")),
                _cell(t.get("status")),
                _cell(t.get("assignedTo")),
                f"{_cell(t.get('hoursSpent'))}/{_cell(t.get('hoursExpected'))}",
                _cell(t.get("title")),
            ]
        )
    _print_table(headers=["ID", "STATUS", "ASSIGNEE", "HOURS", "TITLE"], rows=rows, empty_message="No tasks.")
    return 0


def cmd_tasks_show(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(g, "GET", f"/tasks/{_seg(args.task_id, 'task id')}")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") or {}
    for label, key in (
        ("id", "id"),
        ("title", "title"),
        ("status", "status"),
        ("assignedTo", "assignedTo"),
        ("hoursSpent", "hoursSpent"),
        ("hoursExpected", "hoursExpected"),
        ("dueDate", "dueDate"),
        ("createdBy", "createdBy"),
        ("updatedAt", "updatedAt"),
    ):
        sys.stdout.write(f"{label}: {_cell(task.get(key))}\n")
    linked = task.get("linkedTasks") or []
    sys.stdout.write(f"linkedTasks: {', '.join(linked) if linked else '-'}\n")
    activities = [a for a in (task.get("activities") or []) if isinstance(a, dict)]
    sys.stdout.write(f"activities: {len(activities)}\n")
    for a in activities:
        sys.stdout.write(
            f"- {_cell(a.get('timestamp'))} [{_cell(a.get('type'))}] {_cell(a.get('author'))}: {_cell(a.get('text'))}\n"
        )
    return 0


def cmd_tasks_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    body = _fields_from_args(args, _TASK_CREATE_ARGS)
    if not str(body.get("title") or "").strip():
        raise UsageError("title cannot be empty")
    out = _call(g, "POST", "/tasks", body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_task_line("created", out.get("task") or {})
    return 0


def cmd_tasks_update(args: argparse.Namespace, g: GlobalOpts) -> int:
    body = _fields_from_args(args, _TASK_UPDATE_ARGS)
    if not body:
        raise UsageError("nothing to update (pass at least one field option or --patch)")
    out = _call(g, "PUT", f"/tasks/{_seg(args.task_id, 'task id')}", body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_task_line("updated", out.get("task") or {})
    return 0


def cmd_tasks_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(g, "DELETE", f"/tasks/{_seg(args.task_id, 'task id')}")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    sys.stdout.write(f"deleted task {args.task_id}\n")
    return 0


def cmd_tasks_comment(args: argparse.Namespace, g: GlobalOpts) -> int:
    text = str(args.text or "").strip()
    if not text:
        raise UsageError("comment text cannot be empty")
    out = _call(g, "POST", f"/tasks/{_seg(args.task_id, 'task id')}/comments", {"comment": text})
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") or {}
    sys.stdout.write(f"commented on task {_cell(task.get('id'))} activities={len(task.get('activities') or [])}\n")
    return 0


def cmd_tasks_link(args: argparse.Namespace, g: GlobalOpts) -> int:
    linked_task_id = _require_str(args.linked_task_id, "linked task id", hint="second positional argument")
    out = _call(
        g,
        "POST",
        f"/tasks/{_seg(args.task_id, 'task id')}/link",
        {"linkedTaskId": linked_task_id},
    )
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") or {}
    sys.stdout.write(f"linked task {_cell(task.get('id'))} -> {linked_task_id}\n")
    return 0


def cmd_tasks_unlink(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(
        g,
        "DELETE",
        f"/tasks/{_seg(args.task_id, 'task id')}/link/{_seg(args.linked_task_id, 'linked task id')}",
    )
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    task = out.get("task") or {}
    sys.stdout.write(f"unlinked task {_cell(task.get('id'))} -x {args.linked_task_id}\n")
    return 0


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------

_TICKET_ARGS = (
    ("title", "title"),
    ("description", "description"),
    ("status", "status"),
    ("ticket_type", "type"),
    ("assigned_to", "assignedTo"),
)


def _print_ticket_line(verb: str, ticket: dict[str, Any]) -> None:
    sys.stdout.write(
        f"{verb} ticket {_cell(ticket.get('id'))} [{_cell(ticket.get('type'))}/{_cell(ticket.get('status'))}] "
        f"title={_cell(ticket.get('title'))}\n"
    )


def cmd_tickets_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(g, "GET", "/tickets")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    rows = [
        [
            _cell(t.get("id")),
            _cell(t.get("type")),
            _cell(t.get("status")),
            _cell(t.get("assignedTo")),
            _cell(t.get("title")),
        ]
        for t in _items(out, "tickets")
    ]
    _print_table(headers=["ID", "TYPE", "STATUS", "ASSIGNEE", "TITLE"], rows=rows, empty_message="No tickets.")
    return 0


def cmd_tickets_show(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(g, "GET", f"/tickets/{_seg(args.ticket_id, 'ticket id')}")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    ticket = out.get("ticket") or {}
    for key in ("id", "title", "type", "status", "assignedTo", "description", "createdBy", "updatedAt"):
        sys.stdout.write(f"{key}: {_cell(ticket.get(key))}\n")
    return 0


def cmd_tickets_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    body = _fields_from_args(args, _TICKET_ARGS)
    if not str(body.get("title") or "").strip():
        raise UsageError("title cannot be empty")
    out = _call(g, "POST", "/tickets", body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_ticket_line("created", out.get("ticket") or {})
    return 0


def cmd_tickets_update(args: argparse.Namespace, g: GlobalOpts) -> int:
    body = _fields_from_args(args, _TICKET_ARGS)
    if not body:
        raise UsageError("nothing to update (pass at least one field option or --patch)")
    out = _call(g, "PUT", f"/tickets/{_seg(args.ticket_id, 'ticket id')}", body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    _print_ticket_line("updated", out.get("ticket") or {})
    return 0


def cmd_tickets_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(g, "DELETE", f"/tickets/{_seg(args.ticket_id, 'ticket id')}")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    sys.stdout.write(f"deleted ticket {args.ticket_id}\n")
    return 0


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def cmd_users_list(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(g, "GET", "/users")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    rows = [
        [_cell(u.get("userId")), _cell(u.get("email")), _cell(u.get("role")), _cell(u.get("name"))]
        for u in _items(out, "users")
    ]
    _print_table(headers=["ID", "EMAIL", "ROLE", "NAME"], rows=rows, empty_message="No users.")
    return 0


def cmd_users_create(args: argparse.Namespace, g: GlobalOpts) -> int:
    email = _require_str(args.email, "email", hint="positional argument")
    name = _require_str(args.name, "name", hint="--name")
    body: dict[str, Any] = {"email": email, "name": name}
    if args.role:
        body["role"] = args.role
    out = _call(g, "POST", "/users", body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    user = out.get("user") or {}
    sys.stdout.write(f"created user {_cell(user.get('userId'))} email={_cell(user.get('email'))} role={_cell(user.get('role'))}\n")
    return 0


def cmd_users_update(args: argparse.Namespace, g: GlobalOpts) -> int:
    body: dict[str, Any] = {}
    if args.name is not None:
        body["name"] = args.name
    if args.role is not None:
        body["role"] = args.role
    if not body:
        raise UsageError("nothing to update (pass --name and/or --role)")
    out = _call(g, "PUT", f"/users/{_seg(args.user_id, 'user id')}", body)
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    user = out.get("user") or {}
    sys.stdout.write(f"updated user {_cell(user.get('userId'))} role={_cell(user.get('role'))} name={_cell(user.get('name'))}\n")
    return 0


def cmd_users_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    out = _call(g, "DELETE", f"/users/{_seg(args.user_id, 'user id')}")
    if _wants_json(args):
        _print_json(out, pretty=g.pretty)
        return 0
    sys.stdout.write(f"deleted user {args.user_id}\n")
    return 0


def cmd_whoami(args: argparse.Namespace, g: GlobalOpts) -> int:
    """Decode the configured ID token locally; the token is not verified."""
    token = _require_str(g.id_token, "Cognito ID token", hint=f"--id-token or env {PM_ID_TOKEN}")
    claims = _jwt_payload(token)
    email = str(claims.get("email") or "")
    host = email.split("@")[1] if "@" in email else ""
    out = {
        "sub": claims.get("sub"),
        "email": email or None,
        "domain": str(claims.get("custom:domain") or "") or host.split(".")[0] or "default",
        "exp": claims.get("exp"),
    }
    _print_json(out, pretty=g.pretty)
    return 0
